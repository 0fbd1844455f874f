"""Database package for the payment orchestration ledger."""
from .connection import (
    close_db,
    get_engine,
    get_session_factory,
    init_db,
    run_in_transaction,
)
from .models import (
    Base,
    PaymentEvent,
    PaymentTransaction,
    RecurringContract,
    TenantCommissionRate,
    TenantPaymentConfig,
)

__all__ = [
    "Base",
    "PaymentTransaction",
    "PaymentEvent",
    "RecurringContract",
    "TenantPaymentConfig",
    "TenantCommissionRate",
    "close_db",
    "get_engine",
    "get_session_factory",
    "init_db",
    "run_in_transaction",
]
