"""Core payment orchestration logic."""
from .commission import CommissionBreakdown, calculate_commission, round_money
from .ledger import TransactionLedger
from .schemas import (
    ContractParams,
    ContractResult,
    PaymentParams,
    PaymentResult,
    PaymentType,
    RefundResult,
    TransactionStatus,
)
from .tenant_config import DatabaseTenantConfigStore, TenantConfigStore

__all__ = [
    "CommissionBreakdown",
    "ContractParams",
    "ContractResult",
    "DatabaseTenantConfigStore",
    "PaymentParams",
    "PaymentResult",
    "PaymentType",
    "RefundResult",
    "TenantConfigStore",
    "TransactionLedger",
    "TransactionStatus",
    "calculate_commission",
    "round_money",
]
