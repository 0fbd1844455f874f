"""SQLAlchemy database models for the payment orchestration ledger."""
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")
Money = Numeric(18, 4, asdecimal=True)

TRANSACTION_STATUSES = (
    "pending",
    "processing",
    "completed",
    "failed",
    "partial_refund",
    "refunded",
)
PAYMENT_TYPES = ("onclick", "moto", "recurrent")
CONTRACT_STATUSES = ("pending", "active", "paused", "cancelled", "expired")
CONTRACT_TYPES = ("scheduled", "unscheduled")


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def _in_clause(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class PaymentTransaction(Base):
    """
    One record per payment attempt.

    Holds the money split computed at creation, the provider linkage and the
    current lifecycle status. The idempotency key is unique per tenant.
    """

    __tablename__ = "payment_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    order_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_payment_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    payment_type: Mapped[str] = mapped_column(String(20), nullable=False)
    method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    gross_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(7, 6), nullable=False)
    commission_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    refunded_amount: Mapped[Decimal] = mapped_column(
        Money, nullable=False, default=Decimal("0")
    )

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failure_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    customer_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    contract_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Bumped on every UPDATE; writes are conditional on the value read
    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    events: Mapped[List["PaymentEvent"]] = relationship(
        back_populates="transaction",
        order_by="PaymentEvent.id",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "idempotency_key", name="uq_transactions_tenant_idempotency"),
        CheckConstraint("gross_amount >= 0", name="non_negative_amount"),
        CheckConstraint("refunded_amount >= 0", name="non_negative_refunded"),
        CheckConstraint(
            _in_clause("status", TRANSACTION_STATUSES), name="valid_transaction_status"
        ),
        CheckConstraint(_in_clause("payment_type", PAYMENT_TYPES), name="valid_payment_type"),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_transactions_status_updated", "status", "updated_at"),
        Index("idx_transactions_tenant_order", "tenant_id", "order_id"),
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        """String representation of PaymentTransaction."""
        return (
            f"<PaymentTransaction(id={self.id}, tenant_id={self.tenant_id}, "
            f"provider={self.provider}, amount={self.gross_amount}, status={self.status})>"
        )


class PaymentEvent(Base):
    """
    Append-only audit trail of a transaction.

    Rows are only ever inserted. The ``metadata`` column is mapped to
    ``event_metadata`` because the declarative base reserves that name.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payment_transactions.id"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    event_metadata: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    provider_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    transaction: Mapped[PaymentTransaction] = relationship(back_populates="events")

    __table_args__ = (
        Index("idx_payment_events_type", "event_type"),
        Index("idx_payment_events_provider_event", "provider_event_id"),
    )

    def __repr__(self) -> str:
        """String representation of PaymentEvent."""
        return (
            f"<PaymentEvent(id={self.id}, transaction_id={self.transaction_id}, "
            f"type={self.event_type}, status={self.status})>"
        )


class RecurringContract(Base):
    """
    Tokenized recurring authorization for a customer.

    Only masked card metadata is stored. Usage accumulators are never
    decremented.
    """

    __tablename__ = "recurring_contracts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String(128), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_contract_id: Mapped[str] = mapped_column(String(255), nullable=False)
    contract_type: Mapped[str] = mapped_column(String(20), nullable=False)

    token_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    card_last_four: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    card_brand: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    card_expiry: Mapped[Optional[str]] = mapped_column(String(7), nullable=True)

    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    frequency_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_amount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    next_charge_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    expires_at: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)

    total_charges: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount_charged: Mapped[Decimal] = mapped_column(
        Money, nullable=False, default=Decimal("0")
    )
    last_charge_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_charge_amount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint(_in_clause("status", CONTRACT_STATUSES), name="valid_contract_status"),
        CheckConstraint(_in_clause("contract_type", CONTRACT_TYPES), name="valid_contract_type"),
        CheckConstraint("total_charges >= 0", name="non_negative_charges"),
        Index("idx_contracts_tenant_customer", "tenant_id", "customer_id"),
        Index("idx_contracts_status_next_charge", "status", "next_charge_date"),
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        """String representation of RecurringContract."""
        return (
            f"<RecurringContract(id={self.id}, customer_id={self.customer_id}, "
            f"provider={self.provider}, status={self.status})>"
        )


class TenantPaymentConfig(Base):
    """Per-tenant provider configuration blob, validated by the adapter at use."""

    __tablename__ = "tenant_payment_configs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    config: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "provider", name="uq_tenant_provider_config"),
    )

    def __repr__(self) -> str:
        """String representation of TenantPaymentConfig."""
        return f"<TenantPaymentConfig(tenant_id={self.tenant_id}, provider={self.provider})>"


class TenantCommissionRate(Base):
    """Platform commission rate charged to a tenant."""

    __tablename__ = "tenant_commission_rates"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(7, 6), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "commission_rate >= 0 AND commission_rate <= 1", name="valid_commission_rate"
        ),
    )

    def __repr__(self) -> str:
        """String representation of TenantCommissionRate."""
        return f"<TenantCommissionRate(tenant_id={self.tenant_id}, rate={self.commission_rate})>"
