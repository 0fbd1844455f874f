"""Pydantic models exchanged between the orchestrator, providers and callers."""
import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


class PaymentType(str, Enum):
    """How the payment is initiated."""

    ONCLICK = "onclick"
    MOTO = "moto"
    RECURRENT = "recurrent"


class TransactionStatus(str, Enum):
    """Lifecycle status of a payment transaction."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL_REFUND = "partial_refund"
    REFUNDED = "refunded"


class ContractType(str, Enum):
    """Scheduled contracts charge at a fixed interval, unscheduled on demand."""

    SCHEDULED = "scheduled"
    UNSCHEDULED = "unscheduled"


class ContractStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class CardData(BaseModel):
    """Operator-keyed card details for MOTO payments."""

    card_number: SecretStr
    expiry_month: int = Field(ge=1, le=12)
    expiry_year: int = Field(ge=2000)
    cvv: Optional[SecretStr] = None
    cardholder_name: Optional[str] = None

    @property
    def last_four(self) -> str:
        return self.card_number.get_secret_value()[-4:]

    @property
    def expiry(self) -> str:
        """Expiry formatted as ``MM/YYYY``."""
        return f"{self.expiry_month:02d}/{self.expiry_year}"


class PaymentParams(BaseModel):
    """
    Already-finalized payment request coming from the order subsystem.

    Amounts are never recomputed here; ``amount`` is the gross to charge.
    """

    order_id: str = Field(min_length=1)
    amount: Decimal = Field(ge=0)
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    idempotency_key: Optional[str] = Field(default=None, max_length=255)
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    description: Optional[str] = None
    method: Optional[str] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    card: Optional[CardData] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class ContractParams(BaseModel):
    """Request to establish a recurring authorization."""

    customer_id: str = Field(min_length=1)
    contract_type: ContractType = ContractType.UNSCHEDULED
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    initial_amount: Decimal = Field(default=Decimal("0"), ge=0)
    frequency_days: Optional[int] = Field(default=None, gt=0)
    max_amount: Optional[Decimal] = Field(default=None, gt=0)
    first_charge_date: Optional[date] = None
    expires_at: Optional[date] = None
    customer_email: Optional[str] = None
    description: Optional[str] = None
    return_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class PaymentResult(BaseModel):
    """
    Outcome of a provider payment operation.

    Adapters fill the provider fields; the orchestrator adds
    ``transaction_id`` and ``idempotent_replay``.
    """

    success: bool
    transaction_id: Optional[uuid.UUID] = None
    provider_payment_id: Optional[str] = None
    status: Optional[str] = None
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None
    amount: Optional[Decimal] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    idempotent_replay: bool = False
    raw: Dict[str, Any] = Field(default_factory=dict)


class RefundResult(BaseModel):
    """Outcome of a refund."""

    success: bool
    transaction_id: Optional[uuid.UUID] = None
    refund_id: Optional[str] = None
    amount: Optional[Decimal] = None
    status: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class ContractResult(BaseModel):
    """Outcome of a provider contract creation."""

    success: bool
    contract_id: Optional[uuid.UUID] = None
    provider_contract_id: Optional[str] = None
    status: str = ContractStatus.PENDING.value
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class ProviderFees(BaseModel):
    """Provider processing fee estimate, independent of platform commission."""

    model_config = ConfigDict(frozen=True)

    fixed_fee: Decimal
    percentage_fee: Decimal
    total_fee: Decimal
    currency: str


class WebhookEvent(BaseModel):
    """Provider notification normalized to a common shape."""

    provider: str
    event_type: str
    event_id: str
    timestamp: datetime
    data: Dict[str, Any] = Field(default_factory=dict)
    raw_payload: str = ""
