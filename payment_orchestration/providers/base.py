"""
Provider adapter contract.

Every external payment network is wrapped in a ``PaymentProvider`` subclass.
Capability flags tell the orchestrator which optional operations an adapter
implements; the orchestrator checks them before calling, and the base class
raises ``UnsupportedCapabilityError`` for anything left unimplemented.

Adapters return unsuccessful results for business declines and raise
``ProviderTransportError`` only for network, auth and malformed-response
failures.
"""
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, ClassVar, Dict, FrozenSet, Mapping, Optional, Type

import structlog
from pydantic import ValidationError

from payment_orchestration.core.commission import Number, minor_units, round_money, to_decimal
from payment_orchestration.core.exceptions import (
    ConfigurationError,
    UnsupportedCapabilityError,
)
from payment_orchestration.core.schemas import (
    ContractParams,
    ContractResult,
    PaymentParams,
    PaymentResult,
    ProviderFees,
    RefundResult,
    WebhookEvent,
)
from payment_orchestration.providers.configs import ProviderTenantConfig

logger = structlog.get_logger(__name__)


class PaymentProvider(ABC):
    """Uniform interface over one external payment network."""

    name: ClassVar[str]

    # Capabilities
    supports_moto: ClassVar[bool] = False
    supports_onclick: ClassVar[bool] = True
    supports_recurring: ClassVar[bool] = False
    supports_automatic_split: ClassVar[bool] = False

    config_model: ClassVar[Type[ProviderTenantConfig]] = ProviderTenantConfig

    # Provider status strings that mean the money moved / definitely did not
    completed_statuses: ClassVar[FrozenSet[str]] = frozenset()
    failed_statuses: ClassVar[FrozenSet[str]] = frozenset()

    def parse_config(self, raw: Dict[str, Any]) -> ProviderTenantConfig:
        """
        Validate a tenant's stored configuration blob.

        Args:
            raw: Configuration as stored for this tenant and provider

        Returns:
            ProviderTenantConfig: Typed configuration for this adapter

        Raises:
            ConfigurationError: If the blob does not match the adapter's model
        """
        try:
            return self.config_model.model_validate({**raw, "provider": self.name})
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid {self.name} configuration: {e.error_count()} error(s)",
                error_code="invalid_provider_config",
            ) from e

    def ensure_provisioned(self, config: ProviderTenantConfig, payment_type: str) -> None:
        """
        Check the tenant's merchant profile allows ``payment_type``.

        Called before any ledger entry or provider call is made.

        Raises:
            ConfigurationError: If the tenant is not provisioned for it
        """

    # Required operations

    @abstractmethod
    async def create_payment(
        self, config: ProviderTenantConfig, params: PaymentParams
    ) -> PaymentResult:
        """Start a customer-initiated (OnClick) payment."""

    @abstractmethod
    async def capture_payment(
        self,
        config: ProviderTenantConfig,
        provider_payment_id: str,
        amount: Optional[Decimal] = None,
        currency: str = "EUR",
    ) -> PaymentResult:
        """Settle an authorized payment, partially when ``amount`` is given."""

    @abstractmethod
    async def refund_payment(
        self,
        config: ProviderTenantConfig,
        provider_payment_id: str,
        amount: Optional[Decimal] = None,
        currency: str = "EUR",
    ) -> RefundResult:
        """Refund fully, or partially when ``amount`` is given."""

    @abstractmethod
    async def get_payment_status(
        self, config: ProviderTenantConfig, provider_payment_id: str
    ) -> PaymentResult:
        """Poll the provider for the current payment status."""

    @abstractmethod
    async def verify_webhook_signature(
        self,
        payload: str,
        signature: str,
        secret: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> bool:
        """
        Check that a notification really comes from the provider.

        Args:
            payload: Raw request body
            signature: Signature header value (or signed token) sent with it
            secret: Platform-level webhook secret configured for this provider
            headers: Remaining request headers, for providers that sign several

        Raises:
            ProviderTransportError: If the provider has to be asked and cannot be reached
        """

    @abstractmethod
    def parse_webhook_event(self, payload: str) -> WebhookEvent:
        """Normalize a notification body into a ``WebhookEvent``."""

    # Optional operations, gated by capability flags

    async def create_moto_payment(
        self, config: ProviderTenantConfig, params: PaymentParams
    ) -> PaymentResult:
        """Charge operator-keyed card details without customer authentication."""
        raise UnsupportedCapabilityError(f"Provider {self.name} does not support MOTO")

    async def create_contract(
        self, config: ProviderTenantConfig, params: ContractParams
    ) -> ContractResult:
        """Establish a recurring authorization, usually ``pending`` until the first CIT."""
        raise UnsupportedCapabilityError(f"Provider {self.name} does not support recurring")

    async def charge_recurring(
        self,
        config: ProviderTenantConfig,
        provider_contract_id: str,
        params: PaymentParams,
    ) -> PaymentResult:
        """Merchant-initiated charge against a stored token."""
        raise UnsupportedCapabilityError(f"Provider {self.name} does not support recurring")

    async def cancel_contract(
        self, config: ProviderTenantConfig, provider_contract_id: str
    ) -> None:
        """Invalidate the token at the provider."""
        raise UnsupportedCapabilityError(f"Provider {self.name} does not support recurring")

    def calculate_fees(self, amount: Number, currency: str) -> Optional[ProviderFees]:
        """Provider processing-fee estimate; None when the provider publishes none."""
        return None

    def normalize_status(self, raw_status: Optional[str]) -> Optional[str]:
        """
        Map a provider status to a ledger status.

        Returns:
            Optional[str]: ``completed``, ``failed`` or None while still in flight
        """
        if raw_status is None:
            return None
        if raw_status in self.completed_statuses:
            return "completed"
        if raw_status in self.failed_statuses:
            return "failed"
        return None

    async def aclose(self) -> None:
        """Release network resources held by the adapter."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(name={self.name})>"


def estimate_fees(
    amount: Number, currency: str, rate: str, fixed_fee: str = "0"
) -> ProviderFees:
    """Percentage-plus-fixed fee estimate rounded to the currency's minor unit."""
    percentage = to_decimal(amount) * Decimal(rate)
    fixed = Decimal(fixed_fee)
    return ProviderFees(
        fixed_fee=round_money(fixed, currency),
        percentage_fee=round_money(percentage, currency),
        total_fee=round_money(percentage + fixed, currency),
        currency=currency.upper(),
    )


def to_minor_units(amount: Number, currency: str) -> int:
    """Amount in the currency's smallest unit, e.g. cents."""
    return int(round_money(amount, currency).scaleb(minor_units(currency)))


def format_amount(amount: Number, currency: str) -> str:
    """Amount as a plain decimal string with the currency's minor-unit count."""
    return f"{round_money(amount, currency):f}"
