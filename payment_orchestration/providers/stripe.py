"""
Stripe Connect adapter.

Wraps the blocking ``stripe`` SDK in worker threads. Transient SDK errors
(connection, API, rate limit) are retried with exponential backoff and then
surface as ``ProviderTransportError``; card and request errors come back as
unsuccessful results. Funds are routed to the tenant's connected account
through ``transfer_data.destination``.
"""
import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, TypeVar, Union

import stripe
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from payment_orchestration.config import get_settings
from payment_orchestration.core.commission import Number
from payment_orchestration.core.exceptions import (
    ConfigurationError,
    ProviderTransportError,
    WebhookError,
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
from payment_orchestration.providers.base import PaymentProvider, estimate_fees, to_minor_units
from payment_orchestration.providers.configs import StripeTenantConfig

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Business outcome, don't retry
    RATE_LIMIT = "rate_limit"  # Retry with backoff


def classify_error(error: stripe.StripeError) -> StripeErrorType:
    """
    Classify a Stripe SDK error.

    Args:
        error: Stripe error

    Returns:
        StripeErrorType: Error classification
    """
    if isinstance(error, stripe.RateLimitError):
        return StripeErrorType.RATE_LIMIT
    if isinstance(error, (stripe.CardError, stripe.InvalidRequestError)):
        return StripeErrorType.PERMANENT
    # Connection, API and unknown errors are treated as transient
    return StripeErrorType.TRANSIENT


def _is_retryable(error: BaseException) -> bool:
    return (
        isinstance(error, stripe.StripeError)
        and not isinstance(error, stripe.AuthenticationError)
        and classify_error(error) is not StripeErrorType.PERMANENT
    )


class StripeProvider(PaymentProvider):
    """Stripe Connect destination charges."""

    name = "stripe"

    supports_moto = True
    supports_onclick = True
    supports_recurring = True
    supports_automatic_split = True

    config_model = StripeTenantConfig

    completed_statuses = frozenset({"succeeded"})
    failed_statuses = frozenset({"canceled"})

    def __init__(self, max_attempts: int = 3):
        """
        Initialize adapter.

        Args:
            max_attempts: Attempts per SDK call on transient errors
        """
        self.settings = get_settings()
        self.max_attempts = max_attempts

    def ensure_provisioned(self, config: StripeTenantConfig, payment_type: str) -> None:
        if not config.charges_enabled:
            raise ConfigurationError(
                "Stripe account not ready for charges", error_code="provider_not_enabled"
            )
        if not self.settings.stripe_secret_key:
            raise ConfigurationError("Stripe secret key is not configured")

    async def _invoke(
        self,
        operation: str,
        func: Callable[..., T],
        *args: Any,
        idempotent: bool = True,
        **kwargs: Any,
    ) -> T:
        """
        Run a blocking SDK call in a thread with bounded retries.

        Non-idempotent writes (no idempotency key) are attempted once.

        Permanent Stripe errors are re-raised untouched for the caller to
        turn into a result; everything else becomes ``ProviderTransportError``.
        """
        kwargs.setdefault("api_key", self.settings.stripe_secret_key)
        kwargs.setdefault("stripe_version", self.settings.stripe_api_version)
        if kwargs.get("idempotency_key") is None:
            kwargs.pop("idempotency_key", None)

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(_is_retryable),
                stop=stop_after_attempt(self.max_attempts if idempotent else 1),
                wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
                reraise=True,
            ):
                with attempt:
                    response = await asyncio.to_thread(func, *args, **kwargs)
        except stripe.StripeError as e:
            error_type = classify_error(e)
            logger.error(
                "stripe_api_error",
                operation=operation,
                error_type=error_type.value,
                error_code=getattr(e, "code", None),
                error_message=str(e),
            )
            if error_type is StripeErrorType.PERMANENT:
                raise
            raise ProviderTransportError(
                f"Stripe {operation} failed: {e}",
                provider=self.name,
                error_code="provider_auth_failed"
                if isinstance(e, stripe.AuthenticationError)
                else None,
                original_error=e,
            ) from e
        return response

    @staticmethod
    def _declined(
        result_type: type, error: stripe.StripeError
    ) -> Union[PaymentResult, RefundResult]:
        return result_type(
            success=False,
            error=getattr(error, "user_message", None) or str(error) or "Stripe request failed",
            error_code=getattr(error, "code", None),
        )

    @staticmethod
    def _metadata(params: PaymentParams, **extra: str) -> Dict[str, str]:
        metadata = {k: str(v) for k, v in params.metadata.items()}
        metadata.update(order_id=params.order_id, customer_id=params.customer_id or "", **extra)
        return metadata

    async def create_payment(
        self, config: StripeTenantConfig, params: PaymentParams
    ) -> PaymentResult:
        """Create a PaymentIntent; the client confirms it with ``client_secret``."""
        if not config.charges_enabled:
            return PaymentResult(success=False, error="Stripe account not ready for charges")

        try:
            intent = await self._invoke(
                "create_payment",
                stripe.PaymentIntent.create,
                amount=to_minor_units(params.amount, params.currency),
                currency=params.currency.lower(),
                transfer_data={"destination": config.account_id},
                metadata=self._metadata(params),
                idempotency_key=params.idempotency_key,
                idempotent=params.idempotency_key is not None,
            )
        except stripe.StripeError as e:
            return self._declined(PaymentResult, e)

        return PaymentResult(
            success=True,
            provider_payment_id=intent.id,
            client_secret=intent.client_secret,
            status=intent.status,
        )

    async def capture_payment(
        self,
        config: StripeTenantConfig,
        provider_payment_id: str,
        amount: Optional[Decimal] = None,
        currency: str = "EUR",
    ) -> PaymentResult:
        kwargs: Dict[str, Any] = {}
        if amount is not None:
            kwargs["amount_to_capture"] = to_minor_units(amount, currency)

        try:
            intent = await self._invoke(
                "capture_payment", stripe.PaymentIntent.capture, provider_payment_id, **kwargs
            )
        except stripe.StripeError as e:
            return self._declined(PaymentResult, e)

        return PaymentResult(
            success=intent.status == "succeeded",
            provider_payment_id=intent.id,
            status=intent.status,
        )

    async def refund_payment(
        self,
        config: StripeTenantConfig,
        provider_payment_id: str,
        amount: Optional[Decimal] = None,
        currency: str = "EUR",
    ) -> RefundResult:
        kwargs: Dict[str, Any] = {"payment_intent": provider_payment_id}
        if amount is not None:
            kwargs["amount"] = to_minor_units(amount, currency)

        try:
            refund = await self._invoke(
                "refund_payment", stripe.Refund.create, idempotent=False, **kwargs
            )
        except stripe.StripeError as e:
            return self._declined(RefundResult, e)

        success = refund.status in ("succeeded", "pending")
        return RefundResult(
            success=success,
            refund_id=refund.id,
            amount=amount,
            status=refund.status,
            error=None if success else f"Stripe refund status: {refund.status}",
        )

    async def get_payment_status(
        self, config: StripeTenantConfig, provider_payment_id: str
    ) -> PaymentResult:
        try:
            intent = await self._invoke(
                "get_payment_status", stripe.PaymentIntent.retrieve, provider_payment_id
            )
        except stripe.StripeError as e:
            return self._declined(PaymentResult, e)

        return PaymentResult(
            success=intent.status == "succeeded",
            provider_payment_id=intent.id,
            status=intent.status,
        )

    async def create_moto_payment(
        self, config: StripeTenantConfig, params: PaymentParams
    ) -> PaymentResult:
        """Create a card PaymentMethod and confirm it with the MOTO exemption (no 3DS)."""
        if params.card is None:
            return PaymentResult(
                success=False,
                error="Card details are required for MOTO",
                error_code="card_required",
            )

        card: Dict[str, Any] = {
            "number": params.card.card_number.get_secret_value(),
            "exp_month": params.card.expiry_month,
            "exp_year": params.card.expiry_year,
        }
        if params.card.cvv is not None:
            card["cvc"] = params.card.cvv.get_secret_value()

        try:
            payment_method = await self._invoke(
                "create_payment_method", stripe.PaymentMethod.create, type="card", card=card
            )
            intent = await self._invoke(
                "create_moto_payment",
                stripe.PaymentIntent.create,
                amount=to_minor_units(params.amount, params.currency),
                currency=params.currency.lower(),
                payment_method=payment_method.id,
                confirm=True,
                payment_method_options={"card": {"moto": True}},
                transfer_data={"destination": config.account_id},
                metadata=self._metadata(params, payment_type="moto"),
                idempotency_key=params.idempotency_key,
                idempotent=params.idempotency_key is not None,
            )
        except stripe.StripeError as e:
            return self._declined(PaymentResult, e)

        success = intent.status == "succeeded"
        return PaymentResult(
            success=success,
            provider_payment_id=intent.id,
            status=intent.status,
            error=None if success else f"Stripe payment status: {intent.status}",
        )

    async def create_contract(
        self, config: StripeTenantConfig, params: ContractParams
    ) -> ContractResult:
        """Create an off-session SetupIntent; it becomes usable after the first CIT."""
        metadata = {"contract_type": params.contract_type.value}
        if params.frequency_days:
            metadata["frequency_days"] = str(params.frequency_days)

        try:
            setup_intent = await self._invoke(
                "create_contract",
                stripe.SetupIntent.create,
                customer=params.customer_id,
                usage="off_session",
                metadata=metadata,
            )
        except stripe.StripeError as e:
            return ContractResult(
                success=False, error=str(e), error_code=getattr(e, "code", None)
            )

        return ContractResult(
            success=True,
            provider_contract_id=setup_intent.id,
            client_secret=setup_intent.client_secret,
            status="pending",
        )

    async def charge_recurring(
        self,
        config: StripeTenantConfig,
        provider_contract_id: str,
        params: PaymentParams,
    ) -> PaymentResult:
        """Off-session charge with the payment method saved on the SetupIntent."""
        try:
            setup_intent = await self._invoke(
                "retrieve_contract", stripe.SetupIntent.retrieve, provider_contract_id
            )
            payment_method = setup_intent.payment_method
            if not payment_method:
                return PaymentResult(
                    success=False,
                    error="No payment method on contract",
                    error_code="contract_without_payment_method",
                )

            intent = await self._invoke(
                "charge_recurring",
                stripe.PaymentIntent.create,
                amount=to_minor_units(params.amount, params.currency),
                currency=params.currency.lower(),
                customer=setup_intent.customer,
                payment_method=payment_method,
                off_session=True,
                confirm=True,
                transfer_data={"destination": config.account_id},
                metadata=self._metadata(
                    params, payment_type="recurrent", contract_id=provider_contract_id
                ),
                idempotency_key=params.idempotency_key,
                idempotent=params.idempotency_key is not None,
            )
        except stripe.StripeError as e:
            return self._declined(PaymentResult, e)

        success = intent.status == "succeeded"
        return PaymentResult(
            success=success,
            provider_payment_id=intent.id,
            status=intent.status,
            error=None if success else f"Stripe payment status: {intent.status}",
        )

    async def cancel_contract(
        self, config: StripeTenantConfig, provider_contract_id: str
    ) -> None:
        try:
            await self._invoke("cancel_contract", stripe.SetupIntent.cancel, provider_contract_id)
        except stripe.StripeError as e:
            raise ProviderTransportError(
                f"Stripe cancel_contract failed: {e}",
                provider=self.name,
                error_code=getattr(e, "code", None),
                original_error=e,
            ) from e

    async def verify_webhook_signature(
        self,
        payload: str,
        signature: str,
        secret: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> bool:
        try:
            stripe.Webhook.construct_event(payload, signature, secret)
        except (ValueError, stripe.SignatureVerificationError):
            return False
        return True

    def parse_webhook_event(self, payload: str) -> WebhookEvent:
        try:
            event = json.loads(payload)
        except json.JSONDecodeError as e:
            raise WebhookError("Stripe webhook payload is not valid JSON") from e

        created = event.get("created")
        timestamp = (
            datetime.fromtimestamp(int(created), tz=timezone.utc)
            if created
            else datetime.now(timezone.utc)
        )
        return WebhookEvent(
            provider=self.name,
            event_type=event.get("type") or "unknown",
            event_id=event.get("id") or "",
            timestamp=timestamp,
            data=(event.get("data") or {}).get("object") or {},
            raw_payload=payload,
        )

    def calculate_fees(self, amount: Number, currency: str) -> ProviderFees:
        # EEA cards: 1.4% + 0.25 EUR
        fixed = "0.25" if currency.upper() == "EUR" else "0.30"
        return estimate_fees(amount, currency, rate="0.014", fixed_fee=fixed)
