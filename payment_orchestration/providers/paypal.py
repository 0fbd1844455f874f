"""
PayPal Commerce Platform adapter (REST API v2).

Uses the platform's OAuth2 client credentials. One bearer token is cached
per adapter instance and refreshed 60 seconds before it expires; a stale
token only costs one extra auth round-trip.

PayPal has no MOTO flow.
"""
import json
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import structlog

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
from payment_orchestration.providers.base import estimate_fees, format_amount
from payment_orchestration.providers.configs import PayPalTenantConfig
from payment_orchestration.providers.http import HttpPaymentProvider

logger = structlog.get_logger(__name__)

BASE_URLS = {
    "production": "https://api-m.paypal.com",
    "sandbox": "https://api-m.sandbox.paypal.com",
}
TOKEN_REFRESH_MARGIN_SECONDS = 60

# Signed transmission headers, sent to PayPal as PAYPAL-<FIELD>
TRANSMISSION_FIELDS = ("auth_algo", "cert_url", "transmission_id", "transmission_time")


class PayPalProvider(HttpPaymentProvider):
    """PayPal wallet payments and billing subscriptions."""

    name = "paypal"

    supports_moto = False
    supports_onclick = True
    supports_recurring = True
    supports_automatic_split = False

    config_model = PayPalTenantConfig

    completed_statuses = frozenset({"COMPLETED"})
    failed_statuses = frozenset({"VOIDED", "DECLINED", "DENIED", "FAILED"})

    def __init__(self, http_client=None):
        super().__init__(http_client)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @property
    def base_url(self) -> str:
        return BASE_URLS[self.settings.paypal_environment]

    def ensure_provisioned(self, config: PayPalTenantConfig, payment_type: str) -> None:
        if not config.enabled:
            raise ConfigurationError(
                "PayPal not enabled for this merchant", error_code="provider_not_enabled"
            )
        if not (self.settings.paypal_client_id and self.settings.paypal_client_secret):
            raise ConfigurationError("PayPal platform credentials are not configured")

    async def _access_token(self) -> str:
        """Return the cached bearer token, fetching a new one near expiry."""
        if self._token and time.monotonic() < self._token_expires_at - TOKEN_REFRESH_MARGIN_SECONDS:
            return self._token

        response = await self._send(
            "POST",
            f"{self.base_url}/v1/oauth2/token",
            operation="oauth_token",
            auth=(self.settings.paypal_client_id or "", self.settings.paypal_client_secret or ""),
            data={"grant_type": "client_credentials"},
            timeout=self.settings.incidental_timeout_seconds,
        )
        if response.is_error:
            raise ProviderTransportError(
                f"PayPal auth error {response.status_code}",
                provider=self.name,
                error_code="provider_auth_failed",
            )

        data = self._json(response)
        self._token = data["access_token"]
        self._token_expires_at = time.monotonic() + float(data.get("expires_in", 0))
        logger.info("paypal_token_refreshed", expires_in=data.get("expires_in"))
        return self._token

    async def _call(
        self,
        method: str,
        path: str,
        operation: str,
        body: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ):
        token = await self._access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "PayPal-Request-Id": request_id or str(uuid.uuid4()),
        }
        return await self._send(
            method, f"{self.base_url}{path}", operation=operation, headers=headers, json=body
        )

    @staticmethod
    def _approve_link(data: Dict[str, Any]) -> Optional[str]:
        for link in data.get("links") or []:
            if link.get("rel") in ("approve", "payer-action"):
                return link.get("href")
        return None

    async def create_payment(
        self, config: PayPalTenantConfig, params: PaymentParams
    ) -> PaymentResult:
        """Create a checkout order; the customer approves it on PayPal."""
        if not config.enabled:
            return PaymentResult(success=False, error="PayPal not enabled for this merchant")

        response = await self._call(
            "POST",
            "/v2/checkout/orders",
            "create_payment",
            {
                "intent": "CAPTURE",
                "purchase_units": [
                    {
                        "reference_id": params.order_id,
                        "amount": {
                            "currency_code": params.currency,
                            "value": format_amount(params.amount, params.currency),
                        },
                        "description": params.description or f"Order {params.order_id}",
                        "payee": {"merchant_id": config.merchant_id},
                    }
                ],
                "application_context": {
                    "return_url": params.return_url,
                    "cancel_url": params.cancel_url or params.return_url,
                    "user_action": "PAY_NOW",
                },
            },
            request_id=params.idempotency_key,
        )
        if response.is_error:
            error, code = self._error_details(response)
            return PaymentResult(success=False, error=error, error_code=code)

        data = self._json(response)
        return PaymentResult(
            success=True,
            provider_payment_id=data.get("id") or params.order_id,
            redirect_url=self._approve_link(data),
            status=data.get("status") or "CREATED",
            raw=data,
        )

    async def capture_payment(
        self,
        config: PayPalTenantConfig,
        provider_payment_id: str,
        amount: Optional[Decimal] = None,
        currency: str = "EUR",
    ) -> PaymentResult:
        """Capture an approved order. PayPal always captures the full order amount."""
        response = await self._call(
            "POST", f"/v2/checkout/orders/{provider_payment_id}/capture", "capture_payment", {}
        )
        if response.is_error:
            error, code = self._error_details(response)
            return PaymentResult(
                success=False, provider_payment_id=provider_payment_id, error=error, error_code=code
            )

        data = self._json(response)
        status = data.get("status") or "unknown"
        return PaymentResult(
            success=status == "COMPLETED",
            provider_payment_id=data.get("id") or provider_payment_id,
            status=status,
            error=None if status == "COMPLETED" else f"PayPal capture status: {status}",
            raw=data,
        )

    async def refund_payment(
        self,
        config: PayPalTenantConfig,
        provider_payment_id: str,
        amount: Optional[Decimal] = None,
        currency: str = "EUR",
    ) -> RefundResult:
        body: Dict[str, Any] = {}
        if amount is not None:
            body["amount"] = {"currency_code": currency, "value": format_amount(amount, currency)}

        response = await self._call(
            "POST", f"/v2/payments/captures/{provider_payment_id}/refund", "refund_payment", body
        )
        if response.is_error:
            error, code = self._error_details(response)
            return RefundResult(success=False, error=error, error_code=code)

        data = self._json(response)
        status = data.get("status") or "unknown"
        return RefundResult(
            success=status == "COMPLETED",
            refund_id=data.get("id"),
            amount=amount,
            status=status,
            error=None if status == "COMPLETED" else f"PayPal refund status: {status}",
            raw=data,
        )

    async def get_payment_status(
        self, config: PayPalTenantConfig, provider_payment_id: str
    ) -> PaymentResult:
        response = await self._call(
            "GET", f"/v2/checkout/orders/{provider_payment_id}", "get_payment_status"
        )
        if response.is_error:
            error, code = self._error_details(response)
            return PaymentResult(
                success=False, provider_payment_id=provider_payment_id, error=error, error_code=code
            )

        data = self._json(response)
        status = data.get("status") or "unknown"
        return PaymentResult(
            success=status == "COMPLETED",
            provider_payment_id=data.get("id") or provider_payment_id,
            status=status,
            raw=data,
        )

    async def create_contract(
        self, config: PayPalTenantConfig, params: ContractParams
    ) -> ContractResult:
        """Create a billing plan that subscriptions are later opened against."""
        if not config.enabled:
            return ContractResult(
                success=False,
                error="PayPal not enabled for this merchant",
                error_code="provider_not_enabled",
            )

        amount = params.max_amount if params.max_amount is not None else params.initial_amount
        response = await self._call(
            "POST",
            "/v1/billing/plans",
            "create_contract",
            {
                "product_id": params.metadata.get("paypal_product_id", params.customer_id),
                "name": f"Recurring plan - {params.contract_type.value}",
                "billing_cycles": [
                    {
                        "frequency": {
                            "interval_unit": "DAY",
                            "interval_count": params.frequency_days or 30,
                        },
                        "tenure_type": "REGULAR",
                        "sequence": 1,
                        "total_cycles": 0,
                        "pricing_scheme": {
                            "fixed_price": {
                                "value": format_amount(amount, params.currency),
                                "currency_code": params.currency,
                            }
                        },
                    }
                ],
                "payment_preferences": {
                    "auto_bill_outstanding": True,
                    "payment_failure_threshold": 3,
                },
            },
        )
        if response.is_error:
            error, code = self._error_details(response)
            return ContractResult(success=False, error=error, error_code=code)

        data = self._json(response)
        if not data.get("id"):
            raise ProviderTransportError("PayPal plan response has no id", provider=self.name)
        return ContractResult(
            success=True,
            provider_contract_id=data["id"],
            status="active" if data.get("status") == "ACTIVE" else "pending",
            raw=data,
        )

    async def charge_recurring(
        self,
        config: PayPalTenantConfig,
        provider_contract_id: str,
        params: PaymentParams,
    ) -> PaymentResult:
        """Open a subscription on the plan; PayPal bills it automatically."""
        response = await self._call(
            "POST",
            "/v1/billing/subscriptions",
            "charge_recurring",
            {
                "plan_id": provider_contract_id,
                "custom_id": params.order_id,
                "application_context": {"user_action": "SUBSCRIBE_NOW"},
            },
            request_id=params.idempotency_key,
        )
        if response.is_error:
            error, code = self._error_details(response)
            return PaymentResult(success=False, error=error, error_code=code)

        data = self._json(response)
        return PaymentResult(
            success=bool(data.get("id")),
            provider_payment_id=data.get("id") or params.order_id,
            redirect_url=self._approve_link(data),
            status=data.get("status") or "APPROVAL_PENDING",
            raw=data,
        )

    async def cancel_contract(
        self, config: PayPalTenantConfig, provider_contract_id: str
    ) -> None:
        response = await self._call(
            "POST",
            f"/v1/billing/subscriptions/{provider_contract_id}/cancel",
            "cancel_contract",
            {"reason": "Cancelled by merchant"},
        )
        if response.is_error:
            error, code = self._error_details(response)
            raise ProviderTransportError(error, provider=self.name, error_code=code)

    async def verify_webhook_signature(
        self,
        payload: str,
        signature: str,
        secret: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> bool:
        """
        Ask PayPal to verify the transmission.

        ``secret`` is the webhook id PayPal assigned to the platform
        subscription; ``signature`` is the ``PAYPAL-TRANSMISSION-SIG`` header
        and ``headers`` must carry the other ``PAYPAL-*`` transmission headers.
        """
        if not secret:
            logger.warning("paypal_webhook_id_not_configured")
            return False
        received = {key.lower(): value for key, value in (headers or {}).items()}
        transmission = {
            field: received.get(f"paypal-{field.replace('_', '-')}")
            for field in TRANSMISSION_FIELDS
        }
        if not signature or not all(transmission.values()):
            return False
        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            return False

        response = await self._call(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            "verify_webhook",
            {
                **transmission,
                "transmission_sig": signature,
                "webhook_id": secret,
                "webhook_event": event,
            },
        )
        if response.is_error:
            error, code = self._error_details(response)
            logger.warning("paypal_webhook_verification_rejected", error=error, error_code=code)
            return False
        return self._json(response).get("verification_status") == "SUCCESS"

    def parse_webhook_event(self, payload: str) -> WebhookEvent:
        try:
            event = json.loads(payload)
        except json.JSONDecodeError as e:
            raise WebhookError("PayPal webhook payload is not valid JSON") from e

        created = event.get("create_time")
        timestamp = (
            datetime.fromisoformat(created.replace("Z", "+00:00"))
            if created
            else datetime.now(timezone.utc)
        )
        return WebhookEvent(
            provider=self.name,
            event_type=event.get("event_type") or "unknown",
            event_id=event.get("id") or "",
            timestamp=timestamp,
            data=event.get("resource") or {},
            raw_payload=payload,
        )

    def calculate_fees(self, amount: Number, currency: str) -> ProviderFees:
        # EU standard pricing: 2.49% + 0.35 EUR
        fixed = "0.35" if currency.upper() == "EUR" else "0.49"
        return estimate_fees(amount, currency, rate="0.0249", fixed_fee=fixed)
