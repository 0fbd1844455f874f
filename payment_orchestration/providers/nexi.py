"""
Nexi XPay adapter (REST/JSON).

Supports OnClick (hosted payment page), MOTO and recurring (contract + MIT).
Every request carries the terminal's ``X-API-KEY`` and a fresh
``Correlation-Id``.
"""
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import structlog

from payment_orchestration.core.commission import Number
from payment_orchestration.core.exceptions import ConfigurationError, WebhookError
from payment_orchestration.core.schemas import (
    ContractParams,
    ContractResult,
    PaymentParams,
    PaymentResult,
    ProviderFees,
    RefundResult,
    WebhookEvent,
)
from payment_orchestration.providers.base import estimate_fees, to_minor_units
from payment_orchestration.providers.configs import NexiTenantConfig
from payment_orchestration.providers.http import HttpPaymentProvider

logger = structlog.get_logger(__name__)

BASE_URLS = {
    "production": "https://xpay.nexigroup.com/api/phoenix-0.0/psp/api/v1",
    "sandbox": "https://stg-ta.nexigroup.com/api/phoenix-0.0/psp/api/v1",
}


class NexiProvider(HttpPaymentProvider):
    """Nexi XPay acquirer."""

    name = "nexi"

    supports_moto = True
    supports_onclick = True
    supports_recurring = True
    supports_automatic_split = False

    config_model = NexiTenantConfig

    completed_statuses = frozenset({"CAPTURE", "EXECUTED"})
    failed_statuses = frozenset(
        {"CANCEL", "VOID", "DECLINED", "DENIED_BY_RISK", "THREEDS_FAILED", "FAILED"}
    )

    def ensure_provisioned(self, config: NexiTenantConfig, payment_type: str) -> None:
        if not config.enabled:
            raise ConfigurationError(
                "Nexi not enabled for this terminal", error_code="provider_not_enabled"
            )
        if payment_type == "moto" and not config.moto_enabled:
            raise ConfigurationError(
                "MOTO not enabled for this terminal", error_code="moto_not_provisioned"
            )
        if payment_type == "recurrent" and not config.recurring_enabled:
            raise ConfigurationError(
                "Recurring not enabled for this terminal", error_code="recurring_not_provisioned"
            )

    async def _call(
        self,
        config: NexiTenantConfig,
        method: str,
        path: str,
        operation: str,
        body: Optional[Dict[str, Any]] = None,
    ):
        headers = {
            "X-API-KEY": config.api_key.get_secret_value(),
            "Correlation-Id": str(uuid.uuid4()),
        }
        return await self._send(
            method,
            f"{BASE_URLS[config.environment]}{path}",
            operation=operation,
            headers=headers,
            json=body,
        )

    @staticmethod
    def _order(params: PaymentParams, default_description: str) -> Dict[str, Any]:
        return {
            "orderId": params.order_id,
            "amount": str(to_minor_units(params.amount, params.currency)),
            "currency": params.currency,
            "description": params.description or f"{default_description} {params.order_id}",
            **({"customerId": params.customer_id} if params.customer_id else {}),
        }

    def _operation_result(self, data: Dict[str, Any], order_id: str) -> PaymentResult:
        operation = data.get("operation") or {}
        outcome = operation.get("operationResult") or "unknown"
        success = outcome in ("AUTHORIZED", "EXECUTED")
        return PaymentResult(
            success=success,
            provider_payment_id=operation.get("operationId") or order_id,
            status=outcome,
            error=None if success else f"Nexi operation result: {outcome}",
            error_code=None if success else outcome,
            raw=data,
        )

    async def create_payment(
        self, config: NexiTenantConfig, params: PaymentParams
    ) -> PaymentResult:
        """Open a hosted payment page; the customer is redirected to it."""
        if not config.enabled:
            return PaymentResult(success=False, error="Nexi not enabled for this terminal")

        amount = str(to_minor_units(params.amount, params.currency))
        response = await self._call(
            config,
            "POST",
            "/orders/hpp",
            "create_payment",
            {
                "order": self._order(params, "Order"),
                "paymentSession": {
                    "actionType": "PAY",
                    "amount": amount,
                    "language": "ITA",
                    "resultUrl": params.return_url,
                    "cancelUrl": params.cancel_url or params.return_url,
                    "notificationUrl": params.metadata.get("webhook_url"),
                },
            },
        )
        if response.is_error:
            error, code = self._error_details(response)
            return PaymentResult(success=False, error=error, error_code=code)

        data = self._json(response)
        return PaymentResult(
            success=True,
            provider_payment_id=params.order_id,
            redirect_url=data.get("hostedPage"),
            status="processing",
            raw=data,
        )

    async def capture_payment(
        self,
        config: NexiTenantConfig,
        provider_payment_id: str,
        amount: Optional[Decimal] = None,
        currency: str = "EUR",
    ) -> PaymentResult:
        body: Dict[str, Any] = {"currency": currency}
        if amount is not None:
            body["amount"] = str(to_minor_units(amount, currency))

        response = await self._call(
            config, "POST", f"/operations/{provider_payment_id}/captures", "capture_payment", body
        )
        if response.is_error:
            error, code = self._error_details(response)
            return PaymentResult(
                success=False, provider_payment_id=provider_payment_id, error=error, error_code=code
            )
        return PaymentResult(
            success=True,
            provider_payment_id=provider_payment_id,
            status="captured",
            raw=self._json(response),
        )

    async def refund_payment(
        self,
        config: NexiTenantConfig,
        provider_payment_id: str,
        amount: Optional[Decimal] = None,
        currency: str = "EUR",
    ) -> RefundResult:
        body: Dict[str, Any] = {"currency": currency}
        if amount is not None:
            body["amount"] = str(to_minor_units(amount, currency))

        response = await self._call(
            config, "POST", f"/operations/{provider_payment_id}/refunds", "refund_payment", body
        )
        if response.is_error:
            error, code = self._error_details(response)
            return RefundResult(success=False, error=error, error_code=code)

        data = self._json(response)
        return RefundResult(
            success=True,
            refund_id=data.get("operationId"),
            amount=amount,
            status="refunded",
            raw=data,
        )

    async def get_payment_status(
        self, config: NexiTenantConfig, provider_payment_id: str
    ) -> PaymentResult:
        response = await self._call(
            config, "GET", f"/orders/{provider_payment_id}/status", "get_payment_status"
        )
        if response.is_error:
            error, code = self._error_details(response)
            return PaymentResult(
                success=False, provider_payment_id=provider_payment_id, error=error, error_code=code
            )

        data = self._json(response)
        order_status = data.get("orderStatus") or {}
        return PaymentResult(
            success=True,
            provider_payment_id=provider_payment_id,
            status=order_status.get("lastOperationType") or "unknown",
            raw=data,
        )

    async def create_moto_payment(
        self, config: NexiTenantConfig, params: PaymentParams
    ) -> PaymentResult:
        """Charge keyed card details through ``/orders/moto``."""
        if not config.moto_enabled:
            return PaymentResult(
                success=False,
                error="MOTO not enabled for this terminal",
                error_code="moto_not_enabled",
            )
        if params.card is None:
            return PaymentResult(
                success=False,
                error="Card details are required for MOTO",
                error_code="card_required",
            )

        card: Dict[str, Any] = {
            "pan": params.card.card_number.get_secret_value(),
            "expiryDate": f"{params.card.expiry_month:02d}{params.card.expiry_year % 100:02d}",
        }
        if params.card.cvv is not None:
            card["cvv"] = params.card.cvv.get_secret_value()

        response = await self._call(
            config,
            "POST",
            "/orders/moto",
            "create_moto_payment",
            {"order": self._order(params, "MOTO Order"), "card": card},
        )
        if response.is_error:
            error, code = self._error_details(response)
            return PaymentResult(success=False, error=error, error_code=code)
        return self._operation_result(self._json(response), params.order_id)

    async def create_contract(
        self, config: NexiTenantConfig, params: ContractParams
    ) -> ContractResult:
        """
        Reserve a contract id.

        Nexi materializes the contract during the first hosted-page payment
        that carries this id, so the result is always ``pending``.
        """
        if not config.recurring_enabled:
            return ContractResult(
                success=False,
                error="Recurring not enabled for this terminal",
                error_code="recurring_not_enabled",
            )
        contract_id = f"nxi-{uuid.uuid4().hex[:20]}"
        return ContractResult(success=True, provider_contract_id=contract_id, status="pending")

    async def charge_recurring(
        self,
        config: NexiTenantConfig,
        provider_contract_id: str,
        params: PaymentParams,
    ) -> PaymentResult:
        response = await self._call(
            config,
            "POST",
            "/orders/mit",
            "charge_recurring",
            {
                "order": self._order(params, "Recurring"),
                "contractId": provider_contract_id,
                "captureType": "EXPLICIT",
            },
        )
        if response.is_error:
            error, code = self._error_details(response)
            return PaymentResult(success=False, error=error, error_code=code)
        return self._operation_result(self._json(response), params.order_id)

    async def cancel_contract(
        self, config: NexiTenantConfig, provider_contract_id: str
    ) -> None:
        # Nexi has no contract cancel endpoint; contracts lapse with the card
        logger.info(
            "nexi_contract_cancel_noop", provider_contract_id=provider_contract_id
        )

    async def verify_webhook_signature(
        self,
        payload: str,
        signature: str,
        secret: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> bool:
        """Hex HMAC-SHA256 of the raw body, keyed with the platform notification secret."""
        if not secret:
            logger.warning("nexi_webhook_secret_not_configured")
            return False
        if not signature:
            return False
        expected = hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256)
        return hmac.compare_digest(expected.hexdigest(), signature.strip().lower())

    def parse_webhook_event(self, payload: str) -> WebhookEvent:
        try:
            event = json.loads(payload)
        except json.JSONDecodeError as e:
            raise WebhookError("Nexi webhook payload is not valid JSON") from e

        operation = event.get("operation") or {}
        return WebhookEvent(
            provider=self.name,
            event_type=event.get("operationType") or operation.get("operationType") or "unknown",
            event_id=event.get("operationId") or operation.get("operationId") or "",
            timestamp=datetime.now(timezone.utc),
            data=event,
            raw_payload=payload,
        )

    def calculate_fees(self, amount: Number, currency: str) -> ProviderFees:
        # ~1.5%, varies by acquiring contract
        return estimate_fees(amount, currency, rate="0.015")
