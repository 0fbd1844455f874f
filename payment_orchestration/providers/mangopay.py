"""
Mangopay adapter (REST API v2.01).

Platform credentials come from settings; each tenant owns a Mangopay user
and wallet. Web PayIns redirect to a hosted card page and are captured
automatically. Splits are native wallet-to-wallet transfers.
"""
import json
from datetime import datetime, time, timezone
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
from payment_orchestration.providers.base import estimate_fees, to_minor_units
from payment_orchestration.providers.configs import MangopayTenantConfig
from payment_orchestration.providers.http import HttpPaymentProvider

logger = structlog.get_logger(__name__)

HOSTS = {
    "production": "https://api.mangopay.com",
    "sandbox": "https://api.sandbox.mangopay.com",
}


def _funds(amount: Number, currency: str) -> Dict[str, Any]:
    return {"Currency": currency, "Amount": to_minor_units(amount, currency)}


class MangopayProvider(HttpPaymentProvider):
    """Mangopay marketplace wallets."""

    name = "mangopay"

    supports_moto = False
    supports_onclick = True
    supports_recurring = True
    supports_automatic_split = True

    config_model = MangopayTenantConfig

    completed_statuses = frozenset({"SUCCEEDED"})
    failed_statuses = frozenset({"FAILED"})

    @property
    def base_url(self) -> str:
        host = HOSTS[self.settings.mangopay_environment]
        return f"{host}/v2.01/{self.settings.mangopay_client_id}"

    def ensure_provisioned(self, config: MangopayTenantConfig, payment_type: str) -> None:
        if config.status != "active":
            raise ConfigurationError(
                "Mangopay account not active", error_code="provider_not_enabled"
            )
        if not (self.settings.mangopay_client_id and self.settings.mangopay_api_key):
            raise ConfigurationError("Mangopay platform credentials are not configured")

    async def _call(
        self,
        method: str,
        path: str,
        operation: str,
        body: Optional[Dict[str, Any]] = None,
    ):
        return await self._send(
            method,
            f"{self.base_url}{path}",
            operation=operation,
            auth=(self.settings.mangopay_client_id or "", self.settings.mangopay_api_key or ""),
            json=body,
        )

    async def create_payment(
        self, config: MangopayTenantConfig, params: PaymentParams
    ) -> PaymentResult:
        """Create a Web PayIn; the customer is redirected to Mangopay's card page."""
        if config.status != "active":
            return PaymentResult(success=False, error="Mangopay account not active")

        response = await self._call(
            "POST",
            "/payins/card/web",
            "create_payment",
            {
                "AuthorId": config.user_id,
                "CreditedWalletId": config.wallet_id,
                "DebitedFunds": _funds(params.amount, params.currency),
                # Platform fees are taken later via transfers
                "Fees": _funds(0, params.currency),
                "ReturnURL": params.return_url or params.metadata.get("return_url"),
                "CardType": "CB_VISA_MASTERCARD",
                "Culture": "IT",
                "Tag": params.order_id,
            },
        )
        if response.is_error:
            error, code = self._error_details(response)
            return PaymentResult(success=False, error=error, error_code=code)

        data = self._json(response)
        return PaymentResult(
            success=True,
            provider_payment_id=data.get("Id") or params.order_id,
            redirect_url=data.get("RedirectURL"),
            status=data.get("Status") or "CREATED",
            raw=data,
        )

    async def capture_payment(
        self,
        config: MangopayTenantConfig,
        provider_payment_id: str,
        amount: Optional[Decimal] = None,
        currency: str = "EUR",
    ) -> PaymentResult:
        # Web PayIns settle on success; nothing to call
        return PaymentResult(
            success=True, provider_payment_id=provider_payment_id, status="SUCCEEDED"
        )

    async def refund_payment(
        self,
        config: MangopayTenantConfig,
        provider_payment_id: str,
        amount: Optional[Decimal] = None,
        currency: str = "EUR",
    ) -> RefundResult:
        body: Dict[str, Any] = {
            "AuthorId": config.user_id,
            "Tag": f"refund-{provider_payment_id}",
        }
        if amount is not None:
            body["DebitedFunds"] = _funds(amount, currency)

        response = await self._call(
            "POST", f"/payins/{provider_payment_id}/refunds", "refund_payment", body
        )
        if response.is_error:
            error, code = self._error_details(response)
            return RefundResult(success=False, error=error, error_code=code)

        data = self._json(response)
        status = data.get("Status") or "unknown"
        success = status == "SUCCEEDED"
        return RefundResult(
            success=success,
            refund_id=data.get("Id"),
            amount=amount,
            status=status,
            error=None if success else f"Mangopay result code: {data.get('ResultCode')}",
            error_code=None if success else data.get("ResultCode"),
            raw=data,
        )

    async def get_payment_status(
        self, config: MangopayTenantConfig, provider_payment_id: str
    ) -> PaymentResult:
        response = await self._call("GET", f"/payins/{provider_payment_id}", "get_payment_status")
        if response.is_error:
            error, code = self._error_details(response)
            return PaymentResult(
                success=False, provider_payment_id=provider_payment_id, error=error, error_code=code
            )

        data = self._json(response)
        status = data.get("Status") or "unknown"
        return PaymentResult(
            success=status == "SUCCEEDED",
            provider_payment_id=data.get("Id") or provider_payment_id,
            status=status,
            raw=data,
        )

    async def create_contract(
        self, config: MangopayTenantConfig, params: ContractParams
    ) -> ContractResult:
        """Register a recurring PayIn; the first charge is customer-initiated."""
        if config.status != "active":
            return ContractResult(
                success=False,
                error="Mangopay account not active",
                error_code="provider_not_enabled",
            )

        first_amount = params.max_amount if params.max_amount is not None else params.initial_amount
        body: Dict[str, Any] = {
            "AuthorId": config.user_id,
            "CreditedWalletId": config.wallet_id,
            "FirstTransactionDebitedFunds": _funds(first_amount or 0, params.currency),
            "FirstTransactionFees": _funds(0, params.currency),
            "FreeCycles": 0,
        }
        if params.frequency_days:
            body["Frequency"] = "Weekly" if params.frequency_days <= 7 else "Monthly"
        if params.expires_at:
            end = datetime.combine(params.expires_at, time.min, tzinfo=timezone.utc)
            body["EndDate"] = int(end.timestamp())

        response = await self._call(
            "POST", "/recurringpayinregistrations", "create_contract", body
        )
        if response.is_error:
            error, code = self._error_details(response)
            return ContractResult(success=False, error=error, error_code=code)

        data = self._json(response)
        if not data.get("Id"):
            raise ProviderTransportError(
                "Mangopay registration response has no Id", provider=self.name
            )
        return ContractResult(
            success=True,
            provider_contract_id=data["Id"],
            status="pending" if data.get("Status") == "CREATED" else "active",
            raw=data,
        )

    async def charge_recurring(
        self,
        config: MangopayTenantConfig,
        provider_contract_id: str,
        params: PaymentParams,
    ) -> PaymentResult:
        response = await self._call(
            "POST",
            "/payins/recurring/card/direct",
            "charge_recurring",
            {
                "RecurringPayinRegistrationId": provider_contract_id,
                "DebitedFunds": _funds(params.amount, params.currency),
                "Fees": _funds(0, params.currency),
                "Tag": params.order_id,
            },
        )
        if response.is_error:
            error, code = self._error_details(response)
            return PaymentResult(success=False, error=error, error_code=code)

        data = self._json(response)
        status = data.get("Status") or "unknown"
        success = status == "SUCCEEDED"
        return PaymentResult(
            success=success,
            provider_payment_id=data.get("Id") or params.order_id,
            status=status,
            error=None if success else f"Mangopay result code: {data.get('ResultCode')}",
            error_code=None if success else data.get("ResultCode"),
            raw=data,
        )

    async def cancel_contract(
        self, config: MangopayTenantConfig, provider_contract_id: str
    ) -> None:
        response = await self._call(
            "PUT",
            f"/recurringpayinregistrations/{provider_contract_id}",
            "cancel_contract",
            {"Status": "ENDED"},
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
        # Mangopay hooks are unsigned; handlers re-read the resource via the API
        return True

    def parse_webhook_event(self, payload: str) -> WebhookEvent:
        try:
            event = json.loads(payload)
        except json.JSONDecodeError as e:
            raise WebhookError("Mangopay webhook payload is not valid JSON") from e

        epoch = event.get("Date")
        timestamp = (
            datetime.fromtimestamp(int(epoch), tz=timezone.utc)
            if epoch
            else datetime.now(timezone.utc)
        )
        return WebhookEvent(
            provider=self.name,
            event_type=event.get("EventType") or "unknown",
            event_id=str(event.get("ResourceId") or ""),
            timestamp=timestamp,
            data=event,
            raw_payload=payload,
        )

    def calculate_fees(self, amount: Number, currency: str) -> ProviderFees:
        # Standard EU cards: 1.8% + 0.18 EUR
        fixed = "0.18" if currency.upper() == "EUR" else "0.25"
        return estimate_fees(amount, currency, rate="0.018", fixed_fee=fixed)
