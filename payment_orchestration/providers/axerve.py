"""
Axerve (GestPay) adapter (SOAP/XML).

OnClick goes through ``WSCryptDecrypt.Encrypt`` and a redirect to the hosted
page; MOTO and recurring charges go through ``WSs2s.callPagamS2S``. Tokens
are created during the first customer payment and deleted with
``callDeleteTokenS2S``. Callbacks are authenticated by decrypting their
result string with ``WSCryptDecrypt.Decrypt``.
"""
import json
import uuid
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Mapping, Optional
from urllib.parse import urlencode

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
    ContractType,
    PaymentParams,
    PaymentResult,
    ProviderFees,
    RefundResult,
    WebhookEvent,
)
from payment_orchestration.providers.base import estimate_fees, format_amount
from payment_orchestration.providers.configs import AxerveTenantConfig
from payment_orchestration.providers.http import HttpPaymentProvider

logger = structlog.get_logger(__name__)

SOAP_NS = "http://www.w3.org/2003/05/soap-envelope"
AXERVE_NS = "https://ecomms2s.sella.it/"

S2S_URLS = {
    "production": "https://ecomms2s.sella.it/gestpay/gestpayws/WSs2s.asmx",
    "sandbox": "https://sandbox.gestpay.net/gestpay/gestpayws/WSs2s.asmx",
}
CRYPT_URLS = {
    "production": "https://ecomms2s.sella.it/gestpay/gestpayws/WSCryptDecrypt.asmx",
    "sandbox": "https://sandbox.gestpay.net/gestpay/gestpayws/WSCryptDecrypt.asmx",
}
PAGE_URLS = {
    "production": "https://ecomm.sella.it/pagam/pagam.aspx",
    "sandbox": "https://sandbox.gestpay.net/pagam/pagam.aspx",
}

# ISO 4217 -> GestPay UIC currency codes
UIC_CODES = {"EUR": "242", "USD": "1", "GBP": "2", "CHF": "3", "JPY": "71"}

# Merchant-initiated transaction types, subsequent charges
MIT_SCHEDULED = "01N"
MIT_UNSCHEDULED = "03N"

# Outcome fields a callback body must share with its decrypted string
CALLBACK_FIELDS = ("TransactionResult", "ShopTransactionID", "BankTransactionID")


def build_envelope(method: str, fields: Dict[str, Optional[str]]) -> bytes:
    """SOAP 1.2 envelope with ``fields`` as children of ``method``."""
    ET.register_namespace("soap12", SOAP_NS)
    envelope = ET.Element(f"{{{SOAP_NS}}}Envelope")
    body = ET.SubElement(envelope, f"{{{SOAP_NS}}}Body")
    call = ET.SubElement(body, f"{{{AXERVE_NS}}}{method}")
    for tag, value in fields.items():
        if value is None:
            continue
        if tag == "transDetails":
            details = ET.SubElement(call, f"{{{AXERVE_NS}}}transDetails")
            ET.SubElement(details, f"{{{AXERVE_NS}}}type").text = value
            continue
        ET.SubElement(call, f"{{{AXERVE_NS}}}{tag}").text = value
    return ET.tostring(envelope, encoding="utf-8", xml_declaration=True)


def parse_response(xml_text: str) -> Dict[str, str]:
    """
    Flatten a GestPay response into ``{local_tag: text}``.

    Namespaces are dropped; the first occurrence of a tag wins.
    """
    root = ET.fromstring(xml_text)
    values: Dict[str, str] = {}
    for element in root.iter():
        tag = element.tag.rsplit("}", 1)[-1]
        if tag not in values and element.text is not None and element.text.strip():
            values[tag] = element.text.strip()
    return values


class AxerveProvider(HttpPaymentProvider):
    """Axerve / Fabrick acquirer."""

    name = "axerve"

    supports_moto = True
    supports_onclick = True
    supports_recurring = True
    supports_automatic_split = False

    config_model = AxerveTenantConfig

    completed_statuses = frozenset({"OK"})
    failed_statuses = frozenset({"KO"})

    def ensure_provisioned(self, config: AxerveTenantConfig, payment_type: str) -> None:
        if not config.enabled:
            raise ConfigurationError(
                "Axerve not enabled for this shop", error_code="provider_not_enabled"
            )
        if payment_type == "moto" and not config.moto_profile:
            raise ConfigurationError(
                "MOTO profile not enabled for this merchant", error_code="moto_not_provisioned"
            )
        if payment_type == "recurrent" and not config.recurring_enabled:
            raise ConfigurationError(
                "Recurring not enabled for this merchant", error_code="recurring_not_provisioned"
            )

    async def _soap(
        self,
        config: AxerveTenantConfig,
        url: str,
        method: str,
        fields: Dict[str, Optional[str]],
    ) -> Dict[str, str]:
        payload = {
            "shopLogin": config.shop_login,
            **fields,
            "apikey": config.api_key.get_secret_value(),
        }
        response = await self._send(
            "POST",
            url,
            operation=method,
            content=build_envelope(method, payload),
            headers={"Content-Type": "application/soap+xml; charset=utf-8"},
        )
        if response.is_error:
            raise ProviderTransportError(
                f"Axerve SOAP error {response.status_code}: {response.text[:500]}",
                provider=self.name,
                error_code=f"http_{response.status_code}",
            )
        try:
            return parse_response(response.text)
        except ET.ParseError as e:
            raise ProviderTransportError(
                "Axerve returned malformed XML", provider=self.name, original_error=e
            ) from e

    @staticmethod
    def _uic(currency: str) -> str:
        return UIC_CODES.get(currency.upper(), "242")

    @staticmethod
    def _failure(values: Dict[str, str], default: str) -> Dict[str, Optional[str]]:
        return {
            "error": values.get("ErrorDescription") or default,
            "error_code": values.get("ErrorCode") or None,
        }

    def _pagam_result(self, values: Dict[str, str], order_id: str) -> PaymentResult:
        ok = values.get("TransactionResult") == "OK"
        return PaymentResult(
            success=ok,
            provider_payment_id=values.get("BankTransactionID") or order_id,
            status="authorized" if ok else "failed",
            raw=values,
            **({} if ok else self._failure(values, "Axerve payment declined")),
        )

    async def create_payment(
        self, config: AxerveTenantConfig, params: PaymentParams
    ) -> PaymentResult:
        """Encrypt the payment request and return the hosted-page redirect."""
        values = await self._soap(
            config,
            CRYPT_URLS[config.environment],
            "Encrypt",
            {
                "uicCode": self._uic(params.currency),
                "amount": format_amount(params.amount, params.currency),
                "shopTransactionId": params.order_id,
                "buyerEmail": params.customer_email,
            },
        )
        if values.get("ErrorCode", "0") != "0":
            return PaymentResult(
                success=False,
                raw=values,
                **self._failure(values, "Axerve encrypt error"),
            )

        query = urlencode({"a": config.shop_login, "b": values.get("CryptDecryptString", "")})
        return PaymentResult(
            success=True,
            provider_payment_id=params.order_id,
            redirect_url=f"{PAGE_URLS[config.environment]}?{query}",
            status="processing",
            raw=values,
        )

    async def capture_payment(
        self,
        config: AxerveTenantConfig,
        provider_payment_id: str,
        amount: Optional[Decimal] = None,
        currency: str = "EUR",
    ) -> PaymentResult:
        values = await self._soap(
            config,
            S2S_URLS[config.environment],
            "callSettleS2S",
            {
                "bankTransactionId": provider_payment_id,
                "amount": format_amount(amount, currency) if amount is not None else None,
                "uicCode": self._uic(currency),
            },
        )
        ok = values.get("TransactionResult") == "OK"
        return PaymentResult(
            success=ok,
            provider_payment_id=provider_payment_id,
            status="captured" if ok else "failed",
            raw=values,
            **({} if ok else self._failure(values, "Axerve settle failed")),
        )

    async def refund_payment(
        self,
        config: AxerveTenantConfig,
        provider_payment_id: str,
        amount: Optional[Decimal] = None,
        currency: str = "EUR",
    ) -> RefundResult:
        values = await self._soap(
            config,
            S2S_URLS[config.environment],
            "callRefundS2S",
            {
                "bankTransactionId": provider_payment_id,
                "amount": format_amount(amount, currency) if amount is not None else None,
                "uicCode": self._uic(currency),
            },
        )
        ok = values.get("TransactionResult") == "OK"
        return RefundResult(
            success=ok,
            refund_id=values.get("BankTransactionID"),
            amount=amount,
            status="refunded" if ok else "failed",
            raw=values,
            **({} if ok else self._failure(values, "Axerve refund failed")),
        )

    async def get_payment_status(
        self, config: AxerveTenantConfig, provider_payment_id: str
    ) -> PaymentResult:
        values = await self._soap(
            config,
            S2S_URLS[config.environment],
            "callReadTrxS2S",
            {"bankTransactionId": provider_payment_id},
        )
        result = values.get("TransactionResult") or "unknown"
        return PaymentResult(
            success=result == "OK",
            provider_payment_id=provider_payment_id,
            status=result,
            raw=values,
        )

    async def create_moto_payment(
        self, config: AxerveTenantConfig, params: PaymentParams
    ) -> PaymentResult:
        """Server-to-server charge of keyed card details."""
        if not config.moto_profile:
            return PaymentResult(
                success=False,
                error="MOTO profile not enabled for this merchant",
                error_code="moto_not_provisioned",
            )
        if params.card is None:
            return PaymentResult(
                success=False,
                error="Card details are required for MOTO",
                error_code="card_required",
            )

        card = params.card
        values = await self._soap(
            config,
            S2S_URLS[config.environment],
            "callPagamS2S",
            {
                "uicCode": self._uic(params.currency),
                "amount": format_amount(params.amount, params.currency),
                "shopTransactionId": params.order_id,
                "cardNumber": card.card_number.get_secret_value(),
                "expiryMonth": f"{card.expiry_month:02d}",
                "expiryYear": f"{card.expiry_year % 100:02d}",
                "cvv": card.cvv.get_secret_value() if card.cvv is not None else None,
                "buyerName": card.cardholder_name,
            },
        )
        return self._pagam_result(values, params.order_id)

    async def create_contract(
        self, config: AxerveTenantConfig, params: ContractParams
    ) -> ContractResult:
        """
        Reserve a contract placeholder.

        The token itself is returned by the first OnClick payment requested
        with ``requestToken=MASKEDPAN``.
        """
        if not config.recurring_enabled:
            return ContractResult(
                success=False,
                error="Recurring not enabled for this merchant",
                error_code="recurring_not_provisioned",
            )
        contract_id = f"axv-{uuid.uuid4().hex[:20]}"
        return ContractResult(success=True, provider_contract_id=contract_id, status="pending")

    async def charge_recurring(
        self,
        config: AxerveTenantConfig,
        provider_contract_id: str,
        params: PaymentParams,
    ) -> PaymentResult:
        contract_type = params.metadata.get("contract_type", ContractType.SCHEDULED.value)
        if contract_type == ContractType.UNSCHEDULED.value:
            mit_code = MIT_UNSCHEDULED
        else:
            mit_code = MIT_SCHEDULED
        values = await self._soap(
            config,
            S2S_URLS[config.environment],
            "callPagamS2S",
            {
                "uicCode": self._uic(params.currency),
                "amount": format_amount(params.amount, params.currency),
                "shopTransactionId": params.order_id,
                "tokenValue": provider_contract_id,
                "transDetails": mit_code,
            },
        )
        return self._pagam_result(values, params.order_id)

    async def cancel_contract(
        self, config: AxerveTenantConfig, provider_contract_id: str
    ) -> None:
        values = await self._soap(
            config,
            S2S_URLS[config.environment],
            "callDeleteTokenS2S",
            {"tokenValue": provider_contract_id},
        )
        if values.get("TransactionResult") != "OK":
            raise ProviderTransportError(
                f"Axerve token deletion failed: {values.get('ErrorDescription', 'unknown error')}",
                provider=self.name,
                error_code=values.get("ErrorCode") or "token_delete_failed",
            )

    async def verify_webhook_signature(
        self,
        payload: str,
        signature: str,
        secret: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> bool:
        """
        Decrypt the callback string and check it against the posted outcome.

        GestPay calls back with the shop login and an encrypted result string.
        ``signature`` is that string and ``secret`` the API key of the shop
        named by ``ShopLogin`` in ``payload``; the decrypted outcome fields
        must equal the ones in the body.
        """
        if not secret or not signature:
            return False
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            return False
        if not isinstance(data, dict) or not data.get("ShopLogin"):
            return False

        config = AxerveTenantConfig(shop_login=data["ShopLogin"], api_key=secret)
        values = await self._soap(
            config,
            CRYPT_URLS[self.settings.axerve_environment],
            "Decrypt",
            {"CryptedString": signature},
        )
        if values.get("ErrorCode", "0") != "0":
            logger.warning(
                "axerve_callback_decrypt_failed",
                shop_login=config.shop_login,
                error_code=values.get("ErrorCode"),
            )
            return False

        decrypted = {field: values.get(field) for field in CALLBACK_FIELDS}
        if not decrypted["TransactionResult"] or not decrypted["ShopTransactionID"]:
            return False
        return all(data.get(field) == value for field, value in decrypted.items())

    def parse_webhook_event(self, payload: str) -> WebhookEvent:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise WebhookError("Axerve webhook payload is not valid JSON") from e

        ok = data.get("TransactionResult") == "OK"
        return WebhookEvent(
            provider=self.name,
            event_type="payment.completed" if ok else "payment.failed",
            event_id=data.get("BankTransactionID") or "",
            timestamp=datetime.now(timezone.utc),
            data=data,
            raw_payload=payload,
        )

    def calculate_fees(self, amount: Number, currency: str) -> ProviderFees:
        # ~1.5%, varies by acquiring contract
        return estimate_fees(amount, currency, rate="0.015")
