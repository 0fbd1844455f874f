"""
Payment orchestrator.

Coordinates one payment attempt end to end:
1. Answer replays of a known idempotency key from the ledger
2. Resolve the provider adapter and the tenant's configuration for it
3. Compute commission at the tenant's current rate
4. Record a ``pending`` transaction before contacting the provider
5. Call the provider with a bounded timeout
6. Move the transaction to ``processing`` or ``failed`` with a matching event

Configuration and precondition failures are returned before any ledger
entry exists. Provider exceptions never escape: the transaction is moved to
``failed`` and a structured result is returned.
"""
import asyncio
import time
from decimal import Decimal
from typing import Any, Awaitable, Dict, Optional, Tuple, TypeVar, Union

import structlog

from payment_orchestration.config import Settings, get_settings
from payment_orchestration.core.commission import (
    Number,
    calculate_commission,
    round_money,
    to_decimal,
)
from payment_orchestration.core.contracts import ContractId, RecurringContractManager
from payment_orchestration.core.exceptions import (
    CommissionError,
    ConfigurationError,
    ContractError,
    InvalidStatusTransitionError,
    LedgerError,
    PaymentOrchestrationError,
    ProviderTransportError,
)
from payment_orchestration.core.ledger import REFUNDABLE_STATUSES, TransactionId, TransactionLedger
from payment_orchestration.core.schemas import (
    ContractStatus,
    PaymentParams,
    PaymentResult,
    PaymentType,
    ProviderFees,
    RefundResult,
    TransactionStatus,
)
from payment_orchestration.core.tenant_config import TenantConfigStore
from payment_orchestration.database.models import PaymentTransaction, RecurringContract
from payment_orchestration.monitoring.metrics import metrics
from payment_orchestration.providers.base import PaymentProvider
from payment_orchestration.providers.configs import ProviderTenantConfig
from payment_orchestration.providers.registry import ProviderRegistry

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Replayed transactions in these states are reported as successful
_SUCCESSFUL_STATUSES = frozenset(
    {
        TransactionStatus.PROCESSING.value,
        TransactionStatus.COMPLETED.value,
        TransactionStatus.PARTIAL_REFUND.value,
        TransactionStatus.REFUNDED.value,
    }
)


class _ProviderCallFailed(Exception):
    """A provider call raised or timed out; carries the message and code to record."""

    def __init__(self, reason: str, code: str):
        super().__init__(reason)
        self.reason = reason
        self.code = code


def _failure(error: str, error_code: str, **fields: Any) -> PaymentResult:
    return PaymentResult(success=False, error=error, error_code=error_code, **fields)


class PaymentOrchestrator:
    """
    Entry point for payments, refunds and captures.

    Stateless apart from its collaborators; safe to share between concurrent
    requests. No lock is held while a provider call is in flight.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        ledger: TransactionLedger,
        config_store: TenantConfigStore,
        contracts: RecurringContractManager,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            registry: Provider registry built at startup
            ledger: Transaction ledger
            config_store: Tenant provider configuration and commission rates
            contracts: Recurring contract manager
            settings: Optional settings override
        """
        self.registry = registry
        self.ledger = ledger
        self.config_store = config_store
        self.contracts = contracts
        self.settings = settings or get_settings()

    # Public entry points

    async def process_payment(
        self,
        tenant_id: str,
        provider_name: str,
        payment_type: Union[PaymentType, str],
        params: PaymentParams,
    ) -> PaymentResult:
        """
        Run a payment through the provider and record it in the ledger.

        MOTO requests are capability-gated exactly like
        ``process_moto_payment``. Recurring charges need a contract and go
        through ``charge_recurring``.

        Args:
            tenant_id: Tenant taking the payment
            provider_name: Registered provider name
            payment_type: onclick or moto
            params: Finalized payment request

        Returns:
            PaymentResult: Provider outcome with ``transaction_id`` whenever a
            ledger entry exists
        """
        try:
            kind = PaymentType(payment_type)
        except ValueError:
            return _failure(f"Unknown payment type: {payment_type}", "invalid_payment_type")

        if kind is PaymentType.MOTO:
            return await self.process_moto_payment(tenant_id, provider_name, params)
        if kind is PaymentType.RECURRENT:
            return _failure(
                "Recurring charges require a contract; use charge_recurring",
                "contract_required",
            )
        return await self._execute(tenant_id, provider_name, kind, params)

    async def process_moto_payment(
        self, tenant_id: str, provider_name: str, params: PaymentParams
    ) -> PaymentResult:
        """Operator-keyed card-not-present payment; the provider must support MOTO."""
        provider = self.registry.get(provider_name)
        if provider is None:
            return self._rejected(
                provider_name, PaymentType.MOTO, *self._unknown_provider(provider_name)
            )
        if not provider.supports_moto:
            return self._rejected(
                provider_name,
                PaymentType.MOTO,
                f"Provider {provider_name} does not support MOTO",
                "capability_unsupported",
            )
        return await self._execute(tenant_id, provider_name, PaymentType.MOTO, params)

    async def charge_recurring(
        self,
        tenant_id: str,
        provider_name: str,
        contract_id: ContractId,
        params: PaymentParams,
    ) -> PaymentResult:
        """
        Merchant-initiated charge against an active recurring contract.

        A missing, foreign or non-active contract fails without a ledger
        entry or provider call.
        """
        provider = self.registry.get(provider_name)
        if provider is None:
            return self._rejected(
                provider_name, PaymentType.RECURRENT, *self._unknown_provider(provider_name)
            )
        if not provider.supports_recurring:
            return self._rejected(
                provider_name,
                PaymentType.RECURRENT,
                f"Provider {provider_name} does not support recurring payments",
                "capability_unsupported",
            )
        return await self._execute(
            tenant_id, provider_name, PaymentType.RECURRENT, params, contract_id=contract_id
        )

    async def refund_transaction(
        self, transaction_id: TransactionId, amount: Optional[Number] = None
    ) -> RefundResult:
        """
        Refund a completed transaction, fully or partially.

        The refund always targets the provider and tenant configuration the
        original charge used. The amount is claimed in the ledger before the
        provider is called, so concurrent refunds can never exceed the gross
        amount; a failed refund gives the claim back and leaves the status
        unchanged.

        Args:
            transaction_id: Transaction to refund
            amount: Partial amount; omitted refunds whatever remains

        Returns:
            RefundResult: Outcome, with ``transaction_id`` set. The status is
            ``partial_refund`` when an amount was given and ``refunded`` when
            it was omitted.
        """
        transaction = await self.ledger.find_by_id(transaction_id)
        if transaction is None:
            return RefundResult(
                success=False,
                error=f"Transaction not found: {transaction_id}",
                error_code="transaction_not_found",
            )

        log = logger.bind(transaction_id=str(transaction.id), provider=transaction.provider)

        def refund_failure(error: str, error_code: Optional[str]) -> RefundResult:
            return RefundResult(
                success=False,
                transaction_id=transaction.id,
                error=error,
                error_code=error_code,
                status=transaction.status,
            )

        if transaction.status not in REFUNDABLE_STATUSES or not transaction.provider_payment_id:
            return refund_failure(
                f"Transaction in status '{transaction.status}' cannot be refunded",
                "invalid_transaction_state",
            )

        requested: Optional[Decimal] = None
        if amount is not None:
            try:
                requested = round_money(amount, transaction.currency)
            except CommissionError as e:
                return refund_failure(e.message, "invalid_refund_amount")

        try:
            provider, config = await self._resolve(transaction.tenant_id, transaction.provider)
        except ConfigurationError as e:
            return refund_failure(e.message, e.error_code)

        try:
            reservation = await self.ledger.reserve_refund(transaction.id, requested)
        except LedgerError as e:
            return refund_failure(e.message, e.error_code)

        refund_amount = reservation.amount
        # A first full refund lets the provider refund the whole charge
        full_charge = requested is None and reservation.previously_refunded == 0
        provider_amount = None if full_charge else refund_amount

        try:
            result = await self._call_provider(
                provider,
                "refund_payment",
                provider.refund_payment(
                    config,
                    transaction.provider_payment_id,
                    provider_amount,
                    transaction.currency,
                ),
            )
        except _ProviderCallFailed as e:
            metrics.record_refund(transaction.provider, "error")
            await self._release_refund(transaction, refund_amount, e.reason, e.code)
            return refund_failure(e.reason, e.code)

        if not result.success:
            metrics.record_refund(transaction.provider, "rejected")
            await self._release_refund(transaction, refund_amount, result.error, result.error_code)
            log.info("refund_rejected", error=result.error, error_code=result.error_code)
            return result.model_copy(
                update={"transaction_id": transaction.id, "status": transaction.status}
            )

        target = (
            TransactionStatus.REFUNDED if requested is None else TransactionStatus.PARTIAL_REFUND
        )
        refund_metadata = {
            "refund_amount": str(refund_amount),
            "refund_id": result.refund_id,
            "provider_status": result.status,
        }
        try:
            updated = await self.ledger.record_refund(transaction.id, target, refund_metadata)
        except LedgerError as e:
            # The provider refunded and the amount stays claimed; only the status is missing
            log.error(
                "refund_not_recorded",
                refund_id=result.refund_id,
                amount=str(refund_amount),
                error=e.message,
            )
            metrics.record_refund(transaction.provider, "unrecorded")
            try:
                await self.ledger.append_event(
                    transaction.id,
                    "payment.refund_unrecorded",
                    {**refund_metadata, "error": e.message, "error_code": e.error_code},
                )
            except LedgerError as event_error:
                log.error("refund_event_not_recorded", error=event_error.message)
            return result.model_copy(
                update={
                    "transaction_id": transaction.id,
                    "amount": refund_amount,
                    "status": transaction.status,
                    "error": e.message,
                    "error_code": "refund_unrecorded",
                }
            )

        metrics.record_refund(transaction.provider, "succeeded")
        log.info("refund_succeeded", amount=str(refund_amount), status=updated.status)
        return result.model_copy(
            update={
                "transaction_id": transaction.id,
                "amount": refund_amount,
                "status": updated.status,
            }
        )

    async def capture_transaction(
        self, transaction_id: TransactionId, amount: Optional[Number] = None
    ) -> PaymentResult:
        """
        Settle a ``processing`` transaction at its original provider.

        Success moves it to ``completed``; a failed capture leaves it in
        ``processing`` and records a ``payment.capture_failed`` event.
        """
        transaction = await self.ledger.find_by_id(transaction_id)
        if transaction is None:
            return _failure(f"Transaction not found: {transaction_id}", "transaction_not_found")

        fields = {"transaction_id": transaction.id, "status": transaction.status}
        if (
            transaction.status != TransactionStatus.PROCESSING.value
            or not transaction.provider_payment_id
        ):
            return _failure(
                f"Transaction in status '{transaction.status}' cannot be captured",
                "invalid_transaction_state",
                **fields,
            )

        capture_amount: Optional[Decimal] = None
        if amount is not None:
            try:
                capture_amount = round_money(amount, transaction.currency)
            except CommissionError as e:
                return _failure(e.message, "invalid_capture_amount", **fields)
            if capture_amount <= 0 or capture_amount > transaction.gross_amount:
                return _failure(
                    f"Capture amount must be between 0 and {transaction.gross_amount}",
                    "invalid_capture_amount",
                    **fields,
                )

        try:
            provider, config = await self._resolve(transaction.tenant_id, transaction.provider)
        except ConfigurationError as e:
            return _failure(e.message, e.error_code, **fields)

        try:
            result = await self._call_provider(
                provider,
                "capture_payment",
                provider.capture_payment(
                    config, transaction.provider_payment_id, capture_amount, transaction.currency
                ),
            )
        except _ProviderCallFailed as e:
            metrics.record_capture(transaction.provider, "error")
            await self._note_failure(transaction, "payment.capture_failed", e.reason, e.code)
            return _failure(e.reason, e.code, **fields)

        if not result.success:
            metrics.record_capture(transaction.provider, "rejected")
            await self._note_failure(
                transaction, "payment.capture_failed", result.error, result.error_code
            )
            return result.model_copy(update=fields)

        try:
            updated = await self.ledger.update_status(
                transaction.id,
                TransactionStatus.COMPLETED,
                "payment.captured",
                metadata={
                    "captured_amount": str(capture_amount or transaction.gross_amount),
                    "provider_status": result.status,
                },
            )
        except LedgerError as e:
            # Settled concurrently, e.g. by reconciliation
            logger.error(
                "capture_not_recorded", transaction_id=str(transaction.id), error=e.message
            )
            return _failure(e.message, e.error_code, **fields)
        metrics.record_capture(transaction.provider, "succeeded")
        logger.info("payment_captured", transaction_id=str(transaction.id))
        return result.model_copy(
            update={"transaction_id": updated.id, "status": updated.status}
        )

    async def sync_transaction_status(self, transaction_id: TransactionId) -> PaymentResult:
        """
        Poll the provider for a ``processing`` transaction and settle it.

        A definitive provider status moves the transaction to ``completed`` or
        ``failed`` with a ``payment.reconciled`` event. An in-flight status
        only records a ``payment.status_polled`` event.

        Raises:
            ConfigurationError: If the provider or tenant config is gone
            ProviderTransportError: If the provider cannot be reached
        """
        transaction = await self.ledger.find_by_id(transaction_id)
        if transaction is None:
            return _failure(f"Transaction not found: {transaction_id}", "transaction_not_found")

        if (
            transaction.status != TransactionStatus.PROCESSING.value
            or not transaction.provider_payment_id
        ):
            return self._state_result(transaction)

        provider, config = await self._resolve(transaction.tenant_id, transaction.provider)
        try:
            result = await self._call_provider(
                provider,
                "get_payment_status",
                provider.get_payment_status(config, transaction.provider_payment_id),
            )
        except _ProviderCallFailed as e:
            raise ProviderTransportError(
                e.reason, provider=transaction.provider, error_code=e.code
            ) from e

        resolved = provider.normalize_status(result.status)
        metadata = {"provider_status": result.status}
        try:
            if resolved == TransactionStatus.COMPLETED.value:
                transaction = await self.ledger.update_status(
                    transaction.id,
                    TransactionStatus.COMPLETED,
                    "payment.reconciled",
                    metadata=metadata,
                )
            elif resolved == TransactionStatus.FAILED.value:
                transaction = await self.ledger.update_status(
                    transaction.id,
                    TransactionStatus.FAILED,
                    "payment.reconciled",
                    metadata=metadata,
                    failure_reason=result.error or f"Provider reported status {result.status}",
                    failure_code=result.error_code or result.status,
                )
            else:
                await self.ledger.append_event(transaction.id, "payment.status_polled", metadata)
        except InvalidStatusTransitionError:
            # Settled concurrently by a capture or webhook
            transaction = await self.ledger.get(transaction.id)

        logger.info(
            "transaction_status_synced",
            transaction_id=str(transaction.id),
            provider_status=result.status,
            status=transaction.status,
        )
        return self._state_result(transaction)

    def estimate_provider_fees(
        self, provider_name: str, amount: Number, currency: Optional[str] = None
    ) -> Optional[ProviderFees]:
        """
        Provider processing-fee estimate, for cost transparency only.

        Raises:
            ProviderNotFoundError: If the provider is not registered
        """
        provider = self.registry.require(provider_name)
        currency = currency or self.settings.default_currency
        return provider.calculate_fees(to_decimal(amount), currency)

    # Pipeline

    async def _execute(
        self,
        tenant_id: str,
        provider_name: str,
        payment_type: PaymentType,
        params: PaymentParams,
        contract_id: Optional[ContractId] = None,
    ) -> PaymentResult:
        started = time.perf_counter()
        log = logger.bind(
            tenant_id=tenant_id,
            provider=provider_name,
            payment_type=payment_type.value,
            order_id=params.order_id,
        )

        # 1. Idempotent replay
        if params.idempotency_key:
            existing = await self.ledger.find_by_idempotency_key(tenant_id, params.idempotency_key)
            if existing is not None:
                log.info("payment_idempotent_replay", transaction_id=str(existing.id))
                metrics.record_idempotent_replay("lookup")
                metrics.record_payment_request(provider_name, payment_type.value, "replay")
                return self._replay_result(existing)

        # 2. Provider, contract and tenant configuration
        provider = self.registry.get(provider_name)
        if provider is None:
            error, error_code = self._unknown_provider(provider_name)
            return self._rejected(provider_name, payment_type, error, error_code)

        if payment_type is PaymentType.MOTO and params.card is None:
            return self._rejected(
                provider_name, payment_type, "Card details are required for MOTO", "card_required"
            )

        contract: Optional[RecurringContract] = None
        if payment_type is PaymentType.RECURRENT:
            contract, problem = await self._check_contract(
                tenant_id, provider_name, contract_id, params
            )
            if problem is not None:
                log.info("recurring_precondition_failed", error_code=problem[1])
                return self._rejected(provider_name, payment_type, *problem)

        try:
            provider, config = await self._resolve(tenant_id, provider_name, payment_type)
        except ConfigurationError as e:
            log.info("payment_configuration_error", error_code=e.error_code, error=e.message)
            return self._rejected(provider_name, payment_type, e.message, e.error_code)

        # 3. Commission at the tenant's current rate
        rate = await self.config_store.get_commission_rate(tenant_id)
        if rate is None:
            rate = self.settings.default_commission_rate
        try:
            commission = calculate_commission(params.amount, rate, params.currency)
        except CommissionError as e:
            return self._rejected(provider_name, payment_type, e.message, e.error_code)

        # 4. Ledger entry before the provider call
        transaction, created = await self.ledger.create(
            tenant_id=tenant_id,
            order_id=params.order_id,
            provider=provider_name,
            payment_type=payment_type,
            gross_amount=params.amount,
            currency=params.currency,
            commission=commission,
            idempotency_key=params.idempotency_key,
            customer_id=params.customer_id,
            customer_email=params.customer_email,
            method=params.method,
            contract_id=contract.id if contract is not None else None,
            metadata={"description": params.description} if params.description else None,
        )
        if not created:
            log.info("payment_idempotent_replay", transaction_id=str(transaction.id))
            metrics.record_idempotent_replay("race")
            metrics.record_payment_request(provider_name, payment_type.value, "replay")
            return self._replay_result(transaction)

        log = log.bind(transaction_id=str(transaction.id))

        # 5. Provider call
        if payment_type is PaymentType.MOTO:
            operation, call = "create_moto_payment", provider.create_moto_payment(config, params)
        elif payment_type is PaymentType.RECURRENT:
            operation, call = "charge_recurring", provider.charge_recurring(
                config, contract.provider_contract_id, params
            )
        else:
            operation, call = "create_payment", provider.create_payment(config, params)

        try:
            result = await self._call_provider(provider, operation, call)
        except _ProviderCallFailed as e:
            await self.ledger.update_status(
                transaction.id,
                TransactionStatus.FAILED,
                "payment.provider_error",
                failure_reason=e.reason,
                failure_code=e.code,
                metadata={"operation": operation},
            )
            log.warning("payment_provider_error", error=e.reason, error_code=e.code)
            self._record_outcome(provider_name, payment_type, "error", started)
            return PaymentResult(
                success=False,
                transaction_id=transaction.id,
                status=TransactionStatus.FAILED.value,
                amount=transaction.gross_amount,
                error=e.reason,
                error_code=e.code,
            )

        # 6. Outcome
        if not result.success:
            reason = result.error or "Payment rejected by provider"
            await self.ledger.update_status(
                transaction.id,
                TransactionStatus.FAILED,
                "payment.provider_rejected",
                provider_payment_id=result.provider_payment_id,
                failure_reason=reason,
                failure_code=result.error_code,
                metadata={"provider_status": result.status},
            )
            log.info("payment_rejected", error=reason, error_code=result.error_code)
            self._record_outcome(provider_name, payment_type, "rejected", started)
            return result.model_copy(
                update={
                    "transaction_id": transaction.id,
                    "amount": transaction.gross_amount,
                    "error": reason,
                }
            )

        metadata: Dict[str, Any] = {"provider_status": result.status}
        if result.redirect_url:
            metadata["redirect_url"] = result.redirect_url
        await self.ledger.update_status(
            transaction.id,
            TransactionStatus.PROCESSING,
            "payment.provider_accepted",
            provider_payment_id=result.provider_payment_id,
            metadata=metadata,
        )

        if contract is not None:
            try:
                await self.contracts.record_charge(contract.id, transaction.gross_amount)
            except ContractError as e:
                log.error(
                    "contract_charge_not_recorded", contract_id=str(contract.id), error=e.message
                )

        log.info(
            "payment_accepted",
            provider_payment_id=result.provider_payment_id,
            provider_status=result.status,
        )
        self._record_outcome(provider_name, payment_type, "accepted", started)
        return result.model_copy(
            update={"transaction_id": transaction.id, "amount": transaction.gross_amount}
        )

    async def _check_contract(
        self,
        tenant_id: str,
        provider_name: str,
        contract_id: Optional[ContractId],
        params: PaymentParams,
    ) -> Tuple[Optional[RecurringContract], Optional[Tuple[str, str]]]:
        contract = await self.contracts.get_contract(contract_id) if contract_id else None
        if contract is None or contract.tenant_id != tenant_id:
            return None, (f"Recurring contract not found: {contract_id}", "contract_not_found")
        if contract.provider != provider_name:
            return None, (
                f"Contract belongs to provider {contract.provider}, not {provider_name}",
                "contract_provider_mismatch",
            )
        if contract.status != ContractStatus.ACTIVE.value:
            return None, (f"Recurring contract is {contract.status}", "contract_inactive")
        if contract.currency != params.currency:
            return None, (
                f"Contract currency is {contract.currency}, not {params.currency}",
                "currency_mismatch",
            )
        if contract.max_amount is not None and params.amount > contract.max_amount:
            return None, (
                f"Amount exceeds the contract limit of {contract.max_amount} {contract.currency}",
                "amount_exceeds_contract_limit",
            )
        return contract, None

    async def _resolve(
        self,
        tenant_id: str,
        provider_name: str,
        payment_type: Optional[PaymentType] = None,
    ) -> Tuple[PaymentProvider, ProviderTenantConfig]:
        """
        Adapter plus the tenant's validated configuration for it.

        Raises:
            ConfigurationError: Unknown provider, missing or invalid config, or
                a tenant not provisioned for ``payment_type``
        """
        provider = self.registry.require(provider_name)
        raw_config = await self.config_store.get_provider_config(tenant_id, provider_name)
        if raw_config is None:
            raise ConfigurationError(f"Provider {provider_name} not configured for tenant")
        config = provider.parse_config(raw_config)
        if payment_type is not None:
            provider.ensure_provisioned(config, payment_type.value)
        return provider, config

    async def _call_provider(
        self, provider: PaymentProvider, operation: str, call: Awaitable[T]
    ) -> T:
        """
        Await a provider call under the payment timeout.

        Raises:
            _ProviderCallFailed: On timeout or any exception from the adapter
        """
        started = time.perf_counter()
        status = "ok"
        try:
            return await asyncio.wait_for(call, timeout=self.settings.provider_timeout_seconds)
        except asyncio.TimeoutError as e:
            status = "timeout"
            raise _ProviderCallFailed(
                f"{provider.name} {operation} timed out after "
                f"{self.settings.provider_timeout_seconds}s",
                "provider_timeout",
            ) from e
        except PaymentOrchestrationError as e:
            status = "error"
            raise _ProviderCallFailed(e.message, e.error_code) from e
        except Exception as e:
            # Adapters must not take the ledger down with them
            status = "error"
            logger.exception(
                "provider_unexpected_error", provider=provider.name, operation=operation
            )
            raise _ProviderCallFailed(str(e) or type(e).__name__, "provider_error") from e
        finally:
            metrics.record_provider_call(
                provider.name, operation, status, time.perf_counter() - started
            )

    async def _note_failure(
        self,
        transaction: PaymentTransaction,
        event_type: str,
        error: Optional[str],
        error_code: Optional[str],
    ) -> None:
        """Record a failed follow-up operation without touching the status."""
        await self.ledger.append_event(
            transaction.id, event_type, {"error": error, "error_code": error_code}
        )

    async def _release_refund(
        self,
        transaction: PaymentTransaction,
        amount: Decimal,
        error: Optional[str],
        error_code: Optional[str],
    ) -> None:
        """Give back a refund claim the provider did not honour."""
        metadata = {"refund_amount": str(amount), "error": error, "error_code": error_code}
        try:
            await self.ledger.release_refund(
                transaction.id, amount, "payment.refund_failed", metadata
            )
        except LedgerError as e:
            logger.error(
                "refund_release_failed",
                transaction_id=str(transaction.id),
                amount=str(amount),
                error=e.message,
            )

    def _rejected(
        self, provider_name: str, payment_type: PaymentType, error: str, error_code: str
    ) -> PaymentResult:
        metrics.record_payment_request(provider_name, payment_type.value, "precondition_failed")
        return _failure(error, error_code)

    @staticmethod
    def _unknown_provider(provider_name: str) -> Tuple[str, str]:
        return f"Unknown provider: {provider_name}", "provider_not_found"

    @staticmethod
    def _record_outcome(
        provider_name: str, payment_type: PaymentType, outcome: str, started: float
    ) -> None:
        metrics.record_payment_request(provider_name, payment_type.value, outcome)
        metrics.record_payment_duration(payment_type.value, time.perf_counter() - started)

    @staticmethod
    def _state_result(transaction: PaymentTransaction) -> PaymentResult:
        failed = transaction.status == TransactionStatus.FAILED.value
        return PaymentResult(
            success=transaction.status in _SUCCESSFUL_STATUSES,
            transaction_id=transaction.id,
            provider_payment_id=transaction.provider_payment_id,
            status=transaction.status,
            amount=transaction.gross_amount,
            error=transaction.failure_reason if failed else None,
            error_code=transaction.failure_code if failed else None,
        )

    @classmethod
    def _replay_result(cls, transaction: PaymentTransaction) -> PaymentResult:
        """Current state of an existing transaction, as returned to a retrying caller."""
        result = cls._state_result(transaction)
        update: Dict[str, Any] = {"idempotent_replay": True}

        if transaction.status == TransactionStatus.PENDING.value:
            update.update(
                error="A payment with this idempotency key is still in progress",
                error_code="payment_in_progress",
            )
        for event in reversed(transaction.events):
            if event.event_type == "payment.provider_accepted" and event.event_metadata:
                update["redirect_url"] = event.event_metadata.get("redirect_url")
                break
        return result.model_copy(update=update)
