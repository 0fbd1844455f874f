"""
Tests for the payment orchestrator.

The provider is an in-memory double that records every call, so each test
can assert both the returned result and whether the network was touched.
"""
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Callable

import pytest
from sqlalchemy import func, select

from conftest import OTHER_TENANT, TENANT, FakeProvider
from payment_orchestration.core.contracts import RecurringContractManager
from payment_orchestration.core.exceptions import (
    LedgerError,
    ProviderNotFoundError,
    ProviderTransportError,
)
from payment_orchestration.core.ledger import TransactionLedger
from payment_orchestration.core.orchestrator import PaymentOrchestrator
from payment_orchestration.core.schemas import (
    CardData,
    ContractParams,
    PaymentParams,
    PaymentResult,
    RefundResult,
)
from payment_orchestration.core.tenant_config import DatabaseTenantConfigStore
from payment_orchestration.database.models import PaymentTransaction, utcnow
from payment_orchestration.providers.registry import ProviderRegistry


async def _transaction_count(ledger: TransactionLedger) -> int:
    async with ledger.session_factory() as session:
        result = await session.execute(select(func.count()).select_from(PaymentTransaction))
        return result.scalar_one()


async def _event_types(ledger: TransactionLedger, transaction_id) -> list:
    return [e.event_type for e in await ledger.list_events(transaction_id)]


async def _completed_payment(
    orchestrator: PaymentOrchestrator, make_params: Callable[..., PaymentParams]
) -> PaymentResult:
    result = await orchestrator.process_payment(TENANT, "fake", "onclick", make_params())
    captured = await orchestrator.capture_transaction(result.transaction_id)
    assert captured.status == "completed"
    return result


async def _active_contract(contracts: RecurringContractManager, **overrides):
    data = dict(
        customer_id="cust-1",
        contract_type="scheduled",
        frequency_days=30,
        max_amount=Decimal("50.00"),
    )
    data.update(overrides)
    created = await contracts.create_contract(TENANT, "fake", ContractParams(**data))
    assert created.success
    return await contracts.activate_contract(
        created.contract_id, token_id="tok_1", card_last_four="4242", card_brand="visa"
    )


class TestProcessPayment:
    """Test suite for OnClick payments."""

    @pytest.mark.asyncio
    async def test_success_records_commission_and_events(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: TransactionLedger,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        result = await orchestrator.process_payment(
            TENANT, "fake", "onclick", make_params(idempotency_key="idem-1")
        )

        assert result.success is True
        assert result.provider_payment_id == "pp_1"
        assert result.redirect_url == "https://pay.example.test/pp_1"
        assert result.amount == Decimal("100.00")
        assert result.idempotent_replay is False

        transaction = await ledger.get(result.transaction_id)
        assert transaction.status == "processing"
        assert transaction.provider_payment_id == "pp_1"
        assert transaction.commission_rate == Decimal("0.05")
        assert transaction.commission_amount == Decimal("5.00")
        assert transaction.net_amount == Decimal("95.00")
        assert transaction.payment_type == "onclick"
        assert await _event_types(ledger, transaction.id) == [
            "payment.initiated",
            "payment.provider_accepted",
        ]
        assert fake_provider.count("create_payment") == 1

    @pytest.mark.asyncio
    async def test_idempotent_replay_makes_no_provider_call(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: TransactionLedger,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        first = await orchestrator.process_payment(
            TENANT, "fake", "onclick", make_params(idempotency_key="idem-1")
        )
        second = await orchestrator.process_payment(
            TENANT, "fake", "onclick", make_params(idempotency_key="idem-1")
        )

        assert fake_provider.count() == 1
        assert second.transaction_id == first.transaction_id
        assert second.idempotent_replay is True
        assert second.success is True
        assert second.status == "processing"
        assert second.redirect_url == first.redirect_url
        assert await _transaction_count(ledger) == 1

    @pytest.mark.asyncio
    async def test_replay_of_failed_payment_is_not_retried(
        self,
        orchestrator: PaymentOrchestrator,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        fake_provider.payment_result = PaymentResult(
            success=False, status="declined", error="Card declined", error_code="card_declined"
        )
        first = await orchestrator.process_payment(
            TENANT, "fake", "onclick", make_params(idempotency_key="idem-2")
        )
        fake_provider.payment_result = PaymentResult(success=True, provider_payment_id="pp_2")
        second = await orchestrator.process_payment(
            TENANT, "fake", "onclick", make_params(idempotency_key="idem-2")
        )

        assert fake_provider.count() == 1
        assert second.transaction_id == first.transaction_id
        assert second.success is False
        assert second.status == "failed"
        assert second.error_code == "card_declined"

    @pytest.mark.asyncio
    async def test_same_key_for_another_tenant_is_a_new_payment(
        self,
        orchestrator: PaymentOrchestrator,
        config_store: DatabaseTenantConfigStore,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        await config_store.set_provider_config(OTHER_TENANT, "fake", {"enabled": True})

        first = await orchestrator.process_payment(
            TENANT, "fake", "onclick", make_params(idempotency_key="shared")
        )
        second = await orchestrator.process_payment(
            OTHER_TENANT, "fake", "onclick", make_params(idempotency_key="shared")
        )

        assert fake_provider.count() == 2
        assert first.transaction_id != second.transaction_id

    @pytest.mark.asyncio
    async def test_unknown_provider(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: TransactionLedger,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        result = await orchestrator.process_payment(TENANT, "acme", "onclick", make_params())

        assert result.success is False
        assert result.error_code == "provider_not_found"
        assert result.transaction_id is None
        assert await _transaction_count(ledger) == 0

    @pytest.mark.asyncio
    async def test_tenant_without_config(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: TransactionLedger,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        result = await orchestrator.process_payment(
            OTHER_TENANT, "fake", "onclick", make_params()
        )

        assert result.success is False
        assert result.error_code == "provider_not_configured"
        assert fake_provider.count() == 0
        assert await _transaction_count(ledger) == 0

    @pytest.mark.asyncio
    async def test_tenant_not_provisioned(
        self,
        orchestrator: PaymentOrchestrator,
        config_store: DatabaseTenantConfigStore,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        await config_store.set_provider_config(TENANT, "fake", {"enabled": False})

        result = await orchestrator.process_payment(TENANT, "fake", "onclick", make_params())

        assert result.error_code == "provider_not_enabled"
        assert fake_provider.count() == 0

    @pytest.mark.asyncio
    async def test_invalid_stored_config(
        self,
        orchestrator: PaymentOrchestrator,
        config_store: DatabaseTenantConfigStore,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        await config_store.set_provider_config(TENANT, "fake", {"enabled": "sometimes"})

        result = await orchestrator.process_payment(TENANT, "fake", "onclick", make_params())

        assert result.error_code == "invalid_provider_config"

    @pytest.mark.asyncio
    async def test_unknown_payment_type(
        self, orchestrator: PaymentOrchestrator, make_params: Callable[..., PaymentParams]
    ) -> None:
        result = await orchestrator.process_payment(TENANT, "fake", "wire", make_params())

        assert result.error_code == "invalid_payment_type"

    @pytest.mark.asyncio
    async def test_recurrent_requires_contract(
        self,
        orchestrator: PaymentOrchestrator,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        result = await orchestrator.process_payment(TENANT, "fake", "recurrent", make_params())

        assert result.error_code == "contract_required"
        assert fake_provider.count() == 0

    @pytest.mark.asyncio
    async def test_default_commission_rate(
        self,
        orchestrator: PaymentOrchestrator,
        config_store: DatabaseTenantConfigStore,
        ledger: TransactionLedger,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        await config_store.set_provider_config(OTHER_TENANT, "fake", {"enabled": True})

        result = await orchestrator.process_payment(
            OTHER_TENANT, "fake", "onclick", make_params()
        )

        transaction = await ledger.get(result.transaction_id)
        assert transaction.commission_rate == Decimal("0.025")
        assert transaction.commission_amount == Decimal("2.50")
        assert transaction.net_amount == Decimal("97.50")

    @pytest.mark.asyncio
    async def test_commission_rate_is_fixed_at_creation(
        self,
        orchestrator: PaymentOrchestrator,
        config_store: DatabaseTenantConfigStore,
        ledger: TransactionLedger,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        result = await orchestrator.process_payment(TENANT, "fake", "onclick", make_params())
        await config_store.set_commission_rate(TENANT, "0.10")

        transaction = await ledger.get(result.transaction_id)
        assert transaction.commission_amount == Decimal("5.00")

    @pytest.mark.asyncio
    async def test_provider_decline_fails_transaction(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: TransactionLedger,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        fake_provider.payment_result = PaymentResult(
            success=False,
            provider_payment_id="pp_x",
            status="declined",
            error="Card declined",
            error_code="card_declined",
        )

        result = await orchestrator.process_payment(TENANT, "fake", "onclick", make_params())

        assert result.success is False
        assert result.error == "Card declined"
        transaction = await ledger.get(result.transaction_id)
        assert transaction.status == "failed"
        assert transaction.failure_reason == "Card declined"
        assert transaction.failure_code == "card_declined"
        assert transaction.provider_payment_id == "pp_x"
        assert await _event_types(ledger, transaction.id) == [
            "payment.initiated",
            "payment.provider_rejected",
        ]

    @pytest.mark.asyncio
    async def test_decline_without_message(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: TransactionLedger,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        fake_provider.payment_result = PaymentResult(success=False)

        result = await orchestrator.process_payment(TENANT, "fake", "onclick", make_params())

        transaction = await ledger.get(result.transaction_id)
        assert transaction.failure_reason == "Payment rejected by provider"

    @pytest.mark.asyncio
    async def test_provider_transport_error_fails_transaction(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: TransactionLedger,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        fake_provider.error = ProviderTransportError(
            "fake API error 503", provider="fake", error_code="http_503"
        )

        result = await orchestrator.process_payment(TENANT, "fake", "onclick", make_params())

        assert result.success is False
        assert result.error_code == "http_503"
        assert result.status == "failed"
        transaction = await ledger.get(result.transaction_id)
        assert transaction.status == "failed"
        assert await _event_types(ledger, transaction.id) == [
            "payment.initiated",
            "payment.provider_error",
        ]

    @pytest.mark.asyncio
    async def test_unexpected_adapter_exception_is_contained(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: TransactionLedger,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        fake_provider.error = RuntimeError("adapter bug")

        result = await orchestrator.process_payment(TENANT, "fake", "onclick", make_params())

        assert result.success is False
        assert result.error_code == "provider_error"
        assert result.error == "adapter bug"
        assert (await ledger.get(result.transaction_id)).status == "failed"

    @pytest.mark.asyncio
    async def test_provider_timeout(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: TransactionLedger,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        orchestrator.settings.provider_timeout_seconds = 0.05
        fake_provider.delay = 0.5

        result = await orchestrator.process_payment(TENANT, "fake", "onclick", make_params())

        assert result.success is False
        assert result.error_code == "provider_timeout"
        transaction = await ledger.get(result.transaction_id)
        assert transaction.status == "failed"
        assert transaction.failure_code == "provider_timeout"


class TestMotoPayment:
    """Test suite for operator-keyed payments."""

    @pytest.mark.asyncio
    async def test_provider_without_moto_is_never_called(
        self,
        orchestrator: PaymentOrchestrator,
        registry: ProviderRegistry,
        ledger: TransactionLedger,
        make_params: Callable[..., PaymentParams],
        card: CardData,
    ) -> None:
        basic = FakeProvider("basic", supports_moto=False)
        registry.register(basic)

        result = await orchestrator.process_moto_payment(TENANT, "basic", make_params(card=card))

        assert result.success is False
        assert result.error_code == "capability_unsupported"
        assert "does not support MOTO" in result.error
        assert basic.calls == []
        assert await _transaction_count(ledger) == 0

    @pytest.mark.asyncio
    async def test_process_payment_gates_moto_the_same_way(
        self,
        orchestrator: PaymentOrchestrator,
        registry: ProviderRegistry,
        make_params: Callable[..., PaymentParams],
        card: CardData,
    ) -> None:
        basic = FakeProvider("basic", supports_moto=False)
        registry.register(basic)

        result = await orchestrator.process_payment(
            TENANT, "basic", "moto", make_params(card=card)
        )

        assert result.error_code == "capability_unsupported"
        assert basic.calls == []

    @pytest.mark.asyncio
    async def test_card_required(
        self,
        orchestrator: PaymentOrchestrator,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        result = await orchestrator.process_moto_payment(TENANT, "fake", make_params())

        assert result.error_code == "card_required"
        assert fake_provider.count() == 0

    @pytest.mark.asyncio
    async def test_replay_without_card_returns_recorded_payment(
        self,
        orchestrator: PaymentOrchestrator,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
        card: CardData,
    ) -> None:
        first = await orchestrator.process_moto_payment(
            TENANT, "fake", make_params(card=card, idempotency_key="moto-1")
        )

        replay = await orchestrator.process_moto_payment(
            TENANT, "fake", make_params(idempotency_key="moto-1")
        )

        assert replay.success is True
        assert replay.idempotent_replay is True
        assert replay.transaction_id == first.transaction_id
        assert replay.error_code is None
        assert fake_provider.count("create_moto_payment") == 1

    @pytest.mark.asyncio
    async def test_moto_success(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: TransactionLedger,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
        card: CardData,
    ) -> None:
        result = await orchestrator.process_moto_payment(TENANT, "fake", make_params(card=card))

        assert result.success is True
        assert fake_provider.count("create_moto_payment") == 1
        assert fake_provider.count("create_payment") == 0
        transaction = await ledger.get(result.transaction_id)
        assert transaction.payment_type == "moto"
        assert transaction.status == "processing"


class TestRecurringCharges:
    """Test suite for merchant-initiated charges against contracts."""

    @pytest.mark.asyncio
    async def test_charge_active_contract(
        self,
        orchestrator: PaymentOrchestrator,
        contracts: RecurringContractManager,
        ledger: TransactionLedger,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        contract = await _active_contract(contracts)

        result = await orchestrator.charge_recurring(
            TENANT, "fake", contract.id, make_params(amount=Decimal("25.00"))
        )

        assert result.success is True
        operation, args = fake_provider.calls[-1]
        assert operation == "charge_recurring"
        assert args[0] == "ctr_1"

        transaction = await ledger.get(result.transaction_id)
        assert transaction.payment_type == "recurrent"
        assert transaction.contract_id == contract.id

        updated = await contracts.get_contract(contract.id)
        assert updated.total_charges == 1
        assert updated.total_amount_charged == Decimal("25.00")
        assert updated.last_charge_amount == Decimal("25.00")
        assert updated.next_charge_date == utcnow().date() + timedelta(days=30)

    @pytest.mark.asyncio
    async def test_paused_contract_is_rejected_before_any_side_effect(
        self,
        orchestrator: PaymentOrchestrator,
        contracts: RecurringContractManager,
        ledger: TransactionLedger,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        contract = await _active_contract(contracts)
        await contracts.pause_contract(contract.id)
        calls_before = fake_provider.count()

        result = await orchestrator.charge_recurring(TENANT, "fake", contract.id, make_params())

        assert result.success is False
        assert result.error_code == "contract_inactive"
        assert fake_provider.count() == calls_before
        assert await _transaction_count(ledger) == 0

    @pytest.mark.asyncio
    async def test_amount_above_contract_limit(
        self,
        orchestrator: PaymentOrchestrator,
        contracts: RecurringContractManager,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        contract = await _active_contract(contracts)

        result = await orchestrator.charge_recurring(
            TENANT, "fake", contract.id, make_params(amount=Decimal("50.01"))
        )

        assert result.error_code == "amount_exceeds_contract_limit"
        assert fake_provider.count("charge_recurring") == 0

    @pytest.mark.asyncio
    async def test_currency_must_match_contract(
        self,
        orchestrator: PaymentOrchestrator,
        contracts: RecurringContractManager,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        contract = await _active_contract(contracts)

        result = await orchestrator.charge_recurring(
            TENANT, "fake", contract.id, make_params(amount=Decimal("10.00"), currency="USD")
        )

        assert result.error_code == "currency_mismatch"

    @pytest.mark.asyncio
    async def test_foreign_and_unknown_contracts(
        self,
        orchestrator: PaymentOrchestrator,
        contracts: RecurringContractManager,
        config_store: DatabaseTenantConfigStore,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        contract = await _active_contract(contracts)
        await config_store.set_provider_config(OTHER_TENANT, "fake", {"enabled": True})

        foreign = await orchestrator.charge_recurring(
            OTHER_TENANT, "fake", contract.id, make_params(amount=Decimal("10.00"))
        )
        unknown = await orchestrator.charge_recurring(
            TENANT, "fake", uuid.uuid4(), make_params(amount=Decimal("10.00"))
        )

        assert foreign.error_code == "contract_not_found"
        assert unknown.error_code == "contract_not_found"

    @pytest.mark.asyncio
    async def test_contract_of_another_provider(
        self,
        orchestrator: PaymentOrchestrator,
        contracts: RecurringContractManager,
        registry: ProviderRegistry,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        contract = await _active_contract(contracts)
        other = FakeProvider("other")
        registry.register(other)

        result = await orchestrator.charge_recurring(
            TENANT, "other", contract.id, make_params(amount=Decimal("10.00"))
        )

        assert result.error_code == "contract_provider_mismatch"
        assert other.calls == []

    @pytest.mark.asyncio
    async def test_provider_without_recurring(
        self,
        orchestrator: PaymentOrchestrator,
        registry: ProviderRegistry,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        registry.register(FakeProvider("oneoff", supports_recurring=False))

        result = await orchestrator.charge_recurring(
            TENANT, "oneoff", uuid.uuid4(), make_params()
        )

        assert result.error_code == "capability_unsupported"

    @pytest.mark.asyncio
    async def test_declined_charge_does_not_count_toward_contract(
        self,
        orchestrator: PaymentOrchestrator,
        contracts: RecurringContractManager,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        contract = await _active_contract(contracts)
        fake_provider.payment_result = PaymentResult(success=False, error="Insufficient funds")

        result = await orchestrator.charge_recurring(
            TENANT, "fake", contract.id, make_params(amount=Decimal("10.00"))
        )

        assert result.success is False
        updated = await contracts.get_contract(contract.id)
        assert updated.total_charges == 0
        assert updated.total_amount_charged == Decimal("0")


class TestRefunds:
    """Test suite for refund_transaction."""

    @pytest.mark.asyncio
    async def test_full_refund(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: TransactionLedger,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        payment = await _completed_payment(orchestrator, make_params)

        result = await orchestrator.refund_transaction(payment.transaction_id)

        assert result.success is True
        assert result.status == "refunded"
        assert result.amount == Decimal("100.00")
        assert fake_provider.calls[-1] == ("refund_payment", ("pp_1", None))

        transaction = await ledger.get(payment.transaction_id)
        assert transaction.status == "refunded"
        assert transaction.refunded_amount == Decimal("100.00")
        events = await ledger.list_events(transaction.id)
        assert events[-1].event_type == "payment.refunded"
        assert events[-1].event_metadata["refund_id"] == "re_1"

    @pytest.mark.asyncio
    async def test_partial_refunds_then_remainder(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: TransactionLedger,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        payment = await _completed_payment(orchestrator, make_params)

        partial = await orchestrator.refund_transaction(payment.transaction_id, Decimal("30.00"))
        assert partial.success is True
        assert partial.status == "partial_refund"
        assert fake_provider.calls[-1][1][1] == Decimal("30.00")

        second = await orchestrator.refund_transaction(payment.transaction_id, "20.00")
        assert second.status == "partial_refund"

        rest = await orchestrator.refund_transaction(payment.transaction_id)
        assert rest.success is True
        assert rest.status == "refunded"
        assert rest.amount == Decimal("50.00")
        assert fake_provider.calls[-1][1][1] == Decimal("50.00")

        transaction = await ledger.get(payment.transaction_id)
        assert transaction.refunded_amount == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_explicit_amount_is_partial_even_when_it_covers_the_rest(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: TransactionLedger,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        payment = await _completed_payment(orchestrator, make_params)

        result = await orchestrator.refund_transaction(payment.transaction_id, "100.00")

        assert result.success is True
        assert result.status == "partial_refund"
        assert result.amount == Decimal("100.00")
        assert fake_provider.calls[-1] == ("refund_payment", ("pp_1", Decimal("100.00")))
        transaction = await ledger.get(payment.transaction_id)
        assert transaction.status == "partial_refund"
        assert transaction.refunded_amount == Decimal("100.00")

        nothing_left = await orchestrator.refund_transaction(payment.transaction_id)
        assert nothing_left.success is False
        assert nothing_left.error_code == "invalid_refund_amount"
        assert fake_provider.count("refund_payment") == 1

    @pytest.mark.asyncio
    async def test_refund_the_ledger_cannot_record(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: TransactionLedger,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
        mocker,
    ) -> None:
        payment = await _completed_payment(orchestrator, make_params)
        mocker.patch.object(
            orchestrator.ledger,
            "record_refund",
            side_effect=LedgerError("database is locked", error_code="concurrent_update"),
        )

        result = await orchestrator.refund_transaction(payment.transaction_id, "40.00")

        assert result.success is True
        assert result.error_code == "refund_unrecorded"
        assert result.refund_id == "re_1"
        assert result.amount == Decimal("40.00")
        assert fake_provider.count("refund_payment") == 1

        transaction = await ledger.get(payment.transaction_id)
        assert transaction.status == "completed"
        assert transaction.refunded_amount == Decimal("40.00")
        events = await ledger.list_events(transaction.id)
        assert events[-1].event_type == "payment.refund_unrecorded"
        assert events[-1].event_metadata["refund_id"] == "re_1"
        assert events[-1].event_metadata["refund_amount"] == "40.00"
        assert events[-1].event_metadata["error_code"] == "concurrent_update"

    @pytest.mark.asyncio
    async def test_provider_refund_failure_keeps_status(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: TransactionLedger,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        payment = await _completed_payment(orchestrator, make_params)
        fake_provider.refund_result = RefundResult(
            success=False, error="Refund window closed", error_code="refund_expired"
        )

        result = await orchestrator.refund_transaction(payment.transaction_id)

        assert result.success is False
        assert result.error == "Refund window closed"
        transaction = await ledger.get(payment.transaction_id)
        assert transaction.status == "completed"
        assert transaction.refunded_amount == Decimal("0")
        events = await ledger.list_events(transaction.id)
        assert events[-1].event_type == "payment.refund_failed"
        assert events[-1].status == "completed"

    @pytest.mark.asyncio
    async def test_refund_transport_error_keeps_status(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: TransactionLedger,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        payment = await _completed_payment(orchestrator, make_params)
        fake_provider.error = ProviderTransportError("connection reset", provider="fake")

        result = await orchestrator.refund_transaction(payment.transaction_id, "10.00")

        assert result.success is False
        assert result.error_code == "provider_error"
        assert (await ledger.get(payment.transaction_id)).status == "completed"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-5.00", "100.01"])
    async def test_invalid_refund_amounts(
        self,
        orchestrator: PaymentOrchestrator,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
        amount: str,
    ) -> None:
        payment = await _completed_payment(orchestrator, make_params)
        calls_before = fake_provider.count()

        result = await orchestrator.refund_transaction(payment.transaction_id, amount)

        assert result.error_code == "invalid_refund_amount"
        assert fake_provider.count() == calls_before

    @pytest.mark.asyncio
    async def test_refund_beyond_remaining(
        self,
        orchestrator: PaymentOrchestrator,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        payment = await _completed_payment(orchestrator, make_params)
        await orchestrator.refund_transaction(payment.transaction_id, "60.00")

        result = await orchestrator.refund_transaction(payment.transaction_id, "40.01")

        assert result.error_code == "invalid_refund_amount"

    @pytest.mark.asyncio
    async def test_refund_requires_completed_transaction(
        self,
        orchestrator: PaymentOrchestrator,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        payment = await orchestrator.process_payment(TENANT, "fake", "onclick", make_params())

        result = await orchestrator.refund_transaction(payment.transaction_id)

        assert result.error_code == "invalid_transaction_state"
        assert fake_provider.count("refund_payment") == 0

    @pytest.mark.asyncio
    async def test_refund_of_fully_refunded_transaction(
        self,
        orchestrator: PaymentOrchestrator,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        payment = await _completed_payment(orchestrator, make_params)
        await orchestrator.refund_transaction(payment.transaction_id)

        result = await orchestrator.refund_transaction(payment.transaction_id)

        assert result.error_code == "invalid_transaction_state"

    @pytest.mark.asyncio
    async def test_refund_unknown_transaction(self, orchestrator: PaymentOrchestrator) -> None:
        result = await orchestrator.refund_transaction(uuid.uuid4())

        assert result.success is False
        assert result.error_code == "transaction_not_found"


class TestCaptureAndSync:
    """Test suite for capture_transaction and sync_transaction_status."""

    @pytest.mark.asyncio
    async def test_capture_completes_transaction(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: TransactionLedger,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        payment = await orchestrator.process_payment(TENANT, "fake", "onclick", make_params())

        result = await orchestrator.capture_transaction(payment.transaction_id)

        assert result.success is True
        assert result.status == "completed"
        transaction = await ledger.get(payment.transaction_id)
        assert transaction.status == "completed"
        assert transaction.completed_at is not None
        assert (await _event_types(ledger, transaction.id))[-1] == "payment.captured"

    @pytest.mark.asyncio
    async def test_rejected_capture_keeps_processing(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: TransactionLedger,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        payment = await orchestrator.process_payment(TENANT, "fake", "onclick", make_params())
        fake_provider.capture_result = PaymentResult(success=False, error="Authorization expired")

        result = await orchestrator.capture_transaction(payment.transaction_id)

        assert result.success is False
        assert result.status == "processing"
        assert (await ledger.get(payment.transaction_id)).status == "processing"
        assert (await _event_types(ledger, payment.transaction_id))[-1] == "payment.capture_failed"

    @pytest.mark.asyncio
    async def test_capture_amount_validation(
        self,
        orchestrator: PaymentOrchestrator,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        payment = await orchestrator.process_payment(TENANT, "fake", "onclick", make_params())

        too_much = await orchestrator.capture_transaction(payment.transaction_id, "100.01")
        zero = await orchestrator.capture_transaction(payment.transaction_id, 0)

        assert too_much.error_code == "invalid_capture_amount"
        assert zero.error_code == "invalid_capture_amount"

    @pytest.mark.asyncio
    async def test_capture_of_failed_transaction(
        self,
        orchestrator: PaymentOrchestrator,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        fake_provider.payment_result = PaymentResult(success=False, error="Declined")
        payment = await orchestrator.process_payment(TENANT, "fake", "onclick", make_params())

        result = await orchestrator.capture_transaction(payment.transaction_id)

        assert result.error_code == "invalid_transaction_state"
        assert fake_provider.count("capture_payment") == 0

    @pytest.mark.asyncio
    async def test_sync_settles_completed(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: TransactionLedger,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        payment = await orchestrator.process_payment(TENANT, "fake", "onclick", make_params())

        result = await orchestrator.sync_transaction_status(payment.transaction_id)

        assert result.status == "completed"
        assert result.success is True
        events = await ledger.list_events(payment.transaction_id)
        assert events[-1].event_type == "payment.reconciled"
        assert events[-1].event_metadata == {"provider_status": "settled"}

    @pytest.mark.asyncio
    async def test_sync_settles_failed(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: TransactionLedger,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        payment = await orchestrator.process_payment(TENANT, "fake", "onclick", make_params())
        fake_provider.status_result = PaymentResult(success=False, status="declined")

        result = await orchestrator.sync_transaction_status(payment.transaction_id)

        assert result.status == "failed"
        transaction = await ledger.get(payment.transaction_id)
        assert transaction.failure_code == "declined"

    @pytest.mark.asyncio
    async def test_sync_in_flight_only_records_poll(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: TransactionLedger,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        payment = await orchestrator.process_payment(TENANT, "fake", "onclick", make_params())
        fake_provider.status_result = PaymentResult(success=True, status="authorized")

        result = await orchestrator.sync_transaction_status(payment.transaction_id)

        assert result.status == "processing"
        assert (await _event_types(ledger, payment.transaction_id))[-1] == "payment.status_polled"

    @pytest.mark.asyncio
    async def test_sync_skips_settled_transactions(
        self,
        orchestrator: PaymentOrchestrator,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        payment = await _completed_payment(orchestrator, make_params)

        result = await orchestrator.sync_transaction_status(payment.transaction_id)

        assert result.status == "completed"
        assert fake_provider.count("get_payment_status") == 0

    @pytest.mark.asyncio
    async def test_sync_raises_on_transport_error(
        self,
        orchestrator: PaymentOrchestrator,
        fake_provider: FakeProvider,
        make_params: Callable[..., PaymentParams],
    ) -> None:
        payment = await orchestrator.process_payment(TENANT, "fake", "onclick", make_params())
        fake_provider.error = ProviderTransportError("down", provider="fake")

        with pytest.raises(ProviderTransportError):
            await orchestrator.sync_transaction_status(payment.transaction_id)


class TestFeeEstimates:
    """Test suite for estimate_provider_fees."""

    @pytest.mark.asyncio
    async def test_estimate(self, orchestrator: PaymentOrchestrator) -> None:
        fees = orchestrator.estimate_provider_fees("fake", Decimal("200.00"))

        assert fees is not None
        assert fees.total_fee == Decimal("2.10")
        assert fees.currency == "EUR"

    @pytest.mark.asyncio
    async def test_unknown_provider(self, orchestrator: PaymentOrchestrator) -> None:
        with pytest.raises(ProviderNotFoundError):
            orchestrator.estimate_provider_fees("acme", Decimal("1.00"))
