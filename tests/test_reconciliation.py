"""
Tests for the reconciliation sweep and its worker tick.
"""
from datetime import timedelta

import pytest
from tenacity import wait_none

from conftest import TENANT, FakeProvider
from payment_orchestration.config import Settings
from payment_orchestration.core.exceptions import ProviderTransportError
from payment_orchestration.core.ledger import TransactionLedger
from payment_orchestration.core.orchestrator import PaymentOrchestrator
from payment_orchestration.core.reconciliation import ReconciliationEngine
from payment_orchestration.core.schemas import PaymentResult
from payment_orchestration.database.models import utcnow
from payment_orchestration.workers.reconciliation_worker import Worker, run_tick


@pytest.fixture
def engine_under_test(
    orchestrator: PaymentOrchestrator, ledger: TransactionLedger, test_settings: Settings
) -> ReconciliationEngine:
    return ReconciliationEngine(orchestrator, ledger, test_settings, retry_wait=wait_none())


def _later():
    return utcnow() + timedelta(hours=1)


async def _processing_payment(orchestrator: PaymentOrchestrator, make_params, key: str):
    result = await orchestrator.process_payment(
        TENANT, "fake", "onclick", make_params(idempotency_key=key)
    )
    assert result.success is True
    return result.transaction_id


class TestReconciliationEngine:
    """Test suite for ReconciliationEngine.run_once."""

    @pytest.mark.asyncio
    async def test_recent_transactions_are_left_alone(
        self,
        engine_under_test: ReconciliationEngine,
        orchestrator: PaymentOrchestrator,
        fake_provider: FakeProvider,
        make_params,
    ) -> None:
        await _processing_payment(orchestrator, make_params, "key-1")

        summary = await engine_under_test.run_once()

        assert summary["scanned"] == 0
        assert fake_provider.count("get_payment_status") == 0

    @pytest.mark.asyncio
    async def test_settled_payment_is_completed(
        self,
        engine_under_test: ReconciliationEngine,
        orchestrator: PaymentOrchestrator,
        ledger: TransactionLedger,
        make_params,
    ) -> None:
        transaction_id = await _processing_payment(orchestrator, make_params, "key-1")

        summary = await engine_under_test.run_once(now=_later())

        assert summary == {"scanned": 1, "completed": 1, "failed": 0, "pending": 0, "errors": 0}
        transaction = await ledger.get(transaction_id)
        assert transaction.status == "completed"
        assert transaction.events[-1].event_type == "payment.reconciled"

    @pytest.mark.asyncio
    async def test_declined_and_in_flight(
        self,
        engine_under_test: ReconciliationEngine,
        orchestrator: PaymentOrchestrator,
        fake_provider: FakeProvider,
        ledger: TransactionLedger,
        make_params,
    ) -> None:
        declined = await _processing_payment(orchestrator, make_params, "key-1")
        fake_provider.status_result = PaymentResult(success=False, status="declined")
        summary = await engine_under_test.run_once(now=_later())
        assert summary["failed"] == 1
        assert (await ledger.get(declined)).status == "failed"

        in_flight = await _processing_payment(orchestrator, make_params, "key-2")
        fake_provider.status_result = PaymentResult(success=True, status="authorized")
        summary = await engine_under_test.run_once(now=_later())
        assert summary["scanned"] == 1
        assert summary["pending"] == 1
        assert (await ledger.get(in_flight)).status == "processing"

    @pytest.mark.asyncio
    async def test_poll_failures_are_retried_then_counted(
        self,
        engine_under_test: ReconciliationEngine,
        orchestrator: PaymentOrchestrator,
        fake_provider: FakeProvider,
        ledger: TransactionLedger,
        make_params,
    ) -> None:
        transaction_id = await _processing_payment(orchestrator, make_params, "key-1")
        fake_provider.error = ProviderTransportError("unreachable", provider="fake")

        summary = await engine_under_test.run_once(now=_later())

        assert summary["errors"] == 1
        assert fake_provider.count("get_payment_status") == 3
        assert (await ledger.get(transaction_id)).status == "processing"

    @pytest.mark.asyncio
    async def test_transient_failure_recovers_within_sweep(
        self,
        engine_under_test: ReconciliationEngine,
        orchestrator: PaymentOrchestrator,
        fake_provider: FakeProvider,
        make_params,
        mocker,
    ) -> None:
        await _processing_payment(orchestrator, make_params, "key-1")
        poll = mocker.patch.object(
            fake_provider,
            "get_payment_status",
            side_effect=[
                ProviderTransportError("blip", provider="fake"),
                PaymentResult(success=True, provider_payment_id="pp_1", status="settled"),
            ],
        )

        summary = await engine_under_test.run_once(now=_later())

        assert summary["completed"] == 1
        assert summary["errors"] == 0
        assert poll.call_count == 2

    @pytest.mark.asyncio
    async def test_batch_size_limits_sweep(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: TransactionLedger,
        test_settings: Settings,
        make_params,
    ) -> None:
        for key in ("key-1", "key-2", "key-3"):
            await _processing_payment(orchestrator, make_params, key)
        settings = test_settings.model_copy(update={"reconciliation_batch_size": 2})
        engine = ReconciliationEngine(orchestrator, ledger, settings, retry_wait=wait_none())

        first = await engine.run_once(now=_later())
        second = await engine.run_once(now=_later())

        assert first["scanned"] == 2
        assert second["scanned"] == 1


class TestWorkerTick:
    """Test suite for the worker's per-tick work."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_tick_sweeps_and_expires(self, mocker) -> None:
        engine = mocker.Mock(spec=ReconciliationEngine)
        engine.run_once = mocker.AsyncMock(return_value={"scanned": 0})
        contracts = mocker.Mock()
        contracts.expire_contracts = mocker.AsyncMock(return_value=0)

        await run_tick(Worker(engine=engine, contracts=contracts, registry=mocker.Mock()))

        engine.run_once.assert_awaited_once()
        contracts.expire_contracts.assert_awaited_once_with(utcnow().date())
