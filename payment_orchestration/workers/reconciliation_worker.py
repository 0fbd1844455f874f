"""
Reconciliation background worker.

Every ``reconciliation_interval_seconds`` it polls providers for stale
``processing`` transactions and expires lapsed recurring contracts.
"""
import argparse
import asyncio
import signal
from dataclasses import dataclass
from typing import Optional

import structlog

from payment_orchestration.config import Settings, get_settings
from payment_orchestration.core.contracts import RecurringContractManager
from payment_orchestration.core.ledger import TransactionLedger
from payment_orchestration.core.orchestrator import PaymentOrchestrator
from payment_orchestration.core.reconciliation import ReconciliationEngine
from payment_orchestration.core.tenant_config import DatabaseTenantConfigStore
from payment_orchestration.database.connection import close_db, get_session_factory
from payment_orchestration.database.models import utcnow
from payment_orchestration.monitoring.logging import setup_logging
from payment_orchestration.providers.registry import ProviderRegistry, initialize_providers

logger = structlog.get_logger(__name__)


@dataclass
class Worker:
    """Collaborators the worker drives on every tick."""

    engine: ReconciliationEngine
    contracts: RecurringContractManager
    registry: ProviderRegistry


def build_worker(settings: Optional[Settings] = None) -> Worker:
    """Wire the ledger, providers and orchestrator from settings."""
    settings = settings or get_settings()
    session_factory = get_session_factory()
    registry = initialize_providers(ProviderRegistry())
    ledger = TransactionLedger(session_factory)
    config_store = DatabaseTenantConfigStore(session_factory)
    contracts = RecurringContractManager(session_factory, registry, config_store, settings)
    orchestrator = PaymentOrchestrator(registry, ledger, config_store, contracts, settings)
    return Worker(
        engine=ReconciliationEngine(orchestrator, ledger, settings),
        contracts=contracts,
        registry=registry,
    )


async def run_tick(worker: Worker) -> None:
    """One reconciliation pass plus contract expiry."""
    await worker.engine.run_once()
    await worker.contracts.expire_contracts(utcnow().date())


async def start_reconciliation_worker(
    interval_seconds: Optional[int] = None, once: bool = False
) -> None:
    """
    Start the reconciliation worker.

    Args:
        interval_seconds: Pause between ticks (defaults to settings)
        once: Run a single tick and exit
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.reconciliation_interval_seconds
    worker = build_worker(settings)

    logger.info("reconciliation_worker_starting", interval_seconds=interval, once=once)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        while not stop.is_set():
            try:
                await run_tick(worker)
            except Exception as e:
                # Keep the worker alive; the next tick retries
                logger.exception("reconciliation_execution_error", error=str(e))

            if once:
                break
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await worker.registry.aclose()
        await close_db()
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Payment reconciliation worker")
    parser.add_argument(
        "--interval", type=int, default=None, help="Seconds between reconciliation sweeps"
    )
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    args = parser.parse_args()

    asyncio.run(start_reconciliation_worker(interval_seconds=args.interval, once=args.once))


if __name__ == "__main__":
    main()
