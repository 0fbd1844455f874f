"""
Reconciliation sweep for transactions stuck in ``processing``.

Webhooks can be delayed or lost, and a timed-out provider call leaves the
true outcome unknown. The sweep polls ``get_payment_status`` for transactions
idle longer than ``reconciliation_stale_after_seconds`` and settles them.
Payments are never re-submitted.
"""
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from payment_orchestration.config import Settings, get_settings
from payment_orchestration.core.exceptions import ConfigurationError, ProviderTransportError
from payment_orchestration.core.ledger import TransactionLedger
from payment_orchestration.core.orchestrator import PaymentOrchestrator
from payment_orchestration.core.schemas import PaymentResult, TransactionStatus
from payment_orchestration.database.models import PaymentTransaction, utcnow
from payment_orchestration.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ReconciliationEngine:
    """
    Polls providers for stale ``processing`` transactions.

    Each poll is retried a bounded number of times with exponential backoff;
    a transaction that still cannot be polled is left for the next sweep.
    """

    def __init__(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: TransactionLedger,
        settings: Optional[Settings] = None,
        retry_wait: Optional[wait_base] = None,
    ):
        """
        Initialize reconciliation engine.

        Args:
            orchestrator: Orchestrator used to sync each transaction
            ledger: Ledger queried for stale transactions
            settings: Optional settings override
            retry_wait: Backoff between poll attempts (tests pass ``wait_none()``)
        """
        self.orchestrator = orchestrator
        self.ledger = ledger
        self.settings = settings or get_settings()
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)

    async def _poll(self, transaction: PaymentTransaction) -> PaymentResult:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(ProviderTransportError),
            stop=stop_after_attempt(self.settings.reconciliation_max_attempts),
            wait=self.retry_wait,
            reraise=True,
        ):
            with attempt:
                result = await self.orchestrator.sync_transaction_status(transaction.id)
        return result

    async def run_once(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Run one sweep.

        Args:
            now: Reference time (defaults to the current UTC time)

        Returns:
            Dict[str, Any]: Counts of scanned, completed, failed, pending and
            errored transactions
        """
        started = time.perf_counter()
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.settings.reconciliation_stale_after_seconds)

        stale = await self.ledger.list_stale(
            TransactionStatus.PROCESSING.value,
            updated_before=cutoff,
            limit=self.settings.reconciliation_batch_size,
        )
        summary = {"scanned": len(stale), "completed": 0, "failed": 0, "pending": 0, "errors": 0}

        for transaction in stale:
            log = logger.bind(transaction_id=str(transaction.id), provider=transaction.provider)
            try:
                result = await self._poll(transaction)
            except (ProviderTransportError, ConfigurationError) as e:
                log.warning("reconciliation_poll_failed", error=e.message, error_code=e.error_code)
                summary["errors"] += 1
                continue

            if result.status == TransactionStatus.COMPLETED.value:
                summary["completed"] += 1
                metrics.record_reconciliation_resolved("completed")
            elif result.status == TransactionStatus.FAILED.value:
                summary["failed"] += 1
                metrics.record_reconciliation_resolved("failed")
            else:
                summary["pending"] += 1

        metrics.record_reconciliation_run(time.perf_counter() - started)
        logger.info("reconciliation_sweep_completed", cutoff=cutoff.isoformat(), **summary)
        return summary
