"""
Transaction ledger: the persistent record of every payment attempt.

The ledger is the source of truth for idempotency and audit:
1. ``(tenant_id, idempotency_key)`` is unique at the storage layer, and a
   losing concurrent insert reads back the winner instead of failing
2. Every status change appends an event in the same database transaction
3. Every write is conditional on the row version that was read, so
   concurrent read-modify-writes cannot overwrite each other
4. Events are only ever inserted
"""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional, Tuple, TypeVar, Union

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from payment_orchestration.core.commission import CommissionBreakdown, round_money
from payment_orchestration.core.exceptions import (
    InvalidStatusTransitionError,
    LedgerError,
    TransactionNotFoundError,
)
from payment_orchestration.core.schemas import PaymentType, TransactionStatus
from payment_orchestration.database.connection import run_in_transaction
from payment_orchestration.database.models import PaymentEvent, PaymentTransaction, utcnow

logger = structlog.get_logger(__name__)

T = TypeVar("T")

TransactionId = Union[uuid.UUID, str]

ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    TransactionStatus.PENDING.value: frozenset({"processing", "failed"}),
    TransactionStatus.PROCESSING.value: frozenset({"completed", "failed"}),
    TransactionStatus.COMPLETED.value: frozenset({"partial_refund", "refunded"}),
    TransactionStatus.PARTIAL_REFUND.value: frozenset({"partial_refund", "refunded"}),
    TransactionStatus.FAILED.value: frozenset(),
    TransactionStatus.REFUNDED.value: frozenset(),
}

REFUNDABLE_STATUSES = frozenset({"completed", "partial_refund"})


class RefundReservation(NamedTuple):
    """Amount claimed by ``TransactionLedger.reserve_refund``."""

    amount: Decimal
    previously_refunded: Decimal


def can_transition(current: str, target: str) -> bool:
    """Check whether ``current -> target`` is a legal lifecycle move."""
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def _as_uuid(transaction_id: TransactionId) -> uuid.UUID:
    if isinstance(transaction_id, uuid.UUID):
        return transaction_id
    try:
        return uuid.UUID(str(transaction_id))
    except ValueError as e:
        raise TransactionNotFoundError(f"Transaction not found: {transaction_id}") from e


class TransactionLedger:
    """
    Stores transactions and their append-only event history.

    Each public method runs in its own database transaction obtained from the
    session factory.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """
        Initialize ledger.

        Args:
            session_factory: Async session factory bound to the ledger database
        """
        self.session_factory = session_factory

    async def create(
        self,
        *,
        tenant_id: str,
        order_id: str,
        provider: str,
        payment_type: Union[PaymentType, str],
        gross_amount: Decimal,
        currency: str,
        commission: CommissionBreakdown,
        idempotency_key: Optional[str] = None,
        customer_id: Optional[str] = None,
        customer_email: Optional[str] = None,
        method: Optional[str] = None,
        contract_id: Optional[uuid.UUID] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> tuple[PaymentTransaction, bool]:
        """
        Create a ``pending`` transaction with its ``payment.initiated`` event.

        Args:
            tenant_id: Tenant owning the payment
            order_id: Order being paid
            provider: Provider name
            payment_type: onclick, moto or recurrent
            gross_amount: Gross amount charged
            currency: ISO 4217 currency code
            commission: Commission split computed for this payment
            idempotency_key: Optional caller key, unique per tenant
            customer_id: Optional customer reference
            customer_email: Optional customer email
            method: Optional payment method label
            contract_id: Recurring contract charged, if any
            metadata: Metadata stored on the initial event

        Returns:
            tuple[PaymentTransaction, bool]: The transaction and whether this
            call created it (False when another request with the same
            idempotency key won the insert)

        Raises:
            LedgerError: If the insert fails for any other reason
        """
        payment_type_value = PaymentType(payment_type).value
        transaction = PaymentTransaction(
            tenant_id=tenant_id,
            order_id=order_id,
            idempotency_key=idempotency_key,
            provider=provider,
            payment_type=payment_type_value,
            method=method,
            gross_amount=round_money(gross_amount, currency),
            currency=currency,
            commission_rate=commission.commission_rate,
            commission_amount=commission.commission_amount,
            net_amount=commission.net_amount,
            refunded_amount=Decimal("0"),
            status=TransactionStatus.PENDING.value,
            customer_id=customer_id,
            customer_email=customer_email,
            contract_id=contract_id,
        )
        transaction.events.append(
            PaymentEvent(
                event_type="payment.initiated",
                status=TransactionStatus.PENDING.value,
                event_metadata=metadata or None,
            )
        )

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(transaction)
        except IntegrityError as e:
            if idempotency_key is None:
                raise LedgerError(f"Failed to create transaction: {e.orig}") from e

            existing = await self.find_by_idempotency_key(tenant_id, idempotency_key)
            if existing is None:
                raise LedgerError(f"Failed to create transaction: {e.orig}") from e

            logger.info(
                "transaction_create_lost_race",
                tenant_id=tenant_id,
                idempotency_key=idempotency_key,
                transaction_id=str(existing.id),
            )
            return existing, False

        logger.info(
            "transaction_created",
            transaction_id=str(transaction.id),
            tenant_id=tenant_id,
            order_id=order_id,
            provider=provider,
            payment_type=payment_type_value,
            amount=str(transaction.gross_amount),
            currency=currency,
        )
        return transaction, True

    async def find_by_idempotency_key(
        self, tenant_id: str, idempotency_key: str
    ) -> Optional[PaymentTransaction]:
        """Look up a tenant's transaction by idempotency key."""
        async with self.session_factory() as session:
            stmt = select(PaymentTransaction).where(
                PaymentTransaction.tenant_id == tenant_id,
                PaymentTransaction.idempotency_key == idempotency_key,
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def find_by_id(self, transaction_id: TransactionId) -> Optional[PaymentTransaction]:
        """Load a transaction with its events, or None."""
        try:
            key = _as_uuid(transaction_id)
        except TransactionNotFoundError:
            return None
        async with self.session_factory() as session:
            return await session.get(PaymentTransaction, key)

    async def get(self, transaction_id: TransactionId) -> PaymentTransaction:
        """
        Load a transaction or raise.

        Raises:
            TransactionNotFoundError: If it does not exist
        """
        transaction = await self.find_by_id(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(f"Transaction not found: {transaction_id}")
        return transaction

    async def find_by_provider_payment_id(
        self, provider: str, provider_payment_id: str
    ) -> Optional[PaymentTransaction]:
        """Resolve a transaction from the id a provider reports in webhooks."""
        async with self.session_factory() as session:
            stmt = select(PaymentTransaction).where(
                PaymentTransaction.provider == provider,
                PaymentTransaction.provider_payment_id == provider_payment_id,
            )
            result = await session.execute(stmt)
            return result.scalars().first()

    async def list_events(self, transaction_id: TransactionId) -> List[PaymentEvent]:
        """Return a transaction's events in insertion order."""
        async with self.session_factory() as session:
            stmt = (
                select(PaymentEvent)
                .where(PaymentEvent.transaction_id == _as_uuid(transaction_id))
                .order_by(PaymentEvent.id)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_stale(
        self, status: str, updated_before: datetime, limit: int
    ) -> List[PaymentTransaction]:
        """Transactions in ``status`` not touched since ``updated_before``, oldest first."""
        async with self.session_factory() as session:
            stmt = (
                select(PaymentTransaction)
                .where(
                    PaymentTransaction.status == status,
                    PaymentTransaction.updated_at < updated_before,
                    PaymentTransaction.provider_payment_id.is_not(None),
                )
                .order_by(PaymentTransaction.updated_at)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def append_event(
        self,
        transaction_id: TransactionId,
        event_type: str,
        metadata: Optional[Dict[str, Any]] = None,
        provider_event_id: Optional[str] = None,
    ) -> PaymentEvent:
        """
        Append an event without changing status.

        The event records the transaction's current status.

        Raises:
            TransactionNotFoundError: If the transaction does not exist
        """

        async def work(session: AsyncSession) -> PaymentEvent:
            transaction = await self._lock(session, transaction_id)
            event = PaymentEvent(
                event_type=event_type,
                status=transaction.status,
                event_metadata=metadata or None,
                provider_event_id=provider_event_id,
            )
            transaction.events.append(event)
            # Touch the row so reconciliation sees recent activity
            transaction.updated_at = utcnow()
            return event

        event = await self._write(work)
        logger.info(
            "transaction_event_appended",
            transaction_id=str(transaction_id),
            event_type=event_type,
            status=event.status,
        )
        return event

    async def update_status(
        self,
        transaction_id: TransactionId,
        status: Union[TransactionStatus, str],
        event_type: str,
        *,
        metadata: Optional[Dict[str, Any]] = None,
        provider_payment_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
        failure_code: Optional[str] = None,
        provider_event_id: Optional[str] = None,
    ) -> PaymentTransaction:
        """
        Move a transaction to ``status`` and append the matching event.

        The write is conditional on the row version that was read, and the
        event is inserted in the same database transaction.

        Args:
            transaction_id: Transaction to update
            status: Target status
            event_type: Event recorded for this change
            metadata: Event metadata
            provider_payment_id: Provider id to set, if known
            failure_reason: Reason stored when moving to ``failed``
            failure_code: Code stored when moving to ``failed``
            provider_event_id: Webhook event id that caused the change

        Returns:
            PaymentTransaction: Updated transaction

        Raises:
            TransactionNotFoundError: If the transaction does not exist
            InvalidStatusTransitionError: If the move is not allowed
            LedgerError: If concurrent writers kept winning the row
        """
        target = TransactionStatus(status).value

        async def work(session: AsyncSession) -> Tuple[PaymentTransaction, str]:
            transaction = await self._lock(session, transaction_id)
            previous = transaction.status
            if not can_transition(previous, target):
                raise InvalidStatusTransitionError(previous, target)

            if provider_payment_id is not None:
                transaction.provider_payment_id = provider_payment_id
            if target == TransactionStatus.FAILED.value:
                transaction.failure_reason = failure_reason
                transaction.failure_code = failure_code
            if target == TransactionStatus.COMPLETED.value:
                transaction.completed_at = utcnow()

            self._set_status(transaction, target, event_type, metadata, provider_event_id)
            return transaction, previous

        transaction, previous = await self._write(work)
        logger.info(
            "transaction_status_updated",
            transaction_id=str(transaction.id),
            previous_status=previous,
            status=target,
            event_type=event_type,
        )
        return transaction

    async def reserve_refund(
        self, transaction_id: TransactionId, amount: Optional[Decimal] = None
    ) -> RefundReservation:
        """
        Claim part of a transaction's refundable balance before the provider call.

        ``refunded_amount`` includes claimed amounts, so two refunds racing
        for the same balance cannot both pass the check. The status is not
        changed; see ``record_refund`` and ``release_refund``.

        Args:
            transaction_id: Transaction to refund
            amount: Amount to claim; None claims whatever remains

        Returns:
            RefundReservation: Claimed amount and the total refunded before it

        Raises:
            TransactionNotFoundError: If the transaction does not exist
            LedgerError: ``invalid_transaction_state`` when the transaction is
                not refundable, ``invalid_refund_amount`` when the amount is
                not positive or exceeds what remains
        """

        async def work(session: AsyncSession) -> RefundReservation:
            transaction = await self._lock(session, transaction_id)
            if transaction.status not in REFUNDABLE_STATUSES:
                raise LedgerError(
                    f"Transaction in status '{transaction.status}' cannot be refunded",
                    error_code="invalid_transaction_state",
                )

            already = transaction.refunded_amount
            remaining = transaction.gross_amount - already
            claim = remaining if amount is None else round_money(amount, transaction.currency)
            if claim <= 0 or claim > remaining:
                raise LedgerError(
                    f"Refund amount must be between 0 and {remaining} {transaction.currency}",
                    error_code="invalid_refund_amount",
                )

            transaction.refunded_amount = round_money(already + claim, transaction.currency)
            transaction.updated_at = utcnow()
            return RefundReservation(amount=claim, previously_refunded=already)

        reservation = await self._write(work)
        logger.info(
            "refund_reserved",
            transaction_id=str(transaction_id),
            amount=str(reservation.amount),
        )
        return reservation

    async def release_refund(
        self,
        transaction_id: TransactionId,
        amount: Decimal,
        event_type: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentTransaction:
        """
        Give back a reserved amount after the provider refused the refund.

        The status is left as it is and ``event_type`` is appended.

        Raises:
            TransactionNotFoundError: If the transaction does not exist
            LedgerError: If more would be released than is recorded
        """

        async def work(session: AsyncSession) -> PaymentTransaction:
            transaction = await self._lock(session, transaction_id)
            released = round_money(transaction.refunded_amount - amount, transaction.currency)
            if released < 0:
                raise LedgerError("Released refund exceeds the refunded total")
            transaction.refunded_amount = released
            transaction.updated_at = utcnow()
            transaction.events.append(
                PaymentEvent(
                    event_type=event_type,
                    status=transaction.status,
                    event_metadata=metadata or None,
                )
            )
            return transaction

        transaction = await self._write(work)
        logger.info(
            "refund_released",
            transaction_id=str(transaction_id),
            amount=str(amount),
            event_type=event_type,
        )
        return transaction

    async def record_refund(
        self,
        transaction_id: TransactionId,
        status: Union[TransactionStatus, str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentTransaction:
        """
        Record a refund the provider accepted with a ``payment.refunded`` event.

        The amount was already claimed by ``reserve_refund``. A transaction a
        concurrent full refund has closed stays ``refunded``.

        Raises:
            TransactionNotFoundError: If the transaction does not exist
            InvalidStatusTransitionError: If the transaction is not refundable
        """
        target = TransactionStatus(status).value

        async def work(session: AsyncSession) -> PaymentTransaction:
            transaction = await self._lock(session, transaction_id)
            outcome = transaction.status
            if outcome != TransactionStatus.REFUNDED.value:
                if not can_transition(outcome, target):
                    raise InvalidStatusTransitionError(outcome, target)
                outcome = target
            self._set_status(transaction, outcome, "payment.refunded", metadata, None)
            return transaction

        transaction = await self._write(work)
        logger.info(
            "transaction_refund_recorded",
            transaction_id=str(transaction.id),
            status=transaction.status,
            refunded_amount=str(transaction.refunded_amount),
        )
        return transaction

    async def _write(self, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        try:
            return await run_in_transaction(self.session_factory, work)
        except StaleDataError as e:
            raise LedgerError(
                "Transaction was modified concurrently, try again",
                error_code="concurrent_update",
            ) from e

    @staticmethod
    def _set_status(
        transaction: PaymentTransaction,
        status: str,
        event_type: str,
        metadata: Optional[Dict[str, Any]],
        provider_event_id: Optional[str],
    ) -> None:
        transaction.status = status
        transaction.updated_at = utcnow()
        transaction.events.append(
            PaymentEvent(
                event_type=event_type,
                status=status,
                event_metadata=metadata or None,
                provider_event_id=provider_event_id,
            )
        )

    @staticmethod
    async def _lock(session: AsyncSession, transaction_id: TransactionId) -> PaymentTransaction:
        """SELECT ... FOR UPDATE the transaction row."""
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.id == _as_uuid(transaction_id))
            .with_for_update()
        )
        result = await session.execute(stmt)
        transaction = result.scalar_one_or_none()
        if transaction is None:
            raise TransactionNotFoundError(f"Transaction not found: {transaction_id}")
        return transaction
