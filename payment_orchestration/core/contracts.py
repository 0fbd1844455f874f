"""
Recurring contract manager.

Owns ``RecurringContract`` records: creation through the provider, the
status lifecycle (pending -> active <-> paused -> cancelled / expired) and the
usage accumulators updated after every successful merchant-initiated charge.
Contracts are never deleted.
"""
import asyncio
import uuid
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple, TypeVar, Union

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from payment_orchestration.config import Settings, get_settings
from payment_orchestration.core.commission import Number, round_money
from payment_orchestration.core.exceptions import (
    ConfigurationError,
    ContractError,
    ContractNotFoundError,
    ContractStateError,
    ProviderTransportError,
)
from payment_orchestration.core.schemas import (
    ContractParams,
    ContractResult,
    ContractStatus,
    ContractType,
    PaymentType,
)
from payment_orchestration.core.tenant_config import TenantConfigStore
from payment_orchestration.database.connection import run_in_transaction
from payment_orchestration.database.models import RecurringContract, utcnow
from payment_orchestration.providers.registry import ProviderRegistry

logger = structlog.get_logger(__name__)

T = TypeVar("T")

ContractId = Union[uuid.UUID, str]


def _as_uuid(contract_id: ContractId) -> uuid.UUID:
    if isinstance(contract_id, uuid.UUID):
        return contract_id
    try:
        return uuid.UUID(str(contract_id))
    except ValueError as e:
        raise ContractNotFoundError(f"Contract not found: {contract_id}") from e


class RecurringContractManager:
    """Creates recurring contracts and keeps their schedule and totals."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ProviderRegistry,
        config_store: TenantConfigStore,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize contract manager.

        Args:
            session_factory: Async session factory for the contracts table
            registry: Provider registry
            config_store: Tenant configuration store
            settings: Optional settings override
        """
        self.session_factory = session_factory
        self.registry = registry
        self.config_store = config_store
        self.settings = settings or get_settings()

    async def create_contract(
        self, tenant_id: str, provider_name: str, params: ContractParams
    ) -> ContractResult:
        """
        Establish a recurring authorization with the provider and store it.

        Configuration and capability problems are returned as unsuccessful
        results without contacting the provider.

        Args:
            tenant_id: Tenant owning the contract
            provider_name: Provider issuing the token
            params: Contract request

        Returns:
            ContractResult: Provider outcome plus the local ``contract_id``
        """
        log = logger.bind(tenant_id=tenant_id, provider=provider_name)

        provider = self.registry.get(provider_name)
        if provider is None:
            return ContractResult(
                success=False,
                error=f"Unknown provider: {provider_name}",
                error_code="provider_not_found",
            )
        if not provider.supports_recurring:
            return ContractResult(
                success=False,
                error=f"Provider {provider_name} does not support recurring payments",
                error_code="capability_unsupported",
            )

        raw_config = await self.config_store.get_provider_config(tenant_id, provider_name)
        if raw_config is None:
            return ContractResult(
                success=False,
                error=f"Provider {provider_name} not configured for tenant",
                error_code="provider_not_configured",
            )
        try:
            config = provider.parse_config(raw_config)
            provider.ensure_provisioned(config, PaymentType.RECURRENT.value)
        except ConfigurationError as e:
            return ContractResult(success=False, error=e.message, error_code=e.error_code)

        try:
            result = await asyncio.wait_for(
                provider.create_contract(config, params),
                timeout=self.settings.provider_timeout_seconds,
            )
        except asyncio.TimeoutError:
            log.warning("contract_provider_timeout")
            return ContractResult(
                success=False,
                error=f"{provider_name} did not answer in time",
                error_code="provider_timeout",
            )
        except ProviderTransportError as e:
            log.warning("contract_provider_error", error=e.message)
            return ContractResult(success=False, error=e.message, error_code=e.error_code)

        if not result.success or not result.provider_contract_id:
            log.info("contract_rejected", error=result.error)
            return result.model_copy(update={"success": False})

        next_charge_date = params.first_charge_date
        if (
            next_charge_date is None
            and params.contract_type == ContractType.SCHEDULED
            and params.frequency_days
        ):
            next_charge_date = utcnow().date() + timedelta(days=params.frequency_days)

        status = (
            ContractStatus.ACTIVE.value
            if result.status == ContractStatus.ACTIVE.value
            else ContractStatus.PENDING.value
        )
        contract = RecurringContract(
            tenant_id=tenant_id,
            customer_id=params.customer_id,
            provider=provider_name,
            provider_contract_id=result.provider_contract_id,
            contract_type=params.contract_type.value,
            currency=params.currency,
            frequency_days=params.frequency_days,
            max_amount=(
                round_money(params.max_amount, params.currency)
                if params.max_amount is not None
                else None
            ),
            next_charge_date=next_charge_date,
            expires_at=params.expires_at,
            status=status,
            total_charges=0,
            total_amount_charged=Decimal("0"),
        )
        async with self.session_factory() as session:
            async with session.begin():
                session.add(contract)

        log.info(
            "contract_created",
            contract_id=str(contract.id),
            provider_contract_id=result.provider_contract_id,
            status=status,
        )
        return result.model_copy(update={"contract_id": contract.id, "status": status})

    async def get_contract(self, contract_id: ContractId) -> Optional[RecurringContract]:
        try:
            key = _as_uuid(contract_id)
        except ContractNotFoundError:
            return None
        async with self.session_factory() as session:
            return await session.get(RecurringContract, key)

    async def list_customer_contracts(
        self,
        tenant_id: str,
        customer_id: str,
        statuses: Optional[Iterable[str]] = None,
    ) -> List[RecurringContract]:
        """A customer's contracts, newest first, optionally filtered by status."""
        async with self.session_factory() as session:
            stmt = select(RecurringContract).where(
                RecurringContract.tenant_id == tenant_id,
                RecurringContract.customer_id == customer_id,
            )
            if statuses is not None:
                stmt = stmt.where(RecurringContract.status.in_(list(statuses)))
            result = await session.execute(stmt.order_by(RecurringContract.created_at.desc()))
            return list(result.scalars().all())

    async def _transition(
        self,
        contract_id: ContractId,
        allowed_from: Iterable[str],
        target: str,
        **fields,
    ) -> RecurringContract:
        async def work(session: AsyncSession) -> Tuple[RecurringContract, str]:
            contract = await self._lock(session, contract_id)
            if contract.status not in allowed_from:
                raise ContractStateError(
                    f"Cannot move contract from '{contract.status}' to '{target}'",
                    error_code="invalid_contract_state",
                )
            previous = contract.status
            for name, value in fields.items():
                if value is not None:
                    setattr(contract, name, value)
            contract.status = target
            contract.updated_at = utcnow()
            return contract, previous

        contract, previous = await self._write(work)

        logger.info(
            "contract_status_updated",
            contract_id=str(contract.id),
            previous_status=previous,
            status=target,
        )
        return contract

    async def activate_contract(
        self,
        contract_id: ContractId,
        *,
        token_id: Optional[str] = None,
        card_last_four: Optional[str] = None,
        card_brand: Optional[str] = None,
        card_expiry: Optional[str] = None,
    ) -> RecurringContract:
        """
        Mark a pending contract active once its first CIT has succeeded.

        Only masked card metadata is stored.

        Raises:
            ContractNotFoundError: If the contract does not exist
            ContractStateError: If the contract is not pending
        """
        if card_last_four is not None and len(card_last_four) != 4:
            raise ValueError("card_last_four must be exactly four characters")
        return await self._transition(
            contract_id,
            {ContractStatus.PENDING.value},
            ContractStatus.ACTIVE.value,
            token_id=token_id,
            card_last_four=card_last_four,
            card_brand=card_brand,
            card_expiry=card_expiry,
        )

    async def pause_contract(self, contract_id: ContractId) -> RecurringContract:
        return await self._transition(
            contract_id, {ContractStatus.ACTIVE.value}, ContractStatus.PAUSED.value
        )

    async def resume_contract(self, contract_id: ContractId) -> RecurringContract:
        return await self._transition(
            contract_id, {ContractStatus.PAUSED.value}, ContractStatus.ACTIVE.value
        )

    async def cancel_contract(self, contract_id: ContractId) -> RecurringContract:
        """
        Invalidate the token at the provider, then mark the contract cancelled.

        The provider call comes first so a failed local update never leaves a
        chargeable token behind.

        Raises:
            ContractNotFoundError: If the contract does not exist
            ContractStateError: If it is already cancelled or expired
            ConfigurationError: If the provider or tenant config is missing
            ProviderTransportError: If the provider could not invalidate the token
        """
        contract = await self.get_contract(contract_id)
        if contract is None:
            raise ContractNotFoundError(f"Contract not found: {contract_id}")

        open_statuses = {
            ContractStatus.PENDING.value,
            ContractStatus.ACTIVE.value,
            ContractStatus.PAUSED.value,
        }
        if contract.status not in open_statuses:
            raise ContractStateError(
                f"Contract is already {contract.status}", error_code="invalid_contract_state"
            )

        provider = self.registry.require(contract.provider)
        raw_config = await self.config_store.get_provider_config(
            contract.tenant_id, contract.provider
        )
        if raw_config is None:
            raise ConfigurationError(
                f"Provider {contract.provider} not configured for tenant {contract.tenant_id}"
            )
        config = provider.parse_config(raw_config)

        try:
            await asyncio.wait_for(
                provider.cancel_contract(config, contract.provider_contract_id),
                timeout=self.settings.provider_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise ProviderTransportError(
                f"{contract.provider} did not confirm contract cancellation in time",
                provider=contract.provider,
                error_code="provider_timeout",
                original_error=e,
            ) from e
        logger.info(
            "contract_token_invalidated",
            contract_id=str(contract.id),
            provider=contract.provider,
        )

        return await self._transition(
            contract.id, open_statuses, ContractStatus.CANCELLED.value, cancelled_at=utcnow()
        )

    async def record_charge(
        self,
        contract_id: ContractId,
        amount: Number,
        charged_at: Optional[datetime] = None,
    ) -> RecurringContract:
        """
        Add a successful MIT charge to the contract's accumulators.

        Scheduled contracts move ``next_charge_date`` forward by
        ``frequency_days`` from the charge date. Accumulators never decrease.
        """
        charged_at = charged_at or utcnow()

        async def work(session: AsyncSession) -> Tuple[RecurringContract, Decimal]:
            contract = await self._lock(session, contract_id)
            charge = round_money(amount, contract.currency)
            if charge < 0:
                raise ValueError("Charge amount must not be negative")

            contract.total_charges += 1
            contract.total_amount_charged = round_money(
                contract.total_amount_charged + charge, contract.currency
            )
            contract.last_charge_date = charged_at
            contract.last_charge_amount = charge
            scheduled = contract.contract_type == ContractType.SCHEDULED.value
            if scheduled and contract.frequency_days:
                contract.next_charge_date = charged_at.date() + timedelta(
                    days=contract.frequency_days
                )
            contract.updated_at = utcnow()
            return contract, charge

        contract, charge = await self._write(work)

        logger.info(
            "contract_charge_recorded",
            contract_id=str(contract.id),
            amount=str(charge),
            total_charges=contract.total_charges,
            next_charge_date=str(contract.next_charge_date) if contract.next_charge_date else None,
        )
        return contract

    async def due_contracts(
        self, as_of: date, limit: Optional[int] = None
    ) -> List[RecurringContract]:
        """Active scheduled contracts whose next charge is due on or before ``as_of``."""
        async with self.session_factory() as session:
            stmt = (
                select(RecurringContract)
                .where(
                    RecurringContract.status == ContractStatus.ACTIVE.value,
                    RecurringContract.contract_type == ContractType.SCHEDULED.value,
                    RecurringContract.next_charge_date.is_not(None),
                    RecurringContract.next_charge_date <= as_of,
                )
                .order_by(RecurringContract.next_charge_date)
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def expire_contracts(self, as_of: date) -> int:
        """
        Mark open contracts past their ``expires_at`` date as expired.

        Returns:
            int: Number of contracts expired
        """
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(RecurringContract)
                    .where(
                        RecurringContract.status.in_(
                            [
                                ContractStatus.PENDING.value,
                                ContractStatus.ACTIVE.value,
                                ContractStatus.PAUSED.value,
                            ]
                        ),
                        RecurringContract.expires_at.is_not(None),
                        RecurringContract.expires_at < as_of,
                    )
                    .values(
                        status=ContractStatus.EXPIRED.value,
                        updated_at=utcnow(),
                        version_id=RecurringContract.version_id + 1,
                    )
                )
                expired = result.rowcount

        if expired:
            logger.info("contracts_expired", count=expired, as_of=str(as_of))
        return expired

    async def _write(self, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        try:
            return await run_in_transaction(self.session_factory, work)
        except StaleDataError as e:
            raise ContractError(
                "Contract was modified concurrently, try again", error_code="concurrent_update"
            ) from e

    @staticmethod
    async def _lock(session: AsyncSession, contract_id: ContractId) -> RecurringContract:
        stmt = (
            select(RecurringContract)
            .where(RecurringContract.id == _as_uuid(contract_id))
            .with_for_update()
        )
        result = await session.execute(stmt)
        contract = result.scalar_one_or_none()
        if contract is None:
            raise ContractNotFoundError(f"Contract not found: {contract_id}")
        return contract
