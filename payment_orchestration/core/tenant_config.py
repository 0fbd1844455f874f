"""
Tenant configuration store.

The orchestrator only needs two lookups: a tenant's opaque configuration
blob for a provider, and the tenant's platform commission rate. The blob is
validated by the provider adapter at the point of use.
"""
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_orchestration.core.commission import Number, to_decimal
from payment_orchestration.core.exceptions import CommissionError
from payment_orchestration.database.models import (
    TenantCommissionRate,
    TenantPaymentConfig,
    utcnow,
)

logger = structlog.get_logger(__name__)


class TenantConfigStore(Protocol):
    """Read side used by the orchestrator and contract manager."""

    async def get_provider_config(
        self, tenant_id: str, provider: str
    ) -> Optional[Dict[str, Any]]:
        ...

    async def get_commission_rate(self, tenant_id: str) -> Optional[Decimal]:
        ...


class DatabaseTenantConfigStore:
    """Tenant configuration kept in ``tenant_payment_configs`` / ``tenant_commission_rates``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_provider_config(
        self, tenant_id: str, provider: str
    ) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            stmt = select(TenantPaymentConfig.config).where(
                TenantPaymentConfig.tenant_id == tenant_id,
                TenantPaymentConfig.provider == provider,
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def get_commission_rate(self, tenant_id: str) -> Optional[Decimal]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(TenantCommissionRate.commission_rate).where(
                    TenantCommissionRate.tenant_id == tenant_id
                )
            )
            return result.scalar_one_or_none()

    async def set_provider_config(
        self, tenant_id: str, provider: str, config: Dict[str, Any]
    ) -> None:
        """Insert or replace a tenant's configuration for one provider."""
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(TenantPaymentConfig)
                    .where(
                        TenantPaymentConfig.tenant_id == tenant_id,
                        TenantPaymentConfig.provider == provider,
                    )
                    .with_for_update()
                )
                row = result.scalar_one_or_none()
                if row is None:
                    session.add(
                        TenantPaymentConfig(tenant_id=tenant_id, provider=provider, config=config)
                    )
                else:
                    row.config = config
                    row.updated_at = utcnow()

        logger.info("tenant_provider_config_saved", tenant_id=tenant_id, provider=provider)

    async def set_commission_rate(self, tenant_id: str, rate: Number) -> None:
        """
        Insert or replace a tenant's commission rate.

        Raises:
            CommissionError: If ``rate`` is outside [0, 1]
        """
        value = to_decimal(rate)
        if value < 0 or value > 1:
            raise CommissionError(f"Commission rate must be between 0 and 1, got {value}")

        async with self.session_factory() as session:
            async with session.begin():
                row = await session.get(TenantCommissionRate, tenant_id, with_for_update=True)
                if row is None:
                    session.add(TenantCommissionRate(tenant_id=tenant_id, commission_rate=value))
                else:
                    row.commission_rate = value
                    row.updated_at = utcnow()

        logger.info("tenant_commission_rate_saved", tenant_id=tenant_id, rate=str(value))
