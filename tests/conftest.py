"""
Pytest configuration and fixtures.
"""
import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from payment_orchestration.config import Settings
from payment_orchestration.core.contracts import RecurringContractManager
from payment_orchestration.core.exceptions import ConfigurationError
from payment_orchestration.core.ledger import TransactionLedger
from payment_orchestration.core.orchestrator import PaymentOrchestrator
from payment_orchestration.core.schemas import (
    CardData,
    ContractParams,
    ContractResult,
    PaymentParams,
    PaymentResult,
    ProviderFees,
    RefundResult,
    WebhookEvent,
)
from payment_orchestration.core.tenant_config import DatabaseTenantConfigStore
from payment_orchestration.database.connection import (
    create_engine_from_url,
    create_session_factory,
    init_db,
)
from payment_orchestration.providers.base import PaymentProvider, estimate_fees
from payment_orchestration.providers.configs import ProviderTenantConfig
from payment_orchestration.providers.registry import ProviderRegistry

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"


class FakeTenantConfig(ProviderTenantConfig):
    """Configuration accepted by ``FakeProvider``."""

    provider: str = "fake"
    enabled: bool = True
    merchant_id: str = "merchant-1"


class FakeProvider(PaymentProvider):
    """
    Scriptable in-memory provider.

    Every call is recorded in ``calls``; results, raised errors and delays are
    set per test.
    """

    name = "fake"

    supports_moto = True
    supports_onclick = True
    supports_recurring = True
    supports_automatic_split = False

    config_model = FakeTenantConfig

    completed_statuses = frozenset({"settled"})
    failed_statuses = frozenset({"declined"})

    def __init__(self, name: str = "fake", **capabilities: bool):
        self.name = name
        for flag, value in capabilities.items():
            setattr(self, flag, value)

        self.calls: List[Tuple[str, tuple]] = []
        self.error: Optional[Exception] = None
        self.delay = 0.0

        self.payment_result = PaymentResult(
            success=True,
            provider_payment_id="pp_1",
            status="authorized",
            redirect_url="https://pay.example.test/pp_1",
        )
        self.capture_result = PaymentResult(
            success=True, provider_payment_id="pp_1", status="settled"
        )
        self.refund_result = RefundResult(success=True, refund_id="re_1", status="refunded")
        self.status_result = PaymentResult(
            success=True, provider_payment_id="pp_1", status="settled"
        )
        self.contract_result = ContractResult(
            success=True, provider_contract_id="ctr_1", status="pending"
        )

    def count(self, operation: Optional[str] = None) -> int:
        """Number of recorded calls, optionally for one operation."""
        return sum(1 for name, _ in self.calls if operation is None or name == operation)

    async def _respond(self, operation: str, result: Any, *args: Any) -> Any:
        self.calls.append((operation, args))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return result

    def ensure_provisioned(self, config: FakeTenantConfig, payment_type: str) -> None:
        if not config.enabled:
            raise ConfigurationError("Fake provider disabled", error_code="provider_not_enabled")

    async def create_payment(self, config, params: PaymentParams) -> PaymentResult:
        return await self._respond("create_payment", self.payment_result, params)

    async def capture_payment(self, config, provider_payment_id, amount=None, currency="EUR"):
        return await self._respond(
            "capture_payment", self.capture_result, provider_payment_id, amount
        )

    async def refund_payment(self, config, provider_payment_id, amount=None, currency="EUR"):
        return await self._respond(
            "refund_payment", self.refund_result, provider_payment_id, amount
        )

    async def get_payment_status(self, config, provider_payment_id):
        return await self._respond("get_payment_status", self.status_result, provider_payment_id)

    async def create_moto_payment(self, config, params: PaymentParams) -> PaymentResult:
        return await self._respond("create_moto_payment", self.payment_result, params)

    async def create_contract(self, config, params: ContractParams) -> ContractResult:
        return await self._respond("create_contract", self.contract_result, params)

    async def charge_recurring(self, config, provider_contract_id, params):
        return await self._respond(
            "charge_recurring", self.payment_result, provider_contract_id, params
        )

    async def cancel_contract(self, config, provider_contract_id) -> None:
        await self._respond("cancel_contract", None, provider_contract_id)

    async def verify_webhook_signature(self, payload, signature, secret, headers=None) -> bool:
        return signature == secret

    def parse_webhook_event(self, payload: str) -> WebhookEvent:
        event_type, _, event_id = payload.partition(":")
        return WebhookEvent(
            provider=self.name,
            event_type=event_type,
            event_id=event_id,
            timestamp=datetime.now(timezone.utc),
            raw_payload=payload,
        )

    def calculate_fees(self, amount, currency: str) -> ProviderFees:
        return estimate_fees(amount, currency, rate="0.01", fixed_fee="0.10")


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        redis_url="redis://localhost:6379/1",
        app_name="payment-orchestration-test",
        app_env="test",
        log_level="DEBUG",
        provider_timeout_seconds=2.0,
        default_commission_rate=Decimal("0.025"),
        reconciliation_stale_after_seconds=900,
        reconciliation_batch_size=50,
        reconciliation_max_attempts=3,
        stripe_secret_key="sk_test_fake_key_for_testing",
        paypal_client_id="paypal-client",
        paypal_client_secret="paypal-secret",
        mangopay_client_id="platform",
        mangopay_api_key="mangopay-key",
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """File-backed SQLite engine with all tables created."""
    engine = create_engine_from_url(test_settings.database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def ledger(session_factory: async_sessionmaker[AsyncSession]) -> TransactionLedger:
    return TransactionLedger(session_factory)


@pytest_asyncio.fixture
async def config_store(
    session_factory: async_sessionmaker[AsyncSession],
) -> DatabaseTenantConfigStore:
    """Store with ``tenant-a`` configured for the fake provider at a 5% rate."""
    store = DatabaseTenantConfigStore(session_factory)
    await store.set_provider_config(TENANT, "fake", {"enabled": True, "merchant_id": "m-1"})
    await store.set_commission_rate(TENANT, "0.05")
    return store


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def registry(fake_provider: FakeProvider) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(fake_provider)
    return registry


@pytest.fixture
def contracts(
    session_factory: async_sessionmaker[AsyncSession],
    registry: ProviderRegistry,
    config_store: DatabaseTenantConfigStore,
    test_settings: Settings,
) -> RecurringContractManager:
    return RecurringContractManager(session_factory, registry, config_store, test_settings)


@pytest.fixture
def orchestrator(
    registry: ProviderRegistry,
    ledger: TransactionLedger,
    config_store: DatabaseTenantConfigStore,
    contracts: RecurringContractManager,
    test_settings: Settings,
) -> PaymentOrchestrator:
    return PaymentOrchestrator(registry, ledger, config_store, contracts, test_settings)


@pytest.fixture
def make_params() -> Callable[..., PaymentParams]:
    """Factory for payment requests; keyword arguments override the defaults."""

    def _make(**overrides: Any) -> PaymentParams:
        data: Dict[str, Any] = {
            "order_id": "order-1",
            "amount": Decimal("100.00"),
            "currency": "EUR",
            "customer_id": "cust-1",
            "customer_email": "buyer@example.test",
            "return_url": "https://shop.example.test/return",
        }
        data.update(overrides)
        return PaymentParams(**data)

    return _make


@pytest.fixture
def card() -> CardData:
    return CardData(
        card_number="4242424242424242",
        expiry_month=12,
        expiry_year=2030,
        cvv="123",
        cardholder_name="Ada Lovelace",
    )
