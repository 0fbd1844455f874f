"""Provider registry: provider name -> adapter instance."""
from typing import Dict, List, Optional

import structlog

from payment_orchestration.core.exceptions import ProviderNotFoundError
from payment_orchestration.providers.base import PaymentProvider

logger = structlog.get_logger(__name__)


class ProviderRegistry:
    """
    Write-once, read-many map of payment adapters.

    Built at process startup and handed to the orchestrator. Registering a
    name that is already present keeps the existing adapter.
    """

    def __init__(self) -> None:
        self._providers: Dict[str, PaymentProvider] = {}

    def register(self, provider: PaymentProvider) -> None:
        """Register an adapter under its ``name``."""
        if provider.name in self._providers:
            logger.debug("provider_already_registered", provider=provider.name)
            return
        self._providers[provider.name] = provider
        logger.info(
            "provider_registered",
            provider=provider.name,
            supports_moto=provider.supports_moto,
            supports_onclick=provider.supports_onclick,
            supports_recurring=provider.supports_recurring,
            supports_automatic_split=provider.supports_automatic_split,
        )

    def get(self, name: str) -> Optional[PaymentProvider]:
        return self._providers.get(name)

    def require(self, name: str) -> PaymentProvider:
        """
        Look up an adapter or raise.

        Raises:
            ProviderNotFoundError: If ``name`` is not registered
        """
        provider = self._providers.get(name)
        if provider is None:
            raise ProviderNotFoundError(f"Unknown provider: {name}")
        return provider

    def has(self, name: str) -> bool:
        return name in self._providers

    def names(self) -> List[str]:
        return sorted(self._providers)

    def all(self) -> List[PaymentProvider]:
        return [self._providers[name] for name in self.names()]

    def __len__(self) -> int:
        return len(self._providers)

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    async def aclose(self) -> None:
        """Close every adapter's network resources."""
        for provider in self._providers.values():
            await provider.aclose()


def initialize_providers(registry: ProviderRegistry) -> ProviderRegistry:
    """
    Register the built-in adapters.

    Safe to call from several entry points; later calls are no-ops.
    """
    from payment_orchestration.providers.axerve import AxerveProvider
    from payment_orchestration.providers.mangopay import MangopayProvider
    from payment_orchestration.providers.nexi import NexiProvider
    from payment_orchestration.providers.paypal import PayPalProvider
    from payment_orchestration.providers.stripe import StripeProvider

    for provider_cls in (
        StripeProvider,
        NexiProvider,
        AxerveProvider,
        PayPalProvider,
        MangopayProvider,
    ):
        if not registry.has(provider_cls.name):
            registry.register(provider_cls())
    return registry
