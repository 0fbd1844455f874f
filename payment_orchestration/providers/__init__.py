"""Payment provider adapters and the registry that holds them."""
from .base import PaymentProvider
from .configs import ProviderTenantConfig
from .registry import ProviderRegistry, initialize_providers
from .webhooks import WebhookProcessor

__all__ = [
    "PaymentProvider",
    "ProviderRegistry",
    "ProviderTenantConfig",
    "WebhookProcessor",
    "initialize_providers",
]
