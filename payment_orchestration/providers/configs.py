"""
Typed per-tenant provider configuration.

Tenant configuration is stored as an opaque JSON blob per provider. Each
adapter validates it into its own model before use, so a malformed blob is
reported as a configuration error instead of failing deep inside a provider
call.
"""
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr

Environment = Literal["sandbox", "production"]


class ProviderTenantConfig(BaseModel):
    """Base class for tenant-level provider settings."""

    model_config = ConfigDict(extra="ignore", frozen=True)


class StripeTenantConfig(ProviderTenantConfig):
    """Stripe Connect connected account."""

    provider: Literal["stripe"] = "stripe"
    account_id: str = Field(min_length=1)
    account_status: Literal["pending", "active", "restricted"] = "active"
    charges_enabled: bool = False
    payouts_enabled: bool = False


class NexiTenantConfig(ProviderTenantConfig):
    """Nexi XPay terminal."""

    provider: Literal["nexi"] = "nexi"
    api_key: SecretStr
    terminal_id: Optional[str] = None
    environment: Environment = "sandbox"
    enabled: bool = True
    moto_enabled: bool = False
    recurring_enabled: bool = False


class AxerveTenantConfig(ProviderTenantConfig):
    """Axerve (GestPay) shop."""

    provider: Literal["axerve"] = "axerve"
    shop_login: str = Field(min_length=1)
    api_key: SecretStr
    environment: Environment = "sandbox"
    enabled: bool = True
    moto_profile: bool = False
    recurring_enabled: bool = False


class PayPalTenantConfig(ProviderTenantConfig):
    """PayPal Commerce Platform merchant onboarded under the platform account."""

    provider: Literal["paypal"] = "paypal"
    merchant_id: str = Field(min_length=1)
    enabled: bool = True


class MangopayTenantConfig(ProviderTenantConfig):
    """Mangopay user and wallet credited by payments."""

    provider: Literal["mangopay"] = "mangopay"
    user_id: str = Field(min_length=1)
    wallet_id: str = Field(min_length=1)
    bank_account_id: Optional[str] = None
    kyc_level: Literal["LIGHT", "REGULAR"] = "LIGHT"
    status: Literal["pending", "active", "blocked"] = "pending"
