"""API-layer configuration loaded from environment variables."""

from __future__ import annotations

from enum import Enum
from typing import Self

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEV_VAULT_KEY = "tenantry-dev-vault-key-change-in-production"
_DEV_SESSION_SECRET = "tenantry-dev-session-secret-change-in-production"


class PlatformEnv(str, Enum):
    """Deployment environment labels."""

    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class ProvisioningProvider(str, Enum):
    """Backends able to create a tenant's isolated database and bucket."""

    MOCK = "mock"
    HTTP = "http"


class APISettings(BaseSettings):
    """FastAPI application settings.

    All values can be overridden via environment variables prefixed with
    ``API_`` (e.g. ``API_DATABASE_URL=...``) or through a ``.env`` file in
    the working directory.
    """

    model_config = SettingsConfigDict(
        env_prefix="API_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    platform_env: PlatformEnv = PlatformEnv.DEV

    # Control-plane database (asyncpg in production, aiosqlite locally).
    database_url: str = "sqlite+aiosqlite:///.tenantry/control-plane.db"

    # Public base URL of the web app; used for checkout and portal return URLs.
    app_url: str = "http://localhost:3000"

    cors_origins: list[str] = ["http://localhost:3000"]
    cors_allow_credentials: bool = True

    structured_logging: bool = False

    # Credential Vault secret.  Key material is derived from it once per process.
    credential_encryption_key: SecretStr = SecretStr(_DEV_VAULT_KEY)

    # Signing secret for session and tenant tokens.
    session_secret: SecretStr = SecretStr(_DEV_SESSION_SECRET)
    session_ttl_seconds: int = 7 * 24 * 3600
    tenant_token_ttl_seconds: int = 15 * 60

    # One-time codes and invites.
    otp_ttl_seconds: int = 600
    otp_max_attempts: int = 3
    invite_ttl_days: int = 7

    # Data-plane router.
    router_cache_size: int = 128
    router_connect_timeout: float = 10.0

    # Provisioning.
    provisioning_provider: ProvisioningProvider = ProvisioningProvider.MOCK
    infra_api_url: str = "http://localhost:8100"
    infra_api_token: SecretStr = SecretStr("")
    infra_timeout: float = 120.0
    infra_max_retries: int = 3
    mock_data_dir: str = ".tenantry/tenants"

    # Stripe billing integration.
    billing_enabled: bool = False
    stripe_secret_key: SecretStr = SecretStr("")
    stripe_webhook_secret: SecretStr = SecretStr("")
    stripe_price_id_starter_monthly: str = ""
    stripe_price_id_starter_yearly: str = ""
    stripe_price_id_professional_monthly: str = ""
    stripe_price_id_professional_yearly: str = ""
    stripe_price_id_enterprise_monthly: str = ""
    stripe_price_id_enterprise_yearly: str = ""

    # Transactional email API.
    email_api_url: str = ""
    email_api_key: SecretStr = SecretStr("")
    email_from: str = "Tenantry <noreply@tenantry.dev>"

    @model_validator(mode="after")
    def _validate_cors_credentials_not_wildcard(self) -> Self:
        """Reject wildcard origins when credentials are enabled."""
        if self.cors_allow_credentials and "*" in self.cors_origins:
            raise ValueError(
                "Cannot use wildcard origins with credentials. "
                "Specify explicit origins instead of '*' when "
                "cors_allow_credentials=True."
            )
        return self

    @model_validator(mode="after")
    def _validate_secrets_outside_dev(self) -> Self:
        """Refuse to run staging or production with the built-in dev secrets."""
        if self.platform_env == PlatformEnv.DEV:
            return self
        if self.credential_encryption_key.get_secret_value() in ("", _DEV_VAULT_KEY):
            raise ValueError(f"API_CREDENTIAL_ENCRYPTION_KEY must be set when platform_env={self.platform_env.value}.")
        if self.session_secret.get_secret_value() in ("", _DEV_SESSION_SECRET):
            raise ValueError(f"API_SESSION_SECRET must be set when platform_env={self.platform_env.value}.")
        return self

    @property
    def stripe_configured(self) -> bool:
        """``True`` when the payment processor can actually be called."""
        return self.billing_enabled and bool(self.stripe_secret_key.get_secret_value())

    def price_id_for(self, plan: str, billing_cycle: str) -> str:
        """Return the configured Stripe price id for *plan* / *billing_cycle* (may be empty)."""
        return str(getattr(self, f"stripe_price_id_{plan}_{billing_cycle}", "") or "")

    def plan_for_price_id(self, price_id: str) -> tuple[str, str] | None:
        """Reverse lookup of :meth:`price_id_for`."""
        if not price_id:
            return None
        for plan in ("starter", "professional", "enterprise"):
            for cycle in ("monthly", "yearly"):
                if self.price_id_for(plan, cycle) == price_id:
                    return plan, cycle
        return None


def load_api_settings() -> APISettings:
    """Construct settings from the environment / ``.env`` file."""
    return APISettings()
