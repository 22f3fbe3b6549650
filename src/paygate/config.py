"""Environment-driven settings for the payment orchestrator.

Settings load once at startup. Nested groups use ``__`` as the delimiter, e.g.
``PAYMENTS_HEALTH_CHECK__CACHE_TTL=120``; provider maps are passed as JSON in
``PAYMENTS_PROVIDERS``.
"""

import os
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderConfig(BaseModel):
    """Configuration for a single provider.

    Credentials (``secret_key``, ``client_id``, ``webhook_secret`` ...) are
    provider-specific and kept as extra fields.
    """

    model_config = ConfigDict(extra="allow")

    enabled: bool = True
    driver: Optional[str] = None
    driver_class: Optional[str] = None
    base_url: Optional[str] = None
    timeout: float = 30.0
    currencies: List[str] = Field(default_factory=list)
    reference_prefix: Optional[str] = None
    callback_url: Optional[str] = None
    testing_mode: bool = False

    @field_validator("currencies", mode="before")
    @classmethod
    def _split_currencies(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    def get(self, key: str, default: Any = None) -> Any:
        """Return a declared or extra config value."""
        if key in type(self).model_fields:
            value = getattr(self, key)
        else:
            value = (self.model_extra or {}).get(key)
        return default if value is None else value


class HealthCheckSettings(BaseModel):
    enabled: bool = True
    cache_ttl: int = 300


class WebhookSettings(BaseModel):
    path: str = "/payments/webhook"
    verify_signature: bool = True
    tolerance: int = 300
    rate_limit: str = "120/minute"
    max_attempts: int = 3
    backoff_seconds: float = 60.0
    # falls back to redis_url, then an in-memory transport
    broker_url: Optional[str] = None
    task_always_eager: bool = False


class TransactionLoggingSettings(BaseModel):
    enabled: bool = True


def _default_database_url() -> str:
    return os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./payments.db")


class PaymentsSettings(BaseSettings):
    """Typed view of payment configuration."""

    model_config = SettingsConfigDict(
        env_prefix="PAYMENTS_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    default: Optional[str] = None
    fallback: List[str] = Field(default_factory=list)
    providers: Dict[str, ProviderConfig] = Field(default_factory=dict)
    health_check: HealthCheckSettings = Field(default_factory=HealthCheckSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    logging: TransactionLoggingSettings = Field(default_factory=TransactionLoggingSettings)
    session_cache_ttl: int = 3600
    database_url: str = Field(default_factory=_default_database_url)
    redis_url: Optional[str] = None

    @field_validator("fallback", mode="before")
    @classmethod
    def _coerce_fallback(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    def provider_config(self, name: str) -> Optional[ProviderConfig]:
        return self.providers.get(name)

    def enabled_providers(self) -> List[str]:
        """Provider names with ``enabled`` set, in configuration order."""
        return [name for name, config in self.providers.items() if config.enabled]

    def provider_chain(self) -> List[str]:
        """Default provider followed by the fallback list, without duplicates."""
        chain: List[str] = []
        for name in [self.default, *self.fallback]:
            if name and name not in chain:
                chain.append(name)
        return chain

    def broker_url(self) -> str:
        return self.webhook.broker_url or self.redis_url or "memory://"
