"""Renta-Engine configuration via pydantic-settings."""

import warnings
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

_INSECURE_DEFAULTS = {
    "api_key": "insecure-admin-key-change-me",
}


class RentaSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RENTA_")

    environment: str = "development"
    log_level: str = "INFO"

    # Database
    db_url: str = "sqlite+aiosqlite:///./data/renta.db"
    db_busy_timeout: float = 15.0  # seconds, SQLite only

    # API
    api_title: str = "Renta-Engine"
    api_version: str = "0.1.0"
    api_key: str = "insecure-admin-key-change-me"
    host: str = "0.0.0.0"
    port: int = 8080
    api_prefix: str = ""
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Payment provider (Mercado Pago compatible REST API)
    payment_provider_url: str = "https://api.mercadopago.com"
    payment_provider_token: str = ""
    payment_provider_timeout: float = 10.0  # seconds
    payment_provider_max_attempts: int = 3
    payment_provider_backoff: float = 0.5  # seconds, doubled per attempt
    notification_url: str = ""

    # Device command channel
    redis_url: str = "redis://localhost:6379/0"
    device_topic_prefix: str = "machines"
    device_telemetry_enabled: bool = True

    # Realtime notifications
    realtime_send_timeout: float = 2.0  # seconds per client channel

    # Rental rules
    safety_ceiling_minutes: float = 30
    max_session_minutes: int = 30
    price_per_minute: float = 1.0

    # Reconciliation
    sweeper_enabled: bool = True
    sweeper_interval: float = 60  # seconds
    # Unset leaves unpaid pending sessions alone.
    pending_session_grace_minutes: Optional[int] = None

    def validate_for_production(self) -> None:
        """Raise if insecure defaults are used in non-development environments."""
        insecure_fields = [
            field
            for field, default in _INSECURE_DEFAULTS.items()
            if getattr(self, field) == default
        ]

        if self.environment != "development" and insecure_fields:
            env_vars = ", ".join(f"RENTA_{f.upper()}" for f in insecure_fields)
            raise RuntimeError(
                f"Insecure default values detected in '{self.environment}' environment. "
                f"Set these environment variables to secure values: {env_vars}."
            )

        if self.environment != "development" and not self.payment_provider_token:
            raise RuntimeError(
                "RENTA_PAYMENT_PROVIDER_TOKEN must be set outside development"
            )

        if insecure_fields:
            warnings.warn(
                "Using insecure default operator key; set RENTA_API_KEY for production",
                UserWarning,
                stacklevel=2,
            )


@lru_cache
def get_settings() -> RentaSettings:
    settings = RentaSettings()
    settings.validate_for_production()
    return settings
