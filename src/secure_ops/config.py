"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup, so a malformed value fails fast with a clear error message.

Usage:
    from secure_ops.config import get_settings
    settings = get_settings()
    print(settings.meta_tx_deadline_seconds)
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SECONDS_PER_DAY = 86_400
GWEI = 10**9


class Settings(BaseSettings):
    """Central configuration for the secure operations workflow engine."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # --- Persistence ---
    storage_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    storage_key_prefix: str = "secure-ops"

    # --- Chain ---
    chain_id: int = 31337
    simulate_chain: bool = True
    broadcast_timeout_seconds: float = 120.0
    chain_read_attempts: int = 3

    # --- Time-lock policy ---
    timelock_min_days: int = 1
    timelock_max_days: int = 30
    timelock_default_days: int = 7

    # --- Meta-transaction defaults ---
    meta_tx_deadline_seconds: int = 3600  # 1 hour
    meta_tx_max_gas_price_wei: int = 50 * GWEI
    meta_tx_signature_validity_seconds: int = 86400  # 24 hours
    eip712_domain_name: str = "SecureOperation"
    eip712_domain_version: str = "1"

    @model_validator(mode="after")
    def _check_timelock_bounds(self) -> Settings:
        if not 1 <= self.timelock_min_days <= self.timelock_max_days:
            raise ValueError("timelock_min_days must be >= 1 and <= timelock_max_days")
        if not self.timelock_min_days <= self.timelock_default_days <= self.timelock_max_days:
            raise ValueError("timelock_default_days must lie within the time-lock bounds")
        return self

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def timelock_bounds_seconds(self) -> tuple[int, int]:
        """Inclusive (min, max) time-lock period in seconds."""
        return (
            self.timelock_min_days * SECONDS_PER_DAY,
            self.timelock_max_days * SECONDS_PER_DAY,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
