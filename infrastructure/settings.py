"""Centralized application settings.

All runtime configuration is read once from the environment into an
immutable :class:`AppSettings` snapshot.  Domain policy (deadlines, fee
rates) is not configuration and lives in ``domain.policies``.
"""

import os
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from typing import Mapping, Optional

from dotenv import load_dotenv


def _to_bool(value: Optional[str], default: bool = False) -> bool:
    """Normalize environment strings such as "true"/"1" into booleans."""
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class AppSettings:
    """Immutable snapshot of runtime configuration values."""

    secret_key: str
    jwt_algorithm: str
    access_token_expire_minutes: int
    currency: str
    default_key_replacement_cost: Decimal
    reservation_reminder_minutes: int
    key_reminder_lead_hours: int
    key_reminder_interval_minutes: int
    sweep_interval_seconds: int
    log_level: str
    log_dir: Optional[str]
    production_mode: bool


def load_settings(env: Optional[Mapping[str, str]] = None) -> AppSettings:
    """Load configuration from the environment and fall back to defaults."""
    if env is None:
        load_dotenv(override=False)
        env = os.environ

    return AppSettings(
        # In production SECRET_KEY must come from the environment
        secret_key=env.get("SECRET_KEY", "dev-secret-key-change-me"),
        jwt_algorithm=env.get("JWT_ALGORITHM", "HS256"),
        access_token_expire_minutes=int(env.get("ACCESS_TOKEN_EXPIRE_MINUTES", "30")),
        currency=env.get("CURRENCY", "PLN"),
        default_key_replacement_cost=Decimal(env.get("DEFAULT_KEY_REPLACEMENT_COST", "100")),
        reservation_reminder_minutes=int(env.get("RESERVATION_REMINDER_MINUTES", "60")),
        key_reminder_lead_hours=int(env.get("KEY_REMINDER_LEAD_HOURS", "2")),
        key_reminder_interval_minutes=int(env.get("KEY_REMINDER_INTERVAL_MINUTES", "60")),
        sweep_interval_seconds=int(env.get("SWEEP_INTERVAL_SECONDS", "0")),
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
        log_dir=env.get("LOG_DIR") or None,
        production_mode=_to_bool(env.get("PRODUCTION_MODE"), default=False),
    )


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Return the process-wide settings snapshot."""
    return load_settings()
