"""Engine settings loaded from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from telecom_tax.exceptions import ConfigurationError

_ENV_PREFIX = "TAX_ENGINE_"


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_int(name: str, value: Optional[str], default: int, minimum: int = 0) -> int:
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value)
    except ValueError:
        raise ConfigurationError(name, value, "expected an integer") from None
    if parsed < minimum:
        raise ConfigurationError(name, value, f"must be >= {minimum}")
    return parsed


@dataclass(frozen=True)
class EngineSettings:
    cache_enabled: bool = True
    cache_ttl_seconds: int = 3600
    cache_max_entries: int = 10000
    database_url: Optional[str] = None
    log_level: str = "INFO"
    log_json: bool = False
    expiring_soon_days: int = 30


def load_settings(environ: Optional[Mapping[str, str]] = None) -> EngineSettings:
    env = os.environ if environ is None else environ

    def get(key: str) -> Optional[str]:
        return env.get(_ENV_PREFIX + key)

    log_level = (get("LOG_LEVEL") or "INFO").strip().upper()
    if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise ConfigurationError(_ENV_PREFIX + "LOG_LEVEL", log_level, "unknown level")

    return EngineSettings(
        cache_enabled=_parse_bool(get("CACHE_ENABLED"), True),
        cache_ttl_seconds=_parse_int(_ENV_PREFIX + "CACHE_TTL", get("CACHE_TTL"), 3600),
        cache_max_entries=_parse_int(
            _ENV_PREFIX + "CACHE_MAX_ENTRIES", get("CACHE_MAX_ENTRIES"), 10000, minimum=1
        ),
        database_url=get("DATABASE_URL") or None,
        log_level=log_level,
        log_json=_parse_bool(get("LOG_JSON"), False),
        expiring_soon_days=_parse_int(
            _ENV_PREFIX + "EXPIRING_SOON_DAYS", get("EXPIRING_SOON_DAYS"), 30
        ),
    )
