"""
Access policy configuration loader.

Loads tunables from config/access_policy.yml and applies environment
overrides on top. Values are read once per process; the refund service,
resolver and reconciliation job receive the resulting AccessSettings
explicitly.

Usage:
    from gateflow.config.settings import get_settings

    settings = get_settings()
    settings.expiring_soon_days
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "access_policy.yml"

# Environment variable -> settings field
_ENV_OVERRIDES = {
    "GATEFLOW_EXPIRING_SOON_DAYS": "expiring_soon_days",
    "GATEFLOW_AVAILABILITY_ENDING_SOON_DAYS": "availability_ending_soon_days",
    "GATEFLOW_REFUND_LOCK_TTL_SECONDS": "refund_lock_ttl_seconds",
    "GATEFLOW_REFUND_FINALIZE_RETRIES": "refund_finalize_retries",
    "GATEFLOW_REFUND_FINALIZE_BACKOFF_SECONDS": "refund_finalize_backoff_seconds",
    "STRIPE_SECRET_KEY": "stripe_secret_key",
    "STRIPE_API_BASE": "stripe_api_base",
    "GATEFLOW_JWT_SECRET": "jwt_secret",
    "DATABASE_URL": "database_url",
}


@dataclass
class AccessSettings:
    """Runtime configuration for the access core."""
    expiring_soon_days: int = 3
    availability_ending_soon_days: int = 7
    refund_lock_ttl_seconds: int = 300
    refund_finalize_retries: int = 3
    refund_finalize_backoff_seconds: float = 0.5
    max_refund_amount: int = 99_999_999
    stripe_secret_key: Optional[str] = None
    stripe_api_base: str = "https://api.stripe.com"
    stripe_timeout_seconds: float = 30.0
    jwt_secret: Optional[str] = None
    database_url: Optional[str] = None

    @classmethod
    def from_mapping(cls, raw: Dict[str, Any]) -> "AccessSettings":
        """Build settings from a dict, coercing values to the declared field types."""
        known = {f.name: f for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in raw.items():
            field_def = known.get(key)
            if field_def is None:
                logger.warning("Ignoring unknown access policy key", extra={"key": key})
                continue
            values[key] = _coerce(value, field_def.default)
        return cls(**values)


def _coerce(value: Any, default: Any) -> Any:
    if value is None:
        return None
    if isinstance(default, bool):
        return str(value).lower() in ("1", "true", "yes")
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return value


def _resolve_path(config_path: Optional[str] = None) -> Optional[Path]:
    if config_path:
        return Path(config_path)

    env_path = os.getenv("GATEFLOW_CONFIG_PATH")
    if env_path:
        return Path(env_path)

    candidates = [
        Path(__file__).parent.parent.parent / "config" / CONFIG_FILENAME,
        Path(os.getcwd()) / "config" / CONFIG_FILENAME,
    ]
    for p in candidates:
        resolved = p.resolve()
        if resolved.exists():
            return resolved
    return None


def load_settings(config_path: Optional[str] = None) -> AccessSettings:
    """
    Load settings from YAML (if present) and environment overrides.

    Args:
        config_path: Explicit YAML path; falls back to GATEFLOW_CONFIG_PATH
            and then config/access_policy.yml

    Returns:
        AccessSettings instance
    """
    raw: Dict[str, Any] = {}
    path = _resolve_path(config_path)

    if path is not None and path.exists():
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
        logger.info("Loaded access policy config", extra={"path": str(path)})
    else:
        logger.debug("access_policy.yml not found, using defaults")

    for env_name, field_name in _ENV_OVERRIDES.items():
        env_value = os.getenv(env_name)
        if env_value is not None and env_value != "":
            raw[field_name] = env_value

    return AccessSettings.from_mapping(raw)


_settings: Optional[AccessSettings] = None
_settings_lock = Lock()


def get_settings() -> AccessSettings:
    """Get the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        with _settings_lock:
            if _settings is None:
                _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (tests only)."""
    global _settings
    with _settings_lock:
        _settings = None
