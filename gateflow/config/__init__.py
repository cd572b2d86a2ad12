"""Configuration for the access core."""

from gateflow.config.settings import (
    AccessSettings,
    get_settings,
    load_settings,
    reset_settings,
)

__all__ = ["AccessSettings", "get_settings", "load_settings", "reset_settings"]
