"""Configuration and logging helpers."""

from .config import GuardSettings, load_settings
from .log_setup import configure_logging

__all__ = ["GuardSettings", "load_settings", "configure_logging"]
