"""Configuration module for Telehealth Sync."""

from telehealth_sync.config.base import Settings
from telehealth_sync.config.loader import get_settings

__all__ = ["Settings", "get_settings"]
