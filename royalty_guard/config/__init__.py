"""
Configuration management for Royalty Guard.

Loads and validates settings from environment variables and optional
.env files. Exposes a single source of truth for all service configuration.
"""

from royalty_guard.config.settings import Settings, get_settings  # noqa: F401

__all__ = ["Settings", "get_settings"]
