"""
strata configuration.

Pydantic-based settings read from STRATA_* environment variables and .env files.
"""

from strata.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
