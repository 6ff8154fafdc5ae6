"""Configuration management: profiles, TOML loading, and config models.

Usage:
    >>> from db_mapper.config import load_db_config, DatabaseProfile, DatabaseConfig
"""

from db_mapper.config.loader import load_db_config
from db_mapper.config.models import DatabaseConfig, DatabaseProfile, MapperSettings

__all__ = ["load_db_config", "DatabaseConfig", "DatabaseProfile", "MapperSettings"]
