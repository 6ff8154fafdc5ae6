"""Pydantic models for db-mapper configuration."""

from typing import Literal

from pydantic import BaseModel, Field

from db_mapper.mapping.registry import DEFAULT_VERSION_COLUMN
from db_mapper.schema.models import SchemaDiff


# ============================================================================
# Configuration Models
# ============================================================================


class DatabaseProfile(BaseModel):
    """Database connection profile from db.toml."""

    url: str = ""
    description: str = ""
    db_password: str | None = None  # For [YOUR-PASSWORD] placeholder substitution
    provider: Literal["postgres", "memory"] = "postgres"


class MapperSettings(BaseModel):
    """The ``[mapper]`` table of db.toml."""

    version_column: str = DEFAULT_VERSION_COLUMN
    schema_name: str = "public"
    confirm_destructive: bool = False


class DatabaseConfig(BaseModel):
    """Complete configuration from db.toml."""

    profiles: dict[str, DatabaseProfile]
    mapper: MapperSettings = Field(default_factory=MapperSettings)


# ============================================================================
# Connection Result
# ============================================================================


class ConnectionResult(BaseModel):
    """Result of connect_and_validate()."""

    success: bool
    profile_name: str | None = None
    schema_valid: bool = False
    schema_report: SchemaDiff | None = None
    error: str | None = None
