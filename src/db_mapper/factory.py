"""Storage adapter factory.

Profiles come from ``db.toml`` (see ``db_mapper.config``).  The active
profile is chosen by explicit name, then the ``{prefix}DB_PROFILE``
environment variable, then the ``.db-profile`` lock file written by a
successful ``connect_and_validate()``.

Usage:
    >>> result = await connect_and_validate(registry, "local")
    >>> storage = await get_adapter()
    >>> mapper = Mapper(registry, storage)
"""

import logging
import os
from pathlib import Path
from urllib.parse import quote

from db_mapper.adapters import DatabaseClient
from db_mapper.adapters.memory import MemoryStorage
from db_mapper.adapters.postgres import AsyncPostgresAdapter
from db_mapper.config import load_db_config
from db_mapper.config.models import ConnectionResult, DatabaseConfig, DatabaseProfile
from db_mapper.mapping.registry import SchemaRegistry
from db_mapper.schema.comparator import compare_schema
from db_mapper.schema.introspector import SchemaIntrospector

logger = logging.getLogger(__name__)

# Profile lock file path
_PROFILE_LOCK_FILE = Path.cwd() / ".db-profile"


# ============================================================================
# Profile Lock File Operations
# ============================================================================


class ProfileNotFoundError(Exception):
    """Raised when no database profile is configured."""

    pass


def read_profile_lock() -> str | None:
    """Read profile name from lock file.

    Returns:
        Profile name if lock file exists, None otherwise
    """
    if _PROFILE_LOCK_FILE.exists():
        return _PROFILE_LOCK_FILE.read_text().strip()
    return None


def write_profile_lock(profile_name: str) -> None:
    """Write profile name to lock file.

    Only call this after successful schema validation.
    """
    _PROFILE_LOCK_FILE.write_text(profile_name)


def clear_profile_lock() -> None:
    """Remove profile lock file."""
    if _PROFILE_LOCK_FILE.exists():
        _PROFILE_LOCK_FILE.unlink()


def get_active_profile_name(env_prefix: str = "") -> str:
    """Get active profile name from env var or lock file.

    Priority:
    1. ``{env_prefix}DB_PROFILE`` env var
    2. .db-profile file (validated profile from previous connect)
    3. Raise ProfileNotFoundError

    Args:
        env_prefix: Prefix for the environment variable, e.g. ``"MYAPP_"``

    Raises:
        ProfileNotFoundError: If no profile is configured
    """
    env_var = f"{env_prefix}DB_PROFILE"
    env_profile = os.environ.get(env_var)
    if env_profile:
        return env_profile

    lock_profile = read_profile_lock()
    if lock_profile:
        return lock_profile

    raise ProfileNotFoundError(
        "No database profile configured.\n"
        f"Set {env_var}=<name> or call db_mapper.factory.connect_and_validate(registry, <name>).\n"
        "Profiles are defined in db.toml under [profiles.<name>]."
    )


def get_active_profile(
    env_prefix: str = "",
    config: DatabaseConfig | None = None,
) -> tuple[str, DatabaseProfile]:
    """Get active profile name and configuration.

    Raises:
        ProfileNotFoundError: If no profile configured
        KeyError: If profile not found in db.toml
    """
    profile_name = get_active_profile_name(env_prefix)
    if config is None:
        config = load_db_config()

    if profile_name not in config.profiles:
        raise KeyError(
            f"Profile '{profile_name}' not found in db.toml.\n"
            f"Available profiles: {', '.join(config.profiles.keys())}"
        )

    return profile_name, config.profiles[profile_name]


def resolve_url(profile: DatabaseProfile) -> str:
    """Resolve profile URL with password substitution.

    Args:
        profile: Database profile from config

    Returns:
        Connection URL with ``[YOUR-PASSWORD]`` replaced by the URL-encoded
        ``db_password``
    """
    url = profile.url
    if profile.db_password and "[YOUR-PASSWORD]" in url:
        url = url.replace("[YOUR-PASSWORD]", quote(profile.db_password, safe=""))
    return url


def _build_adapter(
    profile: DatabaseProfile,
    config: DatabaseConfig,
    jsonb_columns: list[str] | None = None,
) -> DatabaseClient:
    if profile.provider == "memory":
        return MemoryStorage()
    return AsyncPostgresAdapter(
        database_url=resolve_url(profile),
        jsonb_columns=jsonb_columns,
        schema_name=config.mapper.schema_name,
    )


# ============================================================================
# Connection and Validation
# ============================================================================


async def connect_and_validate(
    registry: SchemaRegistry,
    profile_name: str | None = None,
    env_prefix: str = "",
    validate_only: bool = False,
) -> ConnectionResult:
    """Connect to a profile's database and compare it with the declared model.

    On success the profile name is written to the lock file so later
    ``get_adapter()`` calls pick it up.  Memory profiles have no persistent
    schema and always validate.

    Args:
        registry: Registry with validated relationships.
        profile_name: Profile name from db.toml.  If None, uses the
            ``{env_prefix}DB_PROFILE`` env var or the lock file.
        env_prefix: Prefix for the profile environment variable.
        validate_only: Compare only; never write the lock file.

    Returns:
        ConnectionResult with success status and the schema diff

    Example:
        >>> result = await connect_and_validate(registry, "local")
        >>> if not result.success:
        ...     print(result.schema_report.format_report())
    """
    if profile_name is None:
        try:
            profile_name = get_active_profile_name(env_prefix)
        except ProfileNotFoundError as e:
            return ConnectionResult(success=False, error=str(e))

    try:
        config = load_db_config()
    except FileNotFoundError as e:
        return ConnectionResult(success=False, error=str(e))

    if profile_name not in config.profiles:
        available = ", ".join(config.profiles.keys())
        return ConnectionResult(
            success=False,
            profile_name=profile_name,
            error=f"Profile '{profile_name}' not found. Available: {available}",
        )
    profile = config.profiles[profile_name]

    if profile.provider == "memory":
        if not validate_only:
            write_profile_lock(profile_name)
        return ConnectionResult(success=True, profile_name=profile_name, schema_valid=True)

    try:
        async with SchemaIntrospector(resolve_url(profile)) as introspector:
            actual = await introspector.introspect(config.mapper.schema_name)
    except Exception as e:
        logger.warning(f"Failed to connect to profile '{profile_name}': {e}")
        return ConnectionResult(
            success=False,
            profile_name=profile_name,
            error=f"Failed to connect to database: {e}",
        )

    report = compare_schema(registry.database_schema(), actual)

    if report.is_empty:
        if not validate_only:
            write_profile_lock(profile_name)
        logger.info(f"Connected to profile '{profile_name}'")
        return ConnectionResult(
            success=True,
            profile_name=profile_name,
            schema_valid=True,
            schema_report=report,
        )

    return ConnectionResult(
        success=False,
        profile_name=profile_name,
        schema_valid=False,
        schema_report=report,
        error="Schema drift detected; run a migration first",
    )


# ============================================================================
# Storage Adapter Factory
# ============================================================================


async def get_adapter(
    profile_name: str | None = None,
    env_prefix: str = "",
    database_url: str | None = None,
    jsonb_columns: list[str] | None = None,
) -> DatabaseClient:
    """Create a storage adapter.  A new adapter is returned on every call.

    Args:
        profile_name: Profile from db.toml.  Resolved from the environment
            or lock file when omitted.
        env_prefix: Prefix for the profile environment variable.
        database_url: Direct PostgreSQL URL; profiles are ignored when given.
        jsonb_columns: Columns stored as JSONB (PostgreSQL only).

    Raises:
        ProfileNotFoundError: If no profile is configured
        KeyError: If the named profile is not in db.toml

    Example:
        >>> storage = await get_adapter(database_url="postgresql://localhost/heroes")
    """
    if database_url:
        return AsyncPostgresAdapter(database_url=database_url, jsonb_columns=jsonb_columns)

    if profile_name is None:
        # Raises ProfileNotFoundError before touching db.toml
        get_active_profile_name(env_prefix)

    config = load_db_config()
    if profile_name is None:
        profile_name, profile = get_active_profile(env_prefix, config)
    elif profile_name in config.profiles:
        profile = config.profiles[profile_name]
    else:
        raise KeyError(
            f"Profile '{profile_name}' not found in db.toml.\n"
            f"Available profiles: {', '.join(config.profiles.keys())}"
        )

    logger.debug(f"Creating {profile.provider} adapter for profile '{profile_name}'")
    return _build_adapter(profile, config, jsonb_columns)
