"""db-mapper: entity mapping, unit-of-work sessions and schema migrations.

Declare entities once; derive Create/Public/Update views from them, persist
instances through an async unit of work, and evolve the storage schema with
planned, reviewable migrations.

Usage:
    from db_mapper import EntityDescriptor, SchemaRegistry, field
    from db_mapper import Instance, Mapper, MemoryStorage
    from db_mapper import get_adapter, load_db_config
"""

__version__ = "0.1.0"

# Adapters
from db_mapper.adapters.base import DatabaseClient
from db_mapper.adapters.memory import MemoryStorage
from db_mapper.adapters.postgres import AsyncPostgresAdapter

# Config
from db_mapper.config.loader import load_db_config
from db_mapper.config.models import DatabaseConfig, DatabaseProfile, MapperSettings

# Factory
from db_mapper.factory import (
    ProfileNotFoundError,
    connect_and_validate,
    get_adapter,
    resolve_url,
)

# Mapping
from db_mapper.mapping import (
    EntityDescriptor,
    FieldKind,
    RelationshipDeclaration,
    RelationshipKind,
    SchemaRegistry,
    ViewKind,
    derive_view,
    field,
)

# Sessions
from db_mapper.session import CommitResult, Instance, LifecycleState, Session

# Migrations
from db_mapper.migrations import MigrationPlan, MigrationPlanner, MigrationResult

# Facade
from db_mapper.mapper import Mapper

__all__ = [
    # Adapters
    "DatabaseClient",
    "AsyncPostgresAdapter",
    "MemoryStorage",
    # Config
    "load_db_config",
    "DatabaseProfile",
    "DatabaseConfig",
    "MapperSettings",
    # Factory
    "get_adapter",
    "connect_and_validate",
    "ProfileNotFoundError",
    "resolve_url",
    # Mapping
    "EntityDescriptor",
    "FieldKind",
    "RelationshipDeclaration",
    "RelationshipKind",
    "SchemaRegistry",
    "ViewKind",
    "derive_view",
    "field",
    # Sessions
    "CommitResult",
    "Instance",
    "LifecycleState",
    "Session",
    # Migrations
    "MigrationPlan",
    "MigrationPlanner",
    "MigrationResult",
    # Facade
    "Mapper",
]
