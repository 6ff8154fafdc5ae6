"""Mapper facade: sessions, views and migrations for one registry.

Usage:
    registry = SchemaRegistry()
    registry.register(team)
    registry.register(hero)

    mapper = Mapper(registry, MemoryStorage())
    plan = await mapper.diff()
    await mapper.apply(plan)

    async with mapper.session() as session:
        session.stage_create(Instance("Team", name="Preventers", headquarters="Sharp Tower"))
        await session.commit()

    HeroCreate = mapper.derive_view("Hero", "create").model()
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from db_mapper.adapters.base import DatabaseClient
from db_mapper.config.models import MapperSettings
from db_mapper.mapping.registry import SchemaRegistry
from db_mapper.mapping.views import EntityView, ViewKind, derive_view
from db_mapper.migrations.planner import MigrationPlanner, MigrationResult
from db_mapper.migrations.steps import MigrationPlan
from db_mapper.schema.models import DatabaseSchema
from db_mapper.session.unit_of_work import Session

logger = logging.getLogger(__name__)


class Mapper:
    """Entry point tying a registry to a storage collaborator.

    Relationships are validated on construction if the caller has not done
    so already.

    Args:
        registry: Registry holding every entity descriptor.
        storage: Storage collaborator (``AsyncPostgresAdapter``,
            ``MemoryStorage``, or anything implementing ``DatabaseClient``).
        settings: ``[mapper]`` settings from db.toml.
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        storage: DatabaseClient,
        settings: MapperSettings | None = None,
    ) -> None:
        if not registry.is_validated:
            registry.validate_relationships()
        self.registry = registry
        self.storage = storage
        self.settings = settings or MapperSettings(version_column=registry.version_column)
        self._planner = MigrationPlanner(registry, storage)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def open(self) -> Session:
        """Open a session on a fresh storage connection.

        The caller owns the session and must ``close()`` it; prefer
        ``session()``.
        """
        connection = await self.storage.connect()
        return Session(self.registry, connection)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[Session]:
        """Open a session that is closed on every exit path."""
        session = await self.open()
        try:
            yield session
        finally:
            await session.close()

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def derive_view(self, entity_name: str, kind: ViewKind | str) -> EntityView:
        """Derive the *kind* view of the entity named *entity_name*.

        Raises:
            UnknownEntity: No entity has that name.
            ValueError: *kind* is not a view kind.
        """
        descriptor = self.registry.resolve(entity_name)
        return derive_view(descriptor, ViewKind(kind))

    # ------------------------------------------------------------------
    # Migrations
    # ------------------------------------------------------------------

    async def diff(
        self,
        snapshot: DatabaseSchema | None = None,
        defaults: dict[str, Any] | None = None,
    ) -> MigrationPlan:
        """Plan the migration from *snapshot* (or the live schema) to the model."""
        return await self._planner.diff(snapshot, defaults)

    async def apply(
        self,
        plan: MigrationPlan,
        confirm_destructive: bool | None = None,
        dry_run: bool = False,
    ) -> MigrationResult:
        """Apply *plan*.

        ``confirm_destructive`` falls back to the ``confirm_destructive``
        setting when omitted.
        """
        if confirm_destructive is None:
            confirm_destructive = self.settings.confirm_destructive
        return await self._planner.apply(plan, confirm_destructive, dry_run)

    async def close(self) -> None:
        """Release the storage collaborator."""
        await self.storage.close()
