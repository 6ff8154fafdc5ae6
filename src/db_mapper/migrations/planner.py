"""Migration planner -- diff the declared model against live storage.

``MigrationPlanner.diff()`` compares the table representation of the
registered entities with a schema snapshot and emits a ``MigrationPlan``.
``MigrationPlanner.apply()`` runs a plan one phase group per transaction.

Rules:
    - new field -> ``AddColumn``.  Non-nullable columns need a backfill:
      an operator default (``defaults["table.column"]``) or the field's
      literal default.  Otherwise ``UnsafeNonNullableAddition``.
    - removed field -> ``DropColumn`` (destructive)
    - type / length / nullability mismatch -> ``AlterColumn``
    - missing table -> ``CreateTable``, parents first; foreign keys follow
      as ``AddConstraint`` steps once every table exists
    - extra table -> ``DropTable`` (destructive), children first
    - renames are never inferred: a renamed field is a drop plus an add

Usage:
    planner = MigrationPlanner(registry, storage)
    plan = await planner.diff(defaults={"user.email": ""})
    print(plan.format_report())
    result = await planner.apply(plan, confirm_destructive=True)
"""

import logging
from typing import Any

from pydantic import BaseModel, Field

from db_mapper.adapters.base import DatabaseClient
from db_mapper.errors import (
    DestructiveChangeRefused,
    FailedAtStep,
    UnknownEntity,
    UnsafeNonNullableAddition,
)
from db_mapper.mapping.registry import SchemaRegistry
from db_mapper.migrations.steps import (
    AddColumn,
    AddConstraint,
    AlterColumn,
    CreateIndex,
    CreateTable,
    DropColumn,
    DropConstraint,
    DropIndex,
    DropTable,
    MigrationPlan,
    MigrationStep,
)
from db_mapper.ordering import topological_sort
from db_mapper.schema.comparator import compare_schema
from db_mapper.schema.models import ColumnSchema, DatabaseSchema, TableSchema

logger = logging.getLogger(__name__)


class MigrationResult(BaseModel):
    """Result of applying a migration plan.

    Attributes:
        success: True if every step was applied (or the run was a dry run).
        dry_run: True if nothing was executed.
        planned: Number of steps in the plan.
        applied: Number of steps applied.
        statements: SQL rendering of the plan, in order.
    """

    success: bool = False
    dry_run: bool = False
    planned: int = 0
    applied: int = 0
    statements: list[str] = Field(default_factory=list)


def _table_dependencies(schema: DatabaseSchema) -> dict[str, set[str]]:
    return {name: table.referenced_tables() for name, table in schema.tables.items()}


def _bare_table(table: TableSchema) -> TableSchema:
    """Copy of *table* without foreign keys and indexes."""
    return TableSchema(
        name=table.name,
        columns={name: col.model_copy() for name, col in table.columns.items()},
        constraints={
            name: c.model_copy()
            for name, c in table.constraints.items()
            if c.constraint_type != "FOREIGN KEY"
        },
    )


class MigrationPlanner:
    """Plans and applies schema migrations for one registry and one storage.

    Args:
        registry: Registry with validated relationships.
        storage: Storage collaborator providing ``introspect()`` and
            transactions for DDL.
    """

    def __init__(self, registry: SchemaRegistry, storage: DatabaseClient) -> None:
        self._registry = registry
        self._storage = storage

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _backfill(self, table: str, column: ColumnSchema, defaults: dict[str, Any]) -> Any:
        """Value existing rows receive for a new non-nullable column."""
        key = f"{table}.{column.name}"
        if key in defaults:
            return defaults[key]
        if column.default is not None or column.autoincrement:
            return None
        try:
            descriptor = self._registry.resolve_table(table)
        except UnknownEntity:
            raise UnsafeNonNullableAddition(table, column.name) from None
        f = descriptor.get_field(column.name)
        if f is None or f.default is None:
            raise UnsafeNonNullableAddition(table, column.name)
        return f.default

    def plan(
        self,
        expected: DatabaseSchema,
        actual: DatabaseSchema,
        defaults: dict[str, Any] | None = None,
    ) -> MigrationPlan:
        """Build the plan turning *actual* into *expected*.  Pure, no I/O.

        Raises:
            UnsafeNonNullableAddition: A non-nullable column would be added
                without a backfill value.
        """
        defaults = defaults or {}
        diff = compare_schema(expected, actual)
        steps: list[MigrationStep] = []

        missing = {t.name: t for t in diff.missing_tables}
        for name in topological_sort(_table_dependencies(expected), list(missing)):
            table = missing[name]
            steps.append(CreateTable(_bare_table(table)))
            for fk in table.foreign_keys:
                steps.append(AddConstraint(name, fk))
            for index in table.indexes.values():
                steps.append(CreateIndex(name, index))

        for table_diff in diff.tables:
            name = table_diff.table
            for column in table_diff.missing_columns:
                backfill = None
                if not column.is_nullable:
                    backfill = self._backfill(name, column, defaults)
                steps.append(AddColumn(name, column, backfill))
            for column in table_diff.extra_columns:
                steps.append(DropColumn(name, column))
            for change in table_diff.changed_columns:
                steps.append(AlterColumn(name, change.actual, change.expected))
            for constraint in table_diff.missing_constraints:
                steps.append(AddConstraint(name, constraint))
            for constraint in table_diff.extra_constraints:
                steps.append(DropConstraint(name, constraint))
            for index in table_diff.missing_indexes:
                steps.append(CreateIndex(name, index))
            for index in table_diff.extra_indexes:
                steps.append(DropIndex(name, index))

        extra = {t.name: t for t in diff.extra_tables}
        drop_order = list(reversed(topological_sort(_table_dependencies(actual), list(extra))))
        for name in drop_order:
            steps.append(DropTable(extra[name]))

        steps.sort(key=lambda s: s.phase)
        return MigrationPlan(steps=steps)

    async def diff(
        self,
        snapshot: DatabaseSchema | None = None,
        defaults: dict[str, Any] | None = None,
    ) -> MigrationPlan:
        """Diff the registered model against *snapshot*.

        Args:
            snapshot: Live schema.  Introspected from storage when omitted.
            defaults: Backfill values for new non-nullable columns, keyed
                ``"table.column"``.

        Raises:
            UnsafeNonNullableAddition: A non-nullable column has no backfill.
        """
        if snapshot is None:
            snapshot = await self._storage.introspect()
        plan = self.plan(self._registry.database_schema(), snapshot, defaults)
        logger.info(
            f"Planned migration: {len(plan.steps)} steps "
            f"({len(plan.destructive_steps)} destructive)"
        )
        return plan

    # ------------------------------------------------------------------
    # Applying
    # ------------------------------------------------------------------

    async def apply(
        self,
        plan: MigrationPlan,
        confirm_destructive: bool = False,
        dry_run: bool = False,
    ) -> MigrationResult:
        """Apply *plan*, one transaction per phase group.

        Args:
            plan: Plan from ``diff()`` (or ``MigrationPlan.reversed()``).
            confirm_destructive: Must be True to run plans that drop tables
                or columns.
            dry_run: Report the plan without executing it.

        Returns:
            ``MigrationResult`` with outcome.

        Raises:
            DestructiveChangeRefused: The plan drops data and was not confirmed.
            FailedAtStep: A step failed.  Groups applied before it stay applied.

        Example:
            result = await planner.apply(plan, confirm_destructive=True)
            print(f"Applied {result.applied} of {result.planned} steps")
        """
        result = MigrationResult(
            dry_run=dry_run,
            planned=len(plan.steps),
            statements=[step.to_sql() for step in plan.steps],
        )

        if plan.is_empty:
            result.success = True
            return result

        # Dry run just returns the plan info
        if dry_run:
            result.success = True
            return result

        destructive = plan.destructive_steps
        if destructive and not confirm_destructive:
            logger.warning(
                f"Refusing migration with {len(destructive)} destructive step(s): "
                + ", ".join(step.describe() for step in destructive)
            )
            raise DestructiveChangeRefused(
                f"Plan has {len(destructive)} destructive step(s); "
                f"pass confirm_destructive=True to apply it"
            )

        conn = await self._storage.connect()
        try:
            for group in plan.groups():
                position, step = group[0]
                try:
                    async with conn.transaction() as txn:
                        for position, step in group:
                            logger.debug(f"Step {position}: {step.describe()}")
                            await step.forward(txn)
                except Exception as e:
                    logger.error(f"Migration failed at step {position} ({step.describe()}): {e}")
                    raise FailedAtStep(position, step, result.applied, e) from e
                result.applied += len(group)
        finally:
            await conn.close()

        result.success = True
        logger.info(f"Applied migration: {result.applied} steps")
        return result
