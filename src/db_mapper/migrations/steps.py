"""Migration steps and plans.

Each step is one reversible structural change.  Steps know how to run
themselves against a ``StorageTransaction`` (``forward``), how to undo
themselves (``inverse``), and how to render as SQL for review
(``to_sql``).

Steps run in phases so that every step finds what it needs already in
place:

    1. DROP_CONSTRAINT   5. ALTER_COLUMN      9. DROP_TABLE
    2. DROP_INDEX        6. ADD_CONSTRAINT
    3. CREATE_TABLE      7. CREATE_INDEX
    4. ADD_COLUMN        8. DROP_COLUMN

Usage:
    from db_mapper.migrations.steps import AddColumn, MigrationPlan

    plan = MigrationPlan(steps=[AddColumn("hero", email_column, backfill="")])
    print(plan.to_sql())
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, ClassVar

from db_mapper.adapters.base import StorageTransaction
from db_mapper.schema import ddl
from db_mapper.schema.models import ColumnSchema, ConstraintSchema, IndexSchema, TableSchema


class Phase(IntEnum):
    DROP_CONSTRAINT = 1
    DROP_INDEX = 2
    CREATE_TABLE = 3
    ADD_COLUMN = 4
    ALTER_COLUMN = 5
    ADD_CONSTRAINT = 6
    CREATE_INDEX = 7
    DROP_COLUMN = 8
    DROP_TABLE = 9


class MigrationStep:
    """Base class for migration steps."""

    phase: ClassVar[Phase]
    destructive: ClassVar[bool] = False

    async def forward(self, txn: StorageTransaction) -> None:
        raise NotImplementedError

    def inverse(self) -> "MigrationStep":
        raise NotImplementedError

    def to_sql(self) -> str:
        raise NotImplementedError

    def describe(self) -> str:
        raise NotImplementedError


# ------------------------------------------------------------------
# Tables
# ------------------------------------------------------------------


@dataclass
class CreateTable(MigrationStep):
    """Create a table with its columns, primary key and unique constraints."""

    table: TableSchema
    phase: ClassVar[Phase] = Phase.CREATE_TABLE

    async def forward(self, txn: StorageTransaction) -> None:
        await txn.create_table(self.table)

    def inverse(self) -> "DropTable":
        return DropTable(self.table)

    def to_sql(self) -> str:
        statements = [ddl.create_table_sql(self.table, include_foreign_keys=True)]
        statements += [ddl.create_index_sql(self.table.name, i) for i in self.table.indexes.values()]
        return "\n".join(statements)

    def describe(self) -> str:
        return f"create table {self.table.name}"


@dataclass
class DropTable(MigrationStep):
    """Drop a table and all its rows."""

    table: TableSchema
    phase: ClassVar[Phase] = Phase.DROP_TABLE
    destructive: ClassVar[bool] = True

    async def forward(self, txn: StorageTransaction) -> None:
        await txn.drop_table(self.table.name)

    def inverse(self) -> CreateTable:
        return CreateTable(self.table)

    def to_sql(self) -> str:
        return ddl.drop_table_sql(self.table.name)

    def describe(self) -> str:
        return f"drop table {self.table.name}"


# ------------------------------------------------------------------
# Columns
# ------------------------------------------------------------------


@dataclass
class AddColumn(MigrationStep):
    """Add a column; existing rows receive ``backfill`` when given."""

    table: str
    column: ColumnSchema
    backfill: Any = None
    phase: ClassVar[Phase] = Phase.ADD_COLUMN

    async def forward(self, txn: StorageTransaction) -> None:
        await txn.add_column(self.table, self.column, self.backfill)

    def inverse(self) -> "DropColumn":
        return DropColumn(self.table, self.column)

    def to_sql(self) -> str:
        return ddl.add_column_sql(self.table, self.column, self.backfill)

    def describe(self) -> str:
        return f"add column {self.table}.{self.column.name}"


@dataclass
class DropColumn(MigrationStep):
    """Drop a column and its values.

    The inverse re-adds the column but cannot bring the values back.
    """

    table: str
    column: ColumnSchema
    phase: ClassVar[Phase] = Phase.DROP_COLUMN
    destructive: ClassVar[bool] = True

    async def forward(self, txn: StorageTransaction) -> None:
        await txn.drop_column(self.table, self.column.name)

    def inverse(self) -> AddColumn:
        return AddColumn(self.table, self.column)

    def to_sql(self) -> str:
        return ddl.drop_column_sql(self.table, self.column.name)

    def describe(self) -> str:
        return f"drop column {self.table}.{self.column.name}"


@dataclass
class AlterColumn(MigrationStep):
    """Change a column's type, length or nullability."""

    table: str
    old: ColumnSchema
    new: ColumnSchema
    phase: ClassVar[Phase] = Phase.ALTER_COLUMN

    async def forward(self, txn: StorageTransaction) -> None:
        await txn.alter_column(self.table, self.old, self.new)

    def inverse(self) -> "AlterColumn":
        return AlterColumn(self.table, self.new, self.old)

    def to_sql(self) -> str:
        return ddl.alter_column_sql(self.table, self.old, self.new)

    def describe(self) -> str:
        changes = []
        if (self.old.data_type, self.old.max_length) != (self.new.data_type, self.new.max_length):
            changes.append(f"type {self.old.data_type} -> {self.new.data_type}")
        if self.old.is_nullable != self.new.is_nullable:
            changes.append("nullable" if self.new.is_nullable else "not null")
        return f"alter column {self.table}.{self.new.name} ({', '.join(changes)})"


# ------------------------------------------------------------------
# Constraints and indexes
# ------------------------------------------------------------------


@dataclass
class AddConstraint(MigrationStep):
    table: str
    constraint: ConstraintSchema
    phase: ClassVar[Phase] = Phase.ADD_CONSTRAINT

    async def forward(self, txn: StorageTransaction) -> None:
        await txn.add_constraint(self.table, self.constraint)

    def inverse(self) -> "DropConstraint":
        return DropConstraint(self.table, self.constraint)

    def to_sql(self) -> str:
        return ddl.add_constraint_sql(self.table, self.constraint)

    def describe(self) -> str:
        return f"add {self.constraint.constraint_type.lower()} {self.table}.{self.constraint.name}"


@dataclass
class DropConstraint(MigrationStep):
    table: str
    constraint: ConstraintSchema
    phase: ClassVar[Phase] = Phase.DROP_CONSTRAINT

    async def forward(self, txn: StorageTransaction) -> None:
        await txn.drop_constraint(self.table, self.constraint.name)

    def inverse(self) -> AddConstraint:
        return AddConstraint(self.table, self.constraint)

    def to_sql(self) -> str:
        return ddl.drop_constraint_sql(self.table, self.constraint.name)

    def describe(self) -> str:
        return f"drop {self.constraint.constraint_type.lower()} {self.table}.{self.constraint.name}"


@dataclass
class CreateIndex(MigrationStep):
    table: str
    index: IndexSchema
    phase: ClassVar[Phase] = Phase.CREATE_INDEX

    async def forward(self, txn: StorageTransaction) -> None:
        await txn.create_index(self.table, self.index)

    def inverse(self) -> "DropIndex":
        return DropIndex(self.table, self.index)

    def to_sql(self) -> str:
        return ddl.create_index_sql(self.table, self.index)

    def describe(self) -> str:
        return f"create index {self.index.name} on {self.table}"


@dataclass
class DropIndex(MigrationStep):
    table: str
    index: IndexSchema
    phase: ClassVar[Phase] = Phase.DROP_INDEX

    async def forward(self, txn: StorageTransaction) -> None:
        await txn.drop_index(self.table, self.index.name)

    def inverse(self) -> CreateIndex:
        return CreateIndex(self.table, self.index)

    def to_sql(self) -> str:
        return ddl.drop_index_sql(self.index.name)

    def describe(self) -> str:
        return f"drop index {self.index.name} on {self.table}"


# ------------------------------------------------------------------
# Plans
# ------------------------------------------------------------------


@dataclass
class MigrationPlan:
    """Ordered migration steps.

    Attributes:
        steps: Steps in execution order.
    """

    steps: list[MigrationStep] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.steps

    @property
    def destructive_steps(self) -> list[MigrationStep]:
        """Steps that drop data (tables or columns)."""
        return [s for s in self.steps if s.destructive]

    def groups(self) -> list[list[tuple[int, MigrationStep]]]:
        """Split the plan into runs of consecutive same-phase steps.

        Each group is a list of ``(position, step)`` pairs and is applied in
        one transaction.
        """
        groups: list[list[tuple[int, MigrationStep]]] = []
        for position, step in enumerate(self.steps):
            if groups and groups[-1][-1][1].phase == step.phase:
                groups[-1].append((position, step))
            else:
                groups.append([(position, step)])
        return groups

    def reversed(self) -> "MigrationPlan":
        """Plan that undoes this one (dropped data is not restored)."""
        return MigrationPlan(steps=[step.inverse() for step in reversed(self.steps)])

    def to_sql(self) -> str:
        return "\n".join(step.to_sql() for step in self.steps)

    def format_report(self) -> str:
        """Human-readable list of steps, flagging destructive ones."""
        if self.is_empty:
            return "No changes"
        lines = [f"Migration plan ({len(self.steps)} steps):"]
        for position, step in enumerate(self.steps):
            marker = " [destructive]" if step.destructive else ""
            lines.append(f"  {position}. {step.describe()}{marker}")
        return "\n".join(lines)

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self):
        return iter(self.steps)
