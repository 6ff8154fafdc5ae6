"""In-memory storage adapter.

``MemoryStorage`` implements the ``DatabaseClient`` protocol without a
database server.  It keeps tables as lists of row dicts and enforces the
same constraints PostgreSQL would for the tables db-mapper creates:

- NOT NULL, PRIMARY KEY and UNIQUE
- FOREIGN KEY on insert/update, with ON DELETE CASCADE / SET NULL /
  NO ACTION on delete
- autoincrement (SERIAL) keys and literal column defaults

Transactions are serialized with an ``asyncio.Lock``.  Each transaction
works on a private copy of the tables that replaces the committed state
only when the ``transaction()`` block exits normally, so an exception or
cancellation leaves storage untouched.

Usage:
    from db_mapper.adapters.memory import MemoryStorage

    storage = MemoryStorage()
    conn = await storage.connect()
    async with conn.transaction() as txn:
        await txn.create_table(team_table)
        row = await txn.insert("team", {"name": "Preventers"})
"""

import asyncio
import copy
import logging
from collections import Counter
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

from db_mapper.errors import ConstraintViolation, StorageError
from db_mapper.schema.models import (
    ColumnSchema,
    ConstraintSchema,
    DatabaseSchema,
    IndexSchema,
    TableSchema,
)

logger = logging.getLogger(__name__)

# Normalized data type -> converter used by ALTER COLUMN ... TYPE
_CONVERTERS = {
    "int": int,
    "bigint": int,
    "double precision": float,
    "numeric": lambda v: Decimal(str(v)),
    "varchar": str,
    "text": str,
}


def parse_default(default: str | None) -> Any:
    """Evaluate a literal column default as rendered by ``ddl.render_literal``.

    Example:
        >>> parse_default("'it''s'::character varying")
        "it's"
        >>> parse_default("1")
        1
    """
    if default is None:
        return None
    value = default.strip()
    if value.startswith("'"):
        end = value.rfind("'")
        return value[1:end].replace("''", "'")
    if "::" in value:
        value = value.split("::", 1)[0]
    upper = value.upper()
    if upper == "NULL":
        return None
    if upper == "TRUE":
        return True
    if upper == "FALSE":
        return False
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        raise StorageError(f"Unsupported column default: {default}") from None


@dataclass
class _Table:
    schema: TableSchema
    rows: list[dict] = field(default_factory=list)
    sequence: int = 0


def _matches(row: dict, filters: dict[str, Any] | None) -> bool:
    if not filters:
        return True
    for column, expected in filters.items():
        value = row.get(column)
        if isinstance(expected, (list, tuple, set)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


def _sort_rows(rows: list[dict], order_by: str | None) -> list[dict]:
    if not order_by:
        return rows
    for term in reversed([t.strip() for t in order_by.split(",")]):
        column, _, direction = term.partition(" ")
        rows.sort(
            key=lambda r: (r.get(column) is None, r.get(column)),
            reverse=direction.strip().upper() == "DESC",
        )
    return rows


def _project(row: dict, columns: str) -> dict:
    if columns.strip() == "*":
        return dict(row)
    return {c.strip(): row.get(c.strip()) for c in columns.split(",")}


class MemoryTransaction:
    """``StorageTransaction`` over a private working copy of the tables."""

    def __init__(self, tables: dict[str, _Table], counts: Counter) -> None:
        self._tables = tables
        self._counts = counts

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _table(self, name: str) -> _Table:
        table = self._tables.get(name)
        if table is None:
            raise StorageError(f'relation "{name}" does not exist')
        return table

    def _key_constraints(self, table: _Table) -> list[ConstraintSchema]:
        return [
            c
            for c in table.schema.constraints.values()
            if c.constraint_type in ("PRIMARY KEY", "UNIQUE")
        ] + [
            ConstraintSchema(name=i.name, constraint_type="UNIQUE", columns=i.columns)
            for i in table.schema.indexes.values()
            if i.is_unique
        ]

    def _check_row(self, table: _Table, row: dict, ignore: dict | None = None) -> None:
        """Check NOT NULL, key and outgoing foreign key constraints for *row*."""
        for column in table.schema.columns.values():
            if not column.is_nullable and row.get(column.name) is None:
                raise ConstraintViolation(
                    f'null value in column "{column.name}" of relation '
                    f'"{table.schema.name}" violates not-null constraint',
                    kind="not_null",
                )

        for constraint in self._key_constraints(table):
            key = tuple(row.get(c) for c in constraint.columns)
            if any(v is None for v in key):
                continue
            for other in table.rows:
                if other is ignore:
                    continue
                if tuple(other.get(c) for c in constraint.columns) == key:
                    kind = "primary_key" if constraint.constraint_type == "PRIMARY KEY" else "unique"
                    raise ConstraintViolation(
                        f'duplicate key value violates unique constraint "{constraint.name}"',
                        kind=kind,
                        constraint=constraint.name,
                    )

        for fk in table.schema.foreign_keys:
            values = tuple(row.get(c) for c in fk.columns)
            if any(v is None for v in values):
                continue
            parent = self._table(fk.references_table)
            ref_columns = fk.references_columns or []
            if not any(tuple(p.get(c) for c in ref_columns) == values for p in parent.rows):
                raise ConstraintViolation(
                    f'insert or update on table "{table.schema.name}" violates '
                    f'foreign key constraint "{fk.name}"',
                    kind="foreign_key",
                    constraint=fk.name,
                )

    def _referencing(self, table_name: str) -> list[tuple[_Table, ConstraintSchema]]:
        """Foreign keys (with their owning tables) that point at *table_name*."""
        found = []
        for other in self._tables.values():
            for fk in other.schema.foreign_keys:
                if fk.references_table == table_name:
                    found.append((other, fk))
        return found

    def _children(self, child: _Table, fk: ConstraintSchema, parent_row: dict) -> list[dict]:
        key = tuple(parent_row.get(c) for c in fk.references_columns or [])
        return [r for r in child.rows if tuple(r.get(c) for c in fk.columns) == key]

    def _remove(self, table: _Table, rows: list[dict]) -> None:
        """Remove *rows* and apply ON DELETE rules of referencing foreign keys."""
        doomed = {id(r) for r in rows}
        table.rows = [r for r in table.rows if id(r) not in doomed]

        for child, fk in self._referencing(table.schema.name):
            rule = (fk.on_delete or "NO ACTION").upper()
            for parent_row in rows:
                children = self._children(child, fk, parent_row)
                if not children:
                    continue
                if rule == "CASCADE":
                    self._remove(child, children)
                elif rule == "SET NULL":
                    for c in children:
                        for column in fk.columns:
                            c[column] = None
                else:
                    raise ConstraintViolation(
                        f'update or delete on table "{table.schema.name}" violates '
                        f'foreign key constraint "{fk.name}" on table "{child.schema.name}"',
                        kind="foreign_key",
                        constraint=fk.name,
                    )

    # ------------------------------------------------------------------
    # Rows
    # ------------------------------------------------------------------

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
    ) -> list[dict]:
        await asyncio.sleep(0)
        self._counts[("select", table)] += 1
        rows = [r for r in self._table(table).rows if _matches(r, filters)]
        return [_project(r, columns) for r in _sort_rows(rows, order_by)]

    async def insert(self, table: str, data: dict) -> dict:
        await asyncio.sleep(0)
        self._counts[("insert", table)] += 1
        target = self._table(table)
        unknown = set(data) - set(target.schema.columns)
        if unknown:
            raise StorageError(f'column(s) {sorted(unknown)} of relation "{table}" do not exist')

        row: dict[str, Any] = {}
        for column in target.schema.columns.values():
            if column.name in data:
                row[column.name] = copy.deepcopy(data[column.name])
                if column.autoincrement and isinstance(data[column.name], int):
                    target.sequence = max(target.sequence, data[column.name])
            elif column.autoincrement:
                target.sequence += 1
                row[column.name] = target.sequence
            else:
                row[column.name] = parse_default(column.default)

        self._check_row(target, row)
        target.rows.append(row)
        return dict(row)

    async def update(self, table: str, data: dict, filters: dict[str, Any]) -> dict | None:
        await asyncio.sleep(0)
        self._counts[("update", table)] += 1
        target = self._table(table)
        unknown = set(data) - set(target.schema.columns)
        if unknown:
            raise StorageError(f'column(s) {sorted(unknown)} of relation "{table}" do not exist')

        first: dict | None = None
        for row in [r for r in target.rows if _matches(r, filters)]:
            updated = {**row, **copy.deepcopy(data)}
            self._check_row(target, updated, ignore=row)
            for child, fk in self._referencing(table):
                changed = any(updated.get(c) != row.get(c) for c in fk.references_columns or [])
                if changed and self._children(child, fk, row):
                    raise ConstraintViolation(
                        f'update on table "{table}" violates foreign key constraint "{fk.name}"',
                        kind="foreign_key",
                        constraint=fk.name,
                    )
            row.update(updated)
            if first is None:
                first = dict(row)
        return first

    async def delete(self, table: str, filters: dict[str, Any]) -> int:
        await asyncio.sleep(0)
        self._counts[("delete", table)] += 1
        target = self._table(table)
        rows = [r for r in target.rows if _matches(r, filters)]
        if rows:
            self._remove(target, rows)
        return len(rows)

    # ------------------------------------------------------------------
    # DDL
    # ------------------------------------------------------------------

    def _index_names(self) -> set[str]:
        return {name for t in self._tables.values() for name in t.schema.indexes}

    async def create_table(self, table: TableSchema) -> None:
        await asyncio.sleep(0)
        if table.name in self._tables:
            raise StorageError(f'relation "{table.name}" already exists')
        for fk in table.foreign_keys:
            if fk.references_table != table.name:
                self._table(fk.references_table)
        clash = self._index_names() & set(table.indexes)
        if clash:
            raise StorageError(f'relation "{sorted(clash)[0]}" already exists')
        self._tables[table.name] = _Table(schema=table.model_copy(deep=True))

    async def drop_table(self, table_name: str) -> None:
        await asyncio.sleep(0)
        self._table(table_name)
        for child, fk in self._referencing(table_name):
            if child.schema.name != table_name:
                raise StorageError(
                    f'cannot drop table {table_name} because constraint {fk.name} '
                    f'on table {child.schema.name} depends on it'
                )
        del self._tables[table_name]

    async def add_column(self, table_name: str, column: ColumnSchema, backfill: Any = None) -> None:
        await asyncio.sleep(0)
        table = self._table(table_name)
        if column.name in table.schema.columns:
            raise StorageError(f'column "{column.name}" of relation "{table_name}" already exists')

        value = backfill if backfill is not None else parse_default(column.default)
        if value is None and not column.is_nullable and table.rows:
            raise ConstraintViolation(
                f'column "{column.name}" of relation "{table_name}" contains null values',
                kind="not_null",
            )
        table.schema.columns[column.name] = column.model_copy(deep=True)
        for row in table.rows:
            row[column.name] = copy.deepcopy(value)

    async def drop_column(self, table_name: str, column_name: str) -> None:
        await asyncio.sleep(0)
        table = self._table(table_name)
        if column_name not in table.schema.columns:
            raise StorageError(f'column "{column_name}" of relation "{table_name}" does not exist')
        for child, fk in self._referencing(table_name):
            if column_name in (fk.references_columns or []):
                raise StorageError(
                    f'cannot drop column {column_name} of table {table_name} because '
                    f'constraint {fk.name} on table {child.schema.name} depends on it'
                )

        del table.schema.columns[column_name]
        table.schema.constraints = {
            name: c for name, c in table.schema.constraints.items() if column_name not in c.columns
        }
        table.schema.indexes = {
            name: i for name, i in table.schema.indexes.items() if column_name not in i.columns
        }
        for row in table.rows:
            row.pop(column_name, None)

    async def alter_column(self, table_name: str, old: ColumnSchema, new: ColumnSchema) -> None:
        await asyncio.sleep(0)
        table = self._table(table_name)
        current = table.schema.columns.get(new.name)
        if current is None:
            raise StorageError(f'column "{new.name}" of relation "{table_name}" does not exist')

        converted: list[Any] = []
        convert = _CONVERTERS.get(new.data_type)
        for row in table.rows:
            value = row.get(new.name)
            if value is not None and new.data_type != current.data_type:
                if convert is None:
                    raise StorageError(
                        f'column "{new.name}" cannot be cast to type {new.data_type}'
                    )
                try:
                    value = convert(value)
                except (TypeError, ValueError, InvalidOperation) as e:
                    raise StorageError(
                        f'invalid input for type {new.data_type}: "{value}"'
                    ) from e
            if value is None and not new.is_nullable:
                raise ConstraintViolation(
                    f'column "{new.name}" of relation "{table_name}" contains null values',
                    kind="not_null",
                )
            if new.max_length and isinstance(value, str) and len(value) > new.max_length:
                raise StorageError(
                    f"value too long for type character varying({new.max_length})"
                )
            converted.append(value)

        for row, value in zip(table.rows, converted):
            row[new.name] = value
        table.schema.columns[new.name] = new.model_copy(
            update={"default": current.default, "autoincrement": current.autoincrement}
        )

    async def add_constraint(self, table_name: str, constraint: ConstraintSchema) -> None:
        await asyncio.sleep(0)
        table = self._table(table_name)
        if constraint.name in table.schema.constraints:
            raise StorageError(f'constraint "{constraint.name}" already exists')
        missing = set(constraint.columns) - set(table.schema.columns)
        if missing:
            raise StorageError(f'column(s) {sorted(missing)} of relation "{table_name}" do not exist')
        if constraint.constraint_type == "FOREIGN KEY":
            self._table(constraint.references_table)

        # Existing rows must satisfy the new constraint
        trial = _Table(schema=table.schema.model_copy(deep=True))
        trial.schema.constraints[constraint.name] = constraint.model_copy(deep=True)
        for row in table.rows:
            self._check_row(trial, row)
            trial.rows.append(row)
        table.schema.constraints[constraint.name] = constraint.model_copy(deep=True)

    async def drop_constraint(self, table_name: str, constraint_name: str) -> None:
        await asyncio.sleep(0)
        table = self._table(table_name)
        if constraint_name not in table.schema.constraints:
            raise StorageError(
                f'constraint "{constraint_name}" of relation "{table_name}" does not exist'
            )
        del table.schema.constraints[constraint_name]

    async def create_index(self, table_name: str, index: IndexSchema) -> None:
        await asyncio.sleep(0)
        table = self._table(table_name)
        if index.name in self._index_names():
            raise StorageError(f'relation "{index.name}" already exists')
        if index.is_unique:
            seen: set[tuple] = set()
            for row in table.rows:
                key = tuple(row.get(c) for c in index.columns)
                if any(v is None for v in key):
                    continue
                if key in seen:
                    raise ConstraintViolation(
                        f'could not create unique index "{index.name}"',
                        kind="unique",
                        constraint=index.name,
                    )
                seen.add(key)
        table.schema.indexes[index.name] = index.model_copy(deep=True)

    async def drop_index(self, table_name: str, index_name: str) -> None:
        await asyncio.sleep(0)
        table = self._table(table_name)
        if index_name not in table.schema.indexes:
            raise StorageError(f'index "{index_name}" does not exist')
        del table.schema.indexes[index_name]


class MemoryConnection:
    """``StorageConnection`` onto a ``MemoryStorage``."""

    def __init__(self, storage: "MemoryStorage") -> None:
        self._storage = storage
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise StorageError("Connection is closed")

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
    ) -> list[dict]:
        self._check_open()
        # Reads see committed state only
        reader = MemoryTransaction(self._storage._tables, self._storage.operation_counts)
        return copy.deepcopy(await reader.select(table, columns, filters, order_by))

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[MemoryTransaction]:
        """Open a serialized transaction over a working copy of the tables."""
        self._check_open()
        async with self._storage._lock:
            working = copy.deepcopy(self._storage._tables)
            yield MemoryTransaction(working, self._storage.operation_counts)
            self._storage._tables = working
            logger.debug("Memory transaction committed")

    async def close(self) -> None:
        self._closed = True


class MemoryStorage:
    """In-memory implementation of the ``DatabaseClient`` protocol.

    Args:
        schema: Optional tables to start with (no rows).

    Attributes:
        operation_counts: ``Counter`` of ``(operation, table)`` pairs for
            row operations, across all connections.
    """

    def __init__(self, schema: DatabaseSchema | None = None) -> None:
        self._tables: dict[str, _Table] = {}
        self._lock = asyncio.Lock()
        self.operation_counts: Counter = Counter()
        if schema is not None:
            for name, table in schema.tables.items():
                self._tables[name] = _Table(schema=table.model_copy(deep=True))

    async def connect(self) -> MemoryConnection:
        return MemoryConnection(self)

    async def introspect(self) -> DatabaseSchema:
        await asyncio.sleep(0)
        return DatabaseSchema(
            tables={name: t.schema.model_copy(deep=True) for name, t in self._tables.items()}
        )

    async def close(self) -> None:
        logger.debug("Memory storage closed")

    def rows(self, table: str) -> list[dict]:
        """Committed rows of *table* (copies)."""
        if table not in self._tables:
            raise StorageError(f'relation "{table}" does not exist')
        return copy.deepcopy(self._tables[table].rows)
