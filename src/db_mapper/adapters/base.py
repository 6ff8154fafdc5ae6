"""Storage collaborator protocol definitions.

Defines the Protocols every storage backend must implement.  All I/O
methods are ``async def`` -- the library is async-first.

Three layers:

- ``DatabaseClient`` -- the backend handle (engine, pool).  Opens
  connections and introspects the live schema.
- ``StorageConnection`` -- one connection, owned by one ``Session`` or one
  migration run.  Reads outside a transaction and opens transactions.
- ``StorageTransaction`` -- all writes and DDL.  Everything done through
  one transaction is applied atomically when the ``transaction()`` block
  exits normally and discarded if it exits with an exception (including
  ``asyncio.CancelledError``).

Error contract:
    - Constraint violations raise ``ConstraintViolation`` with a ``kind``
      (``primary_key``, ``unique``, ``foreign_key``, ``not_null``, ...).
    - Connectivity failures raise ``StorageUnavailable``.

Usage:
    from db_mapper.adapters.base import DatabaseClient

    async def do_work(client: DatabaseClient) -> None:
        conn = await client.connect()
        try:
            async with conn.transaction() as txn:
                row = await txn.insert("team", {"name": "Preventers"})
                await txn.update("team", {"name": "Z-Force"}, {"id": row["id"]})
        finally:
            await conn.close()
"""

from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol

from db_mapper.schema.models import ColumnSchema, ConstraintSchema, DatabaseSchema, IndexSchema, TableSchema


class StorageTransaction(Protocol):
    """Writes and DDL inside one atomic transaction.

    Filters are dicts of ``column=value`` pairs combined with AND.  A list
    or tuple value matches any of its members (``IN``).
    """

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
    ) -> list[dict]:
        """Select rows from table.  Empty list if no matches."""
        ...

    async def insert(self, table: str, data: dict) -> dict:
        """Insert a row and return it, including generated values.

        Raises:
            ConstraintViolation: Duplicate key or other constraint violation.
        """
        ...

    async def update(self, table: str, data: dict, filters: dict[str, Any]) -> dict | None:
        """Update matching rows and return the first updated row.

        Returns:
            The updated row, or ``None`` if no row matched *filters*.
        """
        ...

    async def delete(self, table: str, filters: dict[str, Any]) -> int:
        """Delete matching rows.

        Returns:
            Number of rows deleted.
        """
        ...

    async def create_table(self, table: TableSchema) -> None:
        """Create a table with its columns, primary key, unique constraints,
        foreign keys and indexes."""
        ...

    async def drop_table(self, table_name: str) -> None:
        ...

    async def add_column(self, table_name: str, column: ColumnSchema, backfill: Any = None) -> None:
        """Add a column; existing rows receive *backfill* when given."""
        ...

    async def drop_column(self, table_name: str, column_name: str) -> None:
        ...

    async def alter_column(self, table_name: str, old: ColumnSchema, new: ColumnSchema) -> None:
        ...

    async def add_constraint(self, table_name: str, constraint: ConstraintSchema) -> None:
        ...

    async def drop_constraint(self, table_name: str, constraint_name: str) -> None:
        ...

    async def create_index(self, table_name: str, index: IndexSchema) -> None:
        ...

    async def drop_index(self, table_name: str, index_name: str) -> None:
        ...


class StorageConnection(Protocol):
    """One storage connection."""

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
    ) -> list[dict]:
        """Select committed rows (each call runs in its own short transaction)."""
        ...

    def transaction(self) -> AbstractAsyncContextManager[StorageTransaction]:
        """Open an atomic transaction.

        Example:
            async with conn.transaction() as txn:
                await txn.insert("hero", {"name": "Rusty-Man"})
        """
        ...

    async def close(self) -> None:
        """Release the connection.  Safe to call more than once."""
        ...


class DatabaseClient(Protocol):
    """Storage backend handle that all adapters must implement."""

    async def connect(self) -> StorageConnection:
        """Open a connection.

        Raises:
            StorageUnavailable: If the backend cannot be reached.
        """
        ...

    async def introspect(self) -> DatabaseSchema:
        """Capture a fresh snapshot of the live schema."""
        ...

    async def close(self) -> None:
        """Close the backend and release pooled resources."""
        ...
