"""PostgreSQL schema introspection via information_schema.

This module queries the live database to build a ``DatabaseSchema``
snapshot:
- Tables, columns, data types, nullability, defaults, length limits
- Constraints (primary key, foreign key, unique)
- Indexes that do not back a constraint

Uses psycopg (v3) async connections.  A snapshot is recomputed on every
call and never cached.
"""

import psycopg
from psycopg import AsyncConnection

from db_mapper.errors import StorageUnavailable
from db_mapper.schema.models import (
    ColumnSchema,
    ConstraintSchema,
    DatabaseSchema,
    IndexSchema,
    TableSchema,
)


class SchemaIntrospector:
    """Introspects PostgreSQL database schema.

    Uses information_schema and pg_catalog for schema extraction.
    Works with any PostgreSQL database (RDS, Supabase, local).

    Usage:
        async with SchemaIntrospector(database_url) as introspector:
            snapshot = await introspector.introspect()
            columns = await introspector.get_column_names()
    """

    # Tables to exclude from introspection (system tables)
    EXCLUDED_TABLES = {
        "schema_migrations",
        "pg_stat_statements",
        "spatial_ref_sys",
    }

    def __init__(self, database_url: str, connect_timeout: int = 10):
        """Initialize with database connection URL.

        Args:
            database_url: PostgreSQL connection URL (``postgresql://`` scheme,
                no SQLAlchemy driver suffix).
            connect_timeout: Seconds before the connection attempt fails.
        """
        self._database_url = database_url
        self._connect_timeout = connect_timeout
        self._conn: AsyncConnection | None = None

    async def __aenter__(self) -> "SchemaIntrospector":
        """Context manager entry - opens connection."""
        url = self._database_url
        if "connect_timeout" not in url:
            separator = "&" if "?" in url else "?"
            url = f"{url}{separator}connect_timeout={self._connect_timeout}"

        try:
            self._conn = await psycopg.AsyncConnection.connect(url)
        except psycopg.OperationalError as e:
            raise StorageUnavailable(f"Failed to connect for introspection: {e}") from e
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit - closes connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _require_conn(self) -> AsyncConnection:
        if not self._conn:
            raise RuntimeError("Introspector not connected. Use async with statement.")
        return self._conn

    async def introspect(self, schema_name: str = "public") -> DatabaseSchema:
        """Introspect full database schema.

        Args:
            schema_name: PostgreSQL schema to introspect (default: public)

        Returns:
            DatabaseSchema with all tables, columns, constraints and indexes.
        """
        self._require_conn()
        db_schema = DatabaseSchema()

        for table_name in await self._get_tables(schema_name):
            if table_name in self.EXCLUDED_TABLES:
                continue

            table = TableSchema(name=table_name)
            table.columns = await self._get_columns(schema_name, table_name)
            table.constraints = await self._get_constraints(schema_name, table_name)
            table.indexes = await self._get_indexes(schema_name, table_name)
            db_schema.tables[table_name] = table

        return db_schema

    async def get_column_names(self, schema_name: str = "public") -> dict[str, set[str]]:
        """Get column names for all tables (lightweight alternative to introspect)."""
        conn = self._require_conn()
        result: dict[str, set[str]] = {}

        for table_name in await self._get_tables(schema_name):
            if table_name in self.EXCLUDED_TABLES:
                continue

            query = """
                SELECT column_name
                FROM information_schema.columns
                WHERE table_schema = %s
                  AND table_name = %s
            """
            async with conn.cursor() as cur:
                await cur.execute(query, (schema_name, table_name))
                result[table_name] = {row[0] for row in await cur.fetchall()}

        return result

    async def _get_tables(self, schema_name: str) -> list[str]:
        """Get all table names in schema."""
        query = """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = %s
              AND table_type = 'BASE TABLE'
            ORDER BY table_name
        """
        async with self._require_conn().cursor() as cur:
            await cur.execute(query, (schema_name,))
            return [row[0] for row in await cur.fetchall()]

    async def _get_columns(self, schema_name: str, table_name: str) -> dict[str, ColumnSchema]:
        """Get columns for a table."""
        query = """
            SELECT
                column_name,
                data_type,
                is_nullable,
                column_default,
                character_maximum_length,
                is_identity
            FROM information_schema.columns
            WHERE table_schema = %s
              AND table_name = %s
            ORDER BY ordinal_position
        """
        async with self._require_conn().cursor() as cur:
            await cur.execute(query, (schema_name, table_name))
            columns = {}
            for row in await cur.fetchall():
                col_name, data_type, is_nullable, default, max_length, is_identity = row
                autoincrement = is_identity == "YES" or (
                    default is not None and default.startswith("nextval(")
                )
                columns[col_name] = ColumnSchema(
                    name=col_name,
                    data_type=self._normalize_data_type(data_type),
                    is_nullable=(is_nullable == "YES"),
                    default=None if autoincrement else default,
                    max_length=max_length,
                    autoincrement=autoincrement,
                )
            return columns

    def _normalize_data_type(self, data_type: str) -> str:
        """Normalize PostgreSQL data type names.

        Maps verbose information_schema types to standard names.
        """
        type_map = {
            "character varying": "varchar",
            "character": "char",
            "timestamp with time zone": "timestamptz",
            "timestamp without time zone": "timestamp",
            "integer": "int",
            "boolean": "bool",
        }
        return type_map.get(data_type.lower(), data_type.lower())

    async def _get_constraints(
        self, schema_name: str, table_name: str
    ) -> dict[str, ConstraintSchema]:
        """Get primary key, foreign key and unique constraints for a table."""
        query = """
            SELECT
                tc.constraint_name,
                tc.constraint_type,
                kcu.column_name,
                ccu.table_name AS references_table,
                ccu.column_name AS references_column,
                rc.delete_rule
            FROM information_schema.table_constraints tc
            JOIN information_schema.key_column_usage kcu
                ON tc.constraint_name = kcu.constraint_name
                AND tc.table_schema = kcu.table_schema
            LEFT JOIN information_schema.constraint_column_usage ccu
                ON tc.constraint_name = ccu.constraint_name
                AND tc.constraint_type = 'FOREIGN KEY'
            LEFT JOIN information_schema.referential_constraints rc
                ON tc.constraint_name = rc.constraint_name
            WHERE tc.table_schema = %s
              AND tc.table_name = %s
            ORDER BY tc.constraint_name, kcu.ordinal_position
        """
        async with self._require_conn().cursor() as cur:
            await cur.execute(query, (schema_name, table_name))

            constraints: dict[str, ConstraintSchema] = {}

            for row in await cur.fetchall():
                name, ctype, col_name, ref_table, ref_col, delete_rule = row

                if name not in constraints:
                    constraints[name] = ConstraintSchema(
                        name=name,
                        constraint_type=ctype,
                        columns=[],
                        references_table=ref_table if ctype == "FOREIGN KEY" else None,
                        references_columns=[] if ctype == "FOREIGN KEY" else None,
                        on_delete=delete_rule,
                    )

                constraint = constraints[name]
                if col_name not in constraint.columns:
                    constraint.columns.append(col_name)
                if ref_col and ref_col not in constraint.references_columns:
                    constraint.references_columns.append(ref_col)

            return constraints

    async def _get_indexes(self, schema_name: str, table_name: str) -> dict[str, IndexSchema]:
        """Get indexes for a table (excluding those backing a constraint)."""
        query = """
            SELECT
                i.relname AS index_name,
                array_agg(a.attname ORDER BY x.ordinality) AS columns,
                ix.indisunique AS is_unique,
                am.amname AS index_type
            FROM pg_index ix
            JOIN pg_class t ON t.oid = ix.indrelid
            JOIN pg_class i ON i.oid = ix.indexrelid
            JOIN pg_namespace n ON n.oid = t.relnamespace
            JOIN pg_am am ON am.oid = i.relam
            JOIN LATERAL unnest(ix.indkey) WITH ORDINALITY AS x(attnum, ordinality) ON TRUE
            JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = x.attnum
            WHERE n.nspname = %s
              AND t.relname = %s
              AND NOT ix.indisprimary
              AND NOT EXISTS (
                  SELECT 1 FROM pg_constraint c WHERE c.conindid = ix.indexrelid
              )
            GROUP BY i.relname, ix.indisunique, am.amname
            ORDER BY i.relname
        """
        async with self._require_conn().cursor() as cur:
            await cur.execute(query, (schema_name, table_name))
            indexes = {}
            for row in await cur.fetchall():
                name, columns, is_unique, idx_type = row
                indexes[name] = IndexSchema(
                    name=name,
                    columns=list(columns),
                    is_unique=is_unique,
                    index_type=idx_type,
                )
            return indexes
