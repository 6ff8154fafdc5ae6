"""Storage adapters package.

Provides the storage collaborator Protocols and the concrete async
backends: PostgreSQL (SQLAlchemy + asyncpg) and an in-memory store.

Usage:
    from db_mapper.adapters import DatabaseClient, AsyncPostgresAdapter, MemoryStorage
"""

from db_mapper.adapters.base import DatabaseClient, StorageConnection, StorageTransaction
from db_mapper.adapters.memory import MemoryStorage
from db_mapper.adapters.postgres import AsyncPostgresAdapter

__all__ = [
    "DatabaseClient",
    "StorageConnection",
    "StorageTransaction",
    "AsyncPostgresAdapter",
    "MemoryStorage",
]
