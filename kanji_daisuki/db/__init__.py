"""
Database Layer for Kanji Daisuki

Provides:
- PostgreSQL schema
- Store abstraction (InMemory for dev, Postgres for prod)
- Environment-based configuration
"""

from .store import (
    Store,
    InMemoryStore,
    PostgresStore,
    ClaimContext,
    StoreError,
    StorageUnavailable,
    LockTimeoutError,
)
from .config import (
    DatabaseConfig,
    StoreDriver,
    get_database_url,
    get_store_driver,
    psycopg2_connection_factory,
)

__all__ = [
    "Store",
    "InMemoryStore",
    "PostgresStore",
    "ClaimContext",
    "StoreError",
    "StorageUnavailable",
    "LockTimeoutError",
    "DatabaseConfig",
    "StoreDriver",
    "get_database_url",
    "get_store_driver",
    "psycopg2_connection_factory",
]
