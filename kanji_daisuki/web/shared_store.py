"""
Shared Store Instance

This module holds the process-wide store and the services built on it.
Supports both in-memory (development) and PostgreSQL (production) modes.

Mode is determined by environment variables:
- STORE_DRIVER: Explicit driver selection (memory, psycopg2)
- DATABASE_URL or DATABASE_HOST: Database connection (auto-selects psycopg2)
- Neither set: Use in-memory (default for development)

SEEDING:
- Seeding only happens if the store has no kanji
- Auto-seeding is DISABLED by default
- Set ENABLE_AUTO_SEED=1 to seed kanji from reference/kanjis.json
- For production, seed via CLI instead of app startup
"""

import os
from threading import Lock
from typing import Optional

from kanji_daisuki.core import PostService, ProfileService, SlotAllocator
from kanji_daisuki.db.config import (
    DatabaseConfig,
    StoreDriver,
    get_database_url,
    get_store_driver,
)
from kanji_daisuki.db.store import InMemoryStore, PostgresStore, Store
from kanji_daisuki.observability import get_logger, is_production


logger = get_logger(__name__)

_store_lock = Lock()
_store: Optional[Store] = None
_seed_lock = Lock()
_seed_attempted = False


def _create_store() -> Store:
    """
    Create the appropriate Store based on configuration.

    Returns:
        InMemoryStore for development/testing
        PostgresStore when a database is configured
    """
    driver = get_store_driver()

    if driver == StoreDriver.MEMORY:
        logger.info("Using in-memory store (no persistence)")
        return InMemoryStore()

    db_url = get_database_url()
    if db_url is None:
        logger.warning("Driver is psycopg2 but no database configured; using in-memory store")
        return InMemoryStore()

    config = DatabaseConfig.from_url(db_url) if "://" in db_url else DatabaseConfig.from_env()
    return _create_psycopg2_store(config)


def _create_psycopg2_store(config: DatabaseConfig) -> Store:
    """Create PostgresStore with psycopg2, falling back to memory outside production."""
    import psycopg2

    def connection_factory():
        return psycopg2.connect(config.to_dsn())

    try:
        # Test connection
        connection_factory().close()
    except psycopg2.Error as e:
        if is_production():
            raise
        logger.error(
            "Could not connect to PostgreSQL; falling back to in-memory store",
            error=str(e),
        )
        return InMemoryStore()

    logger.info(
        "PostgreSQL connection established",
        host=config.host,
        port=config.port,
        database=config.database,
    )
    return PostgresStore(connection_factory)


def get_store() -> Store:
    """Get the shared store instance, creating it on first use."""
    global _store
    with _store_lock:
        if _store is None:
            _store = _create_store()
        return _store


def set_store(store: Optional[Store]) -> None:
    """Replace the shared store (tests and tools). None forces re-creation."""
    global _store, _seed_attempted
    with _store_lock:
        _store = store
    with _seed_lock:
        _seed_attempted = False


def get_allocator() -> SlotAllocator:
    return SlotAllocator(get_store())


def get_post_service() -> PostService:
    return PostService(get_store())


def get_profile_service() -> ProfileService:
    return ProfileService(get_store())


def seed_reference_data() -> None:
    """
    Seed kanji from the reference data.

    SAFETY RULES:
    - Only seeds if the store has no kanji
    - Only runs once per process
    - Disabled by default - set ENABLE_AUTO_SEED=1 to enable
    """
    global _seed_attempted

    if os.getenv("ENABLE_AUTO_SEED", "").lower() not in ("1", "true", "yes"):
        logger.info("Auto-seeding disabled (set ENABLE_AUTO_SEED=1 to enable)")
        return

    with _seed_lock:
        if _seed_attempted:
            return
        _seed_attempted = True

        store = get_store()
        if store.list_kanjis():
            logger.info("Store already has kanji - skipping seed")
            return

        from reference.loader import load_reference_kanjis
        result = load_reference_kanjis(store)
        logger.info("Seeded reference kanji", loaded=result.loaded)
