"""
ArcVault - Persistence Gateway Abstraction

The gateway is the only component that touches storage. The Repository
depends on this interface alone; concrete variants live next to it:

- PostgresGateway: psycopg connection pool, row locks, ON DELETE CASCADE
- MemoryGateway: in-process dictionaries, for development and tests

DESIGN PRINCIPLES:
1. Every read and write happens inside a session (gateway.transaction())
2. A session commits on clean exit and rolls back on any exception
3. for_update=True takes a row lock held until the session ends
4. delete_store() removes the store and all of its records in one session
5. Backend failures surface as StorageError, never as driver exceptions
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any, List, Optional
import logging

from arcvault.core.models import Record, Store

logger = logging.getLogger(__name__)


class GatewaySession(ABC):
    """
    Unit of work against the backing store.

    Store and record objects passed in and out are detached copies:
    mutating them has no effect until written back with update_*().
    """

    # Stores

    @abstractmethod
    def insert_store(self, store: Store) -> Store:
        """
        Persist a new store.

        Args:
            store: Store to insert; id=None allocates a fresh id, an explicit
                id is kept as-is (used by imports)

        Returns:
            The stored Store with its id assigned
        """

    @abstractmethod
    def get_store(self, store_id: int, for_update: bool = False) -> Optional[Store]:
        """Fetch a store, optionally locking its row. None if absent."""

    @abstractmethod
    def update_store(self, store: Store) -> None:
        """Overwrite title/metadata/updated_at of an existing store."""

    @abstractmethod
    def delete_store(self, store_id: int) -> int:
        """
        Delete a store and cascade to its records.

        Returns:
            Number of records removed with the store
        """

    @abstractmethod
    def list_stores(self) -> List[Store]:
        """All stores ordered by id."""

    @abstractmethod
    def count_stores(self) -> int:
        pass

    # Records

    @abstractmethod
    def insert_record(self, record: Record) -> Record:
        """
        Persist a new record inside record.store_id.

        record.id=None allocates the next id of that store; an explicit id
        is kept as-is.
        """

    @abstractmethod
    def get_record(
        self,
        store_id: int,
        record_id: int,
        for_update: bool = False
    ) -> Optional[Record]:
        """Fetch a record, optionally locking its row. None if absent."""

    @abstractmethod
    def update_record(self, record: Record) -> None:
        """Overwrite the mutable fields of an existing record."""

    @abstractmethod
    def delete_record(self, store_id: int, record_id: int) -> bool:
        """Delete one record. Returns False if it did not exist."""

    @abstractmethod
    def list_records(self, store_id: int) -> List[Record]:
        """Records of one store ordered by id."""

    @abstractmethod
    def list_expired(self, now: datetime, include_buffer: bool = True) -> List[Record]:
        """
        Records with expires_at <= now across all existing stores.

        Backed by an index (or efficient scan) over expires_at. With
        include_buffer=False the payloads are not loaded and every returned
        record carries an empty buffer.
        """


class PersistenceGateway(ABC):
    """Factory of sessions over one backing store."""

    @abstractmethod
    def setup(self) -> bool:
        """
        Create the schema if needed.

        Returns:
            True if the backing store was initialised by this call
        """

    @abstractmethod
    def transaction(self) -> AbstractContextManager:
        """Open a read-write session (context manager yielding GatewaySession)."""

    @abstractmethod
    def snapshot(self) -> AbstractContextManager:
        """
        Open a read-only session observing a single logical instant.

        Used by exports: it never observes a store mid-cascade.
        """

    @abstractmethod
    def get_store_name(self) -> str:
        """Backend name for logging ('postgres' or 'memory')."""

    @abstractmethod
    def is_available(self) -> bool:
        """Check backend health."""

    def close(self) -> None:
        """Release backend resources."""


class GatewayFactory:
    """
    Factory for creating PersistenceGateway instances.

    Supports:
    - postgres (default, durable)
    - memory (volatile, development and tests)
    """

    @staticmethod
    def create_gateway(
        backend: str = "postgres",
        database_url: Optional[str] = None,
        **options: Any
    ) -> PersistenceGateway:
        """
        Create PersistenceGateway instance.

        Args:
            backend: 'postgres' or 'memory'
            database_url: Postgres connection URL (required for postgres)
            **options: Backend specific options (pool sizes, lock timeout)

        Returns:
            PersistenceGateway implementation

        Raises:
            ValueError: If backend is invalid or database_url is missing
        """
        if backend == "postgres":
            from arcvault.storage.postgres_store import PostgresGateway

            if not database_url:
                raise ValueError("Postgres backend requires a database_url")

            logger.info("Using PostgresGateway")
            return PostgresGateway(database_url, **options)

        elif backend == "memory":
            from arcvault.storage.memory_store import MemoryGateway

            logger.warning("Using MemoryGateway: data is lost on shutdown")
            return MemoryGateway(lock_timeout=options.get("timeout", 10.0))

        else:
            raise ValueError(f"Invalid backend: {backend}. Must be 'postgres' or 'memory'")


def create_gateway_from_config(database_config: Any) -> PersistenceGateway:
    """
    Create PersistenceGateway from a DatabaseConfig.

    Args:
        database_config: arcvault.config.DatabaseConfig

    Returns:
        PersistenceGateway implementation
    """
    if database_config.backend == "memory":
        return GatewayFactory.create_gateway(
            "memory", timeout=database_config.pool_timeout
        )

    return GatewayFactory.create_gateway(
        "postgres",
        database_url=database_config.database_url,
        min_size=database_config.pool_min_size,
        max_size=database_config.pool_max_size,
        timeout=database_config.pool_timeout
    )
