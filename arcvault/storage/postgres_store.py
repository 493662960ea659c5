"""
ArcVault - PostgresGateway

Postgres is the durable system of record for stores and records.

RESPONSIBILITIES:
- Own the schema (stores, records, expiry index)
- Hand out sessions backed by pooled connections
- Serialise conflicting writes with row locks (SELECT ... FOR UPDATE)
- Cascade store deletion in the database (ON DELETE CASCADE), so a store
  and its records disappear in the same transaction
- Translate driver errors into StorageError

Schema notes:
- records are keyed by (store_id, id): record ids are unique per store only
- stores.next_record_id allocates record ids under the store row lock
- the CHECK constraint mirrors the expires_at >= created_at invariant
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional
import logging

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from arcvault.core.errors import StorageError
from arcvault.core.models import Record, Store, TTLPolicy
from arcvault.storage.gateway import GatewaySession, PersistenceGateway

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS stores (
    id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
    title TEXT NOT NULL,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    next_record_id BIGINT NOT NULL DEFAULT 1,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS records (
    store_id BIGINT NOT NULL REFERENCES stores(id) ON DELETE CASCADE,
    id BIGINT NOT NULL,
    title TEXT NOT NULL,
    buffer BYTEA NOT NULL,
    encryption TEXT NOT NULL DEFAULT 'none',
    ttl_policy TEXT NOT NULL DEFAULT 'prune'
        CHECK (ttl_policy IN ('prune', 'retain', 'burn')),
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    expires_at TIMESTAMPTZ,
    PRIMARY KEY (store_id, id),
    CHECK (expires_at IS NULL OR expires_at >= created_at)
);

CREATE INDEX IF NOT EXISTS records_expires_at_idx
    ON records (expires_at)
    WHERE expires_at IS NOT NULL;
"""

_STORE_COLUMNS = "id, title, metadata, created_at, updated_at"
_RECORD_COLUMNS = (
    "store_id, id, title, buffer, encryption, ttl_policy, "
    "created_at, updated_at, expires_at"
)
_RECORD_COLUMNS_NO_BUFFER = (
    "store_id, id, title, ''::bytea AS buffer, encryption, ttl_policy, "
    "created_at, updated_at, expires_at"
)


def _row_to_store(row: Dict[str, Any]) -> Store:
    return Store(
        id=row["id"],
        title=row["title"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        metadata=row["metadata"] or {}
    )


def _row_to_record(row: Dict[str, Any]) -> Record:
    return Record(
        store_id=row["store_id"],
        id=row["id"],
        title=row["title"],
        buffer=bytes(row["buffer"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        expires_at=row["expires_at"],
        ttl_policy=TTLPolicy(row["ttl_policy"]),
        encryption=row["encryption"]
    )


class PostgresSession(GatewaySession):
    """Session bound to one pooled connection and one transaction."""

    def __init__(self, conn: psycopg.Connection):
        self.conn = conn

    def _fetchone(self, sql: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        with self.conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchone()

    def _fetchall(self, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
        with self.conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchall()

    def _execute(self, sql: str, params: tuple = ()) -> int:
        with self.conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.rowcount

    # Stores

    def insert_store(self, store: Store) -> Store:
        if store.id is None:
            row = self._fetchone(f"""
                INSERT INTO stores (title, metadata, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                RETURNING {_STORE_COLUMNS}
            """, (store.title, Jsonb(store.metadata), store.created_at, store.updated_at))
            return _row_to_store(row)

        row = self._fetchone(f"""
            INSERT INTO stores (id, title, metadata, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING {_STORE_COLUMNS}
        """, (store.id, store.title, Jsonb(store.metadata), store.created_at, store.updated_at))

        # Keep the identity sequence ahead of explicitly inserted ids
        self._execute("""
            SELECT setval(
                pg_get_serial_sequence('stores', 'id'),
                GREATEST((SELECT MAX(id) FROM stores), 1)
            )
        """)
        return _row_to_store(row)

    def get_store(self, store_id: int, for_update: bool = False) -> Optional[Store]:
        lock = " FOR UPDATE" if for_update else ""
        row = self._fetchone(
            f"SELECT {_STORE_COLUMNS} FROM stores WHERE id = %s{lock}",
            (store_id,)
        )
        return _row_to_store(row) if row else None

    def update_store(self, store: Store) -> None:
        updated = self._execute("""
            UPDATE stores
            SET title = %s, metadata = %s, updated_at = %s
            WHERE id = %s
        """, (store.title, Jsonb(store.metadata), store.updated_at, store.id))
        if updated != 1:
            raise StorageError(f"Store {store.id} vanished during update")

    def delete_store(self, store_id: int) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) AS n FROM records WHERE store_id = %s",
            (store_id,)
        )
        deleted = self._execute("DELETE FROM stores WHERE id = %s", (store_id,))
        return row["n"] if deleted else 0

    def list_stores(self) -> List[Store]:
        rows = self._fetchall(f"SELECT {_STORE_COLUMNS} FROM stores ORDER BY id")
        return [_row_to_store(r) for r in rows]

    def count_stores(self) -> int:
        return self._fetchone("SELECT COUNT(*) AS n FROM stores")["n"]

    # Records

    def insert_record(self, record: Record) -> Record:
        # The UPDATE takes the store row lock, serialising id allocation
        if record.id is None:
            allocated = self._fetchone("""
                UPDATE stores SET next_record_id = next_record_id + 1
                WHERE id = %s
                RETURNING next_record_id - 1 AS id
            """, (record.store_id,))
        else:
            allocated = self._fetchone("""
                UPDATE stores SET next_record_id = GREATEST(next_record_id, %s + 1)
                WHERE id = %s
                RETURNING %s::bigint AS id
            """, (record.id, record.store_id, record.id))

        if allocated is None:
            raise StorageError(f"Store {record.store_id} does not exist")

        row = self._fetchone(f"""
            INSERT INTO records ({_RECORD_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {_RECORD_COLUMNS}
        """, (
            record.store_id,
            allocated["id"],
            record.title,
            record.buffer,
            record.encryption,
            TTLPolicy(record.ttl_policy).value,
            record.created_at,
            record.updated_at,
            record.expires_at
        ))
        return _row_to_record(row)

    def get_record(
        self,
        store_id: int,
        record_id: int,
        for_update: bool = False
    ) -> Optional[Record]:
        lock = " FOR UPDATE" if for_update else ""
        row = self._fetchone(
            f"SELECT {_RECORD_COLUMNS} FROM records WHERE store_id = %s AND id = %s{lock}",
            (store_id, record_id)
        )
        return _row_to_record(row) if row else None

    def update_record(self, record: Record) -> None:
        updated = self._execute("""
            UPDATE records
            SET title = %s, buffer = %s, encryption = %s, ttl_policy = %s,
                updated_at = %s, expires_at = %s
            WHERE store_id = %s AND id = %s
        """, (
            record.title,
            record.buffer,
            record.encryption,
            TTLPolicy(record.ttl_policy).value,
            record.updated_at,
            record.expires_at,
            record.store_id,
            record.id
        ))
        if updated != 1:
            raise StorageError(
                f"Record {record.id} vanished from store {record.store_id} during update"
            )

    def delete_record(self, store_id: int, record_id: int) -> bool:
        deleted = self._execute(
            "DELETE FROM records WHERE store_id = %s AND id = %s",
            (store_id, record_id)
        )
        return deleted > 0

    def list_records(self, store_id: int) -> List[Record]:
        rows = self._fetchall(
            f"SELECT {_RECORD_COLUMNS} FROM records WHERE store_id = %s ORDER BY id",
            (store_id,)
        )
        return [_row_to_record(r) for r in rows]

    def list_expired(self, now: datetime, include_buffer: bool = True) -> List[Record]:
        columns = _RECORD_COLUMNS if include_buffer else _RECORD_COLUMNS_NO_BUFFER
        rows = self._fetchall(f"""
            SELECT {columns}
            FROM records
            WHERE expires_at IS NOT NULL
            AND expires_at <= %s
            ORDER BY expires_at, store_id, id
        """, (now,))
        return [_row_to_record(r) for r in rows]


class PostgresGateway(PersistenceGateway):
    """
    Postgres-backed gateway (durable, default).

    Connection pooling follows the API runtime: the pool is created once,
    at startup, and closed at shutdown.
    """

    def __init__(
        self,
        database_url: str,
        min_size: int = 2,
        max_size: int = 10,
        timeout: float = 10.0,
        pool: Optional[ConnectionPool] = None
    ):
        """
        Initialize Postgres gateway.

        Args:
            database_url: Postgres connection URL
            min_size: Minimum pool connections
            max_size: Maximum pool connections
            timeout: Seconds to wait for a pooled connection
            pool: Existing pool to reuse (tests)
        """
        self.pool = pool or ConnectionPool(
            conninfo=database_url,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"row_factory": dict_row},
            open=True
        )
        self.lock_timeout_ms = int(timeout * 1000)
        logger.debug("PostgresGateway initialized")

    def setup(self) -> bool:
        try:
            with self.pool.connection() as conn:
                with conn.transaction():
                    existed = conn.execute(
                        "SELECT to_regclass('public.stores') IS NOT NULL AS present"
                    ).fetchone()["present"]
                    conn.execute(SCHEMA_SQL)
        except psycopg.Error as e:
            raise StorageError(f"Failed to set up schema: {e}") from e

        if not existed:
            logger.info("Initialized new vault schema")
        return not existed

    @contextmanager
    def transaction(self) -> Iterator[PostgresSession]:
        try:
            with self.pool.connection() as conn:
                with conn.transaction():
                    conn.execute(f"SET LOCAL lock_timeout = {self.lock_timeout_ms}")
                    yield PostgresSession(conn)
        except psycopg.Error as e:
            logger.error(f"Postgres transaction failed: {e}")
            raise StorageError(str(e)) from e

    @contextmanager
    def snapshot(self) -> Iterator[PostgresSession]:
        try:
            with self.pool.connection() as conn:
                with conn.transaction():
                    conn.execute(
                        "SET TRANSACTION ISOLATION LEVEL REPEATABLE READ READ ONLY"
                    )
                    yield PostgresSession(conn)
        except psycopg.Error as e:
            logger.error(f"Postgres snapshot failed: {e}")
            raise StorageError(str(e)) from e

    def get_store_name(self) -> str:
        return "postgres"

    def is_available(self) -> bool:
        try:
            with self.pool.connection() as conn:
                conn.execute("SELECT 1")
            return True
        except Exception as e:
            logger.error(f"Postgres health check failed: {e}")
            return False

    def close(self) -> None:
        logger.info("Closing Postgres connection pool")
        self.pool.close()
