"""
ArcVault - MemoryGateway

In-process implementation of the persistence gateway. Data lives only as
long as the process; intended for development (STORAGE_BACKEND=memory) and
for the test suite.

Consistency model:
- A short structural mutex guards the committed dictionaries
- Row locks (for_update=True) are per-entity and held until the session
  ends, so unrelated stores and records never wait on each other
- Writes go to a per-session overlay. Other sessions only ever read
  committed state; the overlay is published in one critical section at
  commit and dropped on rollback
- Ids are allocated from the shared counters at insert time and never
  reused, so a rolled-back insert leaves a gap
"""

from contextlib import contextmanager
from copy import deepcopy
from dataclasses import replace
from datetime import datetime
from typing import Dict, Hashable, Iterator, List, Optional, Set, Tuple
import logging
import threading
import weakref

from arcvault.core.errors import StorageError
from arcvault.core.models import Record, Store, ensure_aware
from arcvault.storage.gateway import GatewaySession, PersistenceGateway

logger = logging.getLogger(__name__)

RecordKey = Tuple[int, int]


class _RowLock:
    """Per-entity lock; weakly registered so deleted entities free theirs."""

    def __init__(self):
        self.lock = threading.Lock()


def _copy_store(store: Store) -> Store:
    return replace(store, metadata=deepcopy(store.metadata))


def _copy_record(record: Record) -> Record:
    return replace(record)


class MemorySession(GatewaySession):
    """Read-write session over a MemoryGateway."""

    def __init__(self, gateway: "MemoryGateway"):
        self._gw = gateway
        self._held: Dict[Hashable, _RowLock] = {}
        # Pending writes; None marks a deletion
        self._stores: Dict[int, Optional[Store]] = {}
        self._records: Dict[RecordKey, Optional[Record]] = {}
        self._new_stores: Set[int] = set()
        self._new_records: Set[RecordKey] = set()

    # Locking

    def _lock(self, key: Hashable) -> None:
        if key in self._held:
            return
        row_lock = self._gw._row_lock(key)
        if not row_lock.lock.acquire(timeout=self._gw.lock_timeout):
            raise StorageError(f"Timed out waiting for row lock {key}")
        self._held[key] = row_lock

    def _release(self) -> None:
        for row_lock in self._held.values():
            row_lock.lock.release()
        self._held.clear()

    # Commit / rollback

    def _commit(self) -> None:
        gw = self._gw
        try:
            with gw._mutex:
                self._check_conflicts()
                self._publish()
        finally:
            self._discard()

    def _rollback(self) -> None:
        gw = self._gw
        with gw._mutex:
            for store_id in self._new_stores:
                if store_id not in gw._stores:
                    gw._next_record_id.pop(store_id, None)
        self._discard()

    def _discard(self) -> None:
        self._stores.clear()
        self._records.clear()
        self._new_stores.clear()
        self._new_records.clear()
        self._release()

    def _check_conflicts(self) -> None:
        gw = self._gw
        for store_id in self._new_stores:
            if store_id in gw._stores:
                raise StorageError(f"Store id {store_id} already exists")

        for store_id, record_id in self._new_records:
            if store_id in self._stores:
                store_exists = self._stores[store_id] is not None
            else:
                store_exists = store_id in gw._stores
            if not store_exists:
                raise StorageError(f"Store {store_id} does not exist")
            if record_id in gw._records.get(store_id, {}):
                raise StorageError(
                    f"Record id {record_id} already exists in store {store_id}"
                )

    def _publish(self) -> None:
        gw = self._gw
        for store_id, store in self._stores.items():
            if store is None:
                gw._stores.pop(store_id, None)
                gw._records.pop(store_id, None)
                gw._next_record_id.pop(store_id, None)
            else:
                gw._stores[store_id] = store
                gw._records.setdefault(store_id, {})
                gw._next_record_id.setdefault(store_id, 1)

        for (store_id, record_id), record in self._records.items():
            records = gw._records.get(store_id)
            if records is None:
                continue
            if record is None:
                records.pop(record_id, None)
            else:
                records[record_id] = record

    # Visibility: own pending writes first, then committed state

    def _visible_store(self, store_id: int) -> Optional[Store]:
        if store_id in self._stores:
            return self._stores[store_id]
        with self._gw._mutex:
            return self._gw._stores.get(store_id)

    def _visible_record(self, store_id: int, record_id: int) -> Optional[Record]:
        if self._visible_store(store_id) is None:
            return None
        key = (store_id, record_id)
        if key in self._records:
            return self._records[key]
        with self._gw._mutex:
            return self._gw._records.get(store_id, {}).get(record_id)

    def _visible_records(self, store_id: int) -> Dict[int, Record]:
        if self._visible_store(store_id) is None:
            return {}
        with self._gw._mutex:
            merged = dict(self._gw._records.get(store_id, {}))
        for (sid, record_id), record in self._records.items():
            if sid != store_id:
                continue
            if record is None:
                merged.pop(record_id, None)
            else:
                merged[record_id] = record
        return merged

    def _visible_stores(self) -> Dict[int, Store]:
        with self._gw._mutex:
            merged = dict(self._gw._stores)
        for store_id, store in self._stores.items():
            if store is None:
                merged.pop(store_id, None)
            else:
                merged[store_id] = store
        return merged

    # Stores

    def insert_store(self, store: Store) -> Store:
        gw = self._gw
        with gw._mutex:
            if store.id is None:
                store_id = gw._next_store_id
            else:
                store_id = store.id
                if store_id in gw._stores or self._stores.get(store_id) is not None:
                    raise StorageError(f"Store id {store_id} already exists")
            gw._next_store_id = max(gw._next_store_id, store_id + 1)
            gw._next_record_id.setdefault(store_id, 1)

        stored = replace(_copy_store(store), id=store_id)
        self._stores[store_id] = stored
        self._new_stores.add(store_id)
        return _copy_store(stored)

    def get_store(self, store_id: int, for_update: bool = False) -> Optional[Store]:
        if for_update:
            self._lock(("store", store_id))
        store = self._visible_store(store_id)
        return _copy_store(store) if store else None

    def update_store(self, store: Store) -> None:
        if self._visible_store(store.id) is None:
            raise StorageError(f"Store {store.id} vanished during update")
        self._stores[store.id] = _copy_store(store)

    def delete_store(self, store_id: int) -> int:
        self._lock(("store", store_id))
        # Wait for in-flight record updates of this store before cascading
        for record_id in sorted(self._visible_records(store_id)):
            self._lock(("record", store_id, record_id))

        if self._visible_store(store_id) is None:
            return 0
        removed = len(self._visible_records(store_id))

        self._stores[store_id] = None
        self._new_stores.discard(store_id)
        for key in [k for k in self._records if k[0] == store_id]:
            del self._records[key]
            self._new_records.discard(key)
        return removed

    def list_stores(self) -> List[Store]:
        return [_copy_store(s) for _, s in sorted(self._visible_stores().items())]

    def count_stores(self) -> int:
        return len(self._visible_stores())

    # Records

    def insert_record(self, record: Record) -> Record:
        gw = self._gw
        store_id = record.store_id
        if self._visible_store(store_id) is None:
            raise StorageError(f"Store {store_id} does not exist")

        with gw._mutex:
            next_id = gw._next_record_id.get(store_id, 1)
            if record.id is None:
                record_id = next_id
            else:
                record_id = record.id
                if self._visible_record(store_id, record_id) is not None:
                    raise StorageError(
                        f"Record id {record_id} already exists in store {store_id}"
                    )
            gw._next_record_id[store_id] = max(next_id, record_id + 1)

        stored = replace(record, id=record_id)
        self._records[(store_id, record_id)] = stored
        self._new_records.add((store_id, record_id))
        return _copy_record(stored)

    def get_record(
        self,
        store_id: int,
        record_id: int,
        for_update: bool = False
    ) -> Optional[Record]:
        if for_update:
            self._lock(("record", store_id, record_id))
        record = self._visible_record(store_id, record_id)
        return _copy_record(record) if record else None

    def update_record(self, record: Record) -> None:
        if self._visible_record(record.store_id, record.id) is None:
            raise StorageError(
                f"Record {record.id} vanished from store {record.store_id} during update"
            )
        self._records[(record.store_id, record.id)] = _copy_record(record)

    def delete_record(self, store_id: int, record_id: int) -> bool:
        if self._visible_record(store_id, record_id) is None:
            return False
        key = (store_id, record_id)
        self._records[key] = None
        self._new_records.discard(key)
        return True

    def list_records(self, store_id: int) -> List[Record]:
        records = self._visible_records(store_id)
        return [_copy_record(r) for _, r in sorted(records.items())]

    def list_expired(self, now: datetime, include_buffer: bool = True) -> List[Record]:
        now = ensure_aware(now)
        expired = [
            _copy_record(r) if include_buffer else replace(r, buffer=b"")
            for store_id in self._visible_stores()
            for r in self._visible_records(store_id).values()
            if r.expires_at is not None and ensure_aware(r.expires_at) <= now
        ]
        return sorted(expired, key=lambda r: (r.expires_at, r.store_id, r.id))


class MemorySnapshotSession(MemorySession):
    """Read-only session over a frozen copy of the gateway state."""

    def __init__(self, gateway: "MemoryGateway"):
        frozen = MemoryGateway(lock_timeout=gateway.lock_timeout)
        with gateway._mutex:
            frozen._stores = {k: _copy_store(v) for k, v in gateway._stores.items()}
            frozen._records = {
                k: {rk: _copy_record(rv) for rk, rv in v.items()}
                for k, v in gateway._records.items()
            }
        super().__init__(frozen)

    def _read_only(self, *args, **kwargs):
        raise StorageError("Snapshot sessions are read-only")

    insert_store = update_store = delete_store = _read_only
    insert_record = update_record = delete_record = _read_only


class MemoryGateway(PersistenceGateway):
    """
    Volatile gateway backed by dictionaries.

    Args:
        lock_timeout: Seconds to wait for a row lock before StorageError
    """

    def __init__(self, lock_timeout: float = 10.0):
        self.lock_timeout = lock_timeout
        self._mutex = threading.RLock()
        self._locks_guard = threading.Lock()
        self._row_locks: "weakref.WeakValueDictionary[Hashable, _RowLock]" = (
            weakref.WeakValueDictionary()
        )
        self._stores: Dict[int, Store] = {}
        self._records: Dict[int, Dict[int, Record]] = {}
        self._next_store_id = 1
        self._next_record_id: Dict[int, int] = {}
        self._initialized = False

    def _row_lock(self, key: Hashable) -> _RowLock:
        with self._locks_guard:
            row_lock = self._row_locks.get(key)
            if row_lock is None:
                row_lock = _RowLock()
                self._row_locks[key] = row_lock
            return row_lock

    def setup(self) -> bool:
        is_new = not self._initialized
        self._initialized = True
        return is_new

    @contextmanager
    def transaction(self) -> Iterator[MemorySession]:
        session = MemorySession(self)
        try:
            yield session
        except BaseException:
            session._rollback()
            raise
        session._commit()

    @contextmanager
    def snapshot(self) -> Iterator[MemorySession]:
        yield MemorySnapshotSession(self)

    def get_store_name(self) -> str:
        return "memory"

    def is_available(self) -> bool:
        return True
