"""
ArcVault - Store/Record Repository

Enforces the data model on top of the persistence gateway:
- referential integrity (records always belong to an existing store)
- field validation (titles, ttl policy, expires_at >= created_at)
- NotFound for absent stores/records
- one gateway session per call, committed before returning

Read-modify-write calls lock the target row first, so a delete and an
update of the same record never interleave. Calls on unrelated stores or
records do not wait on each other.

Both the API and the pruning scheduler go through this class; nothing
else touches the gateway.
"""

from typing import Callable, List, Optional, Tuple
from datetime import datetime

import structlog

from arcvault.core.errors import NotFound
from arcvault.core.expiration import ExpirationPolicy
from arcvault.core.models import (
    Record,
    RecordPatch,
    RecordSpec,
    Store,
    StorePatch,
    StoreSpec,
    TTLPolicy,
    apply_record_patch,
    apply_store_patch,
    validate_record_spec,
    validate_store_spec,
)
from arcvault.storage.gateway import GatewaySession, PersistenceGateway

logger = structlog.get_logger()


class Repository:
    """
    CRUD over stores and records.

    Usage:
        repo = Repository(gateway)
        store = repo.create_store(StoreSpec(title="Passwords"))
        record = repo.create_record(store.id, RecordSpec(title="mail", buffer=b"..."))
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        policy: Optional[ExpirationPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.gateway = gateway
        if policy is None:
            policy = ExpirationPolicy() if clock is None else ExpirationPolicy(clock=clock)
        elif clock is not None:
            # The caller's policy keeps its own clock
            policy = ExpirationPolicy(clock=clock, holds=policy.holds)
        self.policy = policy

    def now(self) -> datetime:
        return self.policy.now()

    # Helpers

    @staticmethod
    def _require_store(session: GatewaySession, store_id: int, for_update: bool = False) -> Store:
        store = session.get_store(store_id, for_update=for_update)
        if store is None:
            raise NotFound("store", store_id)
        return store

    @staticmethod
    def _require_record(
        session: GatewaySession,
        store_id: int,
        record_id: int,
        for_update: bool = False
    ) -> Record:
        record = session.get_record(store_id, record_id, for_update=for_update)
        if record is None:
            if session.get_store(store_id) is None:
                raise NotFound("store", store_id)
            raise NotFound("record", record_id, store_id=store_id)
        return record

    # Stores

    def create_store(self, spec: StoreSpec) -> Store:
        validate_store_spec(spec)
        now = self.now()
        with self.gateway.transaction() as session:
            store = session.insert_store(Store(
                id=None,
                title=spec.title,
                created_at=now,
                updated_at=now,
                metadata=dict(spec.metadata)
            ))
        logger.info("store.created", store_id=store.id)
        return store

    def get_store(self, store_id: int) -> Store:
        with self.gateway.transaction() as session:
            return self._require_store(session, store_id)

    def list_stores(self) -> List[Store]:
        with self.gateway.transaction() as session:
            return session.list_stores()

    def count_stores(self) -> int:
        with self.gateway.transaction() as session:
            return session.count_stores()

    def update_store(self, store_id: int, patch: StorePatch) -> Store:
        with self.gateway.transaction() as session:
            store = self._require_store(session, store_id, for_update=True)
            updated = apply_store_patch(store, patch, self.now())
            session.update_store(updated)
        logger.info("store.updated", store_id=store_id)
        return updated

    def delete_store(self, store_id: int) -> None:
        """Delete a store and all of its records in one transaction."""
        with self.gateway.transaction() as session:
            self._require_store(session, store_id, for_update=True)
            removed = session.delete_store(store_id)
        logger.info("store.deleted", store_id=store_id, records_removed=removed)

    # Records

    def create_record(self, store_id: int, spec: RecordSpec) -> Record:
        now = self.now()
        spec = validate_record_spec(spec, now)
        with self.gateway.transaction() as session:
            self._require_store(session, store_id, for_update=True)
            record = session.insert_record(Record(
                store_id=store_id,
                id=None,
                title=spec.title,
                buffer=spec.buffer,
                created_at=now,
                updated_at=now,
                expires_at=spec.expires_at,
                ttl_policy=spec.ttl_policy,
                encryption=spec.encryption
            ))
        logger.info(
            "record.created",
            store_id=store_id,
            record_id=record.id,
            size=record.size,
            expires_at=record.expires_at.isoformat() if record.expires_at else None
        )
        return record

    def get_record(self, store_id: int, record_id: int) -> Record:
        with self.gateway.transaction() as session:
            return self._require_record(session, store_id, record_id)

    def list_records(self, store_id: int) -> List[Record]:
        with self.gateway.transaction() as session:
            self._require_store(session, store_id)
            return session.list_records(store_id)

    def read_buffer(self, store_id: int, record_id: int) -> Record:
        """
        Fetch a record for its payload.

        Records with TTLPolicy.BURN are deleted in the same transaction
        that reads them.
        """
        with self.gateway.transaction() as session:
            record = self._require_record(session, store_id, record_id, for_update=True)
            if record.ttl_policy == TTLPolicy.BURN:
                session.delete_record(store_id, record_id)
                logger.info("record.burned", store_id=store_id, record_id=record_id)
        return record

    def update_record(self, store_id: int, record_id: int, patch: RecordPatch) -> Record:
        with self.gateway.transaction() as session:
            record = self._require_record(session, store_id, record_id, for_update=True)
            updated = apply_record_patch(record, patch, self.now())
            session.update_record(updated)
        logger.info("record.updated", store_id=store_id, record_id=record_id)
        return updated

    def delete_record(self, store_id: int, record_id: int) -> None:
        with self.gateway.transaction() as session:
            self._require_record(session, store_id, record_id, for_update=True)
            session.delete_record(store_id, record_id)
        logger.info("record.deleted", store_id=store_id, record_id=record_id)

    # Expiration

    def list_expired(
        self,
        now: Optional[datetime] = None,
        include_buffer: bool = True
    ) -> List[Record]:
        """
        All records whose expires_at is in the past, across all stores.

        include_buffer=False skips loading payloads; the returned records
        then carry an empty buffer.
        """
        now = now or self.now()
        with self.gateway.transaction() as session:
            return session.list_expired(now, include_buffer=include_buffer)

    def count_expired(self) -> Tuple[int, int]:
        """
        Count expired records and the prunable subset.

        Returns:
            (expired, prunable)
        """
        now = self.now()
        expired = self.list_expired(now, include_buffer=False)
        prunable = sum(1 for r in expired if self.policy.is_prunable(r, now))
        return len(expired), prunable

    def list_prunable(self) -> List[Record]:
        """Expired records no hold applies to, without their payloads."""
        now = self.now()
        return [
            r for r in self.list_expired(now, include_buffer=False)
            if self.policy.is_prunable(r, now)
        ]
