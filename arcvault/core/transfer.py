"""
ArcVault - Import/Export Coordinator

Serializes the full store graph for backup, and restores or seeds it.

Snapshot format (JSON):
    {
        "version": 1,
        "exported_at": "2026-01-01T00:00:00+00:00",
        "stores": [
            {"id": 1, "title": "...", "created_at": "...", "updated_at": "...",
             "metadata": {},
             "records": [
                 {"id": 1, "title": "...", "buffer": "<base64>",
                  "encryption": "none", "ttl_policy": "prune",
                  "created_at": "...", "updated_at": "...", "expires_at": null}
             ]}
        ]
    }

Guarantees:
- Exports read a single consistent snapshot session
- Imports are all-or-nothing: the whole snapshot is parsed and validated
  before the first write, and every write happens in one session
- Records with expires_at < created_at are rejected, never corrected
- Store ids are preserved when free; a taken id gets a fresh one
- Imports never prune: expired records are restored as they were
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import base64
import binascii
import json
import os
import tempfile

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
import structlog

from arcvault.core.errors import ArcVaultError, MalformedData, StorageError
from arcvault.core.models import (
    Record,
    Store,
    TTLPolicy,
    ensure_aware,
    validate_expiry,
    validate_metadata,
    validate_title,
)
from arcvault.core.repository import Repository

logger = structlog.get_logger()

SNAPSHOT_VERSION = 1


class RecordSnapshot(BaseModel):
    """Serialized record; buffer is base64 text."""
    id: int = Field(ge=1)
    title: str
    buffer: str = ""
    encryption: str = "none"
    ttl_policy: TTLPolicy = TTLPolicy.PRUNE
    created_at: datetime
    updated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @field_validator("title")
    @classmethod
    def check_title(cls, v: str) -> str:
        return validate_title(v)

    @field_validator("buffer")
    @classmethod
    def check_buffer(cls, v: str) -> str:
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("buffer must be base64 encoded") from None
        return v

    @model_validator(mode="after")
    def check_expiry(self) -> "RecordSnapshot":
        # expires_at < created_at is rejected, not corrected
        validate_expiry(self.created_at, self.expires_at)
        return self

    @classmethod
    def from_record(cls, record: Record) -> "RecordSnapshot":
        return cls(
            id=record.id,
            title=record.title,
            buffer=base64.b64encode(record.buffer).decode("ascii"),
            encryption=record.encryption,
            ttl_policy=record.ttl_policy,
            created_at=record.created_at,
            updated_at=record.updated_at,
            expires_at=record.expires_at
        )

    def to_record(self, store_id: int) -> Record:
        created_at = ensure_aware(self.created_at)
        return Record(
            store_id=store_id,
            id=self.id,
            title=self.title,
            buffer=base64.b64decode(self.buffer),
            created_at=created_at,
            updated_at=ensure_aware(self.updated_at) if self.updated_at else created_at,
            expires_at=ensure_aware(self.expires_at) if self.expires_at else None,
            ttl_policy=self.ttl_policy,
            encryption=self.encryption
        )


class StoreSnapshot(BaseModel):
    """Serialized store with its records."""
    id: Optional[int] = Field(default=None, ge=1)
    title: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    records: List[RecordSnapshot] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def check_title(cls, v: str) -> str:
        return validate_title(v)

    @field_validator("metadata")
    @classmethod
    def check_metadata(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_metadata(v)

    @model_validator(mode="after")
    def check_unique_record_ids(self) -> "StoreSnapshot":
        ids = [r.id for r in self.records]
        if len(ids) != len(set(ids)):
            raise ValueError(f"duplicate record ids in store {self.id or self.title!r}")
        return self

    @classmethod
    def from_store(cls, store: Store, records: List[Record]) -> "StoreSnapshot":
        return cls(
            id=store.id,
            title=store.title,
            created_at=store.created_at,
            updated_at=store.updated_at,
            metadata=store.metadata,
            records=[RecordSnapshot.from_record(r) for r in records]
        )

    def to_store(self) -> Store:
        created_at = ensure_aware(self.created_at)
        return Store(
            id=self.id,
            title=self.title,
            created_at=created_at,
            updated_at=ensure_aware(self.updated_at) if self.updated_at else created_at,
            metadata=dict(self.metadata)
        )


class Snapshot(BaseModel):
    """Serialized state of the whole vault (or of one store)."""
    version: int = SNAPSHOT_VERSION
    exported_at: Optional[datetime] = None
    stores: List[StoreSnapshot] = Field(default_factory=list)

    @field_validator("version")
    @classmethod
    def check_version(cls, v: int) -> int:
        if v != SNAPSHOT_VERSION:
            raise ValueError(f"unsupported snapshot version {v}")
        return v

    @model_validator(mode="after")
    def check_unique_store_ids(self) -> "Snapshot":
        ids = [s.id for s in self.stores if s.id is not None]
        if len(ids) != len(set(ids)):
            raise ValueError("duplicate store ids in snapshot")
        return self


SnapshotInput = Union[Dict[str, Any], List[Any], str, bytes]


def parse_snapshot(data: SnapshotInput) -> Snapshot:
    """
    Parse and validate snapshot data.

    Accepts a snapshot dict, a bare list of stores (seed files), or JSON
    text/bytes of either.

    Raises:
        MalformedData: If data cannot be parsed or violates an invariant
    """
    if isinstance(data, (str, bytes, bytearray)):
        try:
            data = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedData(f"Snapshot is not valid JSON: {e}") from e

    if isinstance(data, list):
        data = {"stores": data}

    if not isinstance(data, dict):
        raise MalformedData(
            f"Snapshot must be a JSON object or a list of stores, got {type(data).__name__}"
        )

    try:
        return Snapshot.model_validate(data)
    except PydanticValidationError as e:
        raise MalformedData(f"Invalid snapshot: {e}") from e
    except ArcVaultError as e:
        raise MalformedData(f"Invalid snapshot: {e}") from e


class TransferCoordinator:
    """
    Export/import of the store graph through the Repository's gateway.

    Usage:
        transfer = TransferCoordinator(repo)
        data = transfer.export_all()
        transfer.import_snapshot(data)
    """

    def __init__(self, repository: Repository):
        self.repository = repository

    @property
    def gateway(self):
        return self.repository.gateway

    # Export

    def export_all(self) -> Dict[str, Any]:
        """Serialize every store and its records at a single logical instant."""
        with self.gateway.snapshot() as session:
            stores = [
                StoreSnapshot.from_store(store, session.list_records(store.id))
                for store in session.list_stores()
            ]
        snapshot = Snapshot(exported_at=self.repository.now(), stores=stores)
        logger.info(
            "transfer.export",
            stores=len(stores),
            records=sum(len(s.records) for s in stores)
        )
        return snapshot.model_dump(mode="json")

    def export_one(self, store_id: int) -> Dict[str, Any]:
        """
        Serialize a single store.

        Raises:
            NotFound: If the store does not exist
        """
        with self.gateway.snapshot() as session:
            store = self.repository._require_store(session, store_id)
            stores = [StoreSnapshot.from_store(store, session.list_records(store_id))]
        snapshot = Snapshot(exported_at=self.repository.now(), stores=stores)
        logger.info("transfer.export", store_id=store_id, records=len(stores[0].records))
        return snapshot.model_dump(mode="json")

    # Import

    def import_snapshot(self, data: SnapshotInput) -> List[Store]:
        """
        Restore stores and records from a snapshot.

        The snapshot is validated in full before anything is written, and
        all writes share one transaction.

        Returns:
            Restored stores (with their possibly reassigned ids)

        Raises:
            MalformedData: If the snapshot fails to parse or validate
            StorageError: If the backend fails; nothing is applied
        """
        snapshot = parse_snapshot(data)
        restored: List[Store] = []

        with self.gateway.transaction() as session:
            for store_snapshot in snapshot.stores:
                store = store_snapshot.to_store()
                if store.id is not None and session.get_store(store.id) is not None:
                    logger.warning(
                        "transfer.import.store_id_taken",
                        store_id=store.id,
                        title=store.title
                    )
                    store.id = None

                stored = session.insert_store(store)
                for record_snapshot in store_snapshot.records:
                    session.insert_record(record_snapshot.to_record(stored.id))
                restored.append(stored)

        logger.info(
            "transfer.import",
            stores=len(restored),
            records=sum(len(s.records) for s in snapshot.stores)
        )
        return restored

    def seed_if_empty(self, seed: SnapshotInput) -> int:
        """
        Populate default content when the vault holds no stores.

        Never overwrites existing data.

        Returns:
            Number of seeded stores (0 when the vault was not empty)
        """
        existing = self.repository.count_stores()
        if existing > 0:
            logger.debug("transfer.seed.skipped", stores=existing)
            return 0

        restored = self.import_snapshot(seed)
        logger.warning("transfer.seed.done", stores=len(restored))
        return len(restored)

    # Files

    def export_to_file(self, path: Union[str, Path], store_id: Optional[int] = None) -> Path:
        """
        Export to a JSON file (whole vault, or one store when store_id is set).

        The file is written to a temporary sibling and renamed into place,
        so a failed export never leaves a truncated file behind.

        Raises:
            StorageError: If the file cannot be written
        """
        data = self.export_all() if store_id is None else self.export_one(store_id)
        path = Path(path)
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
        except OSError as e:
            raise StorageError(f"Cannot write {path}: {e}") from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_name, path)
        except OSError as e:
            self._discard_temp(tmp_name)
            raise StorageError(f"Cannot write {path}: {e}") from e
        except BaseException:
            self._discard_temp(tmp_name)
            raise

        logger.info("transfer.export.file", path=str(path), store_id=store_id)
        return path

    @staticmethod
    def _discard_temp(tmp_name: str) -> None:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)

    def _read_file(self, path: Union[str, Path]) -> bytes:
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as e:
            raise MalformedData(f"Cannot read {path}: {e}") from e

    def import_from_file(self, path: Union[str, Path]) -> List[Store]:
        logger.info("transfer.import.file", path=str(path))
        return self.import_snapshot(self._read_file(path))

    def seed_from_file(self, path: Union[str, Path]) -> int:
        return self.seed_if_empty(self._read_file(path))
