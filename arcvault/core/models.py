"""
ArcVault - Data Model

Stores own records exclusively (cascade delete, never orphaning). A record
is attached to exactly one store at creation time and is never reassigned.

Updates are expressed as typed partial patches: every patch field defaults
to UNSET, and only fields that were explicitly set are applied. For
RecordPatch, `expires_at=None` clears the expiry ("never expires").
"""

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from arcvault.core.errors import ValidationError

MAX_TITLE_LENGTH = 255


class TTLPolicy(str, Enum):
    """What happens to a record once it expires (or is read)."""
    PRUNE = "prune"      # delete on calendar expiry
    RETAIN = "retain"    # retention hold: counted as expired, never pruned
    BURN = "burn"        # delete on read, also pruned on calendar expiry


class _Unset:
    """Sentinel type for patch fields that were not provided."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so comparisons never mix naive/aware."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class Store:
    """A named container of records; unit of access scoping and cascade."""
    id: Optional[int]                   # assigned by the gateway
    title: str
    created_at: datetime
    updated_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Record:
    """A titled, optionally expiring opaque payload owned by one store."""
    store_id: int                       # back reference to the owning store
    id: Optional[int]                   # unique within store_id only
    title: str
    buffer: bytes                       # opaque, never inspected
    created_at: datetime
    updated_at: datetime
    expires_at: Optional[datetime] = None
    ttl_policy: TTLPolicy = TTLPolicy.PRUNE
    encryption: str = "none"            # client-side label, never interpreted

    @property
    def size(self) -> int:
        return len(self.buffer)


@dataclass
class StoreSpec:
    title: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RecordSpec:
    title: str
    buffer: bytes = b""
    expires_at: Optional[datetime] = None
    ttl_policy: TTLPolicy = TTLPolicy.PRUNE
    encryption: str = "none"


@dataclass
class StorePatch:
    title: Any = UNSET
    metadata: Any = UNSET


@dataclass
class RecordPatch:
    title: Any = UNSET
    buffer: Any = UNSET
    expires_at: Any = UNSET
    ttl_policy: Any = UNSET
    encryption: Any = UNSET


def patch_values(patch: Any) -> Dict[str, Any]:
    """Return only the fields of a patch that were explicitly set."""
    return {
        f.name: getattr(patch, f.name)
        for f in fields(patch)
        if getattr(patch, f.name) is not UNSET
    }


# Validation

def validate_title(title: Any) -> str:
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("title must be a non-empty string")
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(
            f"title cannot exceed {MAX_TITLE_LENGTH} characters"
        )
    return title


def validate_metadata(metadata: Any) -> Dict[str, Any]:
    if not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object")
    return metadata


def validate_ttl_policy(value: Any) -> TTLPolicy:
    try:
        return TTLPolicy(value)
    except ValueError:
        raise ValidationError(
            f"ttl_policy must be one of {[p.value for p in TTLPolicy]}, got {value!r}"
        ) from None


def validate_expiry(
    created_at: datetime,
    expires_at: Optional[datetime]
) -> Optional[datetime]:
    """
    Enforce expires_at >= created_at.

    Raises:
        ValidationError: If expires_at is not a datetime or precedes created_at
    """
    if expires_at is None:
        return None
    if not isinstance(expires_at, datetime):
        raise ValidationError("expires_at must be a datetime")
    expires_at = ensure_aware(expires_at)
    if expires_at < ensure_aware(created_at):
        raise ValidationError(
            f"expires_at ({expires_at.isoformat()}) is before "
            f"created_at ({ensure_aware(created_at).isoformat()})"
        )
    return expires_at


def validate_store_spec(spec: StoreSpec) -> StoreSpec:
    validate_title(spec.title)
    validate_metadata(spec.metadata)
    return spec


def validate_record_spec(spec: RecordSpec, created_at: datetime) -> RecordSpec:
    validate_title(spec.title)
    if not isinstance(spec.buffer, (bytes, bytearray)):
        raise ValidationError("buffer must be bytes")
    if not isinstance(spec.encryption, str):
        raise ValidationError("encryption must be a string")
    return replace(
        spec,
        buffer=bytes(spec.buffer),
        ttl_policy=validate_ttl_policy(spec.ttl_policy),
        expires_at=validate_expiry(created_at, spec.expires_at),
    )


def apply_store_patch(store: Store, patch: StorePatch, now: datetime) -> Store:
    """Validate a StorePatch and return the patched copy of store."""
    changes = patch_values(patch)
    if "title" in changes:
        validate_title(changes["title"])
    if "metadata" in changes:
        validate_metadata(changes["metadata"])
    return replace(store, updated_at=now, **changes)


def apply_record_patch(record: Record, patch: RecordPatch, now: datetime) -> Record:
    """Validate a RecordPatch and return the patched copy of record."""
    changes = patch_values(patch)
    if "title" in changes:
        validate_title(changes["title"])
    if "buffer" in changes:
        if not isinstance(changes["buffer"], (bytes, bytearray)):
            raise ValidationError("buffer must be bytes")
        changes["buffer"] = bytes(changes["buffer"])
    if "encryption" in changes and not isinstance(changes["encryption"], str):
        raise ValidationError("encryption must be a string")
    if "ttl_policy" in changes:
        changes["ttl_policy"] = validate_ttl_policy(changes["ttl_policy"])
    if "expires_at" in changes:
        changes["expires_at"] = validate_expiry(record.created_at, changes["expires_at"])
    return replace(record, updated_at=now, **changes)
