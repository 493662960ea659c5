"""
ArcVault API v1 - Record Endpoints

Record payloads travel as base64 text in JSON bodies. The buffer endpoint
returns the raw bytes and applies the burn policy: a record with
ttl_policy "burn" is deleted by the read that returns its buffer.
"""

from datetime import datetime
from typing import List, Optional
import base64
import binascii

from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel
import structlog

from arcvault.api.dependencies import Principal, authorize_store, get_repository
from arcvault.core.errors import ValidationError
from arcvault.core.models import Record, RecordPatch, RecordSpec, TTLPolicy
from arcvault.core.repository import Repository

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1")


def _decode_buffer(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("buffer must be base64 encoded") from None


# Pydantic models
class RecordCreate(BaseModel):
    title: str
    buffer: str = ""                        # base64
    expires_at: Optional[datetime] = None
    ttl_policy: TTLPolicy = TTLPolicy.PRUNE
    encryption: str = "none"

    def to_spec(self) -> RecordSpec:
        return RecordSpec(
            title=self.title,
            buffer=_decode_buffer(self.buffer),
            expires_at=self.expires_at,
            ttl_policy=self.ttl_policy,
            encryption=self.encryption
        )


class RecordUpdate(BaseModel):
    """
    Partial update; omitted fields are left unchanged.

    An explicit "expires_at": null clears the expiry.
    """
    title: Optional[str] = None
    buffer: Optional[str] = None
    expires_at: Optional[datetime] = None
    ttl_policy: Optional[TTLPolicy] = None
    encryption: Optional[str] = None

    def to_patch(self) -> RecordPatch:
        given = self.model_fields_set
        patch = RecordPatch()
        if "title" in given:
            patch.title = self.title
        if "buffer" in given:
            patch.buffer = _decode_buffer(self.buffer) if self.buffer is not None else None
        if "expires_at" in given:
            patch.expires_at = self.expires_at
        if "ttl_policy" in given:
            patch.ttl_policy = self.ttl_policy
        if "encryption" in given:
            patch.encryption = self.encryption
        return patch


class RecordOut(BaseModel):
    """Record summary; the payload is served by the buffer endpoint."""
    store_id: int
    id: int
    title: str
    size: int
    encryption: str
    ttl_policy: TTLPolicy
    created_at: datetime
    updated_at: datetime
    expires_at: Optional[datetime]
    expired: bool

    @classmethod
    def from_record(cls, record: Record, expired: bool) -> "RecordOut":
        return cls(
            store_id=record.store_id,
            id=record.id,
            title=record.title,
            size=record.size,
            encryption=record.encryption,
            ttl_policy=record.ttl_policy,
            created_at=record.created_at,
            updated_at=record.updated_at,
            expires_at=record.expires_at,
            expired=expired
        )


class RecordListResponse(BaseModel):
    store_id: int
    count: int
    records: List[RecordOut]


def _out(repo: Repository, record: Record) -> RecordOut:
    return RecordOut.from_record(record, repo.policy.is_expired(record))


# Endpoints
@router.get("/stores/{store_id}/records", response_model=RecordListResponse)
def list_records(
    store_id: int,
    principal: Principal = Depends(authorize_store),
    repo: Repository = Depends(get_repository)
):
    records = repo.list_records(store_id)
    return RecordListResponse(
        store_id=store_id,
        count=len(records),
        records=[_out(repo, r) for r in records]
    )


@router.post(
    "/stores/{store_id}/records",
    response_model=RecordOut,
    status_code=status.HTTP_201_CREATED
)
def create_record(
    request: Request,
    store_id: int,
    body: RecordCreate,
    principal: Principal = Depends(authorize_store),
    repo: Repository = Depends(get_repository)
):
    """
    Create a record in a store.

    Raises:
        404: Store not found
        422: Invalid title, buffer or expires_at before creation time
    """
    record = repo.create_record(store_id, body.to_spec())
    logger.info(
        "records.create.success",
        request_id=request.state.request_id,
        store_id=store_id,
        record_id=record.id
    )
    return _out(repo, record)


@router.get("/stores/{store_id}/records/{record_id}", response_model=RecordOut)
def get_record(
    store_id: int,
    record_id: int,
    principal: Principal = Depends(authorize_store),
    repo: Repository = Depends(get_repository)
):
    return _out(repo, repo.get_record(store_id, record_id))


@router.get(
    "/stores/{store_id}/records/{record_id}/buffer",
    response_class=Response,
    responses={200: {"content": {"application/octet-stream": {}}}}
)
def get_record_buffer(
    request: Request,
    store_id: int,
    record_id: int,
    principal: Principal = Depends(authorize_store),
    repo: Repository = Depends(get_repository)
):
    """Raw payload bytes. Burn records are gone once this returns."""
    record = repo.read_buffer(store_id, record_id)
    logger.info(
        "records.buffer.read",
        request_id=request.state.request_id,
        store_id=store_id,
        record_id=record_id,
        size=record.size,
        burned=record.ttl_policy == TTLPolicy.BURN
    )
    return Response(
        content=record.buffer,
        media_type="application/octet-stream",
        headers={"X-Record-Encryption": record.encryption}
    )


@router.put("/stores/{store_id}/records/{record_id}", response_model=RecordOut)
def update_record(
    store_id: int,
    record_id: int,
    body: RecordUpdate,
    principal: Principal = Depends(authorize_store),
    repo: Repository = Depends(get_repository)
):
    return _out(repo, repo.update_record(store_id, record_id, body.to_patch()))


@router.delete(
    "/stores/{store_id}/records/{record_id}",
    status_code=status.HTTP_204_NO_CONTENT
)
def delete_record(
    request: Request,
    store_id: int,
    record_id: int,
    principal: Principal = Depends(authorize_store),
    repo: Repository = Depends(get_repository)
):
    repo.delete_record(store_id, record_id)
    logger.info(
        "records.delete.success",
        request_id=request.state.request_id,
        store_id=store_id,
        record_id=record_id
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
