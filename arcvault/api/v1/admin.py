"""
ArcVault API v1 - Admin Endpoints

Backup and restore of the store graph to files on the server host.
Whole-vault operations require an unscoped token; exporting a single store
only requires access to that store.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
import structlog

from arcvault.api.dependencies import (
    Principal,
    get_transfer,
    require_store_access,
    require_unrestricted,
    verify_token,
)
from arcvault.api.v1.stores import StoreOut
from arcvault.core.transfer import TransferCoordinator

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/admin")


# Pydantic models
class ExportRequest(BaseModel):
    store_id: Optional[int] = None
    output: str = "arc.json"


class ExportResponse(BaseModel):
    output: str
    store_id: Optional[int]


class ImportRequest(BaseModel):
    input: str


class ImportResponse(BaseModel):
    count: int
    stores: List[StoreOut]


# Endpoints
@router.post("/export", response_model=ExportResponse)
def export_snapshot(
    request: Request,
    body: ExportRequest,
    principal: Principal = Depends(verify_token),
    transfer: TransferCoordinator = Depends(get_transfer)
):
    """
    Write a snapshot of the vault (or of one store) to body.output.

    Raises:
        403: Scoped token exporting the whole vault or a foreign store
        404: store_id not found
    """
    if body.store_id is None:
        require_unrestricted(principal)
    else:
        require_store_access(principal, body.store_id)

    path = transfer.export_to_file(body.output, store_id=body.store_id)
    logger.info(
        "admin.export.success",
        request_id=request.state.request_id,
        token_id=principal.token_id,
        output=str(path),
        store_id=body.store_id
    )
    return ExportResponse(output=str(path), store_id=body.store_id)


@router.post("/import", response_model=ImportResponse)
def import_snapshot(
    request: Request,
    body: ImportRequest,
    principal: Principal = Depends(require_unrestricted),
    transfer: TransferCoordinator = Depends(get_transfer)
):
    """
    Restore stores and records from a snapshot file.

    All-or-nothing: a malformed snapshot (400) leaves the vault untouched.
    """
    stores = transfer.import_from_file(body.input)
    logger.info(
        "admin.import.success",
        request_id=request.state.request_id,
        token_id=principal.token_id,
        input=body.input,
        stores=len(stores)
    )
    return ImportResponse(
        count=len(stores),
        stores=[StoreOut.from_store(s) for s in stores]
    )
