"""
ArcVault API v1 - Store Endpoints

Stores are the unit of access scoping: a token scoped to store ids only
sees and touches those stores.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel, Field
import structlog

from arcvault.api.dependencies import (
    Principal,
    authorize_store,
    get_repository,
    require_unrestricted,
    verify_token,
)
from arcvault.core.models import UNSET, Store, StorePatch, StoreSpec
from arcvault.core.repository import Repository

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1")


# Pydantic models
class StoreCreate(BaseModel):
    title: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StoreUpdate(BaseModel):
    """Partial update; omitted fields are left unchanged."""
    title: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_patch(self) -> StorePatch:
        given = self.model_fields_set
        return StorePatch(
            title=self.title if "title" in given else UNSET,
            metadata=self.metadata if "metadata" in given else UNSET
        )


class StoreOut(BaseModel):
    id: int
    title: str
    created_at: datetime
    updated_at: datetime
    metadata: Dict[str, Any]

    @classmethod
    def from_store(cls, store: Store) -> "StoreOut":
        return cls(
            id=store.id,
            title=store.title,
            created_at=store.created_at,
            updated_at=store.updated_at,
            metadata=store.metadata
        )


class StoreListResponse(BaseModel):
    count: int
    stores: List[StoreOut]


# Endpoints
@router.get("/stores", response_model=StoreListResponse)
def list_stores(
    principal: Principal = Depends(verify_token),
    repo: Repository = Depends(get_repository)
):
    """List the stores visible to the caller's token."""
    stores = [s for s in repo.list_stores() if principal.can_access(s.id)]
    return StoreListResponse(
        count=len(stores),
        stores=[StoreOut.from_store(s) for s in stores]
    )


@router.post("/stores", response_model=StoreOut, status_code=status.HTTP_201_CREATED)
def create_store(
    request: Request,
    body: StoreCreate,
    principal: Principal = Depends(require_unrestricted),
    repo: Repository = Depends(get_repository)
):
    """
    Create a store.

    Scoped tokens cannot create stores: the new id would fall outside
    their scope.
    """
    store = repo.create_store(StoreSpec(title=body.title, metadata=body.metadata))
    logger.info(
        "stores.create.success",
        request_id=request.state.request_id,
        store_id=store.id
    )
    return StoreOut.from_store(store)


@router.get("/stores/{store_id}", response_model=StoreOut)
def get_store(
    store_id: int,
    principal: Principal = Depends(authorize_store),
    repo: Repository = Depends(get_repository)
):
    return StoreOut.from_store(repo.get_store(store_id))


@router.put("/stores/{store_id}", response_model=StoreOut)
def update_store(
    store_id: int,
    body: StoreUpdate,
    principal: Principal = Depends(authorize_store),
    repo: Repository = Depends(get_repository)
):
    return StoreOut.from_store(repo.update_store(store_id, body.to_patch()))


@router.delete("/stores/{store_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_store(
    request: Request,
    store_id: int,
    principal: Principal = Depends(authorize_store),
    repo: Repository = Depends(get_repository)
):
    """Delete a store and every record it owns."""
    repo.delete_store(store_id)
    logger.info(
        "stores.delete.success",
        request_id=request.state.request_id,
        store_id=store_id
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
