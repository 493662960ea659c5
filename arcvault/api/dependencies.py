"""
ArcVault - API Dependencies

Shared dependencies for the FastAPI application:
- Access gate (bearer token -> Principal, store scoping)
- Repository / transfer / scheduler lookup from app state
- Request ID generation

The gate runs before any repository call, so an unauthenticated request
never touches storage.
"""

from dataclasses import dataclass, field
from typing import FrozenSet, Optional
import hmac
import uuid

from fastapi import Depends, Header, HTTPException, Request, status
import structlog

from arcvault.config import ArcVaultConfig, get_config
from arcvault.core.repository import Repository
from arcvault.core.scheduler import PruningScheduler
from arcvault.core.transfer import TransferCoordinator

logger = structlog.get_logger()


@dataclass(frozen=True)
class Principal:
    """
    Authenticated caller.

    store_ids limits the stores the caller may see; empty means every store.
    """
    token_id: str
    store_ids: FrozenSet[int] = field(default_factory=frozenset)

    @property
    def unrestricted(self) -> bool:
        return not self.store_ids

    def can_access(self, store_id: int) -> bool:
        return self.unrestricted or store_id in self.store_ids


ANONYMOUS = Principal(token_id="disabled")


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def get_app_config(request: Request) -> ArcVaultConfig:
    return getattr(request.app.state, "config", None) or get_config()


def get_repository(request: Request) -> Repository:
    repository = getattr(request.app.state, "repository", None)
    if repository is None:
        logger.error("repository.not_initialized", request_id=_request_id(request))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Storage not initialized"
        )
    return repository


def get_transfer(request: Request) -> TransferCoordinator:
    return TransferCoordinator(get_repository(request))


def get_scheduler(request: Request) -> Optional[PruningScheduler]:
    return getattr(request.app.state, "scheduler", None)


def _token_id(token: str) -> str:
    return token[:4] + "..."


async def verify_token(
    request: Request,
    authorization: Optional[str] = Header(None)
) -> Principal:
    """
    Verify the bearer token from the Authorization header.

    Returns:
        Principal carrying the token's store scope

    Raises:
        HTTPException: 401 if missing or invalid
    """
    request_id = _request_id(request)
    auth = get_app_config(request).auth

    if auth.mode == "disabled":
        logger.warning("auth.disabled", request_id=request_id)
        return ANONYMOUS

    if not authorization:
        logger.warning("auth.missing_token", request_id=request_id)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer token required. Provide an Authorization header.",
            headers={"WWW-Authenticate": "Bearer"}
        )

    scheme, _, token = authorization.partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        logger.warning("auth.malformed_header", request_id=request_id)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header must be 'Bearer <token>'",
            headers={"WWW-Authenticate": "Bearer"}
        )

    for known, store_ids in auth.tokens.items():
        if hmac.compare_digest(known.encode("utf-8"), token.encode("utf-8")):
            logger.debug("auth.valid_token", request_id=request_id)
            return Principal(token_id=_token_id(known), store_ids=frozenset(store_ids))

    logger.warning(
        "auth.invalid_token",
        request_id=request_id,
        token_prefix=_token_id(token)
    )
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid token",
        headers={"WWW-Authenticate": "Bearer"}
    )


def require_store_access(principal: Principal, store_id: int) -> None:
    """
    Raises:
        HTTPException: 403 if store_id is outside the principal's scope
    """
    if not principal.can_access(store_id):
        logger.warning(
            "auth.store_forbidden",
            token_id=principal.token_id,
            store_id=store_id
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Token is not allowed to access store {store_id}"
        )


def authorize_store(
    store_id: int,
    principal: Principal = Depends(verify_token)
) -> Principal:
    """Path dependency for /stores/{store_id}/... routes."""
    require_store_access(principal, store_id)
    return principal


def require_unrestricted(principal: Principal = Depends(verify_token)) -> Principal:
    """Admin routes need a token that is not scoped to specific stores."""
    if not principal.unrestricted:
        logger.warning("auth.admin_forbidden", token_id=principal.token_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin operations require an unscoped token"
        )
    return principal


def generate_request_id() -> str:
    """
    Generate unique request ID for tracing.

    Returns:
        Request ID (UUID4)
    """
    return f"req_{uuid.uuid4().hex[:12]}"
