"""
ArcVault - API Entrypoint

FastAPI application serving stores and records under /api/v1/*.

Lifecycle (lifespan):
- Startup: build the persistence gateway, create the schema, seed default
  content when the schema was just created, start the pruning scheduler
- Shutdown: stop the scheduler (an in-flight sweep finishes its batch),
  close the gateway

Errors are returned as {"error": {"code", "message", "request_id"}}, never
with stack traces.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional
import os

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import structlog

from arcvault import __version__
from arcvault.api.dependencies import generate_request_id
from arcvault.api.v1 import admin, health, records, stores
from arcvault.config import ArcVaultConfig, get_config
from arcvault.core.errors import (
    ArcVaultError,
    MalformedData,
    NotFound,
    StorageError,
    ValidationError,
)
from arcvault.core.repository import Repository
from arcvault.core.scheduler import PruningScheduler
from arcvault.core.transfer import TransferCoordinator
from arcvault.logging_setup import configure_logging
from arcvault.storage import PersistenceGateway, create_gateway_from_config

logger = structlog.get_logger()

ERROR_STATUS = {
    NotFound: status.HTTP_404_NOT_FOUND,
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    MalformedData: status.HTTP_400_BAD_REQUEST,
    StorageError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    headers: Optional[dict] = None
) -> JSONResponse:
    request_id = getattr(request.state, "request_id", "unknown")
    response = JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "code": code,
                "message": message,
                "request_id": request_id
            }
        },
        headers=headers
    )
    response.headers["X-Request-ID"] = request_id
    return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Initialize the gateway (schema, pool)
    - Seed an empty vault from SEED_FILE
    - Start the pruning scheduler

    Shutdown:
    - Stop the scheduler
    - Close the gateway
    """
    # Startup
    logger.info("app.startup", version=__version__)

    config: ArcVaultConfig = app.state.config or get_config()
    app.state.config = config

    gateway: PersistenceGateway = app.state.gateway or create_gateway_from_config(config.database)
    app.state.gateway = gateway

    created = gateway.setup()
    logger.info("storage.ready", backend=gateway.get_store_name(), created=created)

    repository = Repository(gateway, clock=app.state.clock)
    app.state.repository = repository

    # Seed only a backing store created by this startup
    if created and config.server.seed_file:
        seeded = TransferCoordinator(repository).seed_from_file(config.server.seed_file)
        if seeded:
            logger.info("app.seeded", stores=seeded, seed_file=config.server.seed_file)

    scheduler: Optional[PruningScheduler] = None
    if config.scheduler.enabled:
        scheduler = PruningScheduler(repository, config.scheduler.period)
        scheduler.start()
    else:
        logger.warning("scheduler.disabled")
    app.state.scheduler = scheduler

    if config.auth.mode == "disabled":
        logger.warning("auth.disabled", detail="every request is unrestricted")

    logger.info("app.ready", status="healthy")

    yield

    # Shutdown
    logger.info("app.shutdown")
    if scheduler is not None:
        await scheduler.stop()
    gateway.close()
    app.state.repository = None


def _cors_origins(config: Optional[ArcVaultConfig]) -> list:
    if config is not None:
        return config.server.cors_origins
    origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
    return origins or ["http://localhost:8443"]


def create_app(
    config: Optional[ArcVaultConfig] = None,
    gateway: Optional[PersistenceGateway] = None,
    clock: Optional[Callable[[], datetime]] = None
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Explicit configuration (default: get_config() at startup)
        gateway: Pre-built gateway (default: built from config.database)
        clock: Injectable clock for the repository (tests)
    """
    app = FastAPI(
        title="ArcVault API",
        description="Encrypted record vault with scheduled expiration",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan
    )
    app.state.config = config
    app.state.gateway = gateway
    app.state.clock = clock
    app.state.repository = None
    app.state.scheduler = None

    # Middleware: Request ID
    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next):
        """Add request_id to request state and response headers."""
        request_id = generate_request_id()
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        return response

    # Middleware: CORS (restrictive by default)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(config),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )

    @app.exception_handler(ArcVaultError)
    async def vault_exception_handler(request: Request, exc: ArcVaultError):
        status_code = next(
            (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
            status.HTTP_500_INTERNAL_SERVER_ERROR
        )
        log = logger.error if status_code >= 500 else logger.info
        log(
            "request.failed",
            request_id=getattr(request.state, "request_id", "unknown"),
            code=exc.code,
            error=str(exc),
            path=request.url.path
        )
        return _error_response(request, status_code, exc.code, str(exc))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return _error_response(
            request,
            exc.status_code,
            f"http_{exc.status_code}",
            str(exc.detail),
            headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
            for err in exc.errors()
        )
        return _error_response(
            request,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            ValidationError.code,
            problems or "Invalid request"
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """No stack traces to clients; the traceback goes to the log."""
        logger.error(
            "unhandled_exception",
            exc_info=exc,
            request_id=getattr(request.state, "request_id", "unknown"),
            path=request.url.path,
            method=request.method
        )
        return _error_response(
            request,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "internal_error",
            "An unexpected error occurred"
        )

    # Include routers
    app.include_router(health.router, tags=["health"])
    app.include_router(stores.router, tags=["stores"])
    app.include_router(records.router, tags=["records"])
    app.include_router(admin.router, tags=["admin"])

    # Root endpoint
    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "message": f"ArcVault API v{__version__}",
            "docs": "/docs",
            "health": "/healthz"
        }

    return app


# Standalone servers (uvicorn arcvault.api.main:app) skip the CLI setup
if not structlog.is_configured():
    configure_logging()

app = create_app()
