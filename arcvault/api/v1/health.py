"""
ArcVault API v1 - Operational Endpoints

- GET /healthz: gateway availability and scheduler state (no auth)
- GET /api/v1/config: effective scheduler and auth settings (no secrets)
"""

from datetime import datetime
from typing import Dict, Optional
import time

from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel
import structlog

from arcvault import __version__
from arcvault.api.dependencies import (
    Principal,
    get_app_config,
    get_scheduler,
    verify_token,
)
from arcvault.core.scheduler import PruningScheduler, SweepReport

logger = structlog.get_logger()

router = APIRouter()


class HealthCheckResult(BaseModel):
    """Health check result for a single dependency."""
    status: str  # "up" or "down"
    latency_ms: float


class SweepSummary(BaseModel):
    started_at: datetime
    expired: int
    prunable: int
    pruned: int
    already_gone: int
    failed: int
    error: Optional[str]

    @classmethod
    def from_report(cls, report: SweepReport) -> "SweepSummary":
        return cls(
            started_at=report.started_at,
            expired=report.expired,
            prunable=report.prunable,
            pruned=report.pruned,
            already_gone=report.already_gone,
            failed=len(report.failures),
            error=report.error
        )


class SchedulerStatus(BaseModel):
    enabled: bool
    running: bool
    state: Optional[str]
    sweeps: int
    last_sweep: Optional[SweepSummary]


class HealthResponse(BaseModel):
    status: str  # "healthy" or "degraded"
    backend: Optional[str]
    checks: Dict[str, HealthCheckResult]
    scheduler: SchedulerStatus
    version: str


class SchedulerSettings(BaseModel):
    enabled: bool
    period: float


class ConfigResponse(BaseModel):
    backend: str
    auth_mode: str
    scheduler: SchedulerSettings
    version: str


def _scheduler_status(scheduler: Optional[PruningScheduler]) -> SchedulerStatus:
    if scheduler is None:
        return SchedulerStatus(
            enabled=False, running=False, state=None, sweeps=0, last_sweep=None
        )
    return SchedulerStatus(
        enabled=True,
        running=scheduler.running,
        state=scheduler.state.value,
        sweeps=scheduler.sweeps,
        last_sweep=(
            SweepSummary.from_report(scheduler.last_report)
            if scheduler.last_report else None
        )
    )


def check_gateway(request: Request) -> HealthCheckResult:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        return HealthCheckResult(status="down", latency_ms=0.0)

    start_time = time.time()
    available = gateway.is_available()
    latency_ms = (time.time() - start_time) * 1000

    if not available:
        logger.error("health.gateway.down", backend=gateway.get_store_name())
        return HealthCheckResult(status="down", latency_ms=0.0)

    logger.debug("health.gateway.up", latency_ms=latency_ms)
    return HealthCheckResult(status="up", latency_ms=round(latency_ms, 2))


@router.get("/healthz", response_model=HealthResponse)
def health_check(
    request: Request,
    response: Response,
    scheduler: Optional[PruningScheduler] = Depends(get_scheduler)
):
    """
    Health check endpoint.

    Returns:
        - 200 OK if the gateway is reachable
        - 503 Service Unavailable otherwise
    """
    gateway_result = check_gateway(request)
    overall_status = "healthy" if gateway_result.status == "up" else "degraded"
    if overall_status == "degraded":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    gateway = getattr(request.app.state, "gateway", None)
    return HealthResponse(
        status=overall_status,
        backend=gateway.get_store_name() if gateway is not None else None,
        checks={"gateway": gateway_result},
        scheduler=_scheduler_status(scheduler),
        version=__version__
    )


@router.get("/api/v1/config", response_model=ConfigResponse)
def get_settings(
    request: Request,
    principal: Principal = Depends(verify_token)
):
    """Effective runtime settings. Tokens and the database URL are never returned."""
    config = get_app_config(request)
    return ConfigResponse(
        backend=config.database.backend,
        auth_mode=config.auth.mode,
        scheduler=SchedulerSettings(
            enabled=config.scheduler.enabled,
            period=config.scheduler.period
        ),
        version=__version__
    )
