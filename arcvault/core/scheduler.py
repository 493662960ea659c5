"""
ArcVault - Pruning Scheduler

Long-lived background task that removes expired, prunable records.

States:
    idle      waiting for the next tick
    sweeping  counting and deleting prunable records

Each tick (sweep):
1. Count expired records and the prunable subset
2. Nothing expired -> back to idle
3. Expired but nothing prunable (all held) -> log, back to idle
4. Fetch the prunable records and delete them one by one through the
   Repository. A failed deletion is recorded and the sweep moves on to the
   next record: best effort, no rollback. NotFound means the record is
   already gone and counts as satisfied.

The task is owned by the application lifecycle: start() on startup,
stop() on shutdown. stop() only interrupts the timer; a batch that has
already been fetched always runs to completion.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

import structlog

from arcvault.core.errors import NotFound
from arcvault.core.repository import Repository

logger = structlog.get_logger()


class SchedulerState(str, Enum):
    IDLE = "idle"
    SWEEPING = "sweeping"


@dataclass
class PruneFailure:
    """A record the sweep could not delete."""
    store_id: int
    record_id: int
    error: str


@dataclass
class SweepReport:
    """Outcome of one sweep."""
    started_at: datetime
    expired: int = 0
    prunable: int = 0
    pruned: int = 0
    already_gone: int = 0
    failures: List[PruneFailure] = field(default_factory=list)
    error: Optional[str] = None         # set when the tick could not count

    @property
    def ok(self) -> bool:
        return self.error is None and not self.failures


class PruningScheduler:
    """
    Periodic sweep over expired records.

    Args:
        repository: Repository shared with the API
        period: Seconds between sweeps, must be > 0
    """

    def __init__(self, repository: Repository, period: float):
        if period is None or period <= 0:
            raise ValueError(f"Scheduler period must be > 0 seconds, got {period!r}")

        self.repository = repository
        self.period = period
        self.state = SchedulerState.IDLE
        self.last_report: Optional[SweepReport] = None
        self.sweeps = 0
        self._task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Future] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sweep(self) -> SweepReport:
        """Run one tick synchronously and return its report."""
        report = SweepReport(started_at=self.repository.now())

        try:
            report.expired, report.prunable = self.repository.count_expired()
        except Exception as e:
            logger.error("scheduler.count_expired.failed", error=str(e))
            report.error = str(e)
            return self._finish(report)

        if report.expired == 0:
            return self._finish(report)

        self.state = SchedulerState.SWEEPING
        try:
            self._prune(report)
        finally:
            self.state = SchedulerState.IDLE
        return self._finish(report)

    def _prune(self, report: SweepReport) -> None:
        if report.prunable <= 0:
            logger.debug(
                "scheduler.sweep.nothing_prunable",
                expired=report.expired
            )
            return

        logger.info(
            "scheduler.sweep.start",
            prunable=report.prunable,
            expired=report.expired
        )

        try:
            records = self.repository.list_prunable()
        except Exception as e:
            logger.error("scheduler.list_prunable.failed", error=str(e))
            report.error = str(e)
            return

        for record in records:
            logger.warning(
                "scheduler.record.pruning",
                store_id=record.store_id,
                record_id=record.id,
                title=record.title,
                expired_at=record.expires_at.isoformat()
            )
            try:
                self.repository.delete_record(record.store_id, record.id)
                report.pruned += 1
            except NotFound:
                report.already_gone += 1
                logger.debug(
                    "scheduler.record.already_gone",
                    store_id=record.store_id,
                    record_id=record.id
                )
            except Exception as e:
                report.failures.append(PruneFailure(record.store_id, record.id, str(e)))
                logger.error(
                    "scheduler.record.delete_failed",
                    store_id=record.store_id,
                    record_id=record.id,
                    error=str(e)
                )

        logger.info(
            "scheduler.sweep.done",
            pruned=report.pruned,
            already_gone=report.already_gone,
            failed=len(report.failures)
        )

    def _finish(self, report: SweepReport) -> SweepReport:
        self.sweeps += 1
        self.last_report = report
        return report

    async def run(self) -> None:
        """Sleep/sweep loop; runs until cancelled. A failed tick is logged and skipped."""
        logger.info("scheduler.started", period=self.period)
        while True:
            await asyncio.sleep(self.period)
            self._inflight = asyncio.ensure_future(asyncio.to_thread(self.sweep))
            try:
                await asyncio.shield(self._inflight)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("scheduler.tick.failed", error=str(e))

    def start(self) -> None:
        """Start the background task on the running event loop."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self.run())

    async def stop(self) -> None:
        """Cancel the timer and let an in-flight sweep finish its batch."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        if self._inflight is not None and not self._inflight.done():
            try:
                await self._inflight
            except Exception as e:
                logger.error("scheduler.tick.failed", error=str(e))
        self._inflight = None
        logger.info("scheduler.stopped", sweeps=self.sweeps)
