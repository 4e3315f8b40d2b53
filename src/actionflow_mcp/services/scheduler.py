from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from actionflow_mcp.db.database import Database
from actionflow_mcp.errors import ConcurrentUpdateError, StoreError
from actionflow_mcp.models.work_item import utcnow
from actionflow_mcp.services.executor import Executor

logger = logging.getLogger(__name__)


@dataclass
class MaintenanceReport:
    reconciled: int = 0
    requeued: int = 0
    failed: int = 0
    deleted: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "reconciled": self.reconciled,
            "requeued": self.requeued,
            "failed": self.failed,
            "deleted": self.deleted,
        }


class SchedulerLoop:
    """Drives the executor on two cadences.

    - Discovery tick: runs one executor cycle over due items.
    - Maintenance tick: fails items stuck in ``running`` past the stall
      timeout (through the normal failure transition) and deletes terminal
      items older than the retention horizon. Pending items are never
      touched by maintenance.

    A failing tick is logged and the loop carries on with the next one.
    """

    def __init__(
        self,
        db: Database,
        executor: Executor,
        *,
        discovery_interval: float = 15.0,
        maintenance_interval: float = 300.0,
        stall_timeout: timedelta = timedelta(minutes=15),
        retention: timedelta = timedelta(days=30),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.executor = executor
        self.discovery_interval = discovery_interval
        self.maintenance_interval = maintenance_interval
        self.stall_timeout = stall_timeout
        self.retention = retention
        self._clock = clock

        self._tasks: list[asyncio.Task[None]] = []
        self.started_at: datetime | None = None
        self.last_discovery_at: datetime | None = None
        self.last_maintenance_at: datetime | None = None
        self.discovery_ticks = 0
        self.maintenance_ticks = 0
        self.aborted_ticks = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        if self.is_running:
            logger.warning("Scheduler loop is already running")
            return
        self.started_at = self._clock()
        self._tasks = [
            asyncio.create_task(
                self._every(self.discovery_interval, self.run_discovery_once),
                name="actionflow-discovery",
            ),
            asyncio.create_task(
                self._every(self.maintenance_interval, self.run_maintenance_once),
                name="actionflow-maintenance",
            ),
        ]
        logger.info(
            "Scheduler started (discovery every %gs, maintenance every %gs)",
            self.discovery_interval,
            self.maintenance_interval,
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Scheduler stopped")

    async def _every(self, interval: float, tick: Callable[[], Awaitable[Any]]) -> None:
        while True:
            try:
                await tick()
            except Exception:
                logger.exception("Scheduler tick %s crashed", tick.__name__)
            await asyncio.sleep(interval)

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    async def run_discovery_once(self) -> int:
        """One discovery tick. Returns how many items were executed."""
        self.last_discovery_at = self._clock()
        self.discovery_ticks += 1
        try:
            outcomes = await self.executor.run_cycle()
        except StoreError as exc:
            self.aborted_ticks += 1
            logger.error("Discovery tick aborted, retrying next tick: %s", exc)
            return 0
        if outcomes:
            failed = sum(1 for o in outcomes if not o.success)
            logger.info(
                "Discovery tick executed %d work items (%d failed)", len(outcomes), failed
            )
        return len(outcomes)

    async def run_maintenance_once(self) -> MaintenanceReport:
        now = self._clock()
        self.last_maintenance_at = now
        self.maintenance_ticks += 1
        report = MaintenanceReport()

        stalled = await self.db.get_stalled_work_items(now - self.stall_timeout)
        for item in stalled:
            if item.id in self.executor.stats.in_flight:
                continue
            try:
                outcome = await self.executor.reconcile_stalled(item, self.stall_timeout)
            except ConcurrentUpdateError:
                logger.info("Stalled item %s finished while reconciling, skipping", item.id)
                continue
            except StoreError as exc:
                logger.error("Could not reconcile stalled item %s: %s", item.id, exc)
                continue
            report.reconciled += 1
            if outcome.will_retry:
                report.requeued += 1
            else:
                report.failed += 1

        cutoff = now - self.retention
        report.deleted = await self.db.delete_terminal_before(cutoff)

        if report.reconciled or report.deleted:
            logger.info(
                "Maintenance: reconciled %d stalled items, deleted %d terminal items",
                report.reconciled,
                report.deleted,
            )
        return report

    def status(self) -> dict[str, Any]:
        def _iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "running": self.is_running,
            "started_at": _iso(self.started_at),
            "last_discovery_at": _iso(self.last_discovery_at),
            "last_maintenance_at": _iso(self.last_maintenance_at),
            "discovery_ticks": self.discovery_ticks,
            "maintenance_ticks": self.maintenance_ticks,
            "aborted_ticks": self.aborted_ticks,
            "discovery_interval": self.discovery_interval,
            "maintenance_interval": self.maintenance_interval,
        }
