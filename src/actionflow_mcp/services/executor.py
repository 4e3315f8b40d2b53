from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from actionflow_mcp.db.database import Database
from actionflow_mcp.errors import (
    ClaimConflictError,
    ConfirmationRequiredError,
    HandlerError,
    HandlerTimeoutError,
    StoreError,
    UnknownKindError,
    WorkItemNotFoundError,
)
from actionflow_mcp.handlers.base import AttemptContext, HandlerRegistry, HandlerResult
from actionflow_mcp.models.work_item import WorkItem, WorkItemStatus, utcnow
from actionflow_mcp.services.notifier import NotificationDispatcher
from actionflow_mcp.services.transitions import (
    DEFAULT_BACKOFF_UNIT,
    Transition,
    apply_failure,
    apply_success,
)

logger = logging.getLogger(__name__)


@dataclass
class ExecutionOutcome:
    item_id: str
    success: bool
    status: WorkItemStatus
    duration_ms: int
    error: str | None = None
    will_retry: bool = False
    rearmed: bool = False
    persisted: bool = True
    result: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class ExecutorStats:
    cycles: int = 0
    executed: int = 0
    succeeded: int = 0
    failed: int = 0
    claim_conflicts: int = 0
    store_errors: int = 0
    reconciled: int = 0
    last_cycle_at: datetime | None = None
    in_flight: set[str] = field(default_factory=set)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycles": self.cycles,
            "executed": self.executed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "claim_conflicts": self.claim_conflicts,
            "store_errors": self.store_errors,
            "reconciled": self.reconciled,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "in_flight": len(self.in_flight),
        }


class Executor:
    """Claims due work items, runs their handlers, and records the outcome.

    Handler failures never escape: they become a history record plus a
    state transition. Only a failing due-item query propagates out of
    :meth:`run_cycle`, which aborts that tick.
    """

    def __init__(
        self,
        db: Database,
        registry: HandlerRegistry,
        notifier: NotificationDispatcher | None = None,
        *,
        handler_timeout: float = 60.0,
        backoff_unit: timedelta = DEFAULT_BACKOFF_UNIT,
        max_concurrency: int = 4,
        batch_size: int = 50,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.registry = registry
        self.notifier = notifier
        self.handler_timeout = handler_timeout
        self.backoff_unit = backoff_unit
        self.max_concurrency = max(1, max_concurrency)
        self.batch_size = batch_size
        self.stats = ExecutorStats()
        self._clock = clock

    # ------------------------------------------------------------------
    # Polling cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> list[ExecutionOutcome]:
        """Offer every due item, in priority-then-time order, to a bounded pool."""
        now = self._clock()
        due = await self.db.get_due_work_items(now, self.batch_size)
        self.stats.cycles += 1
        self.stats.last_cycle_at = now
        if not due:
            return []

        logger.info("Found %d due work items", len(due))
        slots = asyncio.Semaphore(self.max_concurrency)
        running: list[asyncio.Task[ExecutionOutcome]] = []

        try:
            for candidate in due:
                await slots.acquire()
                try:
                    item = await self.db.claim_work_item(candidate.id, self._clock())
                except (ClaimConflictError, ConfirmationRequiredError, WorkItemNotFoundError) as exc:
                    slots.release()
                    self.stats.claim_conflicts += 1
                    logger.debug("Skipping %s: %s", candidate.id, exc)
                    continue
                except StoreError as exc:
                    # a claim that committed before the reload failed stays running
                    # until the maintenance sweep reconciles it
                    slots.release()
                    self.stats.store_errors += 1
                    logger.error("Claim of %s failed: %s", candidate.id, exc)
                    continue

                running.append(asyncio.create_task(self._run_in_slot(item, slots)))
        except BaseException:
            if running:
                logger.error("Cycle aborted, waiting for %d started work items", len(running))
                await asyncio.gather(*running, return_exceptions=True)
            raise

        return list(await asyncio.gather(*running))

    async def _run_in_slot(self, item: WorkItem, slots: asyncio.Semaphore) -> ExecutionOutcome:
        try:
            return await self.execute_claimed(item)
        finally:
            slots.release()

    async def execute_now(self, item_id: str) -> ExecutionOutcome:
        """Run an item immediately, ignoring ``scheduled_for`` but not the claim.

        Raises ClaimConflictError, ConfirmationRequiredError or
        WorkItemNotFoundError when the item cannot be claimed.
        """
        item = await self.db.claim_work_item(item_id, self._clock(), force=True)
        logger.info("Force-executing work item %s", item_id)
        return await self.execute_claimed(item)

    # ------------------------------------------------------------------
    # Single item
    # ------------------------------------------------------------------

    async def execute_claimed(self, item: WorkItem) -> ExecutionOutcome:
        """Run the handler for an item this worker has claimed and persist the result."""
        self.stats.in_flight.add(item.id)
        try:
            started = time.monotonic()
            result, error, retryable = await self._invoke(item)
            duration_ms = int((time.monotonic() - started) * 1000)
            now = self._clock()

            if error is None:
                transition = apply_success(item, now, duration_ms, result.summary if result else None)
            else:
                transition = apply_failure(
                    item, now, duration_ms, error, self.backoff_unit, retryable=retryable
                )
            self.stats.executed += 1
            if error is None:
                self.stats.succeeded += 1
            else:
                self.stats.failed += 1

            outcome = ExecutionOutcome(
                item_id=item.id,
                success=error is None,
                status=transition.item.status,
                duration_ms=duration_ms,
                error=error,
                will_retry=transition.will_retry,
                rearmed=transition.rearmed,
                result=result.data if result else None,
            )
            outcome.persisted = await self._persist(item, transition)
            if outcome.persisted:
                await self._announce(transition, outcome)
            return outcome
        finally:
            self.stats.in_flight.discard(item.id)

    async def _invoke(self, item: WorkItem) -> tuple[HandlerResult | None, str | None, bool]:
        """Returns (result, error message, retryable)."""
        try:
            handler = self.registry.get(item.kind)
        except UnknownKindError as exc:
            logger.error("Work item %s: %s", item.id, exc)
            return None, str(exc), False

        deadline = self._clock() + timedelta(seconds=self.handler_timeout)
        context = AttemptContext.for_item(item, deadline)
        logger.info(
            "Executing work item %s (%s, attempt %d)", item.id, item.kind.value, context.attempt_number
        )
        try:
            result = await asyncio.wait_for(
                handler.execute(item.payload, context), timeout=self.handler_timeout
            )
        except asyncio.TimeoutError:
            error: HandlerError = HandlerTimeoutError(self.handler_timeout)
        except HandlerError as exc:
            error = exc
        except Exception as exc:
            logger.exception("Handler for %s raised unexpectedly", item.kind.value)
            error = HandlerError(f"{type(exc).__name__}: {exc}")
        else:
            return result, None, True

        logger.warning("Work item %s failed: %s", item.id, error)
        return None, str(error), True

    async def _persist(self, claimed: WorkItem, transition: Transition) -> bool:
        try:
            await self.db.record_outcome(transition, expected_version=claimed.version)
        except StoreError as exc:
            # left running; the maintenance sweep reconciles it
            self.stats.store_errors += 1
            logger.error("Could not record outcome for %s: %s", claimed.id, exc)
            return False
        return True

    async def _announce(self, transition: Transition, outcome: ExecutionOutcome) -> None:
        item = transition.item
        if outcome.success:
            event = "work_item_rearmed" if outcome.rearmed else "work_item_completed"
        else:
            event = "work_item_retrying" if outcome.will_retry else "work_item_failed"
        details = {
            "kind": item.kind.value,
            "status": item.status.value,
            "duration_ms": outcome.duration_ms,
            "error": outcome.error,
            "scheduled_for": item.scheduled_for.isoformat(),
        }
        try:
            await self.db.log_event(event, item.owner, item.id, details)
        except StoreError as exc:
            logger.warning("Could not log %s for %s: %s", event, item.id, exc)
        if self.notifier:
            await self.notifier.notify(item.owner, event, {"work_item_id": item.id, **details})

    # ------------------------------------------------------------------
    # Maintenance support
    # ------------------------------------------------------------------

    async def reconcile_stalled(self, item: WorkItem, stall_timeout: timedelta) -> ExecutionOutcome:
        """Fail a stuck running item exactly as a handler error would."""
        now = self._clock()
        started_at = item.started_at or item.updated_at
        duration_ms = max(0, int((now - started_at).total_seconds() * 1000))
        error = f"Stalled: running for more than {stall_timeout.total_seconds():g}s"
        transition = apply_failure(item, now, duration_ms, error, self.backoff_unit)

        await self.db.record_outcome(transition, expected_version=item.version)
        self.stats.reconciled += 1
        outcome = ExecutionOutcome(
            item_id=item.id,
            success=False,
            status=transition.item.status,
            duration_ms=duration_ms,
            error=error,
            will_retry=transition.will_retry,
        )
        logger.warning(
            "Reconciled stalled work item %s -> %s", item.id, transition.item.status.value
        )
        await self._announce(transition, outcome)
        return outcome
