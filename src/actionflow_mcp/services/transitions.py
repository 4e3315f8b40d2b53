"""Pure work item state transitions.

Every function takes the current item and returns a new copy; nothing here
touches the store. The executor and the maintenance sweep persist the
result through :meth:`Database.record_outcome`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from actionflow_mcp.errors import InvalidTransitionError
from actionflow_mcp.models.work_item import (
    AttemptOutcome,
    AttemptRecord,
    WorkItem,
    WorkItemStatus,
)
from actionflow_mcp.services.recurrence import next_occurrence

DEFAULT_BACKOFF_UNIT = timedelta(seconds=60)


@dataclass(frozen=True)
class Transition:
    item: WorkItem
    record: AttemptRecord
    rearmed: bool = False
    will_retry: bool = False


def _require_running(item: WorkItem, action: str) -> None:
    if item.status != WorkItemStatus.RUNNING:
        raise InvalidTransitionError(item.id, item.status.value, action)


def apply_success(
    item: WorkItem,
    now: datetime,
    duration_ms: int,
    result_summary: str | None = None,
) -> Transition:
    """running -> completed, or back to pending at the next occurrence."""
    _require_running(item, "complete")
    record = AttemptRecord(
        timestamp=now,
        outcome=AttemptOutcome.SUCCESS,
        duration_ms=duration_ms,
        result_summary=result_summary,
    )
    updates: dict = {
        "history": [*item.history, record],
        "last_executed_at": now,
        "updated_at": now,
        "started_at": None,
        "next_retry_at": None,
    }

    next_at = next_occurrence(item.scheduled_for, item.recurrence) if item.recurrence else None
    if next_at is not None:
        updates.update(
            status=WorkItemStatus.PENDING,
            scheduled_for=next_at,
            retry_count=0,
        )
        return Transition(item.model_copy(update=updates), record, rearmed=True)

    updates["status"] = WorkItemStatus.COMPLETED
    return Transition(item.model_copy(update=updates), record)


def apply_failure(
    item: WorkItem,
    now: datetime,
    duration_ms: int,
    error_message: str,
    backoff_unit: timedelta = DEFAULT_BACKOFF_UNIT,
    retryable: bool = True,
) -> Transition:
    """running -> pending for a retry with linear backoff, or -> failed."""
    _require_running(item, "fail")
    record = AttemptRecord(
        timestamp=now,
        outcome=AttemptOutcome.FAILURE,
        duration_ms=duration_ms,
        error_message=error_message,
    )
    updates: dict = {
        "history": [*item.history, record],
        "last_executed_at": now,
        "updated_at": now,
        "started_at": None,
    }

    if retryable and item.retry_count < item.max_retries:
        retry_count = item.retry_count + 1
        next_retry_at = now + retry_count * backoff_unit
        updates.update(
            status=WorkItemStatus.PENDING,
            retry_count=retry_count,
            next_retry_at=next_retry_at,
            scheduled_for=next_retry_at,
        )
        return Transition(item.model_copy(update=updates), record, will_retry=True)

    updates.update(status=WorkItemStatus.FAILED, next_retry_at=None)
    return Transition(item.model_copy(update=updates), record)


def ensure_cancellable(item: WorkItem) -> None:
    """Only pending items can be cancelled; running ones must be rejected."""
    if item.status != WorkItemStatus.PENDING:
        raise InvalidTransitionError(item.id, item.status.value, "cancel")
