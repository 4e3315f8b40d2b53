from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from actionflow_mcp.db.database import Database
from actionflow_mcp.errors import (
    ClassificationError,
    InvalidTransitionError,
    WorkItemNotFoundError,
)
from actionflow_mcp.models.work_item import (
    Priority,
    RecurrenceRule,
    WorkItem,
    WorkItemCreate,
    WorkItemKind,
    WorkItemStatus,
    ensure_utc,
    utcnow,
)
from actionflow_mcp.services.classifier import IntentClassifier
from actionflow_mcp.services.notifier import NotificationDispatcher
from actionflow_mcp.services.transitions import ensure_cancellable

logger = logging.getLogger(__name__)


class WorkQueue:
    """Submission, inspection, and external state changes for work items.

    The executor owns running items; this class only creates items and
    changes pending ones (cancel, confirm, reschedule).
    """

    def __init__(
        self,
        db: Database,
        classifier: IntentClassifier | None = None,
        notifier: NotificationDispatcher | None = None,
        default_max_retries: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.classifier = classifier
        self.notifier = notifier
        self.default_max_retries = default_max_retries
        self._clock = clock

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(self, request: WorkItemCreate) -> WorkItem:
        item = request.to_work_item(self._clock())
        await self.db.create_work_item(item)
        await self.db.log_event(
            "work_item_submitted",
            item.owner,
            item.id,
            {"kind": item.kind.value, "scheduled_for": item.scheduled_for.isoformat()},
        )
        logger.info(
            "Submitted work item %s (%s, %s) for %s at %s",
            item.id,
            item.kind.value,
            item.priority.value,
            item.owner,
            item.scheduled_for.isoformat(),
        )
        return item

    async def submit_from_text(
        self,
        owner: str,
        text: str,
        scheduled_for: datetime | None = None,
        recurrence: RecurrenceRule | None = None,
    ) -> WorkItem:
        """Classify free text and submit the resulting work item.

        Raises ClassificationError, in which case nothing is created.
        """
        if self.classifier is None:
            raise ClassificationError("No intent classifier configured")

        classification = await self.classifier.classify(text)
        snippet = text if len(text) <= 50 else f"{text[:50]}..."
        return await self.submit(
            WorkItemCreate(
                owner=owner,
                kind=classification.kind,
                payload=classification.payload,
                priority=classification.priority,
                requires_confirmation=classification.requires_confirmation,
                scheduled_for=scheduled_for,
                recurrence=recurrence,
                max_retries=self.default_max_retries,
                name=f"Intent: {snippet}",
                description=text,
                source_text=text,
            )
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, item_id: str) -> WorkItem:
        item = await self.db.get_work_item(item_id)
        if item is None:
            raise WorkItemNotFoundError(item_id)
        return item

    async def list_items(
        self,
        owner: str | None = None,
        status: WorkItemStatus | str | None = None,
        kind: WorkItemKind | str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        status = WorkItemStatus(status) if status else None
        kind = WorkItemKind(kind) if kind else None
        limit = max(1, min(limit, 500))
        offset = max(0, offset)
        items = await self.db.list_work_items(owner, status, kind, limit, offset)
        total = await self.db.count_work_items(owner, status, kind)
        return {
            "items": items,
            "total": total,
            "limit": limit,
            "offset": offset,
            "has_more": offset + len(items) < total,
        }

    async def list_upcoming(
        self, owner: str | None = None, within: timedelta = timedelta(hours=24), limit: int = 50
    ) -> list[WorkItem]:
        now = self._clock()
        return await self.db.get_pending_between(now, now + within, owner, limit)

    async def list_overdue(
        self, owner: str | None = None, grace: timedelta = timedelta(0), limit: int = 50
    ) -> list[WorkItem]:
        """Pending items whose time passed more than ``grace`` ago without being claimed."""
        return await self.db.get_pending_between(None, self._clock() - grace, owner, limit)

    # ------------------------------------------------------------------
    # External transitions on pending items
    # ------------------------------------------------------------------

    async def cancel(self, item_id: str, requested_by: str | None = None) -> WorkItem:
        """pending -> cancelled. Anything else raises InvalidTransitionError."""
        if not await self.db.cancel_work_item(item_id, self._clock()):
            item = await self.get(item_id)
            ensure_cancellable(item)
            # became pending again between the CAS and the read
            raise InvalidTransitionError(item_id, item.status.value, "cancel")

        item = await self.get(item_id)
        await self.db.log_event(
            "work_item_cancelled", item.owner, item_id, {"requested_by": requested_by}
        )
        if self.notifier:
            await self.notifier.notify(item.owner, "work_item_cancelled", {"work_item_id": item_id})
        logger.info("Cancelled work item %s", item_id)
        return item

    async def confirm(self, item_id: str, confirmed_by: str) -> WorkItem:
        """Record the confirmation an item with ``requires_confirmation`` needs to run."""
        if not await self.db.confirm_work_item(item_id, confirmed_by, self._clock()):
            item = await self.get(item_id)
            raise InvalidTransitionError(item_id, item.status.value, "confirm")

        item = await self.get(item_id)
        await self.db.log_event("work_item_confirmed", item.owner, item_id, {"confirmed_by": confirmed_by})
        logger.info("Work item %s confirmed by %s", item_id, confirmed_by)
        return item

    async def reschedule(
        self,
        item_id: str,
        scheduled_for: datetime | None = None,
        priority: Priority | str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> WorkItem:
        """Change when/how a pending item runs. Guarded by the item's version."""
        item = await self.get(item_id)
        if item.status != WorkItemStatus.PENDING:
            raise InvalidTransitionError(item_id, item.status.value, "reschedule")

        updates: dict[str, Any] = {"updated_at": self._clock()}
        if scheduled_for is not None:
            updates["scheduled_for"] = ensure_utc(scheduled_for)
            updates["next_retry_at"] = None
        if priority is not None:
            updates["priority"] = Priority(priority)
        if payload is not None:
            updates["payload"] = payload

        updated = await self.db.update_pending_item(item.model_copy(update=updates), item.version)
        await self.db.log_event(
            "work_item_rescheduled",
            item.owner,
            item_id,
            {k: v for k, v in updates.items() if k != "updated_at"},
        )
        return updated

    async def delete(self, item_id: str) -> bool:
        """Hard-delete a terminal item. Pending and running items are refused."""
        item = await self.get(item_id)
        if not item.status.is_terminal:
            raise InvalidTransitionError(item_id, item.status.value, "delete")
        return await self.db.delete_terminal_item(item_id)
