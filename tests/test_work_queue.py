from __future__ import annotations

from datetime import timedelta

import pytest

from actionflow_mcp.db.database import Database
from actionflow_mcp.errors import (
    ClassificationError,
    InvalidTransitionError,
    WorkItemNotFoundError,
)
from actionflow_mcp.models.work_item import (
    Priority,
    WorkItemCreate,
    WorkItemKind,
    WorkItemStatus,
)
from actionflow_mcp.services.classifier import Classification
from actionflow_mcp.services.notifier import NotificationDispatcher
from actionflow_mcp.services.work_queue import WorkQueue
from conftest import EPOCH, FakeClock


class StaticClassifier:
    def __init__(self, result: Classification | None = None):
        self.result = result
        self.seen: list[str] = []

    async def classify(self, text: str) -> Classification:
        self.seen.append(text)
        if self.result is None:
            raise ClassificationError("Unmapped intent kind 'dance'")
        return self.result


def _reminder(**kwargs) -> WorkItemCreate:
    defaults = dict(owner="alice", kind=WorkItemKind.REMINDER, payload={"title": "ping"})
    defaults.update(kwargs)
    return WorkItemCreate(**defaults)


@pytest.mark.asyncio
class TestSubmit:
    async def test_defaults_to_now(self, work_queue: WorkQueue) -> None:
        item = await work_queue.submit(_reminder())
        assert item.scheduled_for == EPOCH
        assert item.created_at == EPOCH
        assert item.status == WorkItemStatus.PENDING
        assert item.retry_count == 0

    async def test_naive_schedule_is_utc(self, work_queue: WorkQueue) -> None:
        item = await work_queue.submit(_reminder(scheduled_for=EPOCH.replace(tzinfo=None)))
        assert item.scheduled_for == EPOCH

    async def test_get_missing_raises(self, work_queue: WorkQueue) -> None:
        with pytest.raises(WorkItemNotFoundError):
            await work_queue.get("missing")

    async def test_submit_logs_event(self, work_queue: WorkQueue, db: Database) -> None:
        item = await work_queue.submit(_reminder())
        events = await db.get_events(item.id)
        assert events[0]["event_type"] == "work_item_submitted"
        assert events[0]["details"]["kind"] == "reminder"


@pytest.mark.asyncio
class TestSubmitFromText:
    async def test_classified_item_is_created(self, db: Database, clock: FakeClock) -> None:
        classifier = StaticClassifier(
            Classification(
                kind=WorkItemKind.PAYMENT,
                payload={"amount": 500, "currency": "INR", "recipient": "John"},
                priority=Priority.HIGH,
                requires_confirmation=True,
                confidence=0.9,
            )
        )
        queue = WorkQueue(db, classifier=classifier, clock=clock)

        item = await queue.submit_from_text("alice", "pay 500 rupees to John")

        assert item.kind == WorkItemKind.PAYMENT
        assert item.payload["recipient"] == "John"
        assert item.priority == Priority.HIGH
        assert item.requires_confirmation is True
        assert item.source_text == "pay 500 rupees to John"
        assert item.name.startswith("Intent: ")

    async def test_classification_failure_creates_nothing(self, db: Database, clock: FakeClock) -> None:
        queue = WorkQueue(db, classifier=StaticClassifier(), clock=clock)

        with pytest.raises(ClassificationError):
            await queue.submit_from_text("alice", "do a little dance")
        assert await db.count_work_items() == 0

    async def test_no_classifier_configured(self, work_queue: WorkQueue) -> None:
        with pytest.raises(ClassificationError):
            await work_queue.submit_from_text("alice", "order pizza")


@pytest.mark.asyncio
class TestQueries:
    async def test_pagination(self, work_queue: WorkQueue) -> None:
        for n in range(5):
            await work_queue.submit(_reminder(scheduled_for=EPOCH + timedelta(hours=n)))

        page = await work_queue.list_items(owner="alice", limit=2, offset=2)
        assert len(page["items"]) == 2
        assert page["total"] == 5
        assert page["has_more"] is True

        last = await work_queue.list_items(owner="alice", limit=2, offset=4)
        assert len(last["items"]) == 1
        assert last["has_more"] is False

    async def test_filters(self, work_queue: WorkQueue) -> None:
        await work_queue.submit(_reminder())
        await work_queue.submit(_reminder(owner="bob"))
        await work_queue.submit(
            WorkItemCreate(owner="alice", kind=WorkItemKind.NOTIFICATION, payload={"message": "hi"})
        )

        page = await work_queue.list_items(owner="alice", kind="reminder")
        assert page["total"] == 1
        assert (await work_queue.list_items(status="pending"))["total"] == 3

    async def test_invalid_status_filter(self, work_queue: WorkQueue) -> None:
        with pytest.raises(ValueError):
            await work_queue.list_items(status="sleeping")

    async def test_upcoming_and_overdue(self, work_queue: WorkQueue) -> None:
        overdue = await work_queue.submit(_reminder(scheduled_for=EPOCH - timedelta(hours=1)))
        soon = await work_queue.submit(_reminder(scheduled_for=EPOCH + timedelta(hours=2)))
        await work_queue.submit(_reminder(scheduled_for=EPOCH + timedelta(days=3)))

        upcoming = await work_queue.list_upcoming("alice", within=timedelta(hours=24))
        assert [i.id for i in upcoming] == [soon.id]

        late = await work_queue.list_overdue("alice", grace=timedelta(minutes=5))
        assert [i.id for i in late] == [overdue.id]


@pytest.mark.asyncio
class TestPendingTransitions:
    async def test_cancel_pending(
        self, work_queue: WorkQueue, dispatcher: NotificationDispatcher
    ) -> None:
        events: list[dict] = []

        async def listener(event: dict) -> None:
            events.append(event)

        dispatcher.subscribe("alice", listener)
        item = await work_queue.submit(_reminder())

        cancelled = await work_queue.cancel(item.id, requested_by="alice")

        assert cancelled.status == WorkItemStatus.CANCELLED
        assert events[0]["type"] == "work_item_cancelled"

    async def test_cancel_running_is_rejected(self, work_queue: WorkQueue, db: Database) -> None:
        item = await work_queue.submit(_reminder())
        await db.claim_work_item(item.id, EPOCH)

        with pytest.raises(InvalidTransitionError):
            await work_queue.cancel(item.id)
        assert (await work_queue.get(item.id)).status == WorkItemStatus.RUNNING

    async def test_cancel_twice_is_rejected(self, work_queue: WorkQueue) -> None:
        item = await work_queue.submit(_reminder())
        await work_queue.cancel(item.id)
        with pytest.raises(InvalidTransitionError):
            await work_queue.cancel(item.id)

    async def test_cancel_missing(self, work_queue: WorkQueue) -> None:
        with pytest.raises(WorkItemNotFoundError):
            await work_queue.cancel("missing")

    async def test_confirm(self, work_queue: WorkQueue, clock: FakeClock) -> None:
        item = await work_queue.submit(_reminder(requires_confirmation=True))
        clock.advance(minutes=1)

        confirmed = await work_queue.confirm(item.id, "bob")

        assert confirmed.is_confirmed
        assert confirmed.confirmed_by == "bob"
        assert confirmed.confirmed_at == EPOCH + timedelta(minutes=1)

    async def test_confirm_cancelled_is_rejected(self, work_queue: WorkQueue) -> None:
        item = await work_queue.submit(_reminder(requires_confirmation=True))
        await work_queue.cancel(item.id)
        with pytest.raises(InvalidTransitionError):
            await work_queue.confirm(item.id, "bob")

    async def test_reschedule(self, work_queue: WorkQueue) -> None:
        item = await work_queue.submit(_reminder())
        later = EPOCH + timedelta(days=2)

        updated = await work_queue.reschedule(item.id, scheduled_for=later, priority="urgent")

        loaded = await work_queue.get(item.id)
        assert loaded.scheduled_for == later
        assert loaded.priority == Priority.URGENT
        assert loaded.version == updated.version

    async def test_reschedule_running_is_rejected(self, work_queue: WorkQueue, db: Database) -> None:
        item = await work_queue.submit(_reminder())
        await db.claim_work_item(item.id, EPOCH)
        with pytest.raises(InvalidTransitionError):
            await work_queue.reschedule(item.id, scheduled_for=EPOCH + timedelta(days=1))

    async def test_delete_only_terminal(self, work_queue: WorkQueue) -> None:
        item = await work_queue.submit(_reminder())
        with pytest.raises(InvalidTransitionError):
            await work_queue.delete(item.id)

        await work_queue.cancel(item.id)
        assert await work_queue.delete(item.id) is True
        with pytest.raises(WorkItemNotFoundError):
            await work_queue.get(item.id)
