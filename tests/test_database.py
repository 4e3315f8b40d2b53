from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path

import aiosqlite
import pytest

from actionflow_mcp.db.database import Database
from actionflow_mcp.errors import (
    ClaimConflictError,
    ConcurrentUpdateError,
    ConfirmationRequiredError,
    StoreError,
    WorkItemNotFoundError,
)
from actionflow_mcp.models.work_item import (
    Priority,
    RecurrencePattern,
    RecurrenceRule,
    WorkItem,
    WorkItemKind,
    WorkItemStatus,
)
from actionflow_mcp.services.transitions import apply_failure, apply_success
from conftest import EPOCH


def _item(**kwargs) -> WorkItem:
    defaults = dict(owner="alice", kind=WorkItemKind.REMINDER, scheduled_for=EPOCH)
    defaults.update(kwargs)
    return WorkItem(**defaults)


@pytest.mark.asyncio
class TestDatabase:
    async def test_initialize_creates_tables(self, db: Database) -> None:
        cursor = await db.conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        tables = {row["name"] for row in await cursor.fetchall()}
        assert {"work_items", "work_item_attempts", "event_log"} <= tables

    async def test_create_and_get_round_trips_fields(self, db: Database) -> None:
        item = _item(
            payload={"title": "Stand-up"},
            priority=Priority.HIGH,
            recurrence=RecurrenceRule(pattern=RecurrencePattern.MONTHLY, interval=2),
            requires_confirmation=True,
            tags=["team"],
        )
        await db.create_work_item(item)

        loaded = await db.get_work_item(item.id)
        assert loaded is not None
        assert loaded.payload == {"title": "Stand-up"}
        assert loaded.priority == Priority.HIGH
        assert loaded.scheduled_for == EPOCH
        assert loaded.recurrence == item.recurrence
        assert loaded.requires_confirmation is True
        assert loaded.tags == ["team"]
        assert loaded.status == WorkItemStatus.PENDING

    async def test_get_missing_returns_none(self, db: Database) -> None:
        assert await db.get_work_item("nope") is None

    async def test_due_items_ordered_by_priority_then_time(self, db: Database) -> None:
        low = _item(priority=Priority.LOW, scheduled_for=EPOCH - timedelta(hours=2))
        medium = _item(priority=Priority.MEDIUM, scheduled_for=EPOCH - timedelta(minutes=1))
        urgent = _item(priority=Priority.URGENT, scheduled_for=EPOCH)
        older_medium = _item(priority=Priority.MEDIUM, scheduled_for=EPOCH - timedelta(hours=1))
        future = _item(priority=Priority.URGENT, scheduled_for=EPOCH + timedelta(seconds=1))
        for item in (low, medium, urgent, older_medium, future):
            await db.create_work_item(item)

        due = await db.get_due_work_items(EPOCH)
        assert [i.id for i in due] == [urgent.id, older_medium.id, medium.id, low.id]

    async def test_due_items_exclude_unconfirmed(self, db: Database) -> None:
        held = _item(requires_confirmation=True)
        await db.create_work_item(held)
        assert await db.get_due_work_items(EPOCH) == []

        assert await db.confirm_work_item(held.id, "bob", EPOCH)
        assert [i.id for i in await db.get_due_work_items(EPOCH)] == [held.id]

    async def test_claim_is_exclusive(self, db: Database) -> None:
        item = _item()
        await db.create_work_item(item)

        results = await asyncio.gather(
            *(db.claim_work_item(item.id, EPOCH) for _ in range(10)),
            return_exceptions=True,
        )
        won = [r for r in results if isinstance(r, WorkItem)]
        lost = [r for r in results if isinstance(r, ClaimConflictError)]
        assert len(won) == 1
        assert len(lost) == 9
        assert won[0].status == WorkItemStatus.RUNNING
        assert won[0].started_at == EPOCH

    async def test_claim_is_exclusive_across_connections(self, db: Database, tmp_path: Path) -> None:
        other = Database(tmp_path / "test.db")
        await other.initialize()
        try:
            items = [_item() for _ in range(5)]
            for item in items:
                await db.create_work_item(item)

            async def claim_all(store: Database) -> list[str]:
                claimed = []
                for item in items:
                    try:
                        await store.claim_work_item(item.id, EPOCH)
                    except ClaimConflictError:
                        continue
                    claimed.append(item.id)
                return claimed

            mine, theirs = await asyncio.gather(claim_all(db), claim_all(other))
            assert sorted(mine + theirs) == sorted(i.id for i in items)
            assert not set(mine) & set(theirs)
        finally:
            await other.close()

    async def test_claim_not_yet_due_conflicts_unless_forced(self, db: Database) -> None:
        item = _item(scheduled_for=EPOCH + timedelta(hours=1))
        await db.create_work_item(item)

        with pytest.raises(ClaimConflictError):
            await db.claim_work_item(item.id, EPOCH)
        claimed = await db.claim_work_item(item.id, EPOCH, force=True)
        assert claimed.status == WorkItemStatus.RUNNING

    async def test_claim_unconfirmed_raises(self, db: Database) -> None:
        item = _item(requires_confirmation=True)
        await db.create_work_item(item)
        with pytest.raises(ConfirmationRequiredError):
            await db.claim_work_item(item.id, EPOCH, force=True)

    async def test_claim_missing_raises(self, db: Database) -> None:
        with pytest.raises(WorkItemNotFoundError):
            await db.claim_work_item("missing", EPOCH)

    async def test_record_outcome_appends_history(self, db: Database) -> None:
        item = _item(max_retries=1)
        await db.create_work_item(item)
        claimed = await db.claim_work_item(item.id, EPOCH)

        failed = apply_failure(claimed, EPOCH, 12, "boom")
        stored = await db.record_outcome(failed, claimed.version)
        assert stored.version == claimed.version + 1

        loaded = await db.get_work_item(item.id)
        assert loaded.status == WorkItemStatus.PENDING
        assert loaded.retry_count == 1
        assert loaded.next_retry_at == EPOCH + timedelta(seconds=60)
        assert [r.error_message for r in loaded.history] == ["boom"]

        again = await db.claim_work_item(item.id, EPOCH + timedelta(minutes=2))
        await db.record_outcome(apply_success(again, EPOCH, 3, "ok"), again.version)
        loaded = await db.get_work_item(item.id)
        assert loaded.status == WorkItemStatus.COMPLETED
        assert [r.outcome.value for r in loaded.history] == ["failure", "success"]

    async def test_record_outcome_with_stale_version_is_rejected(self, db: Database) -> None:
        item = _item()
        await db.create_work_item(item)
        claimed = await db.claim_work_item(item.id, EPOCH)

        with pytest.raises(ConcurrentUpdateError):
            await db.record_outcome(apply_success(claimed, EPOCH, 1), claimed.version - 1)

        loaded = await db.get_work_item(item.id)
        assert loaded.status == WorkItemStatus.RUNNING
        assert loaded.history == []

    async def test_cancel_only_pending(self, db: Database) -> None:
        pending, running = _item(), _item()
        await db.create_work_item(pending)
        await db.create_work_item(running)
        await db.claim_work_item(running.id, EPOCH)

        assert await db.cancel_work_item(pending.id, EPOCH) is True
        assert await db.cancel_work_item(running.id, EPOCH) is False
        assert (await db.get_work_item(pending.id)).status == WorkItemStatus.CANCELLED
        assert (await db.get_work_item(running.id)).status == WorkItemStatus.RUNNING

    async def test_update_pending_item_version_guard(self, db: Database) -> None:
        item = _item()
        await db.create_work_item(item)
        moved = item.model_copy(update={"scheduled_for": EPOCH + timedelta(days=1)})

        updated = await db.update_pending_item(moved, item.version)
        assert updated.version == item.version + 1
        with pytest.raises(ConcurrentUpdateError):
            await db.update_pending_item(moved, item.version)

    async def test_stalled_items(self, db: Database) -> None:
        old, fresh = _item(), _item()
        await db.create_work_item(old)
        await db.create_work_item(fresh)
        await db.claim_work_item(old.id, EPOCH)
        await db.claim_work_item(fresh.id, EPOCH + timedelta(minutes=20))

        stalled = await db.get_stalled_work_items(EPOCH + timedelta(minutes=10))
        assert [i.id for i in stalled] == [old.id]

    async def test_retention_deletes_only_old_terminal_items(self, db: Database) -> None:
        done, pending = _item(), _item()
        await db.create_work_item(done)
        await db.create_work_item(pending)
        claimed = await db.claim_work_item(done.id, EPOCH)
        await db.record_outcome(apply_success(claimed, EPOCH, 1), claimed.version)

        assert await db.delete_terminal_before(EPOCH) == 0
        assert await db.delete_terminal_before(EPOCH + timedelta(days=31)) == 1
        assert await db.get_work_item(done.id) is None
        assert await db.get_history(done.id) == []
        assert await db.get_work_item(pending.id) is not None

    async def test_pagination_and_counts(self, db: Database) -> None:
        for n in range(7):
            await db.create_work_item(_item(scheduled_for=EPOCH + timedelta(minutes=n)))
        await db.create_work_item(_item(owner="bob"))

        first = await db.list_work_items(owner="alice", limit=5)
        second = await db.list_work_items(owner="alice", limit=5, offset=5)
        assert len(first) == 5 and len(second) == 2
        assert not {i.id for i in first} & {i.id for i in second}
        assert await db.count_work_items(owner="alice") == 7
        assert (await db.count_by_status())["pending"] == 8

    async def test_event_log(self, db: Database) -> None:
        item = _item()
        await db.create_work_item(item)
        await db.log_event("work_item_submitted", "alice", item.id, {"at": EPOCH})

        events = await db.get_events(item.id)
        assert events[0]["event_type"] == "work_item_submitted"
        assert events[0]["details"] == {"at": str(EPOCH)}

    async def test_read_failure_raises_store_error(
        self, db: Database, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def broken(*args, **kwargs):
            raise aiosqlite.OperationalError("disk I/O error")

        monkeypatch.setattr(db.conn, "execute", broken)
        with pytest.raises(StoreError, match="load work item"):
            await db.get_work_item("missing")
        with pytest.raises(StoreError):
            await db.count_by_status()

    async def test_delete_failure_raises_store_error(
        self, db: Database, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def broken(*args, **kwargs):
            raise aiosqlite.OperationalError("database is locked")

        monkeypatch.setattr(db.conn, "execute", broken)
        with pytest.raises(StoreError, match="delete work item"):
            await db.delete_terminal_item("missing")

    async def test_uninitialized_store_raises_store_error(self, tmp_path: Path) -> None:
        with pytest.raises(StoreError, match="not initialized"):
            await Database(tmp_path / "never.db").get_work_item("x")
