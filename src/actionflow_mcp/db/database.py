from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from importlib import resources
from pathlib import Path
from typing import Any

import aiosqlite

from actionflow_mcp.errors import (
    ClaimConflictError,
    ConcurrentUpdateError,
    ConfirmationRequiredError,
    StoreError,
    WorkItemNotFoundError,
)
from actionflow_mcp.models.work_item import (
    AttemptOutcome,
    AttemptRecord,
    Priority,
    RecurrenceRule,
    WorkItem,
    WorkItemKind,
    WorkItemStatus,
    ensure_utc,
)
from actionflow_mcp.services.transitions import Transition

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path("data/actionflow.db")

_TERMINAL = tuple(
    s.value
    for s in (WorkItemStatus.COMPLETED, WorkItemStatus.FAILED, WorkItemStatus.CANCELLED)
)


def _ts(value: datetime | None) -> str | None:
    """Serialise a timestamp so that string order matches time order."""
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Database:
    """Async SQLite work item store.

    Holds a single persistent connection with WAL mode so several engine
    processes can share one file. Writes on that connection are serialised
    through an asyncio.Lock so multi-statement transactions never interleave.

    Two write disciplines:
    - the claim is a compare-and-set on ``status`` (pending -> running);
    - every other item mutation is optimistic, guarded by ``version``.
    """

    def __init__(self, db_path: str | Path | None = None, busy_timeout_ms: int = 5000):
        self.db_path = Path(db_path) if db_path else _DEFAULT_DB_PATH
        self._busy_timeout_ms = busy_timeout_ms
        self._conn: aiosqlite.Connection | None = None
        self._mu = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the database file, apply the schema, and open the persistent connection."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        schema_sql = (
            resources.files("actionflow_mcp.db").joinpath("schema.sql").read_text()
        )

        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
        await self._conn.executescript(schema_sql)
        await self._conn.commit()

        logger.info("Database initialized at %s", self.db_path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreError("Database not initialized, call initialize() first")
        return self._conn

    async def _fetch(self, sql: str, params: Any = (), what: str = "query") -> list[aiosqlite.Row]:
        try:
            cursor = await self.conn.execute(sql, params)
            return list(await cursor.fetchall())
        except aiosqlite.Error as exc:
            raise StoreError(f"Failed to {what}: {exc}") from exc

    # ------------------------------------------------------------------
    # Work item creation and queries
    # ------------------------------------------------------------------

    async def create_work_item(self, item: WorkItem) -> str:
        async with self._mu:
            try:
                await self.conn.execute(
                    """
                    INSERT INTO work_items (
                        id, owner, kind, payload, priority, priority_rank, scheduled_for,
                        status, retry_count, max_retries, next_retry_at, recurrence,
                        requires_confirmation, confirmed_by, confirmed_at, name,
                        description, category, tags, source_text, created_at,
                        updated_at, started_at, last_executed_at, version
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        item.id,
                        item.owner,
                        item.kind.value,
                        json.dumps(item.payload),
                        item.priority.value,
                        item.priority.rank,
                        _ts(item.scheduled_for),
                        item.status.value,
                        item.retry_count,
                        item.max_retries,
                        _ts(item.next_retry_at),
                        item.recurrence.model_dump_json() if item.recurrence else None,
                        int(item.requires_confirmation),
                        item.confirmed_by,
                        _ts(item.confirmed_at),
                        item.name,
                        item.description,
                        item.category,
                        json.dumps(item.tags),
                        item.source_text,
                        _ts(item.created_at),
                        _ts(item.updated_at),
                        _ts(item.started_at),
                        _ts(item.last_executed_at),
                        item.version,
                    ),
                )
                await self.conn.commit()
            except aiosqlite.Error as exc:
                await self.conn.rollback()
                raise StoreError(f"Failed to create work item: {exc}") from exc
        return item.id

    async def get_work_item(self, item_id: str, include_history: bool = True) -> WorkItem | None:
        rows = await self._fetch(
            "SELECT * FROM work_items WHERE id = ?", (item_id,), f"load work item {item_id}"
        )
        if not rows:
            return None
        history = await self.get_history(item_id) if include_history else []
        return _row_to_item(rows[0], history)

    async def get_history(self, item_id: str) -> list[AttemptRecord]:
        rows = await self._fetch(
            """
            SELECT timestamp, outcome, duration_ms, result_summary, error_message
            FROM work_item_attempts WHERE work_item_id = ?
            ORDER BY id ASC
            """,
            (item_id,),
            f"load history of {item_id}",
        )
        return [
            AttemptRecord(
                timestamp=datetime.fromisoformat(r["timestamp"]),
                outcome=AttemptOutcome(r["outcome"]),
                duration_ms=r["duration_ms"],
                result_summary=r["result_summary"],
                error_message=r["error_message"],
            )
            for r in rows
        ]

    async def list_work_items(
        self,
        owner: str | None = None,
        status: WorkItemStatus | None = None,
        kind: WorkItemKind | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkItem]:
        where, params = _filters(owner=owner, status=status, kind=kind)
        rows = await self._fetch(
            f"""
            SELECT * FROM work_items {where}
            ORDER BY scheduled_for DESC, id ASC
            LIMIT ? OFFSET ?
            """,
            (*params, limit, offset),
            "list work items",
        )
        return [_row_to_item(row, []) for row in rows]

    async def count_work_items(
        self,
        owner: str | None = None,
        status: WorkItemStatus | None = None,
        kind: WorkItemKind | None = None,
    ) -> int:
        where, params = _filters(owner=owner, status=status, kind=kind)
        rows = await self._fetch(
            f"SELECT COUNT(*) AS n FROM work_items {where}", params, "count work items"
        )
        return rows[0]["n"]

    async def get_due_work_items(self, now: datetime, limit: int = 100) -> list[WorkItem]:
        """Pending, confirmed items due at ``now``: highest priority first, then oldest."""
        rows = await self._fetch(
            """
            SELECT * FROM work_items
            WHERE status = 'pending'
              AND scheduled_for <= ?
              AND (requires_confirmation = 0 OR confirmed_at IS NOT NULL)
            ORDER BY priority_rank DESC, scheduled_for ASC
            LIMIT ?
            """,
            (_ts(now), limit),
            "query due work items",
        )
        return [_row_to_item(row, []) for row in rows]

    async def get_pending_between(
        self,
        start: datetime | None,
        end: datetime,
        owner: str | None = None,
        limit: int = 50,
    ) -> list[WorkItem]:
        """Pending items with ``start <= scheduled_for < end``, soonest first."""
        clauses = ["status = 'pending'", "scheduled_for < ?"]
        params: list[Any] = [_ts(end)]
        if start is not None:
            clauses.append("scheduled_for >= ?")
            params.append(_ts(start))
        if owner:
            clauses.append("owner = ?")
            params.append(owner)
        rows = await self._fetch(
            f"""
            SELECT * FROM work_items WHERE {' AND '.join(clauses)}
            ORDER BY scheduled_for ASC LIMIT ?
            """,
            (*params, limit),
            "list pending work items",
        )
        return [_row_to_item(row, []) for row in rows]

    # ------------------------------------------------------------------
    # Claim (compare-and-set)
    # ------------------------------------------------------------------

    async def claim_work_item(self, item_id: str, now: datetime, force: bool = False) -> WorkItem:
        """Atomically move an item from pending to running.

        ``force`` drops the ``scheduled_for <= now`` condition but keeps
        every other guard. Raises ClaimConflictError when another worker
        won, or the item is not pending or not yet due.
        """
        sql = """
            UPDATE work_items
            SET status = 'running', started_at = ?, updated_at = ?, version = version + 1
            WHERE id = ?
              AND status = 'pending'
              AND (requires_confirmation = 0 OR confirmed_at IS NOT NULL)
        """
        params: list[Any] = [_ts(now), _ts(now), item_id]
        if not force:
            sql += " AND scheduled_for <= ?"
            params.append(_ts(now))

        async with self._mu:
            try:
                cursor = await self.conn.execute(sql, params)
                claimed = cursor.rowcount == 1
                await self.conn.commit()
            except aiosqlite.Error as exc:
                await self.conn.rollback()
                raise StoreError(f"Failed to claim work item {item_id}: {exc}") from exc

        item = await self.get_work_item(item_id)
        if item is None:
            raise WorkItemNotFoundError(item_id)
        if not claimed:
            if item.status == WorkItemStatus.PENDING and not item.is_confirmed:
                raise ConfirmationRequiredError(item_id)
            raise ClaimConflictError(item_id)
        return item

    # ------------------------------------------------------------------
    # Optimistic updates
    # ------------------------------------------------------------------

    async def record_outcome(self, transition: Transition, expected_version: int) -> WorkItem:
        """Append the attempt record and persist the transitioned item in one transaction."""
        item = transition.item
        record = transition.record
        async with self._mu:
            try:
                await self.conn.execute(
                    """
                    INSERT INTO work_item_attempts
                        (work_item_id, timestamp, outcome, duration_ms, result_summary, error_message)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        item.id,
                        _ts(record.timestamp),
                        record.outcome.value,
                        record.duration_ms,
                        record.result_summary,
                        record.error_message,
                    ),
                )
                cursor = await self.conn.execute(
                    """
                    UPDATE work_items
                    SET status = ?, scheduled_for = ?, retry_count = ?, next_retry_at = ?,
                        started_at = ?, last_executed_at = ?, updated_at = ?,
                        version = version + 1
                    WHERE id = ? AND version = ? AND status = 'running'
                    """,
                    (
                        item.status.value,
                        _ts(item.scheduled_for),
                        item.retry_count,
                        _ts(item.next_retry_at),
                        _ts(item.started_at),
                        _ts(item.last_executed_at),
                        _ts(item.updated_at),
                        item.id,
                        expected_version,
                    ),
                )
                if cursor.rowcount != 1:
                    await self.conn.rollback()
                    raise ConcurrentUpdateError(item.id, expected_version)
                await self.conn.commit()
            except aiosqlite.Error as exc:
                await self.conn.rollback()
                raise StoreError(f"Failed to record outcome for {item.id}: {exc}") from exc

        return item.model_copy(update={"version": expected_version + 1})

    async def update_pending_item(self, item: WorkItem, expected_version: int) -> WorkItem:
        """Persist caller-editable fields of a pending item (reschedule, reprioritise)."""
        async with self._mu:
            try:
                cursor = await self.conn.execute(
                    """
                    UPDATE work_items
                    SET scheduled_for = ?, next_retry_at = ?, priority = ?, priority_rank = ?, payload = ?,
                        max_retries = ?, recurrence = ?, name = ?, description = ?,
                        category = ?, tags = ?, updated_at = ?, version = version + 1
                    WHERE id = ? AND version = ? AND status = 'pending'
                    """,
                    (
                        _ts(item.scheduled_for),
                        _ts(item.next_retry_at),
                        item.priority.value,
                        item.priority.rank,
                        json.dumps(item.payload),
                        item.max_retries,
                        item.recurrence.model_dump_json() if item.recurrence else None,
                        item.name,
                        item.description,
                        item.category,
                        json.dumps(item.tags),
                        _ts(item.updated_at),
                        item.id,
                        expected_version,
                    ),
                )
                if cursor.rowcount != 1:
                    await self.conn.rollback()
                    raise ConcurrentUpdateError(item.id, expected_version)
                await self.conn.commit()
            except aiosqlite.Error as exc:
                await self.conn.rollback()
                raise StoreError(f"Failed to update work item {item.id}: {exc}") from exc

        return item.model_copy(update={"version": expected_version + 1})

    async def cancel_work_item(self, item_id: str, now: datetime) -> bool:
        """pending -> cancelled. Returns False when the item was not pending."""
        return await self._cas_pending(
            item_id,
            "status = 'cancelled', updated_at = ?",
            (_ts(now),),
        )

    async def confirm_work_item(self, item_id: str, confirmed_by: str, now: datetime) -> bool:
        return await self._cas_pending(
            item_id,
            "confirmed_by = ?, confirmed_at = ?, updated_at = ?",
            (confirmed_by, _ts(now), _ts(now)),
        )

    async def _cas_pending(self, item_id: str, assignments: str, params: tuple[Any, ...]) -> bool:
        async with self._mu:
            try:
                cursor = await self.conn.execute(
                    f"""
                    UPDATE work_items SET {assignments}, version = version + 1
                    WHERE id = ? AND status = 'pending'
                    """,
                    (*params, item_id),
                )
                changed = cursor.rowcount == 1
                await self.conn.commit()
            except aiosqlite.Error as exc:
                await self.conn.rollback()
                raise StoreError(f"Failed to update work item {item_id}: {exc}") from exc
        return changed

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def get_stalled_work_items(self, started_before: datetime) -> list[WorkItem]:
        rows = await self._fetch(
            """
            SELECT * FROM work_items
            WHERE status = 'running' AND (started_at IS NULL OR started_at < ?)
            ORDER BY started_at ASC
            """,
            (_ts(started_before),),
            "query stalled work items",
        )
        return [_row_to_item(row, await self.get_history(row["id"])) for row in rows]

    async def delete_terminal_before(self, cutoff: datetime) -> int:
        """Delete terminal items (and their history) last updated before ``cutoff``."""
        placeholders = ", ".join("?" for _ in _TERMINAL)
        async with self._mu:
            try:
                cursor = await self.conn.execute(
                    f"""
                    DELETE FROM work_items
                    WHERE status IN ({placeholders}) AND updated_at < ?
                    """,
                    (*_TERMINAL, _ts(cutoff)),
                )
                await self.conn.commit()
            except aiosqlite.Error as exc:
                await self.conn.rollback()
                raise StoreError(f"Retention sweep failed: {exc}") from exc
        return cursor.rowcount

    async def delete_terminal_item(self, item_id: str) -> bool:
        placeholders = ", ".join("?" for _ in _TERMINAL)
        async with self._mu:
            try:
                cursor = await self.conn.execute(
                    f"DELETE FROM work_items WHERE id = ? AND status IN ({placeholders})",
                    (item_id, *_TERMINAL),
                )
                await self.conn.commit()
            except aiosqlite.Error as exc:
                await self.conn.rollback()
                raise StoreError(f"Failed to delete work item {item_id}: {exc}") from exc
        return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def count_by_status(self, owner: str | None = None) -> dict[str, int]:
        where, params = _filters(owner=owner)
        rows = await self._fetch(
            f"SELECT status, COUNT(*) AS n FROM work_items {where} GROUP BY status",
            params,
            "count work items by status",
        )
        counts = {s.value: 0 for s in WorkItemStatus}
        counts.update({row["status"]: row["n"] for row in rows})
        return counts

    async def attempt_totals(self) -> dict[str, int]:
        rows = await self._fetch(
            "SELECT outcome, COUNT(*) AS n FROM work_item_attempts GROUP BY outcome",
            what="count attempts",
        )
        totals = {o.value: 0 for o in AttemptOutcome}
        totals.update({row["outcome"]: row["n"] for row in rows})
        return totals

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------

    async def log_event(
        self,
        event_type: str,
        owner: str | None,
        work_item_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        async with self._mu:
            try:
                await self.conn.execute(
                    """
                    INSERT INTO event_log (event_type, owner, work_item_id, details)
                    VALUES (?, ?, ?, ?)
                    """,
                    (
                        event_type,
                        owner,
                        work_item_id,
                        json.dumps(details, default=str) if details else None,
                    ),
                )
                await self.conn.commit()
            except aiosqlite.Error as exc:
                await self.conn.rollback()
                raise StoreError(f"Failed to log event {event_type}: {exc}") from exc

    async def get_events(self, work_item_id: str) -> list[dict[str, Any]]:
        rows = await self._fetch(
            """
            SELECT event_type, owner, details, created_at
            FROM event_log WHERE work_item_id = ?
            ORDER BY id ASC
            """,
            (work_item_id,),
            f"load events of {work_item_id}",
        )
        events = []
        for row in rows:
            d = dict(row)
            d["details"] = json.loads(d["details"]) if d["details"] else {}
            events.append(d)
        return events


def _filters(
    owner: str | None = None,
    status: WorkItemStatus | None = None,
    kind: WorkItemKind | None = None,
) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if owner:
        clauses.append("owner = ?")
        params.append(owner)
    if status:
        clauses.append("status = ?")
        params.append(WorkItemStatus(status).value)
    if kind:
        clauses.append("kind = ?")
        params.append(WorkItemKind(kind).value)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


def _row_to_item(row: aiosqlite.Row, history: list[AttemptRecord]) -> WorkItem:
    return WorkItem(
        id=row["id"],
        owner=row["owner"],
        kind=WorkItemKind(row["kind"]),
        payload=json.loads(row["payload"]) if row["payload"] else {},
        priority=Priority(row["priority"]),
        scheduled_for=_parse_ts(row["scheduled_for"]),
        status=WorkItemStatus(row["status"]),
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        next_retry_at=_parse_ts(row["next_retry_at"]),
        recurrence=(
            RecurrenceRule.model_validate_json(row["recurrence"]) if row["recurrence"] else None
        ),
        history=history,
        requires_confirmation=bool(row["requires_confirmation"]),
        confirmed_by=row["confirmed_by"],
        confirmed_at=_parse_ts(row["confirmed_at"]),
        name=row["name"],
        description=row["description"],
        category=row["category"],
        tags=json.loads(row["tags"]) if row["tags"] else [],
        source_text=row["source_text"],
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
        started_at=_parse_ts(row["started_at"]),
        last_executed_at=_parse_ts(row["last_executed_at"]),
        version=row["version"],
    )
