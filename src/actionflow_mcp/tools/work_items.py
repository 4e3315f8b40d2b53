from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from mcp.server.fastmcp import FastMCP

from actionflow_mcp.errors import ActionFlowError
from actionflow_mcp.models.work_item import RecurrenceRule, WorkItem, WorkItemCreate
from actionflow_mcp.services.work_queue import WorkQueue


def _error(exc: ActionFlowError) -> dict[str, Any]:
    return {"success": False, "error": str(exc), "error_type": type(exc).__name__}


def _summary(item: WorkItem) -> dict[str, Any]:
    return item.model_dump(mode="json", exclude={"history", "payload", "source_text"})


def _recurrence(
    pattern: str | None, interval: int, end_date: str | None
) -> RecurrenceRule | None:
    if not pattern:
        return None
    return RecurrenceRule(
        pattern=pattern,
        interval=interval,
        end_date=datetime.fromisoformat(end_date) if end_date else None,
    )


def register(mcp: FastMCP, work_queue: WorkQueue, default_max_retries: int = 3) -> None:
    """Register work item submission and inspection MCP tools."""

    @mcp.tool()
    async def submit_work_item(
        owner: str,
        kind: str,
        payload: dict | None = None,
        priority: str = "medium",
        scheduled_for: str | None = None,
        max_retries: int | None = None,
        recurrence_pattern: str | None = None,
        recurrence_interval: int = 1,
        recurrence_end_date: str | None = None,
        requires_confirmation: bool = False,
        name: str | None = None,
        description: str | None = None,
        tags: list[str] | None = None,
    ) -> dict:
        """Schedule a new unit of work.

        Args:
            owner: Principal the work is done for
            kind: order, payment, data_operation, external_call, file_operation,
                system_command, notification, reminder or freeform_intent
            payload: Kind-specific parameters (e.g. {"amount": 500, "recipient": "John"})
            priority: low, medium, high or urgent
            scheduled_for: ISO-8601 time to run at (default: now)
            max_retries: Retry budget on failure
            recurrence_pattern: daily, weekly, monthly or yearly to repeat the item
            recurrence_interval: Repeat every N periods
            recurrence_end_date: ISO-8601 date after which the item stops recurring
            requires_confirmation: Hold the item until confirm_work_item is called
        """
        try:
            request = WorkItemCreate(
                owner=owner,
                kind=kind,
                payload=payload or {},
                priority=priority,
                scheduled_for=datetime.fromisoformat(scheduled_for) if scheduled_for else None,
                max_retries=default_max_retries if max_retries is None else max_retries,
                recurrence=_recurrence(recurrence_pattern, recurrence_interval, recurrence_end_date),
                requires_confirmation=requires_confirmation,
                name=name,
                description=description,
                tags=tags or [],
            )
        except ValueError as exc:
            return {"success": False, "error": str(exc), "error_type": "ValidationError"}
        try:
            item = await work_queue.submit(request)
        except ActionFlowError as exc:
            return _error(exc)
        return {"success": True, "id": item.id, "status": item.status.value}

    @mcp.tool()
    async def submit_from_text(
        owner: str,
        text: str,
        scheduled_for: str | None = None,
    ) -> dict:
        """Create a work item from a free-text command (e.g. "pay 500 rupees to John").

        The text is classified into a kind and payload first; if that fails
        nothing is created.

        Args:
            owner: Principal the work is done for
            text: The command as spoken or typed
            scheduled_for: ISO-8601 time to run at (default: now)
        """
        try:
            item = await work_queue.submit_from_text(
                owner,
                text,
                scheduled_for=datetime.fromisoformat(scheduled_for) if scheduled_for else None,
            )
        except ActionFlowError as exc:
            return _error(exc)
        return {
            "success": True,
            "id": item.id,
            "status": item.status.value,
            "kind": item.kind.value,
            "requires_confirmation": item.requires_confirmation,
        }

    @mcp.tool()
    async def get_work_item(item_id: str) -> dict:
        """Fetch a work item with its full execution history.

        Args:
            item_id: Work item id
        """
        try:
            item = await work_queue.get(item_id)
        except ActionFlowError as exc:
            return _error(exc)
        return {"success": True, "item": item.model_dump(mode="json")}

    @mcp.tool()
    async def list_work_items(
        owner: str | None = None,
        status: str | None = None,
        kind: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict:
        """List work items, newest schedule first, filtered by owner/status/kind.

        Args:
            owner: Only this principal's items
            status: pending, running, completed, failed or cancelled
            kind: Only items of this kind
            limit: Page size (max 500)
            offset: Items to skip
        """
        try:
            page = await work_queue.list_items(owner, status, kind, limit, offset)
        except ValueError as exc:
            return {"success": False, "error": str(exc), "error_type": "ValidationError"}
        return {
            "success": True,
            **page,
            "items": [_summary(item) for item in page["items"]],
        }

    @mcp.tool()
    async def list_upcoming_work(owner: str | None = None, within_hours: float = 24) -> list[dict]:
        """Pending work items scheduled within the next hours, soonest first.

        Args:
            owner: Only this principal's items
            within_hours: Look-ahead window
        """
        items = await work_queue.list_upcoming(owner, timedelta(hours=within_hours))
        return [_summary(item) for item in items]

    @mcp.tool()
    async def list_overdue_work(owner: str | None = None, grace_minutes: float = 5) -> list[dict]:
        """Pending work items that should have run already but were not picked up.

        Items waiting for confirmation show up here until confirmed.

        Args:
            owner: Only this principal's items
            grace_minutes: Ignore items that became due within this window
        """
        items = await work_queue.list_overdue(owner, timedelta(minutes=grace_minutes))
        return [_summary(item) for item in items]

    @mcp.tool()
    async def cancel_work_item(item_id: str, requested_by: str | None = None) -> dict:
        """Cancel a pending work item. Running or finished items cannot be cancelled.

        Args:
            item_id: Work item id
            requested_by: Who asked for the cancellation
        """
        try:
            item = await work_queue.cancel(item_id, requested_by)
        except ActionFlowError as exc:
            return _error(exc)
        return {"success": True, "id": item.id, "status": item.status.value}

    @mcp.tool()
    async def confirm_work_item(item_id: str, confirmed_by: str) -> dict:
        """Confirm a pending work item that was created with requires_confirmation.

        Args:
            item_id: Work item id
            confirmed_by: Who confirmed it
        """
        try:
            item = await work_queue.confirm(item_id, confirmed_by)
        except ActionFlowError as exc:
            return _error(exc)
        return {
            "success": True,
            "id": item.id,
            "confirmed_at": item.confirmed_at.isoformat() if item.confirmed_at else None,
        }

    @mcp.tool()
    async def reschedule_work_item(
        item_id: str,
        scheduled_for: str | None = None,
        priority: str | None = None,
    ) -> dict:
        """Move a pending work item to a new time and/or priority.

        Args:
            item_id: Work item id
            scheduled_for: New ISO-8601 run time
            priority: New priority (low, medium, high, urgent)
        """
        try:
            item = await work_queue.reschedule(
                item_id,
                scheduled_for=datetime.fromisoformat(scheduled_for) if scheduled_for else None,
                priority=priority,
            )
        except ActionFlowError as exc:
            return _error(exc)
        except ValueError as exc:
            return {"success": False, "error": str(exc), "error_type": "ValidationError"}
        return {"success": True, "item": _summary(item)}

    @mcp.tool()
    async def delete_work_item(item_id: str) -> dict:
        """Permanently delete a completed, failed or cancelled work item and its history.

        Args:
            item_id: Work item id
        """
        try:
            deleted = await work_queue.delete(item_id)
        except ActionFlowError as exc:
            return _error(exc)
        return {"success": deleted, "id": item_id}
