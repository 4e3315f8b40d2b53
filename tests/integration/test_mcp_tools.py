"""Integration tests that exercise the MCP surface and the services behind it.

These tests simulate the full flow an MCP client would follow:
submit → confirm → execute → inspect.
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest
from mcp.server.fastmcp import FastMCP

from actionflow_mcp.db.database import Database
from actionflow_mcp.errors import ConfirmationRequiredError
from actionflow_mcp.handlers import build_default_registry
from actionflow_mcp.handlers.commerce import PaymentHandler, SimulatedLedger
from actionflow_mcp.models.work_item import (
    RecurrencePattern,
    RecurrenceRule,
    WorkItemCreate,
    WorkItemKind,
    WorkItemStatus,
)
from actionflow_mcp.services.executor import Executor
from actionflow_mcp.services.notifier import NotificationDispatcher
from actionflow_mcp.services.scheduler import SchedulerLoop
from actionflow_mcp.services.stats import collect_engine_stats
from actionflow_mcp.services.work_queue import WorkQueue
from actionflow_mcp.tools import engine as engine_tools
from actionflow_mcp.tools import work_items as work_item_tools
from actionflow_mcp.utils.config import Config
from conftest import EPOCH, FakeClock


@pytest.fixture
async def services(tmp_path: Path):
    clock = FakeClock()
    db = Database(tmp_path / "integration.db")
    await db.initialize()

    config = Config(
        db_path=tmp_path / "integration.db",
        file_sandbox_root=tmp_path / "files",
        anthropic_api_key=None,
    )
    dispatcher = NotificationDispatcher()
    registry = build_default_registry(config, dispatcher)
    gateway = SimulatedLedger()
    registry.register(PaymentHandler(gateway), replace=True)

    wq = WorkQueue(db, notifier=dispatcher, clock=clock)
    ex = Executor(db, registry, dispatcher, handler_timeout=5, clock=clock)
    sched = SchedulerLoop(db, ex, discovery_interval=3600, maintenance_interval=3600, clock=clock)

    yield {
        "db": db,
        "clock": clock,
        "dispatcher": dispatcher,
        "gateway": gateway,
        "work_queue": wq,
        "executor": ex,
        "scheduler": sched,
    }

    await db.close()


@pytest.mark.asyncio
class TestMCPToolFlow:
    async def test_tools_are_registered(self, services: dict) -> None:
        server = FastMCP("ActionFlow-test")
        work_item_tools.register(server, services["work_queue"])
        engine_tools.register(server, services["db"], services["executor"], services["scheduler"])

        names = {tool.name for tool in await server.list_tools()}
        assert {
            "submit_work_item",
            "submit_from_text",
            "get_work_item",
            "list_work_items",
            "list_upcoming_work",
            "list_overdue_work",
            "cancel_work_item",
            "confirm_work_item",
            "reschedule_work_item",
            "delete_work_item",
            "execute_work_item_now",
            "get_engine_stats",
            "run_maintenance",
        } <= names

    async def test_confirmed_payment_flow(self, services: dict) -> None:
        db: Database = services["db"]
        wq: WorkQueue = services["work_queue"]
        ex: Executor = services["executor"]
        sched: SchedulerLoop = services["scheduler"]
        gateway: SimulatedLedger = services["gateway"]

        events: list[dict] = []

        async def listener(event: dict) -> None:
            events.append(event)

        services["dispatcher"].subscribe("alice", listener)

        # Submit a payment that needs confirmation
        item = await wq.submit(
            WorkItemCreate(
                owner="alice",
                kind=WorkItemKind.PAYMENT,
                payload={"amount": 500, "recipient": "John"},
                requires_confirmation=True,
            )
        )

        # Nothing runs before confirmation, and it shows as overdue
        assert await sched.run_discovery_once() == 0
        services["clock"].advance(minutes=10)
        overdue = await wq.list_overdue("alice", grace=timedelta(minutes=5))
        assert [i.id for i in overdue] == [item.id]
        with pytest.raises(ConfirmationRequiredError):
            await ex.execute_now(item.id)

        # Confirm, then the next tick executes it
        await wq.confirm(item.id, "alice")
        assert await sched.run_discovery_once() == 1

        done = await wq.get(item.id)
        assert done.status == WorkItemStatus.COMPLETED
        assert done.history[0].result_summary.startswith("Paid 500.00 INR to John")
        assert len(gateway.records) == 1
        assert [e["type"] for e in events] == ["work_item_completed"]

        stats = await collect_engine_stats(db, ex, sched, owner="alice")
        assert stats["by_status"]["completed"] == 1

    async def test_recurring_reminder_flow(self, services: dict) -> None:
        wq: WorkQueue = services["work_queue"]
        sched: SchedulerLoop = services["scheduler"]
        clock: FakeClock = services["clock"]

        item = await wq.submit(
            WorkItemCreate(
                owner="alice",
                kind=WorkItemKind.REMINDER,
                payload={"title": "Stand-up"},
                recurrence=RecurrenceRule(
                    pattern=RecurrencePattern.DAILY,
                    end_date=EPOCH.replace(hour=0) + timedelta(days=3),
                ),
            )
        )

        for day in range(3):
            clock.now = EPOCH + timedelta(days=day)
            assert await sched.run_discovery_once() == 1

        final = await wq.get(item.id)
        assert final.status == WorkItemStatus.COMPLETED
        assert len(final.history) == 3
        assert final.retry_count == 0

    async def test_failing_payload_retries_then_fails(self, services: dict) -> None:
        wq: WorkQueue = services["work_queue"]
        sched: SchedulerLoop = services["scheduler"]
        clock: FakeClock = services["clock"]

        item = await wq.submit(
            WorkItemCreate(
                owner="alice",
                kind=WorkItemKind.PAYMENT,
                payload={"amount": -5, "recipient": "John"},
                max_retries=1,
            )
        )

        await sched.run_discovery_once()
        assert (await wq.get(item.id)).status == WorkItemStatus.PENDING
        clock.advance(minutes=5)
        await sched.run_discovery_once()

        failed = await wq.get(item.id)
        assert failed.status == WorkItemStatus.FAILED
        assert len(failed.history) == 2
        assert "must be positive" in failed.history[-1].error_message

    async def test_cancel_before_run(self, services: dict) -> None:
        wq: WorkQueue = services["work_queue"]
        sched: SchedulerLoop = services["scheduler"]

        item = await wq.submit(
            WorkItemCreate(
                owner="alice",
                kind=WorkItemKind.REMINDER,
                payload={"title": "never"},
                scheduled_for=EPOCH + timedelta(hours=1),
            )
        )
        await wq.cancel(item.id, requested_by="alice")

        services["clock"].advance(hours=2)
        assert await sched.run_discovery_once() == 0
        assert (await wq.get(item.id)).status == WorkItemStatus.CANCELLED
