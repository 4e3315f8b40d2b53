from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import pytest

from actionflow_mcp.db.database import Database
from actionflow_mcp.errors import HandlerError
from actionflow_mcp.handlers.base import AttemptContext, Handler, HandlerRegistry, HandlerResult
from actionflow_mcp.models.work_item import WorkItemKind
from actionflow_mcp.services.executor import Executor
from actionflow_mcp.services.notifier import NotificationDispatcher
from actionflow_mcp.services.scheduler import SchedulerLoop
from actionflow_mcp.services.work_queue import WorkQueue

EPOCH = datetime(2024, 1, 10, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock shared by the services under test."""

    def __init__(self, start: datetime = EPOCH):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class ScriptedHandler(Handler):
    """Test handler that succeeds, or raises, according to ``script``.

    ``script`` is consumed one entry per call: True succeeds, False raises
    HandlerError. Once exhausted, ``default`` decides.
    """

    retry_safe = True

    def __init__(
        self,
        kind: WorkItemKind,
        script: list[bool] | None = None,
        default: bool = True,
        on_call: Callable[[dict[str, Any], AttemptContext], Any] | None = None,
    ):
        self.kind = kind
        self.script = list(script or [])
        self.default = default
        self.on_call = on_call
        self.calls: list[AttemptContext] = []

    async def execute(self, payload: dict[str, Any], context: AttemptContext) -> HandlerResult:
        self.calls.append(context)
        if self.on_call is not None:
            await self.on_call(payload, context)
        ok = self.script.pop(0) if self.script else self.default
        if not ok:
            raise HandlerError(f"scripted failure on attempt {context.attempt_number}")
        return HandlerResult(summary=f"ok #{context.attempt_number}", data={"attempt": context.attempt_number})


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def db(tmp_path: Path) -> Database:
    database = Database(tmp_path / "test.db")
    await database.initialize()
    yield database  # type: ignore[misc]
    await database.close()


@pytest.fixture
def dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher()


@pytest.fixture
def reminder_handler() -> ScriptedHandler:
    return ScriptedHandler(WorkItemKind.REMINDER)


@pytest.fixture
def registry(reminder_handler: ScriptedHandler) -> HandlerRegistry:
    return HandlerRegistry([reminder_handler])


@pytest.fixture
def work_queue(db: Database, dispatcher: NotificationDispatcher, clock: FakeClock) -> WorkQueue:
    return WorkQueue(db, notifier=dispatcher, clock=clock)


@pytest.fixture
def executor(
    db: Database,
    registry: HandlerRegistry,
    dispatcher: NotificationDispatcher,
    clock: FakeClock,
) -> Executor:
    return Executor(
        db,
        registry,
        dispatcher,
        handler_timeout=5.0,
        backoff_unit=timedelta(seconds=60),
        max_concurrency=4,
        clock=clock,
    )


@pytest.fixture
def scheduler(db: Database, executor: Executor, clock: FakeClock) -> SchedulerLoop:
    return SchedulerLoop(
        db,
        executor,
        discovery_interval=3600,  # long intervals so the loops never fire in tests
        maintenance_interval=3600,
        stall_timeout=timedelta(minutes=15),
        retention=timedelta(days=30),
        clock=clock,
    )
