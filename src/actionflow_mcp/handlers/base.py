from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from actionflow_mcp.errors import HandlerError, UnknownKindError
from actionflow_mcp.models.work_item import AttemptOutcome, WorkItem, WorkItemKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttemptContext:
    """What a handler knows about the attempt it is running."""

    item_id: str
    owner: str
    kind: WorkItemKind
    attempt_number: int
    scheduled_for: datetime
    deadline: datetime
    idempotency_key: str

    @classmethod
    def for_item(cls, item: WorkItem, deadline: datetime) -> "AttemptContext":
        return cls(
            item_id=item.id,
            owner=item.owner,
            kind=item.kind,
            attempt_number=len(item.history) + 1,
            scheduled_for=item.scheduled_for,
            deadline=deadline,
            idempotency_key=idempotency_key(item),
        )


def idempotency_key(item: WorkItem) -> str:
    """Stable key for one occurrence of an item.

    Retries of the same occurrence share the key; a recurring item gets a
    new key each time it is re-armed. While retrying, ``scheduled_for`` has
    been moved forward, so the anchor is the count of successful runs
    rather than the timestamp.
    """
    occurrence = sum(1 for record in item.history if record.outcome == AttemptOutcome.SUCCESS)
    digest = hashlib.sha256(f"{item.id}:{occurrence}".encode()).hexdigest()
    return digest[:24]


@dataclass
class HandlerResult:
    summary: str
    data: dict[str, Any] = field(default_factory=dict)


class Handler(ABC):
    """Performs the side-effecting work for one kind of work item.

    ``execute`` returns a HandlerResult or raises; any exception is treated
    as a retryable HandlerError by the executor. ``retry_safe`` documents
    whether running the same attempt twice is harmless.
    """

    kind: WorkItemKind
    retry_safe: bool = True

    @abstractmethod
    async def execute(self, payload: dict[str, Any], context: AttemptContext) -> HandlerResult:
        ...

    def require(self, payload: dict[str, Any], *keys: str) -> None:
        missing = [k for k in keys if payload.get(k) in (None, "")]
        if missing:
            raise HandlerError(f"{self.kind.value} payload missing: {', '.join(missing)}")


class HandlerRegistry:
    """Maps a work item kind to the handler that executes it."""

    def __init__(self, handlers: Iterable[Handler] = ()) -> None:
        self._handlers: dict[WorkItemKind, Handler] = {}
        for handler in handlers:
            self.register(handler)

    def register(self, handler: Handler, replace: bool = False) -> None:
        kind = WorkItemKind(handler.kind)
        if kind in self._handlers and not replace:
            raise ValueError(f"Handler for '{kind.value}' already registered")
        self._handlers[kind] = handler
        logger.debug("Registered %s for kind %s", type(handler).__name__, kind.value)

    def get(self, kind: WorkItemKind | str) -> Handler:
        try:
            return self._handlers[WorkItemKind(kind)]
        except (KeyError, ValueError):
            raise UnknownKindError(str(getattr(kind, "value", kind))) from None

    def __contains__(self, kind: object) -> bool:
        try:
            return WorkItemKind(kind) in self._handlers
        except ValueError:
            return False

    def kinds(self) -> list[str]:
        return sorted(k.value for k in self._handlers)
