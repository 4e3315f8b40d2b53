from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class WorkItemKind(str, Enum):
    ORDER = "order"
    PAYMENT = "payment"
    DATA_OPERATION = "data_operation"
    EXTERNAL_CALL = "external_call"
    FILE_OPERATION = "file_operation"
    SYSTEM_COMMAND = "system_command"
    NOTIFICATION = "notification"
    REMINDER = "reminder"
    FREEFORM_INTENT = "freeform_intent"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.LOW: 0,
    Priority.MEDIUM: 1,
    Priority.HIGH: 2,
    Priority.URGENT: 3,
}


class WorkItemStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {WorkItemStatus.COMPLETED, WorkItemStatus.FAILED, WorkItemStatus.CANCELLED}
)


class RecurrencePattern(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class RecurrenceRule(BaseModel):
    """How a completed work item re-arms itself."""

    pattern: RecurrencePattern
    interval: int = Field(default=1, ge=1)
    end_date: Optional[datetime] = None

    @field_validator("end_date")
    @classmethod
    def _end_date_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None


class AttemptRecord(BaseModel):
    """One entry of a work item's execution history. Never mutated once stored."""

    timestamp: datetime = Field(default_factory=utcnow)
    outcome: AttemptOutcome
    duration_ms: int = 0
    result_summary: Optional[str] = None
    error_message: Optional[str] = None


class WorkItem(BaseModel):
    """A schedulable, retryable unit of work with its execution history."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    owner: str
    kind: WorkItemKind
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.MEDIUM
    scheduled_for: datetime = Field(default_factory=utcnow)
    status: WorkItemStatus = WorkItemStatus.PENDING

    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    next_retry_at: Optional[datetime] = None

    recurrence: Optional[RecurrenceRule] = None
    history: list[AttemptRecord] = Field(default_factory=list)

    requires_confirmation: bool = False
    confirmed_by: Optional[str] = None
    confirmed_at: Optional[datetime] = None

    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    source_text: Optional[str] = None  # free text the item was classified from

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None  # set by the claim
    last_executed_at: Optional[datetime] = None
    version: int = 0

    @field_validator(
        "scheduled_for",
        "next_retry_at",
        "confirmed_at",
        "created_at",
        "updated_at",
        "started_at",
        "last_executed_at",
    )
    @classmethod
    def _timestamps_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @property
    def is_confirmed(self) -> bool:
        return not self.requires_confirmation or self.confirmed_at is not None


class WorkItemCreate(BaseModel):
    """Fields a submitter may set on a new work item."""

    owner: str
    kind: WorkItemKind
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.MEDIUM
    scheduled_for: Optional[datetime] = None
    max_retries: int = Field(default=3, ge=0)
    recurrence: Optional[RecurrenceRule] = None
    requires_confirmation: bool = False
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    source_text: Optional[str] = None

    def to_work_item(self, now: datetime) -> WorkItem:
        data = self.model_dump(exclude={"scheduled_for"})
        return WorkItem(
            **data,
            scheduled_for=self.scheduled_for or now,
            created_at=now,
            updated_at=now,
        )
