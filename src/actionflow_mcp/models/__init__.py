from actionflow_mcp.models.work_item import (
    AttemptOutcome,
    AttemptRecord,
    Priority,
    RecurrencePattern,
    RecurrenceRule,
    WorkItem,
    WorkItemCreate,
    WorkItemKind,
    WorkItemStatus,
)

__all__ = [
    "AttemptOutcome",
    "AttemptRecord",
    "Priority",
    "RecurrencePattern",
    "RecurrenceRule",
    "WorkItem",
    "WorkItemCreate",
    "WorkItemKind",
    "WorkItemStatus",
]
