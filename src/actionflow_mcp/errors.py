from __future__ import annotations


class ActionFlowError(Exception):
    """Base class for every error raised by the engine."""


class ClassificationError(ActionFlowError):
    """Free text could not be mapped to a work item kind."""


class UnknownKindError(ActionFlowError):
    """No handler is registered for a work item's kind. Never retried."""

    def __init__(self, kind: str):
        super().__init__(f"No handler registered for kind '{kind}'")
        self.kind = kind


class HandlerError(ActionFlowError):
    """A handler failed. Retryable up to the item's retry budget."""


class HandlerTimeoutError(HandlerError):
    """A handler exceeded its bounded execution time."""

    def __init__(self, timeout_seconds: float):
        super().__init__(f"Handler timed out after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class ClaimConflictError(ActionFlowError):
    """Another worker claimed the item first, or it is no longer pending."""

    def __init__(self, item_id: str):
        super().__init__(f"Work item {item_id} could not be claimed")
        self.item_id = item_id


class ConfirmationRequiredError(ActionFlowError):
    """The item needs an explicit confirmation before it may run."""

    def __init__(self, item_id: str):
        super().__init__(f"Work item {item_id} requires confirmation before execution")
        self.item_id = item_id


class StoreError(ActionFlowError):
    """The work item store failed to read or persist state."""


class ConcurrentUpdateError(StoreError):
    """An optimistic update lost against a concurrent writer."""

    def __init__(self, item_id: str, expected_version: int):
        super().__init__(
            f"Work item {item_id} was modified concurrently (expected version {expected_version})"
        )
        self.item_id = item_id
        self.expected_version = expected_version


class WorkItemNotFoundError(ActionFlowError):
    def __init__(self, item_id: str):
        super().__init__(f"Work item {item_id} not found")
        self.item_id = item_id


class InvalidTransitionError(ActionFlowError):
    """A requested state change is not allowed from the item's current status."""

    def __init__(self, item_id: str, status: str, action: str):
        super().__init__(f"Cannot {action} work item {item_id} while it is {status}")
        self.item_id = item_id
        self.status = status
        self.action = action
