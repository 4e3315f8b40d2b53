from __future__ import annotations

from typing import Any

from actionflow_mcp.handlers.base import AttemptContext, Handler, HandlerRegistry, HandlerResult
from actionflow_mcp.handlers.commerce import OrderHandler, PaymentHandler
from actionflow_mcp.handlers.messaging import (
    FreeformIntentHandler,
    NotificationHandler,
    ReminderHandler,
)
from actionflow_mcp.handlers.operations import (
    DataOperationHandler,
    ExternalCallHandler,
    FileOperationHandler,
    SystemCommandHandler,
)
from actionflow_mcp.services.notifier import NotificationDispatcher
from actionflow_mcp.utils.config import Config

__all__ = [
    "AttemptContext",
    "Handler",
    "HandlerRegistry",
    "HandlerResult",
    "build_default_registry",
]


def build_default_registry(
    config: Config,
    dispatcher: NotificationDispatcher,
    llm_client: Any | None = None,
) -> HandlerRegistry:
    """Registry with a built-in handler for every work item kind."""
    return HandlerRegistry(
        [
            OrderHandler(),
            PaymentHandler(),
            DataOperationHandler(),
            ExternalCallHandler(),
            FileOperationHandler(config.file_sandbox_root),
            SystemCommandHandler(config.allowed_commands),
            NotificationHandler(dispatcher),
            ReminderHandler(dispatcher),
            FreeformIntentHandler(llm_client, config.intent_model),
        ]
    )
