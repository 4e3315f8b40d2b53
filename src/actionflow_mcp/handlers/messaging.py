from __future__ import annotations

import logging
from typing import Any

from actionflow_mcp.errors import HandlerError
from actionflow_mcp.handlers.base import AttemptContext, Handler, HandlerResult
from actionflow_mcp.models.work_item import WorkItemKind
from actionflow_mcp.services.notifier import NotificationDispatcher

logger = logging.getLogger(__name__)

_CHANNELS = {"email", "sms", "push", "in_app", "voice"}

_INTENT_SYSTEM_PROMPT = (
    "You are an assistant executing a scheduled task on behalf of a user. "
    "Carry out the request and reply with the result only."
)


class NotificationHandler(Handler):
    kind = WorkItemKind.NOTIFICATION
    retry_safe = True

    def __init__(self, dispatcher: NotificationDispatcher):
        self.dispatcher = dispatcher

    async def execute(self, payload: dict[str, Any], context: AttemptContext) -> HandlerResult:
        self.require(payload, "message")
        channel = payload.get("channel", "in_app")
        if channel not in _CHANNELS:
            raise HandlerError(f"Unsupported notification channel '{channel}'")
        recipient = payload.get("recipient") or context.owner
        message_id = f"MSG-{context.idempotency_key[:12].upper()}"

        delivered = await self.dispatcher.notify(
            recipient,
            "notification",
            {
                "message_id": message_id,
                "channel": channel,
                "subject": payload.get("subject"),
                "message": payload["message"],
                "work_item_id": context.item_id,
            },
        )
        logger.info("Notification %s sent via %s to %s", message_id, channel, recipient)
        return HandlerResult(
            summary=f"{channel} notification to {recipient}",
            data={"message_id": message_id, "channel": channel, "recipient": recipient, "listeners": delivered},
        )


class ReminderHandler(Handler):
    kind = WorkItemKind.REMINDER
    retry_safe = True

    def __init__(self, dispatcher: NotificationDispatcher):
        self.dispatcher = dispatcher

    async def execute(self, payload: dict[str, Any], context: AttemptContext) -> HandlerResult:
        title = payload.get("title") or payload.get("message")
        if not title:
            raise HandlerError("reminder payload missing: title")
        text = f"Reminder: {title}"
        if payload.get("description"):
            text += f" - {payload['description']}"

        await self.dispatcher.notify(
            context.owner,
            "reminder",
            {"message": text, "work_item_id": context.item_id},
        )
        return HandlerResult(summary=text)


class FreeformIntentHandler(Handler):
    """Sends a free-form prompt to an Anthropic model and records the reply."""

    kind = WorkItemKind.FREEFORM_INTENT
    retry_safe = True

    def __init__(self, client: Any | None, model: str, max_tokens: int = 1000):
        self._client = client
        self._model = model
        self._max_tokens = max_tokens

    async def execute(self, payload: dict[str, Any], context: AttemptContext) -> HandlerResult:
        prompt = payload.get("prompt") or payload.get("text")
        if not prompt:
            raise HandlerError("freeform_intent payload missing: prompt")
        if self._client is None:
            raise HandlerError("LLM not available - ANTHROPIC_API_KEY not set")

        try:
            response = await self._client.messages.create(
                model=self._model,
                max_tokens=self._max_tokens,
                system=_INTENT_SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt}],
            )
        except Exception as exc:
            raise HandlerError(f"LLM request failed: {exc}") from exc

        reply = response.content[0].text
        return HandlerResult(summary=reply[:500], data={"reply": reply})
