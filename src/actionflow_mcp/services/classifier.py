from __future__ import annotations

import logging
from typing import Any, Protocol

from pydantic import BaseModel, Field, ValidationError

from actionflow_mcp.errors import ClassificationError
from actionflow_mcp.models.work_item import Priority, WorkItemKind
from actionflow_mcp.services.llm import parse_json_reply

logger = logging.getLogger(__name__)

# Labels older prompts and callers still produce.
_KIND_ALIASES = {
    "database": WorkItemKind.DATA_OPERATION,
    "api_call": WorkItemKind.EXTERNAL_CALL,
    "email": WorkItemKind.NOTIFICATION,
    "sms": WorkItemKind.NOTIFICATION,
    "voice_command": WorkItemKind.FREEFORM_INTENT,
    "ai_task": WorkItemKind.FREEFORM_INTENT,
}


class Classification(BaseModel):
    kind: WorkItemKind
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.MEDIUM
    requires_confirmation: bool = False
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class IntentClassifier(Protocol):
    async def classify(self, text: str) -> Classification:
        """Map free text to a work item kind and payload, or raise ClassificationError."""
        ...


def resolve_kind(label: str | None) -> WorkItemKind:
    if not label:
        raise ClassificationError("Could not determine a work item kind")
    normalized = label.strip().lower()
    if normalized in _KIND_ALIASES:
        return _KIND_ALIASES[normalized]
    try:
        return WorkItemKind(normalized)
    except ValueError:
        raise ClassificationError(f"Unmapped intent kind '{label}'") from None


class LLMIntentClassifier:
    """Classifies free text with an Anthropic model."""

    def __init__(self, client: Any | None, model: str, min_confidence: float = 0.0):
        self._client = client
        self._model = model
        self._min_confidence = min_confidence

    async def classify(self, text: str) -> Classification:
        if not text or not text.strip():
            raise ClassificationError("Nothing to classify")
        if self._client is None:
            raise ClassificationError("Intent classifier unavailable - ANTHROPIC_API_KEY not set")

        kinds = " | ".join(k.value for k in WorkItemKind)
        prompt = (
            "Analyze this command and determine what action should be performed:\n"
            f'Command: "{text}"\n\n'
            "Respond with JSON only:\n"
            "{\n"
            f'  "kind": "{kinds}",\n'
            '  "confidence": 0.0-1.0,\n'
            '  "payload": { action-specific parameters },\n'
            '  "requires_confirmation": boolean,\n'
            '  "priority": "low" | "medium" | "high" | "urgent"\n'
            "}\n\n"
            "Examples:\n"
            '- "order cold drink" -> kind "order", payload {"product": "cold drink", "quantity": 1}\n'
            '- "pay 500 rupees to John" -> kind "payment", payload {"amount": 500, "currency": "INR", "recipient": "John"}\n'
            '- "backup database" -> kind "data_operation", payload {"operation": "backup"}\n'
            '- "send email to boss" -> kind "notification", payload {"channel": "email", "recipient": "boss", "message": "..."}\n'
            "Payments and orders must set requires_confirmation to true."
        )

        try:
            response = await self._client.messages.create(
                model=self._model,
                max_tokens=500,
                messages=[{"role": "user", "content": prompt}],
            )
            raw = parse_json_reply(response.content[0].text)
        except Exception as exc:
            logger.error("Error classifying intent: %s", exc)
            raise ClassificationError(f"Failed to classify intent: {exc}") from exc

        kind = resolve_kind(raw.get("kind") or raw.get("type"))
        try:
            classification = Classification(
                kind=kind,
                payload=raw.get("payload") or raw.get("parameters") or {},
                priority=raw.get("priority") or Priority.MEDIUM,
                requires_confirmation=bool(raw.get("requires_confirmation", False)),
                confidence=float(raw.get("confidence", 1.0)),
            )
        except (ValidationError, TypeError, ValueError) as exc:
            raise ClassificationError(f"Classifier returned an invalid result: {exc}") from exc

        if classification.confidence < self._min_confidence:
            raise ClassificationError(
                f"Classification confidence {classification.confidence:.2f} below threshold"
            )
        logger.info(
            "Classified intent as %s (confidence=%.2f)", kind.value, classification.confidence
        )
        return classification
