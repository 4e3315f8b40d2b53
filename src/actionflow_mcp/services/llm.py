from __future__ import annotations

import json
import logging
from typing import Any

import anthropic

logger = logging.getLogger(__name__)


def create_llm_client(api_key: str | None) -> Any | None:
    """Build the async Anthropic client, or None when no key is configured."""
    if not api_key:
        logger.warning("ANTHROPIC_API_KEY not set - LLM features disabled")
        return None
    try:
        return anthropic.AsyncAnthropic(api_key=api_key)
    except Exception:
        logger.warning("Failed to initialize Anthropic client")
        return None


def parse_json_reply(text: str) -> dict[str, Any]:
    """Parse a model reply that should be a JSON object, tolerating code fences."""
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.strip("`")
        if stripped.lower().startswith("json"):
            stripped = stripped[4:]
    start, end = stripped.find("{"), stripped.rfind("}")
    if start == -1 or end == -1:
        raise ValueError("reply contains no JSON object")
    return json.loads(stripped[start : end + 1])
