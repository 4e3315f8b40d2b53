from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine

logger = logging.getLogger(__name__)

Listener = Callable[[dict[str, Any]], Coroutine[Any, Any, None]]


class NotificationDispatcher:
    """Best-effort async pub/sub for work item events.

    Listeners subscribe to one owner's events, or to "*" for everyone's.
    ``notify`` never raises: listener failures are logged and dropped so
    they cannot affect work item state.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}

    def subscribe(self, owner: str, listener: Listener) -> None:
        self._listeners.setdefault(owner, []).append(listener)

    def unsubscribe(self, owner: str, listener: Listener) -> None:
        listeners = self._listeners.get(owner, [])
        if listener in listeners:
            listeners.remove(listener)

    async def notify(self, owner: str, event_type: str, data: dict[str, Any]) -> int:
        """Deliver an event to the owner's listeners; returns how many succeeded."""
        event = {
            "type": event_type,
            "owner": owner,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **data,
        }

        targets: list[Listener] = []
        targets.extend(self._listeners.get(owner, []))
        targets.extend(self._listeners.get("*", []))

        if not targets:
            return 0

        results = await asyncio.gather(
            *(listener(event) for listener in targets),
            return_exceptions=True,
        )
        delivered = 0
        for result in results:
            if isinstance(result, Exception):
                logger.error("Notification listener error for %s/%s: %s", owner, event_type, result)
            else:
                delivered += 1
        return delivered
