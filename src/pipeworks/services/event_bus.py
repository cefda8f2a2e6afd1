from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Union

logger = logging.getLogger(__name__)

Listener = Callable[[dict[str, Any]], Union[Awaitable[None], None]]

ITEM_CLAIMED = "item_claimed"
ITEM_MOVED = "item_moved"
ITEM_SPLIT = "item_split"
DISPATCH_FAILED = "dispatch_failed"


class EventBus:
    """In-process pub/sub for pipeline events.

    Listeners subscribe to an event type, or ``"*"`` for everything, and may
    be plain functions or coroutines. A failing listener is logged and does
    not affect the others or the publisher.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}

    def subscribe(self, event_type: str, listener: Listener) -> None:
        self._listeners.setdefault(event_type, []).append(listener)

    def unsubscribe(self, event_type: str, listener: Listener) -> None:
        listeners = self._listeners.get(event_type, [])
        if listener in listeners:
            listeners.remove(listener)

    async def publish(self, event_type: str, **data: Any) -> None:
        targets = [*self._listeners.get(event_type, []), *self._listeners.get("*", [])]
        if not targets:
            return

        event = {
            "type": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **data,
        }
        pending = []
        for listener in targets:
            try:
                result = listener(event)
            except Exception as e:
                logger.error("Event listener error for %s: %s", event_type, e)
                continue
            if inspect.isawaitable(result):
                pending.append(result)

        results = await asyncio.gather(*pending, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("Event listener error for %s: %s", event_type, result)


def describe(event: dict[str, Any]) -> str:
    """One-line progress message for a pipeline event."""
    kind = event.get("type")
    prefix = f"[{event.get('stage', '?')}] {event.get('item', '?')}"
    if kind == ITEM_CLAIMED:
        return f"{prefix} claimed by {event['agent']}"
    if kind == ITEM_MOVED:
        return f"{prefix} {event['directive']} -> {event['target']}/"
    if kind == ITEM_SPLIT:
        return f"{prefix} split into {event['children']} items"
    if kind == DISPATCH_FAILED:
        return f"{prefix} agent {event['agent']} failed: {event['error']}"
    return f"{prefix} {kind}"
