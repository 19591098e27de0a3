"""
Structured progress event emission for coordinator rounds.

Events are plain dicts so a UI layer can render conflicts, clarification
options and escalations without depending on orchestration types.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

EventCallback = Callable[[dict[str, Any]], Awaitable[None] | None]


class EventEmitter:
    def __init__(self, callback: EventCallback | None = None):
        self.callback = callback
        self.history: list[dict[str, Any]] = []

    async def emit(self, event: dict[str, Any]) -> None:
        self.history.append(event)
        if self.callback is None:
            return
        try:
            maybe = self.callback(event)
            if asyncio.iscoroutine(maybe):
                await maybe
        except Exception as exc:  # noqa: BLE001
            # A broken UI listener must not fail the round.
            logger.warning("Event callback failed for %s: %s", event.get("type"), exc)
