from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

logger = logging.getLogger(__name__)

Subscriber = Callable[[str, str], Awaitable[None]]


class EventBus(Protocol):
    async def attachment_created(self, attachment_id: str) -> None: ...

    async def attachment_updated(self, attachment_id: str) -> None: ...

    async def post_updated(self, post_id: str) -> None: ...


class InProcessEventBus:
    """Fire-and-forget event bus; subscribers get ``(event_name, entity_id)``."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    async def _emit(self, event: str, entity_id: str) -> None:
        logger.info("event %s id=%s", event, entity_id)
        for subscriber in list(self._subscribers):
            try:
                await subscriber(event, entity_id)
            except Exception:
                logger.exception("event subscriber failed: event=%s id=%s", event, entity_id)

    async def attachment_created(self, attachment_id: str) -> None:
        await self._emit("attachment_created", attachment_id)

    async def attachment_updated(self, attachment_id: str) -> None:
        await self._emit("attachment_updated", attachment_id)

    async def post_updated(self, post_id: str) -> None:
        await self._emit("post_updated", post_id)
