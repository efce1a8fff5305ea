"""Authentication event bus.

``OIDCHooks.notify`` publishes here by default. Nothing inside gatekeeper
consumes these events; the host application subscribes to be told about
them, e.g. to provision resources for new accounts or to audit logins::

    async for event in event_bus.listen():
        if event["type"] == USER_CREATED:
            ...

Events are dicts with a ``type`` of ``USER_CREATED`` or ``USER_LOGIN``,
the user's ``user_id`` and ``username``, and a UTC ``timestamp``.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Set

logger = logging.getLogger(__name__)

USER_CREATED = "oidc_user_created"
USER_LOGIN = "oidc_user_login"


class EventBus:
    """Fan-out of authentication events to host subscribers.

    Each subscriber owns a bounded queue of JSON strings. A subscriber
    whose queue fills up is dropped so a stalled consumer never delays
    a login.
    """

    def __init__(self, maxsize: int = 100) -> None:
        self._listeners: Set[asyncio.Queue[str]] = set()
        self._lock = asyncio.Lock()
        self._maxsize = maxsize

    async def subscribe(self) -> asyncio.Queue[str]:
        """Register a new subscriber and return its queue."""
        queue: asyncio.Queue[str] = asyncio.Queue(maxsize=self._maxsize)
        async with self._lock:
            self._listeners.add(queue)
        return queue

    async def unsubscribe(self, queue: asyncio.Queue[str]) -> None:
        async with self._lock:
            self._listeners.discard(queue)

    async def listen(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield decoded events until the caller stops iterating."""
        queue = await self.subscribe()
        try:
            while True:
                yield json.loads(await queue.get())
        finally:
            await self.unsubscribe(queue)

    async def publish(self, event: Dict[str, Any]) -> None:
        """Send ``event`` to every subscriber without waiting on any of them."""
        logger.debug("Publishing auth event %s for user %s", event.get("type"), event.get("user_id"))
        if not self._listeners:
            return

        payload = json.dumps(
            {**event, "timestamp": event.get("timestamp") or datetime.now(timezone.utc).isoformat()},
            default=str,
        )

        async with self._lock:
            stalled = []
            for queue in list(self._listeners):
                try:
                    queue.put_nowait(payload)
                except asyncio.QueueFull:
                    logger.warning("Auth event queue full, dropping subscriber")
                    stalled.append(queue)

            for queue in stalled:
                self._listeners.discard(queue)


event_bus = EventBus()

__all__ = ["event_bus", "EventBus", "USER_CREATED", "USER_LOGIN"]
