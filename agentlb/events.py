"""
Indirect Agent LB - Change Notification Bus

In-process bus announcing management server list and configuration
changes.  Subscribers are keyed by exact topic and receive ``(topic, data)``.
A failing subscriber is logged and never reaches the publisher or the
other subscribers.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Any, Awaitable, Callable, Dict, List, Set, Union

import structlog

logger = structlog.get_logger(__name__)

Callback = Union[Callable[[str, Any], None], Callable[[str, Any], Awaitable[None]]]

TOPIC_ENDPOINTS_CHANGED = "agent.lb.endpoints.changed"
TOPIC_CONFIG_CHANGED = "config.changed"


class EventBus:
    """
    Exact-topic publish/subscribe.

    Plain callbacks run in the publishing thread before :meth:`publish`
    returns, so a configuration write has been fully applied once the
    writer regains control.  Coroutine callbacks are awaited by
    :meth:`publish_async`; from :meth:`publish` they are scheduled on the
    running loop and kept referenced until they finish (see :meth:`join`).
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Callback]] = {}
        self._pending: Set[asyncio.Task] = set()
        self._lock = threading.Lock()

    def subscribe(self, topic: str, callback: Callback) -> None:
        """Register *callback* for *topic*; subscribing twice is a no-op."""
        with self._lock:
            callbacks = self._subscribers.get(topic, [])
            if callback in callbacks:
                return
            self._subscribers[topic] = callbacks + [callback]
        logger.debug("event_subscribed", topic=topic)

    def unsubscribe(self, topic: str, callback: Callback) -> None:
        with self._lock:
            self._subscribers[topic] = [
                cb for cb in self._subscribers.get(topic, []) if cb != callback
            ]
        logger.debug("event_unsubscribed", topic=topic)

    def subscribers(self, topic: str) -> List[Callback]:
        return list(self._subscribers.get(topic, []))

    def publish(self, topic: str, data: Any) -> None:
        """Deliver *data* to every subscriber of *topic*."""
        for callback in self.subscribers(topic):
            result = self._invoke(callback, topic, data)
            if result is None:
                continue
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                result.close()
                logger.warning("event_async_callback_without_loop", topic=topic)
                continue
            task = loop.create_task(self._await_isolated(topic, result))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def publish_async(self, topic: str, data: Any) -> None:
        """Deliver *data* and await every coroutine subscriber."""
        for callback in self.subscribers(topic):
            result = self._invoke(callback, topic, data)
            if result is not None:
                await self._await_isolated(topic, result)

    async def join(self) -> None:
        """Wait for coroutine deliveries scheduled by :meth:`publish`."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _invoke(self, callback: Callback, topic: str, data: Any):
        try:
            result = callback(topic, data)
        except Exception:
            logger.warning("event_delivery_error", topic=topic, exc_info=True)
            return None
        return result if asyncio.iscoroutine(result) else None

    async def _await_isolated(self, topic: str, coro: Awaitable[None]) -> None:
        try:
            await coro
        except Exception:
            logger.warning("event_delivery_error", topic=topic, exc_info=True)
