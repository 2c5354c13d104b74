"""
Single consumer loop over the subscriber's queues.

The loop waits on the events, errors and status queues plus an external stop
event, and services one ready source per iteration in rotating order so a
burst on one queue cannot starve the others.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any

from .contracts import PushError, PushEvent, SubscriberStatus
from .dispatcher import EventDispatcher
from .subscriber import Subscriber

logger = logging.getLogger(__name__)


class ListenerExit(str, enum.Enum):
    """Reason the listener loop returned."""

    FINAL_DISCONNECTION = "final-disconnection"
    CANCELLED = "cancelled"


_SOURCES = ("status", "events", "errors", "stop")


class EventListener:
    """Drive dispatch for one subscriber until it finally disconnects or is cancelled."""

    def __init__(self, subscriber: Subscriber, dispatcher: EventDispatcher) -> None:
        self._subscriber = subscriber
        self._dispatcher = dispatcher
        self._statuses: list[SubscriberStatus] = []
        self._error_count = 0
        self._event_count = 0

    @property
    def statuses(self) -> list[SubscriberStatus]:
        """Status transitions observed so far, in order."""
        return list(self._statuses)

    @property
    def error_count(self) -> int:
        return self._error_count

    @property
    def event_count(self) -> int:
        return self._event_count

    async def run(self, stop_event: asyncio.Event | None = None) -> ListenerExit:
        stop_event = stop_event or asyncio.Event()
        pending: dict[str, asyncio.Task[Any]] = {}

        def arm(source: str) -> None:
            if source == "stop":
                awaitable = stop_event.wait()
            else:
                awaitable = getattr(self._subscriber, source).get()
            pending[source] = asyncio.create_task(awaitable, name=f"scopewatch-listen-{source}")

        for source in _SOURCES:
            arm(source)
        start = 0
        try:
            while True:
                order = [
                    _SOURCES[(start + offset) % len(_SOURCES)] for offset in range(len(_SOURCES))
                ]
                source = next((name for name in order if pending[name].done()), None)
                if source is None:
                    await asyncio.wait(pending.values(), return_when=asyncio.FIRST_COMPLETED)
                    continue
                start = (_SOURCES.index(source) + 1) % len(_SOURCES)
                item = pending.pop(source).result()
                if source == "stop":
                    logger.info("Listener cancelled; shutting down subscription.")
                    return ListenerExit.CANCELLED
                arm(source)
                if source == "status":
                    if self._handle_status(item):
                        return ListenerExit.FINAL_DISCONNECTION
                elif source == "events":
                    await self._handle_event(item)
                else:
                    self._handle_error(item)
        finally:
            for task in pending.values():
                task.cancel()
            await asyncio.gather(*pending.values(), return_exceptions=True)
            await self._subscriber.stop()

    def _handle_status(self, status: SubscriberStatus) -> bool:
        self._statuses.append(status)
        if status is SubscriberStatus.INITIAL_CONNECTION:
            logger.info("Upstream event channel connected")
        elif status is SubscriberStatus.DISCONNECTION:
            logger.warning("Upstream event channel interrupted. Reconnecting...")
        elif status is SubscriberStatus.RECONNECTION:
            logger.info("Upstream event channel restored")
        elif status is SubscriberStatus.FINAL_DISCONNECTION:
            logger.info("Upstream event channel closed for good")
            return True
        return False

    async def _handle_event(self, event: PushEvent) -> None:
        self._event_count += 1
        await self._dispatcher.dispatch(event)

    def _handle_error(self, error: PushError) -> None:
        self._error_count += 1
        logger.error("Received error from the push channel: %s", error.message)


__all__ = ["EventListener", "ListenerExit"]
