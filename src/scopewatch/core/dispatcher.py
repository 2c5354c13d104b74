"""
Kind-tagged event dispatch.

Each event kind is registered with the model its payload decodes into and the
handler receiving the typed value. Events that cannot be decoded, events of
unregistered kinds, and failing handlers are reported through a
``DispatchReporter`` and never interrupt the caller's loop.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, Protocol

from .contracts import EventDecodeError, IdentifiableModel, ModelT, PushEvent

logger = logging.getLogger(__name__)


EventHandler = Callable[[PushEvent, Any], Awaitable[None] | None]


class DispatchOutcome(str, enum.Enum):
    HANDLED = "handled"
    DECODE_FAILED = "decode_failed"
    UNEXPECTED = "unexpected"
    HANDLER_FAILED = "handler_failed"


class DispatchReporter(Protocol):
    """Sink for conditions the dispatcher recovers from."""

    def decode_failed(self, event: PushEvent, error: EventDecodeError) -> None: ...

    def unexpected_event(self, event: PushEvent) -> None: ...

    def handler_failed(self, event: PushEvent, error: BaseException) -> None: ...


class LoggingReporter:
    """Report dispatch problems through a ``logging.Logger``."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def decode_failed(self, event: PushEvent, error: EventDecodeError) -> None:
        self._log.error(
            "Failed to decode event: %s (event=%s)", error, event.model_dump(mode="json")
        )

    def unexpected_event(self, event: PushEvent) -> None:
        self._log.warning(
            "Received event that was not subscribed: %s", event.model_dump(mode="json")
        )

    def handler_failed(self, event: PushEvent, error: BaseException) -> None:
        self._log.error(
            "Handler for %s %s event failed: %r", event.identity, event.type.value, error
        )


@dataclass(frozen=True)
class _Route(Generic[ModelT]):
    model: type[ModelT]
    handler: Callable[[PushEvent, ModelT], Awaitable[None] | None]


class EventDispatcher:
    """Explicit registry from event kind to decoder and handler."""

    def __init__(
        self,
        *,
        reporter: DispatchReporter | None = None,
        handler_timeout: float | None = 5.0,
    ) -> None:
        self._routes: dict[str, _Route[Any]] = {}
        self._reporter = reporter or LoggingReporter()
        self._handler_timeout = handler_timeout
        self._counts: dict[DispatchOutcome, int] = {outcome: 0 for outcome in DispatchOutcome}

    def register(
        self,
        model: type[ModelT],
        handler: Callable[[PushEvent, ModelT], Awaitable[None] | None],
    ) -> None:
        """Route events tagged with ``model.identity.name`` to ``handler``."""
        name = model.identity.name
        if name in self._routes:
            raise ValueError(f"A handler is already registered for {name}")
        self._routes[name] = _Route(model=model, handler=handler)
        logger.debug("Registered handler %s for %s", handler, name)

    @property
    def identities(self) -> frozenset[str]:
        return frozenset(self._routes)

    @property
    def counts(self) -> dict[DispatchOutcome, int]:
        return dict(self._counts)

    async def dispatch(self, event: PushEvent) -> DispatchOutcome:
        outcome = await self._dispatch(event)
        self._counts[outcome] += 1
        return outcome

    async def _dispatch(self, event: PushEvent) -> DispatchOutcome:
        route = self._routes.get(event.identity)
        if route is None:
            self._reporter.unexpected_event(event)
            return DispatchOutcome.UNEXPECTED
        try:
            value: IdentifiableModel = event.decode(route.model)
        except EventDecodeError as exc:
            self._reporter.decode_failed(event, exc)
            return DispatchOutcome.DECODE_FAILED
        try:
            await self._call_handler(route.handler, event, value)
        except Exception as exc:
            self._reporter.handler_failed(event, exc)
            return DispatchOutcome.HANDLER_FAILED
        return DispatchOutcome.HANDLED

    async def _call_handler(
        self,
        handler: Callable[[PushEvent, Any], Awaitable[None] | None],
        event: PushEvent,
        value: Any,
    ) -> None:
        """Invoke a sync or async handler, bounding async ones by the handler timeout."""
        result = handler(event, value)
        if inspect.isawaitable(result):
            if self._handler_timeout is None:
                await result
            else:
                await asyncio.wait_for(result, timeout=self._handler_timeout)


__all__ = [
    "DispatchOutcome",
    "DispatchReporter",
    "EventDispatcher",
    "EventHandler",
    "LoggingReporter",
]
