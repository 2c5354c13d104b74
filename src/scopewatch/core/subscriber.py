"""
Resilient push-event subscriber.

The subscriber owns one streaming connection to the ``/events`` endpoint,
scoped to a namespace (optionally including its children). It exposes three
independent queues:

- ``events``: decoded ``PushEvent`` objects, in server order;
- ``errors``: ``PushError`` values for non-fatal transport problems;
- ``status``: ``SubscriberStatus`` transitions.

A lost connection is reopened with a backoff policy until it succeeds, the
subscriber is stopped, or the policy gives up. ``final-disconnection`` is
emitted exactly once and nothing is queued afterwards.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import json
import logging
from typing import TYPE_CHECKING, Protocol
from urllib.parse import urlencode

import websockets
from pydantic import ValidationError

from .backoff import BackoffPolicy
from .contracts import EventType, HealthStatus, PushError, PushEvent, SubscriberStatus
from .push_filter import PushFilter
from .tokens import TokenUnavailableError

if TYPE_CHECKING:
    import ssl

    from .client import Manipulator

logger = logging.getLogger(__name__)

# 1008 policy violation, 4401/4403 application-level unauthorized/forbidden.
DEFAULT_TERMINAL_CLOSE_CODES = frozenset({1008, 4401, 4403})


class TransportError(RuntimeError):
    """Raised by push transports when a connection cannot be opened or used."""


class SubscriptionFailedError(RuntimeError):
    """Raised by callers when the subscription ended because of an unexpected error."""


class ConnectionLost(TransportError):
    """The live stream was closed; ``code`` is the close code when one was received."""

    def __init__(self, message: str, *, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class PushConnection(Protocol):
    async def send(self, message: str) -> None: ...

    async def recv(self) -> str | bytes: ...

    async def close(self) -> None: ...


class PushTransport(Protocol):
    async def connect(self, url: str) -> PushConnection: ...


class WebsocketConnection:
    """Adapter translating websockets exceptions into transport errors."""

    def __init__(self, websocket) -> None:
        self._websocket = websocket

    async def send(self, message: str) -> None:
        try:
            await self._websocket.send(message)
        except websockets.exceptions.ConnectionClosed as exc:
            raise _connection_lost(exc) from exc

    async def recv(self) -> str | bytes:
        try:
            return await self._websocket.recv()
        except websockets.exceptions.ConnectionClosed as exc:
            raise _connection_lost(exc) from exc

    async def close(self) -> None:
        await self._websocket.close()


def _connection_lost(exc: websockets.exceptions.ConnectionClosed) -> ConnectionLost:
    code = exc.rcvd.code if exc.rcvd is not None else None
    return ConnectionLost(f"push channel closed: {exc}", code=code)


class WebsocketTransport:
    """Default transport opening websocket connections with the client TLS context."""

    def __init__(
        self,
        *,
        ssl_context: ssl.SSLContext | None = None,
        open_timeout: float = 10.0,
        ping_interval: float | None = 20.0,
        max_size: int = 4 * 1024 * 1024,
    ) -> None:
        self._ssl_context = ssl_context
        self._open_timeout = open_timeout
        self._ping_interval = ping_interval
        self._max_size = max_size

    async def connect(self, url: str) -> WebsocketConnection:
        kwargs = {}
        if url.startswith("wss://") and self._ssl_context is not None:
            kwargs["ssl"] = self._ssl_context
        try:
            websocket = await websockets.connect(
                url,
                open_timeout=self._open_timeout,
                ping_interval=self._ping_interval,
                max_size=self._max_size,
                **kwargs,
            )
        except (OSError, TimeoutError, websockets.exceptions.WebSocketException) as exc:
            raise TransportError(f"unable to open push channel: {exc}") from exc
        return WebsocketConnection(websocket)


class SubscriberState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class Subscriber:
    """Push subscription bound to a namespace of the given API client."""

    def __init__(
        self,
        client: Manipulator,
        *,
        namespace: str | None = None,
        recursive: bool = False,
        transport: PushTransport | None = None,
        backoff: BackoffPolicy | None = None,
        queue_size: int = 0,
        terminal_close_codes: frozenset[int] = DEFAULT_TERMINAL_CLOSE_CODES,
        endpoint: str = "/events",
    ) -> None:
        self._client = client
        self._namespace = namespace or client.namespace
        self._recursive = recursive
        self._transport = transport or WebsocketTransport(ssl_context=client.ssl_context)
        self._backoff = backoff or BackoffPolicy()
        self._terminal_close_codes = frozenset(terminal_close_codes)
        self._endpoint = endpoint
        self._events: asyncio.Queue[PushEvent] = asyncio.Queue(maxsize=queue_size)
        self._errors: asyncio.Queue[PushError] = asyncio.Queue(maxsize=queue_size)
        # Status is never bounded so transitions cannot back up behind events.
        self._status: asyncio.Queue[SubscriberStatus] = asyncio.Queue()
        self._filter: PushFilter | None = None
        self._state = SubscriberState.IDLE
        self._task: asyncio.Task[None] | None = None
        self._watcher: asyncio.Task[None] | None = None
        self._connection: PushConnection | None = None
        self._closed = False
        self._connections = 0
        self._disconnections = 0
        self._received = 0
        self._failure: Exception | None = None

    @property
    def events(self) -> asyncio.Queue[PushEvent]:
        return self._events

    @property
    def errors(self) -> asyncio.Queue[PushError]:
        return self._errors

    @property
    def status(self) -> asyncio.Queue[SubscriberStatus]:
        return self._status

    @property
    def state(self) -> SubscriberState:
        return self._state

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def recursive(self) -> bool:
        return self._recursive

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def failure(self) -> Exception | None:
        """Unexpected error that ended the subscription, if any."""
        return self._failure

    async def start(
        self, push_filter: PushFilter | None = None, *, stop_event: asyncio.Event | None = None
    ) -> None:
        """Open the stream in the background; ``stop_event`` acts as cancellation."""
        if self._task is not None or self._closed:
            raise RuntimeError("Subscriber can only be started once.")
        self._filter = push_filter or PushFilter()
        self._task = asyncio.create_task(self._run(), name="scopewatch-subscriber")
        if stop_event is not None:
            self._watcher = asyncio.create_task(
                self._watch(stop_event), name="scopewatch-subscriber-stop"
            )
        logger.info(
            "Subscriber started on %s (recursive=%s, identities=%s)",
            self._namespace,
            self._recursive,
            sorted(self._filter.identities),
        )

    async def stop(self) -> None:
        """Cancel the subscription and wait until its resources are released."""
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        elif task is None:
            self._closed = True
            self._state = SubscriberState.CLOSED
        elif not task.cancelled() and task.exception() is not None:
            logger.error("Subscriber task ended with an error: %r", task.exception())
        watcher = self._watcher
        self._watcher = None
        if watcher is not None and watcher is not asyncio.current_task():
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher

    def health(self) -> HealthStatus:
        if self._state is SubscriberState.CONNECTED:
            status = "healthy"
        elif self._state is SubscriberState.CLOSED:
            status = "stopped"
        else:
            status = "degraded"
        return HealthStatus(
            status=status,
            details={
                "state": self._state.value,
                "namespace": self._namespace,
                "recursive": self._recursive,
                "connections": self._connections,
                "disconnections": self._disconnections,
                "received": self._received,
                "events_pending": self._events.qsize(),
                "errors_pending": self._errors.qsize(),
                "status_pending": self._status.qsize(),
            },
        )

    def build_url(self, token: str | None) -> str:
        base = self._client.api_url
        if base.startswith("https://"):
            base = "wss://" + base[len("https://") :]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://") :]
        params = {"namespace": self._namespace}
        if self._recursive:
            params["mode"] = "all"
        if token:
            params["token"] = token
        return f"{base}{self._endpoint}?{urlencode(params)}"

    async def _watch(self, stop_event: asyncio.Event) -> None:
        await stop_event.wait()
        logger.info("Subscriber cancellation requested.")
        await self.stop()

    async def _run(self) -> None:
        has_connected = False
        failures = 0
        try:
            while True:
                self._state = (
                    SubscriberState.RECONNECTING if has_connected else SubscriberState.CONNECTING
                )
                try:
                    connection = await self._open()
                except (TransportError, TokenUnavailableError) as exc:
                    failures += 1
                    if self._backoff.exhausted(failures):
                        logger.error(
                            "Giving up on push channel after %d attempts: %s", failures, exc
                        )
                        await self._push_error(
                            PushError(
                                message=f"subscription abandoned after {failures} attempts: {exc}"
                            )
                        )
                        return
                    delay = self._backoff.delay(failures)
                    logger.warning(
                        "Push channel connection attempt %d failed (%s); retrying in %.1fs",
                        failures,
                        exc,
                        delay,
                    )
                    await asyncio.sleep(delay)
                    continue

                failures = 0
                self._connections += 1
                self._state = SubscriberState.CONNECTED
                self._emit_status(
                    SubscriberStatus.RECONNECTION
                    if has_connected
                    else SubscriberStatus.INITIAL_CONNECTION
                )
                has_connected = True
                try:
                    terminal = await self._consume(connection)
                finally:
                    self._connection = None
                    await self._close_quietly(connection)
                if terminal:
                    return
                self._disconnections += 1
                self._state = SubscriberState.DISCONNECTED
                self._emit_status(SubscriberStatus.DISCONNECTION)
        except Exception as exc:
            self._failure = exc
            logger.exception("Subscriber on %s crashed.", self._namespace)
            await self._push_error(PushError(message=f"subscription failed: {exc!r}"))
        finally:
            connection = self._connection
            self._connection = None
            if connection is not None:
                await self._close_quietly(connection)
            self._state = SubscriberState.CLOSED
            self._emit_status(SubscriberStatus.FINAL_DISCONNECTION)
            self._closed = True
            logger.info("Subscriber on %s closed.", self._namespace)

    async def _open(self) -> PushConnection:
        url = self.build_url(self._client.current_token())
        connection = await self._transport.connect(url)
        self._connection = connection
        assert self._filter is not None
        try:
            await connection.send(json.dumps(self._filter.to_wire()))
        except TransportError:
            self._connection = None
            await self._close_quietly(connection)
            raise
        return connection

    async def _consume(self, connection: PushConnection) -> bool:
        """Read frames until the stream drops; return True when the close is terminal."""
        while True:
            try:
                message = await connection.recv()
            except ConnectionLost as exc:
                if exc.code in self._terminal_close_codes:
                    logger.warning(
                        "Push channel terminated by server (code %s); not reconnecting.", exc.code
                    )
                    return True
                logger.warning("Push channel lost: %s", exc)
                return False
            except TransportError as exc:
                logger.warning("Push channel failed: %s", exc)
                return False
            await self._handle_message(message)

    async def _handle_message(self, message: str | bytes) -> None:
        self._received += 1
        raw = message.decode("utf-8", errors="replace") if isinstance(message, bytes) else message
        try:
            event = PushEvent.model_validate(json.loads(raw))
        except (ValueError, RecursionError, ValidationError) as exc:
            await self._push_error(PushError(message=f"undecodable push frame: {exc}", raw=raw))
            return
        if event.type is EventType.ERROR:
            await self._push_error(
                PushError(message=f"server reported error: {event.entity}", raw=raw)
            )
            return
        if not self._closed:
            await self._events.put(event)

    async def _push_error(self, error: PushError) -> None:
        if not self._closed:
            await self._errors.put(error)

    def _emit_status(self, status: SubscriberStatus) -> None:
        if self._closed:
            return
        logger.debug("Subscriber status -> %s", status.value)
        self._status.put_nowait(status)

    @staticmethod
    async def _close_quietly(connection: PushConnection) -> None:
        try:
            await connection.close()
        except (TransportError, OSError, websockets.exceptions.WebSocketException) as exc:
            logger.debug("Ignoring error while closing push channel: %s", exc)


__all__ = [
    "ConnectionLost",
    "DEFAULT_TERMINAL_CLOSE_CODES",
    "PushConnection",
    "PushTransport",
    "Subscriber",
    "SubscriberState",
    "SubscriptionFailedError",
    "TransportError",
    "WebsocketConnection",
    "WebsocketTransport",
]
