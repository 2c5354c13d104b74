"""
Bearer token lifecycle.

The token manager issues a token at startup and renews it in the background
well before it expires. Readers always get the most recent valid token
without waiting on a renewal in progress.
"""

from __future__ import annotations

import abc
import asyncio
import contextlib
import logging
import ssl
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import httpx

from .contracts import HealthStatus

logger = logging.getLogger(__name__)


class TokenUnavailableError(RuntimeError):
    """Raised when no valid token has been obtained yet or the last one expired."""


class TokenIssueError(RuntimeError):
    """Raised when the identity provider refuses or fails to issue a token."""


class TokenProvider(Protocol):
    """Anything able to hand out the current bearer token."""

    def get_token(self) -> str: ...


@dataclass(frozen=True, slots=True)
class IssuedToken:
    value: str
    issued_at: float
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


class TokenManager(abc.ABC):
    """
    Base renewal loop around an ``_issue`` coroutine implemented by subclasses.

    The current token is an immutable ``IssuedToken`` replaced by a single
    reference assignment, so ``get_token`` never blocks on renewal.
    """

    def __init__(
        self,
        *,
        validity: float = 24 * 3600.0,
        refresh_ratio: float = 0.5,
        retry_interval: float = 30.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if validity <= 0:
            raise ValueError("validity must be positive")
        if not 0.0 < refresh_ratio < 1.0:
            raise ValueError("refresh_ratio must be between 0 and 1")
        self._validity = validity
        self._refresh_ratio = refresh_ratio
        self._retry_interval = retry_interval
        self._clock = clock or time.monotonic
        self._current: IssuedToken | None = None
        self._task: asyncio.Task[None] | None = None
        self._renewals = 0
        self._failures = 0

    @abc.abstractmethod
    async def _issue(self) -> str:
        """Obtain a fresh token value from the identity provider."""

    def get_token(self) -> str:
        current = self._current
        if current is None:
            raise TokenUnavailableError("No token has been issued yet.")
        if not current.is_valid(self._clock()):
            raise TokenUnavailableError("The last issued token has expired.")
        return current.value

    async def refresh(self) -> IssuedToken:
        """Issue a new token and swap it in."""
        value = await self._issue()
        now = self._clock()
        issued = IssuedToken(value=value, issued_at=now, expires_at=now + self._validity)
        self._current = issued
        self._renewals += 1
        return issued

    async def start(self) -> None:
        """Issue the first token, then keep renewing in the background."""
        if self._task is not None:
            return
        await self.refresh()
        logger.info("Initial token issued; valid for %.0f seconds.", self._validity)
        self._task = asyncio.create_task(self._renewal_loop(), name="scopewatch-token-renewal")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    def health(self) -> HealthStatus:
        current = self._current
        now = self._clock()
        valid = current is not None and current.is_valid(now)
        return HealthStatus(
            status="healthy" if valid else "error",
            details={
                "renewals": self._renewals,
                "failures": self._failures,
                "expires_in": max(0.0, current.expires_at - now) if current else None,
            },
        )

    def _next_delay(self) -> float:
        current = self._current
        if current is None:
            return self._retry_interval
        refresh_at = current.issued_at + self._validity * self._refresh_ratio
        return max(0.0, refresh_at - self._clock())

    async def _renewal_loop(self) -> None:
        delay = self._next_delay()
        while True:
            await asyncio.sleep(delay)
            try:
                await self.refresh()
            except TokenIssueError as exc:
                self._failures += 1
                logger.error(
                    "Token renewal failed (%s); keeping the previous token and retrying in %.0fs.",
                    exc,
                    self._retry_interval,
                )
                delay = self._retry_interval
                continue
            logger.info("Token renewed.")
            delay = self._next_delay()


class X509TokenManager(TokenManager):
    """Issues tokens from the identity endpoint using the client certificate."""

    def __init__(
        self,
        api_url: str,
        ssl_context: ssl.SSLContext,
        *,
        validity: float = 24 * 3600.0,
        refresh_ratio: float = 0.5,
        retry_interval: float = 30.0,
        request_timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            validity=validity, refresh_ratio=refresh_ratio, retry_interval=retry_interval
        )
        self._issue_url = f"{api_url.rstrip('/')}/issue"
        self._ssl_context = ssl_context
        self._request_timeout = request_timeout
        self._transport = transport

    async def _issue(self) -> str:
        hours = max(1, int(round(self._validity / 3600.0)))
        body = {"realm": "certificate", "validity": f"{hours}h"}
        async with httpx.AsyncClient(
            timeout=self._request_timeout,
            verify=self._ssl_context,
            transport=self._transport,
        ) as client:
            try:
                response = await client.post(self._issue_url, json=body)
            except httpx.HTTPError as exc:
                raise TokenIssueError(f"unable to reach identity provider: {exc}") from exc
        if response.status_code >= 400:
            raise TokenIssueError(
                f"identity provider returned {response.status_code}: {response.text[:200]}"
            )
        try:
            token = response.json()["token"]
        except (ValueError, KeyError, TypeError) as exc:
            raise TokenIssueError("identity provider response has no token") from exc
        if not token:
            raise TokenIssueError("identity provider returned an empty token")
        return str(token)


__all__ = [
    "IssuedToken",
    "TokenIssueError",
    "TokenManager",
    "TokenProvider",
    "TokenUnavailableError",
    "X509TokenManager",
]
