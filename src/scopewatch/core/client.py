"""
HTTP API client ("manipulator") with deadline-bounded retries.

Callers pass a ``RequestContext`` carrying an absolute deadline. Transient
failures (timeouts, connection problems, 429 and 5xx answers) are retried until
that deadline elapses; application failures (bad input, missing rights,
unknown objects) are raised immediately.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from .backoff import BackoffPolicy
from .contracts import IdentifiableModel, ModelT
from .tokens import TokenProvider

logger = logging.getLogger(__name__)

DEFAULT_RETRY = BackoffPolicy(initial_delay=0.2, max_delay=5.0)


class ApiError(RuntimeError):
    """Base class for failures reported by the API client."""

    retryable = False

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CommunicationError(ApiError):
    """The server could not be reached or answered with a transient failure."""

    retryable = True


class ManipulateTimeoutError(ApiError):
    """The request deadline elapsed before a successful answer."""


class ValidationError(ApiError):
    """The server rejected the entity as invalid."""


class UnauthorizedError(ApiError):
    """The token is missing, expired or lacks the required permissions."""


class NotFoundError(ApiError):
    """The requested object does not exist."""


@dataclass(frozen=True)
class RequestContext:
    """Per-call options: absolute deadline, namespace override, retry policy."""

    deadline: float
    namespace: str | None = None
    parameters: dict[str, str] = field(default_factory=dict)
    retry: BackoffPolicy = field(default_factory=lambda: DEFAULT_RETRY)

    @classmethod
    def with_timeout(cls, seconds: float, **kwargs: Any) -> RequestContext:
        return cls(deadline=time.monotonic() + seconds, **kwargs)

    def remaining(self) -> float:
        return self.deadline - time.monotonic()


def _error_message(response: httpx.Response) -> str:
    """Extract a readable message from an API error body."""
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return text[:500] if text else response.reason_phrase
    items = body if isinstance(body, list) else [body]
    parts: list[str] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        title = item.get("title")
        description = item.get("description")
        subject = item.get("subject")
        message = ": ".join(str(p) for p in (title, description) if p)
        if subject:
            message = f"{message} ({subject})"
        if message:
            parts.append(message)
    return "; ".join(parts) or response.reason_phrase


def classify_response(response: httpx.Response) -> ApiError:
    status = response.status_code
    message = f"{status}: {_error_message(response)}"
    if status in (401, 403):
        return UnauthorizedError(message, status_code=status)
    if status in (400, 409, 422):
        return ValidationError(message, status_code=status)
    if status == 404:
        return NotFoundError(message, status_code=status)
    if status == 429 or status >= 500:
        return CommunicationError(message, status_code=status)
    return ApiError(message, status_code=status)


class Manipulator:
    """CRUD facade over the JSON API bound to a namespace and a token provider."""

    def __init__(
        self,
        api_url: str,
        *,
        namespace: str,
        token_provider: TokenProvider | None = None,
        ssl_context: ssl.SSLContext | None = None,
        request_timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        if not self.api_url.startswith(("http://", "https://")):
            raise ValueError(f"api_url must start with http:// or https://, got {api_url!r}")
        self.namespace = namespace
        self.ssl_context = ssl_context
        self._token_provider = token_provider
        self._request_timeout = request_timeout
        self._client = httpx.AsyncClient(
            base_url=self.api_url,
            verify=ssl_context if ssl_context is not None else True,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> Manipulator:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    def current_token(self) -> str | None:
        if self._token_provider is None:
            return None
        return self._token_provider.get_token()

    async def create(self, ctx: RequestContext, entity: ModelT) -> ModelT:
        """Create ``entity`` and return the server's version of it."""
        category = entity.identity.category
        data = await self._send(ctx, "POST", f"/{category}", json=entity.to_wire())
        return type(entity).model_validate(data)

    async def retrieve(self, ctx: RequestContext, model: type[ModelT], object_id: str) -> ModelT:
        data = await self._send(ctx, "GET", f"/{model.identity.category}/{object_id}")
        return model.model_validate(data)

    async def retrieve_many(self, ctx: RequestContext, model: type[ModelT]) -> list[ModelT]:
        data = await self._send(ctx, "GET", f"/{model.identity.category}")
        if not data:
            return []
        return [model.model_validate(item) for item in data]

    async def update(self, ctx: RequestContext, entity: ModelT) -> ModelT:
        if not entity.id:
            raise ValidationError("cannot update an entity without ID")
        path = f"/{entity.identity.category}/{entity.id}"
        data = await self._send(ctx, "PUT", path, json=entity.to_wire())
        return type(entity).model_validate(data)

    async def delete(self, ctx: RequestContext, entity: IdentifiableModel) -> None:
        if not entity.id:
            raise ValidationError("cannot delete an entity without ID")
        await self._send(ctx, "DELETE", f"/{entity.identity.category}/{entity.id}")

    def _headers(self, ctx: RequestContext) -> dict[str, str]:
        headers = {"X-Namespace": ctx.namespace or self.namespace}
        token = self.current_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _send(
        self,
        ctx: RequestContext,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
    ) -> Any:
        attempt = 0
        last_error: ApiError | None = None
        while True:
            remaining = ctx.remaining()
            if remaining <= 0:
                raise ManipulateTimeoutError(
                    f"{method} {path} did not succeed before the deadline: {last_error}"
                ) from last_error
            attempt += 1
            try:
                response = await self._client.request(
                    method,
                    path,
                    json=json,
                    params=ctx.parameters or None,
                    headers=self._headers(ctx),
                    timeout=min(self._request_timeout, remaining),
                )
            except httpx.TimeoutException as exc:
                last_error = CommunicationError(f"request timed out: {exc}")
            except httpx.TransportError as exc:
                last_error = CommunicationError(f"communication error: {exc}")
            else:
                if response.status_code < 400:
                    if response.status_code == 204 or not response.content:
                        return None
                    return response.json()
                error = classify_response(response)
                if not error.retryable:
                    logger.warning("%s %s failed: %s", method, path, error)
                    raise error
                last_error = error

            delay = min(ctx.retry.delay(attempt), max(0.0, ctx.remaining()))
            logger.debug(
                "%s %s attempt %d failed (%s); retrying in %.2fs",
                method,
                path,
                attempt,
                last_error,
                delay,
            )
            await asyncio.sleep(delay)


__all__ = [
    "ApiError",
    "CommunicationError",
    "ManipulateTimeoutError",
    "Manipulator",
    "NotFoundError",
    "RequestContext",
    "UnauthorizedError",
    "ValidationError",
    "classify_response",
]
