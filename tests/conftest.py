from __future__ import annotations

import asyncio
import json
import textwrap
from pathlib import Path
from typing import Any

import pytest

from scopewatch.core.backoff import BackoffPolicy
from scopewatch.core.config import ConfigService
from scopewatch.core.subscriber import ConnectionLost, TransportError


def _write_yaml(path: Path, content: str) -> None:
    path.write_text(textwrap.dedent(content).strip() + "\n", encoding="utf-8")


@pytest.fixture
def sample_config_dir(tmp_path: Path) -> Path:
    """
    Provide a temporary configuration directory for tests.
    """

    config_dir = tmp_path / "config"
    config_dir.mkdir()
    config_yaml = """
    api:
      credentials_path: "appcred.json"
      request_timeout: 2
      create_timeout: 5

    token:
      validity_hours: 12
      refresh_ratio: 0.75

    namespace:
      name: "lab"

    subscription:
      recursive: false
      identities:
        - "networkaccesspolicy"
        - "externalnetwork"
        - "networkaccesspolicy"
      queue_size: 64
      backoff:
        initial_delay: 0.5
        max_delay: 4
        max_attempts: 10

    dispatch:
      handler_timeout: 1.5

    logging:
      level: "debug"
    """
    secrets_yaml = """
    token:
      retry_interval_seconds: 12
    """
    _write_yaml(config_dir / "config.yaml", config_yaml)
    _write_yaml(config_dir / "secrets.yaml", secrets_yaml)
    return config_dir


@pytest.fixture
def sample_config_service(sample_config_dir: Path) -> ConfigService:
    """Return a ConfigService wired to the temporary configuration."""

    return ConfigService(config_dir=sample_config_dir)


class StubClient:
    """Stands in for the API client when only URL, namespace and token are needed."""

    api_url = "https://api.example.test"
    namespace = "/acme"
    ssl_context = None

    def __init__(self, token: str | None = "tok-1") -> None:
        self.token = token

    def current_token(self) -> str | None:
        return self.token


class FakeConnection:
    """Scripted push connection: frames and exceptions are returned in order by recv()."""

    def __init__(self, frames: list[Any] | None = None) -> None:
        self._incoming: asyncio.Queue[Any] = asyncio.Queue()
        for frame in frames or []:
            self._incoming.put_nowait(frame)
        self.sent: list[str] = []
        self.closed = False

    def feed(self, frame: Any) -> None:
        self._incoming.put_nowait(frame)

    def drop(self, code: int | None = 1006) -> None:
        self._incoming.put_nowait(ConnectionLost("connection reset", code=code))

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionLost("send on closed connection")
        self.sent.append(message)

    async def recv(self) -> str:
        item = await self._incoming.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


class FakeTransport:
    """Hands out scripted connections; once the script is exhausted every attempt fails."""

    def __init__(self, script: list[FakeConnection | Exception]) -> None:
        self._script = list(script)
        self.urls: list[str] = []

    @property
    def attempts(self) -> int:
        return len(self.urls)

    async def connect(self, url: str) -> FakeConnection:
        self.urls.append(url)
        if not self._script:
            raise TransportError("connection refused")
        item = self._script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def event_frame(identity: str, event_type: str, entity: Any) -> str:
    return json.dumps({"identity": identity, "type": event_type, "entity": entity})


@pytest.fixture
def stub_client() -> StubClient:
    return StubClient()


@pytest.fixture
def fast_backoff() -> BackoffPolicy:
    return BackoffPolicy(initial_delay=0.01, max_delay=0.02, jitter=0.0)


@pytest.fixture
def make_connection():
    return FakeConnection


@pytest.fixture
def make_transport():
    return FakeTransport


@pytest.fixture
def frame():
    return event_frame


def drain(queue: asyncio.Queue[Any]) -> list[Any]:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


@pytest.fixture
def drain_queue():
    return drain
