import asyncio
import json
import ssl

import httpx
import pytest

from scopewatch.core.tokens import (
    TokenIssueError,
    TokenManager,
    TokenUnavailableError,
    X509TokenManager,
)


class ScriptedTokenManager(TokenManager):
    def __init__(self, script, **kwargs) -> None:
        super().__init__(**kwargs)
        self._script = list(script)
        self.issued = 0

    async def _issue(self) -> str:
        self.issued += 1
        item = self._script.pop(0) if self._script else "tok-last"
        if isinstance(item, Exception):
            raise item
        return item


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_get_token_before_issue_raises() -> None:
    manager = ScriptedTokenManager(["tok-1"])

    with pytest.raises(TokenUnavailableError):
        manager.get_token()


@pytest.mark.asyncio
async def test_expired_token_is_not_returned() -> None:
    clock = FakeClock()
    manager = ScriptedTokenManager(["tok-1"], validity=60.0, clock=clock)

    await manager.refresh()
    assert manager.get_token() == "tok-1"
    assert manager.health().status == "healthy"

    clock.now += 61.0
    with pytest.raises(TokenUnavailableError, match="expired"):
        manager.get_token()
    assert manager.health().status == "error"


@pytest.mark.asyncio
async def test_failed_renewal_keeps_previous_token() -> None:
    manager = ScriptedTokenManager(
        ["tok-1", TokenIssueError("provider down"), "tok-2"],
        validity=0.4,
        refresh_ratio=0.25,
        retry_interval=0.02,
    )
    await manager.start()
    try:
        assert manager.get_token() == "tok-1"

        async def wait_for_second_token() -> None:
            while manager.get_token() != "tok-2":
                await asyncio.sleep(0.005)

        await asyncio.wait_for(wait_for_second_token(), timeout=1.0)
    finally:
        await manager.stop()

    health = manager.health()
    assert health.details["failures"] == 1
    assert health.details["renewals"] == 2


@pytest.mark.asyncio
async def test_start_fails_when_first_issue_fails() -> None:
    manager = ScriptedTokenManager([TokenIssueError("nope")])

    with pytest.raises(TokenIssueError):
        await manager.start()
    await manager.stop()


def test_token_manager_requires_an_issuer() -> None:
    with pytest.raises(TypeError):
        TokenManager()


def test_invalid_renewal_settings() -> None:
    with pytest.raises(ValueError):
        ScriptedTokenManager([], validity=0)
    with pytest.raises(ValueError):
        ScriptedTokenManager([], refresh_ratio=1.0)


@pytest.mark.asyncio
async def test_x509_manager_posts_issue_request() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"token": "jwt-123", "realm": "certificate"})

    manager = X509TokenManager(
        "https://api.example.test/",
        ssl.create_default_context(),
        validity=12 * 3600.0,
        transport=httpx.MockTransport(handler),
    )

    await manager.refresh()

    assert manager.get_token() == "jwt-123"
    assert str(requests[0].url) == "https://api.example.test/issue"
    assert requests[0].method == "POST"
    assert json.loads(requests[0].content) == {"realm": "certificate", "validity": "12h"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(403, text="forbidden"),
        httpx.Response(200, json={"realm": "certificate"}),
        httpx.Response(200, json={"token": ""}),
        httpx.Response(200, text="not json"),
    ],
)
async def test_x509_manager_reports_issue_failures(response: httpx.Response) -> None:
    manager = X509TokenManager(
        "https://api.example.test",
        ssl.create_default_context(),
        transport=httpx.MockTransport(lambda request: response),
    )

    with pytest.raises(TokenIssueError):
        await manager.refresh()


@pytest.mark.asyncio
async def test_x509_manager_wraps_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    manager = X509TokenManager(
        "https://api.example.test",
        ssl.create_default_context(),
        transport=httpx.MockTransport(handler),
    )

    with pytest.raises(TokenIssueError, match="unable to reach"):
        await manager.refresh()
