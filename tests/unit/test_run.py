import asyncio
import base64
import io
import json
import logging
import ssl
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from scopewatch.core.client import ValidationError
from scopewatch.core.config import ConfigService
from scopewatch.core.listener import ListenerExit
from scopewatch.core.subscriber import ConnectionLost, Subscriber, SubscriptionFailedError
from scopewatch.handlers import EventPrinter
from scopewatch.run import (
    build_dispatcher,
    build_filter,
    cli_overrides,
    create_subscriber,
    main,
    parse_args,
    run_listener,
)


def test_main_returns_2_without_config(tmp_path: Path) -> None:
    assert main(["--config-dir", str(tmp_path / "missing")]) == 2


def test_main_returns_2_when_credentials_are_missing(sample_config_dir: Path) -> None:
    assert main(["--config-dir", str(sample_config_dir)]) == 2


def test_main_returns_2_for_malformed_credentials(sample_config_dir: Path) -> None:
    (sample_config_dir / "appcred.json").write_text(json.dumps({"APIURL": 1}), encoding="utf-8")

    assert main(["--config-dir", str(sample_config_dir)]) == 2


def test_cli_overrides_map_flags_to_sections(tmp_path: Path) -> None:
    args = parse_args(
        [
            "--credentials",
            str(tmp_path / "cred.json"),
            "--namespace",
            "staging",
            "--log-level",
            "debug",
        ]
    )

    overrides = cli_overrides(args)

    assert overrides == {
        "api": {"credentials_path": str((tmp_path / "cred.json").resolve())},
        "namespace": {"name": "staging"},
        "logging": {"level": "debug"},
    }
    assert cli_overrides(parse_args([])) == {}


def test_build_filter_from_settings(sample_config_service: ConfigService) -> None:
    push_filter = build_filter(sample_config_service.snapshot.subscription)

    assert push_filter.to_wire() == {
        "identities": {"externalnetwork": [], "networkaccesspolicy": []}
    }


def test_build_dispatcher_warns_about_unhandled_kinds(
    sample_config_service: ConfigService, caplog: pytest.LogCaptureFixture
) -> None:
    snapshot = sample_config_service.apply_changes(
        {"subscription": {"identities": ["externalnetwork", "enforcer"]}}
    )

    with caplog.at_level(logging.WARNING, logger="scopewatch.run"):
        dispatcher = build_dispatcher(snapshot, EventPrinter(io.StringIO()))

    assert dispatcher.identities == {"externalnetwork", "networkaccesspolicy"}
    assert "enforcer" in caplog.text


def test_create_subscriber_uses_subscription_settings(
    sample_config_service: ConfigService, stub_client
) -> None:
    subscriber = create_subscriber(
        stub_client, "/acme/lab", sample_config_service.snapshot.subscription
    )

    assert isinstance(subscriber, Subscriber)
    assert subscriber.namespace == "/acme/lab"
    assert subscriber.recursive is False
    assert subscriber.events.maxsize == 64


PEM = b"-----BEGIN CERTIFICATE-----\nMIIB\n-----END CERTIFICATE-----\n"


def _write_credential(config_dir: Path) -> None:
    encoded = base64.b64encode(PEM).decode("ascii")
    credential = {
        "APIURL": "https://api.example.test",
        "namespace": "/acme",
        "name": "lab-app",
        "certificate": encoded,
        "certificateKey": encoded,
        "certificateAuthority": encoded,
    }
    (config_dir / "appcred.json").write_text(json.dumps(credential), encoding="utf-8")


def _api(requests: list[httpx.Request], *, create_status: int = 200) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path == "/issue":
            return httpx.Response(200, json={"token": "jwt-1"})
        if request.url.path == "/namespaces":
            if create_status >= 400:
                return httpx.Response(
                    create_status, json=[{"title": "Validation Error", "description": "bad name"}]
                )
            name = json.loads(request.content)["name"]
            return httpx.Response(200, json={"ID": "ns-1", "name": f"/acme/{name}"})
        return httpx.Response(404)

    return httpx.MockTransport(handler)


def _default_tls(credential) -> ssl.SSLContext:
    return ssl.create_default_context()


def _renewal_tasks() -> list[asyncio.Task]:
    return [task for task in asyncio.all_tasks() if task.get_name() == "scopewatch-token-renewal"]


@pytest.mark.asyncio
async def test_run_listener_subscribes_to_the_created_namespace(
    sample_config_service: ConfigService, make_connection, make_transport
) -> None:
    _write_credential(sample_config_service.config_dir)
    requests: list[httpx.Request] = []
    push = make_transport([make_connection([ConnectionLost("forbidden", code=4403)])])

    reason = await asyncio.wait_for(
        run_listener(
            sample_config_service,
            ssl_context_factory=_default_tls,
            http_transport=_api(requests),
            push_transport=push,
        ),
        timeout=5.0,
    )

    assert reason is ListenerExit.FINAL_DISCONNECTION
    query = parse_qs(urlsplit(push.urls[0]).query)
    assert query["namespace"] == ["/acme/lab"]
    assert query["token"] == ["jwt-1"]
    assert "mode" not in query
    create = next(request for request in requests if request.url.path == "/namespaces")
    assert json.loads(create.content) == {"name": "lab"}
    assert create.headers["X-Namespace"] == "/acme"
    assert create.headers["Authorization"] == "Bearer jwt-1"
    assert _renewal_tasks() == []


@pytest.mark.asyncio
async def test_run_listener_stops_on_stop_event(
    sample_config_service: ConfigService, make_connection, make_transport
) -> None:
    _write_credential(sample_config_service.config_dir)
    push = make_transport([make_connection()])
    stop_event = asyncio.Event()

    run = asyncio.create_task(
        run_listener(
            sample_config_service,
            stop_event=stop_event,
            ssl_context_factory=_default_tls,
            http_transport=_api([]),
            push_transport=push,
        )
    )
    while not push.urls:
        await asyncio.sleep(0.01)
    stop_event.set()

    assert await asyncio.wait_for(run, timeout=5.0) is ListenerExit.CANCELLED
    assert _renewal_tasks() == []


@pytest.mark.asyncio
async def test_run_listener_propagates_namespace_creation_errors(
    sample_config_service: ConfigService, make_transport
) -> None:
    _write_credential(sample_config_service.config_dir)
    push = make_transport([])

    with pytest.raises(ValidationError, match="bad name"):
        await run_listener(
            sample_config_service,
            ssl_context_factory=_default_tls,
            http_transport=_api([], create_status=422),
            push_transport=push,
        )

    assert push.attempts == 0
    assert _renewal_tasks() == []


@pytest.mark.asyncio
async def test_run_listener_raises_when_subscription_crashes(
    sample_config_service: ConfigService, make_connection, make_transport
) -> None:
    _write_credential(sample_config_service.config_dir)
    push = make_transport([make_connection([RuntimeError("decoder exploded")])])

    with pytest.raises(SubscriptionFailedError, match="decoder exploded"):
        await asyncio.wait_for(
            run_listener(
                sample_config_service,
                ssl_context_factory=_default_tls,
                http_transport=_api([]),
                push_transport=push,
            ),
            timeout=5.0,
        )
    assert _renewal_tasks() == []


@pytest.mark.parametrize(
    "error",
    [
        ValidationError("422: bad name", status_code=422),
        SubscriptionFailedError("subscription failed"),
    ],
)
def test_main_returns_1_for_runtime_failures(
    sample_config_dir: Path, monkeypatch: pytest.MonkeyPatch, error: Exception
) -> None:
    async def failing_listener(config_service, **kwargs):
        raise error

    monkeypatch.setattr("scopewatch.run.run_listener", failing_listener)

    assert main(["--config-dir", str(sample_config_dir)]) == 1


def test_main_returns_0_after_final_disconnection(
    sample_config_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def finished_listener(config_service, **kwargs):
        return ListenerExit.FINAL_DISCONNECTION

    monkeypatch.setattr("scopewatch.run.run_listener", finished_listener)

    assert main(["--config-dir", str(sample_config_dir)]) == 0
