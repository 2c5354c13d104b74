"""
CLI entrypoint: provision a namespace and listen to its push events.

Startup reads the app credential, starts the token manager, creates the
configured namespace below the credential's namespace, then subscribes to
events in the newly created namespace (children included by default) and
prints the policy and external network events it receives until interrupted
or until the subscription is closed for good.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import logging.handlers
import signal
import ssl
from collections.abc import Callable, Sequence
from pathlib import Path

import httpx

from .core.client import ApiError, Manipulator, RequestContext
from .core.config import ConfigError, ConfigService, ConfigSnapshot, SubscriptionSettings
from .core.credentials import (
    AppCredential,
    CredentialError,
    build_ssl_context,
    load_credentials,
)
from .core.dispatcher import EventDispatcher
from .core.listener import EventListener, ListenerExit
from .core.models import Namespace
from .core.push_filter import PushFilter
from .core.subscriber import (
    PushTransport,
    Subscriber,
    SubscriptionFailedError,
    WebsocketTransport,
)
from .core.tokens import TokenIssueError, TokenUnavailableError, X509TokenManager
from .handlers import EventPrinter

LOGGER = logging.getLogger(__name__)
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _ensure_rotating_file_handler(
    log_file: Path,
    *,
    max_mb: int = 10,
    backup_count: int = 3,
) -> None:
    """Attach a rotating file handler pointed at ``log_file`` if missing."""

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create log directory %s: %s", log_file.parent, exc)
        return

    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            existing = getattr(handler, "baseFilename", None)
            if existing and Path(existing) == log_file.resolve():
                return

    handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=max_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(handler)


def configure_logging(level: str) -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format=LOG_FORMAT,
    )


def apply_logging_settings(snapshot: ConfigSnapshot) -> None:
    """Adjust the root level and attach the optional log file from config."""
    settings = snapshot.logging
    logging.getLogger().setLevel(getattr(logging, settings.level, logging.INFO))
    if settings.file is not None:
        _ensure_rotating_file_handler(
            settings.file, max_mb=settings.max_mb, backup_count=settings.backup_count
        )


def build_filter(settings: SubscriptionSettings) -> PushFilter:
    return PushFilter.for_identities(settings.identities)


def create_subscriber(
    client: Manipulator,
    namespace: str,
    settings: SubscriptionSettings,
    transport: PushTransport | None = None,
) -> Subscriber:
    """Create a subscriber listening on ``namespace`` of the client's API."""
    if transport is None:
        transport = WebsocketTransport(
            ssl_context=client.ssl_context,
            open_timeout=settings.open_timeout,
            ping_interval=settings.ping_interval,
        )
    return Subscriber(
        client,
        namespace=namespace,
        recursive=settings.recursive,
        transport=transport,
        backoff=settings.backoff.to_policy(),
        queue_size=settings.queue_size,
        terminal_close_codes=frozenset(settings.terminal_close_codes),
    )


def build_dispatcher(
    snapshot: ConfigSnapshot, printer: EventPrinter | None = None
) -> EventDispatcher:
    dispatcher = EventDispatcher(handler_timeout=snapshot.dispatch.handler_timeout)
    (printer or EventPrinter()).register(dispatcher)
    unhandled = set(snapshot.subscription.identities) - dispatcher.identities
    if unhandled:
        LOGGER.warning(
            "Subscribed kinds without a handler will be reported as unexpected: %s",
            sorted(unhandled),
        )
    return dispatcher


async def run_listener(
    config_service: ConfigService,
    *,
    stop_event: asyncio.Event | None = None,
    ssl_context_factory: Callable[[AppCredential], ssl.SSLContext] = build_ssl_context,
    http_transport: httpx.AsyncBaseTransport | None = None,
    push_transport: PushTransport | None = None,
) -> ListenerExit:
    """
    Bootstrap the API client, create the namespace, and listen until stopped.

    ``ssl_context_factory``, ``http_transport`` and ``push_transport`` replace
    the TLS, HTTP and websocket layers; the defaults talk to the real API.
    """

    snapshot = config_service.snapshot
    stop_event = stop_event or asyncio.Event()

    credential = load_credentials(snapshot.api.credentials_path)
    ssl_context = ssl_context_factory(credential)
    token_manager = X509TokenManager(
        credential.api_url,
        ssl_context,
        validity=snapshot.token.validity_seconds,
        refresh_ratio=snapshot.token.refresh_ratio,
        retry_interval=snapshot.token.retry_interval_seconds,
        request_timeout=snapshot.api.request_timeout,
        transport=http_transport,
    )
    await token_manager.start()
    try:
        async with Manipulator(
            credential.api_url,
            namespace=credential.namespace,
            token_provider=token_manager,
            ssl_context=ssl_context,
            request_timeout=snapshot.api.request_timeout,
            transport=http_transport,
        ) as client:
            ctx = RequestContext.with_timeout(
                snapshot.api.create_timeout, retry=snapshot.api.retry_policy()
            )
            namespace = await client.create(ctx, Namespace(name=snapshot.namespace.name))
            # The server answers with the fully qualified name.
            LOGGER.info("Successfully created namespace: %s", namespace.name)

            subscriber = create_subscriber(
                client, namespace.name, snapshot.subscription, transport=push_transport
            )
            dispatcher = build_dispatcher(snapshot)
            await subscriber.start(build_filter(snapshot.subscription), stop_event=stop_event)
            LOGGER.info("Listening for events in namespace: %s ...", namespace.name)
            listener = EventListener(subscriber, dispatcher)
            reason = await listener.run(stop_event)
            LOGGER.info(
                "Listener exited (%s) after %d events and %d errors.",
                reason.value,
                listener.event_count,
                listener.error_count,
            )
            if subscriber.failure is not None:
                raise SubscriptionFailedError(
                    f"subscription on {namespace.name} failed: {subscriber.failure!r}"
                ) from subscriber.failure
            return reason
    finally:
        await token_manager.stop()


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _request_shutdown(sig_name: str) -> None:
        if not stop_event.is_set():
            LOGGER.info("Received %s, beginning graceful shutdown.", sig_name)
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_shutdown, sig.name)
        except NotImplementedError:  # Windows Proactor loop
            signal.signal(  # type: ignore[arg-type]
                sig,
                lambda signum, _frame, sig_name=sig.name: loop.call_soon_threadsafe(
                    _request_shutdown, sig_name or str(signum)
                ),
            )


async def _serve(config_service: ConfigService) -> ListenerExit:
    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)
    return await run_listener(config_service, stop_event=stop_event)


def cli_overrides(args: argparse.Namespace) -> dict[str, dict[str, object]]:
    """Translate command line flags into configuration overrides."""
    overrides: dict[str, dict[str, object]] = {}
    if args.credentials is not None:
        overrides.setdefault("api", {})["credentials_path"] = str(args.credentials.resolve())
    if args.namespace is not None:
        overrides.setdefault("namespace", {})["name"] = args.namespace
    if args.log_level is not None:
        overrides.setdefault("logging", {})["level"] = args.log_level
    return overrides


def parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create a namespace and print the policy events pushed for it."
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Directory that contains config.yaml/secrets.yaml (default: repo config/).",
    )
    parser.add_argument(
        "--credentials",
        type=Path,
        default=None,
        help="App credential JSON file (overrides api.credentials_path).",
    )
    parser.add_argument(
        "--namespace",
        default=None,
        help="Name of the namespace to create (overrides namespace.name).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Python logging level (default: from config, INFO).",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level or "INFO")
    try:
        config_service = ConfigService(config_dir=args.config_dir)
        overrides = cli_overrides(args)
        if overrides:
            config_service.apply_changes(overrides)
        apply_logging_settings(config_service.snapshot)
        asyncio.run(_serve(config_service))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user.")
        return 0
    except ConfigError as exc:
        LOGGER.error("Configuration failed: %s", exc)
        return 2
    except CredentialError as exc:
        LOGGER.error("Credential bootstrap failed: %s", exc)
        return 2
    except (TokenIssueError, TokenUnavailableError) as exc:
        LOGGER.error("Unable to obtain a token: %s", exc)
        return 1
    except ApiError as exc:
        LOGGER.error("Unable to create namespace: %s", exc)
        return 1
    except SubscriptionFailedError as exc:
        LOGGER.error("Listener stopped after a failure: %s", exc)
        return 1
    except Exception:  # pragma: no cover - surfaced to operator
        LOGGER.exception("scopewatch crashed.")
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())


__all__ = [
    "build_dispatcher",
    "build_filter",
    "create_subscriber",
    "main",
    "run_listener",
]
