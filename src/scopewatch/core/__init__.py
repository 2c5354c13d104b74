"""
Core infrastructure for scopewatch.

Exposes the API client, token manager, push filter, subscriber, dispatcher
and listener loop, plus the shared contracts and configuration service.
"""

from .backoff import BackoffPolicy
from .client import (
    ApiError,
    CommunicationError,
    ManipulateTimeoutError,
    Manipulator,
    NotFoundError,
    RequestContext,
    UnauthorizedError,
    ValidationError,
)
from .config import ConfigError, ConfigService, ConfigSnapshot
from .contracts import (
    EventDecodeError,
    EventType,
    HealthStatus,
    IdentifiableModel,
    Identity,
    PushError,
    PushEvent,
    SubscriberStatus,
)
from .credentials import AppCredential, CredentialError, load_credentials, parse_credentials
from .dispatcher import DispatchOutcome, DispatchReporter, EventDispatcher, LoggingReporter
from .listener import EventListener, ListenerExit
from .models import ExternalNetwork, Namespace, NetworkAccessPolicy
from .push_filter import PushFilter
from .subscriber import Subscriber, SubscriberState, WebsocketTransport
from .tokens import TokenManager, TokenUnavailableError, X509TokenManager

__all__ = [
    "ApiError",
    "AppCredential",
    "BackoffPolicy",
    "CommunicationError",
    "ConfigError",
    "ConfigService",
    "ConfigSnapshot",
    "CredentialError",
    "DispatchOutcome",
    "DispatchReporter",
    "EventDecodeError",
    "EventDispatcher",
    "EventListener",
    "EventType",
    "ExternalNetwork",
    "HealthStatus",
    "IdentifiableModel",
    "Identity",
    "ListenerExit",
    "LoggingReporter",
    "ManipulateTimeoutError",
    "Manipulator",
    "Namespace",
    "NetworkAccessPolicy",
    "NotFoundError",
    "PushError",
    "PushEvent",
    "PushFilter",
    "RequestContext",
    "Subscriber",
    "SubscriberState",
    "SubscriberStatus",
    "TokenManager",
    "TokenUnavailableError",
    "UnauthorizedError",
    "ValidationError",
    "WebsocketTransport",
    "X509TokenManager",
    "load_credentials",
    "parse_credentials",
]
