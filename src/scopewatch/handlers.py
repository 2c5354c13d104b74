"""
Observational handlers for the event kinds the listener subscribes to.

They only write one line per event to a text sink (stdout by default).
"""

from __future__ import annotations

import sys
from typing import TextIO

from .core.contracts import PushEvent
from .core.dispatcher import EventDispatcher
from .core.models import ExternalNetwork, NetworkAccessPolicy


class EventPrinter:
    """Print a one-line summary for each decoded event."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream or sys.stdout

    def external_network(self, event: PushEvent, network: ExternalNetwork) -> None:
        self._write(f"External network name: {network.name} type {event.type.value}")

    def network_access_policy(self, event: PushEvent, policy: NetworkAccessPolicy) -> None:
        self._write(f"Policy name: {policy.name} type {event.type.value}")

    def register(self, dispatcher: EventDispatcher) -> EventDispatcher:
        dispatcher.register(ExternalNetwork, self.external_network)
        dispatcher.register(NetworkAccessPolicy, self.network_access_policy)
        return dispatcher

    def _write(self, line: str) -> None:
        self._stream.write(line + "\n")
        self._stream.flush()


__all__ = ["EventPrinter"]
