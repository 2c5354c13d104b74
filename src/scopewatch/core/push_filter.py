"""
Declared interest for a push subscription.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from .contracts import EventType, Identity


class PushFilter:
    """
    Set of entity kinds a subscriber wants to receive.

    Each kind may be narrowed to specific event types; an empty type set means
    every type. Adding the same kind twice merges the type restrictions.
    """

    def __init__(self) -> None:
        self._identities: dict[str, set[EventType]] = {}

    def filter_identity(self, identity: str | Identity, *types: EventType | str) -> PushFilter:
        """Declare interest in ``identity``, optionally only for ``types``."""
        name = identity.name if isinstance(identity, Identity) else str(identity)
        if not name:
            raise ValueError("Filter identity must not be empty.")
        requested = {EventType(value) for value in types}
        existing = self._identities.get(name)
        if existing is None:
            self._identities[name] = requested
        elif not existing or not requested:
            # Either declaration asked for every type.
            self._identities[name] = set()
        else:
            existing.update(requested)
        return self

    @classmethod
    def for_identities(cls, identities: Iterable[str | Identity]) -> PushFilter:
        push_filter = cls()
        for identity in identities:
            push_filter.filter_identity(identity)
        return push_filter

    @property
    def identities(self) -> frozenset[str]:
        return frozenset(self._identities)

    def to_wire(self) -> dict[str, Any]:
        return {
            "identities": {
                name: sorted(event_type.value for event_type in types)
                for name, types in sorted(self._identities.items())
            }
        }

    def __len__(self) -> int:
        return len(self._identities)

    def __contains__(self, identity: object) -> bool:
        if isinstance(identity, Identity):
            identity = identity.name
        return identity in self._identities

    def __repr__(self) -> str:
        return f"PushFilter({sorted(self._identities)})"


__all__ = ["PushFilter"]
