"""
Contracts and payload schemas shared by the scopewatch components.

Every shape that crosses a component boundary lives here: entity identities,
the push event envelope received from the server, subscriber status values,
and the health report structure used for diagnostics.
"""

from __future__ import annotations

import datetime as dt
import enum
from dataclasses import dataclass
from typing import Any, ClassVar, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError


@dataclass(frozen=True, slots=True)
class Identity:
    """Kind tag of an entity: singular name used in events, plural REST collection."""

    name: str
    category: str


class IdentifiableModel(BaseModel):
    """Base class for entities managed through the API."""

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    identity: ClassVar[Identity]

    id: str | None = Field(default=None, alias="ID")
    name: str = Field(default="")
    namespace: str | None = Field(default=None)
    description: str | None = Field(default=None)

    def to_wire(self) -> dict[str, Any]:
        """Serialise to the camelCase JSON document expected by the API."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


ModelT = TypeVar("ModelT", bound=IdentifiableModel)


class EventType(str, enum.Enum):
    """Operation carried by a push event."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    ERROR = "error"


class SubscriberStatus(str, enum.Enum):
    """Connectivity transitions emitted by the subscriber."""

    INITIAL_CONNECTION = "initial-connection"
    DISCONNECTION = "disconnection"
    RECONNECTION = "reconnection"
    FINAL_DISCONNECTION = "final-disconnection"


class EventDecodeError(ValueError):
    """Raised when a push event payload does not match the requested model."""

    def __init__(self, event: PushEvent, model: type[BaseModel], cause: Exception) -> None:
        super().__init__(
            f"unable to decode {event.identity} event into {model.__name__}: {cause}"
        )
        self.event = event
        self.model = model
        self.cause = cause


class PushEvent(BaseModel):
    """Server-originated notification about an entity."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    identity: str = Field(description="Kind tag of the entity carried by the event.")
    type: EventType = Field(description="Operation that triggered the event.")
    entity: Any = Field(default=None, description="Opaque encoded entity payload.")
    encoding: str = Field(default="application/json")
    timestamp: dt.datetime | None = Field(default=None)

    def decode(self, model: type[ModelT]) -> ModelT:
        """Validate the opaque payload into ``model``."""
        try:
            return model.model_validate(self.entity)
        except ValidationError as exc:
            raise EventDecodeError(self, model, exc) from exc


class PushError(BaseModel):
    """Transport level problem observed while the stream is live."""

    model_config = ConfigDict(frozen=True)

    message: str
    raw: str | None = Field(default=None, description="Offending frame, when available.")
    timestamp_utc: dt.datetime = Field(default_factory=lambda: dt.datetime.now(tz=dt.UTC))


class HealthStatus(BaseModel):
    """Structured health report for long-running components."""

    model_config = ConfigDict(extra="allow", frozen=True)

    status: str = Field(description="Health classification such as healthy/degraded/error.")
    details: dict[str, Any] = Field(default_factory=dict)


__all__ = [
    "EventDecodeError",
    "EventType",
    "HealthStatus",
    "IdentifiableModel",
    "Identity",
    "ModelT",
    "PushError",
    "PushEvent",
    "SubscriberStatus",
]
