"""
Typed entity shapes for the kinds this client creates or listens to.

Only the fields the client reads are declared; anything else the server sends
is ignored during validation.
"""

from __future__ import annotations

from typing import Any, ClassVar, Literal

from pydantic import Field

from .contracts import IdentifiableModel, Identity

NAMESPACE_IDENTITY = Identity(name="namespace", category="namespaces")
NETWORK_ACCESS_POLICY_IDENTITY = Identity(
    name="networkaccesspolicy", category="networkaccesspolicies"
)
EXTERNAL_NETWORK_IDENTITY = Identity(name="externalnetwork", category="externalnetworks")


class Namespace(IdentifiableModel):
    """Hierarchical scope; the server rewrites ``name`` to its fully-qualified path."""

    identity: ClassVar[Identity] = NAMESPACE_IDENTITY


class NetworkAccessPolicy(IdentifiableModel):
    """Policy allowing or rejecting traffic between subject and object tags."""

    identity: ClassVar[Identity] = NETWORK_ACCESS_POLICY_IDENTITY

    action: Literal["Allow", "Reject", "Continue"] = Field(default="Allow")
    disabled: bool = Field(default=False)
    propagate: bool = Field(default=False)
    subject: list[list[str]] = Field(default_factory=list)
    object: list[list[str]] = Field(default_factory=list)
    ports: list[str] = Field(default_factory=list)
    protocols: list[str] = Field(default_factory=list)


class ExternalNetwork(IdentifiableModel):
    """Set of addresses living outside the managed workloads."""

    identity: ClassVar[Identity] = EXTERNAL_NETWORK_IDENTITY

    entries: list[str] = Field(default_factory=list)
    service_ports: list[str] = Field(default_factory=list, alias="servicePorts")
    protocols: list[str] = Field(default_factory=list)
    propagate: bool = Field(default=False)
    associated_tags: list[str] = Field(default_factory=list, alias="associatedTags")
    metadata: list[str] | dict[str, Any] = Field(default_factory=list)


__all__ = [
    "EXTERNAL_NETWORK_IDENTITY",
    "ExternalNetwork",
    "NAMESPACE_IDENTITY",
    "NETWORK_ACCESS_POLICY_IDENTITY",
    "Namespace",
    "NetworkAccessPolicy",
]
