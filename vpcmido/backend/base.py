# backend/base.py
"""
Boundary of the SDN backend.

The driver only sees backend objects through this interface. Any transport
(REST client, simulator) implements SdnClient and reports failures with the
backend errors below: BackendTransient is retried, BackendNotFound means the
object is already absent, BackendConflict means it is already present.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from vpcmido.errors import BackendConflict, BackendError, BackendNotFound, BackendTransient

__all__ = [
    "BackendConflict",
    "BackendError",
    "BackendNotFound",
    "BackendTransient",
    "BackendObject",
    "Kind",
    "SdnClient",
    "TOP_LEVEL_KINDS",
]


class Kind(Enum):
    ROUTER = "router"
    BRIDGE = "bridge"
    PORT = "port"
    CHAIN = "chain"
    RULE = "rule"
    IPADDRGROUP = "ipaddrgroup"
    IPADDRGROUP_IP = "ipaddrgroup_ip"
    PORTGROUP = "portgroup"
    PORTGROUP_PORT = "portgroup_port"
    HOST = "host"
    HOST_BINDING = "host_binding"
    ROUTE = "route"
    DHCP = "dhcp"
    DHCP_HOST = "dhcp_host"


# Parentless kinds the driver creates; hosts are registered by the agents
TOP_LEVEL_KINDS = (Kind.ROUTER, Kind.BRIDGE, Kind.CHAIN, Kind.IPADDRGROUP, Kind.PORTGROUP)


@dataclass
class BackendObject:
    """A backend object as seen by the driver."""

    id: str
    kind: Kind
    name: str
    parent: Optional[str] = None
    props: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "name": self.name,
            "parent": self.parent,
            "props": dict(self.props),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackendObject":
        return cls(
            id=data["id"],
            kind=Kind(data["kind"]),
            name=data["name"],
            parent=data.get("parent"),
            props=dict(data.get("props") or {}),
        )


class SdnClient(ABC):
    """Network-virtualization API client."""

    @abstractmethod
    def list(self, kind: Kind, parent: Optional[str] = None) -> List[BackendObject]:
        """List objects of a kind, optionally restricted to one parent."""
        raise NotImplementedError

    @abstractmethod
    def create(
        self,
        kind: Kind,
        name: str,
        parent: Optional[str] = None,
        props: Optional[Dict[str, Any]] = None,
        position: Optional[int] = None,
    ) -> BackendObject:
        """
        Create an object. Rules accept a 1-based position inside their chain.
        Raises BackendConflict when the backend refuses a duplicate.
        """
        raise NotImplementedError

    @abstractmethod
    def update(self, obj_id: str, props: Dict[str, Any]) -> BackendObject:
        """Merge props into an existing object."""
        raise NotImplementedError

    @abstractmethod
    def delete(self, obj_id: str) -> None:
        """Delete an object and everything it owns. Raises BackendNotFound."""
        raise NotImplementedError

    @abstractmethod
    def link(self, port_id: str, peer_id: str) -> None:
        """Connect two ports."""
        raise NotImplementedError
