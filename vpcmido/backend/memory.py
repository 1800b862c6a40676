# backend/memory.py
"""
In-memory SDN backend.

Simulates the subset of a MidoNet-style API the driver uses:
- devices (routers, bridges), ports with peer links, routes
- filter chains with positioned rules, IP address groups, port groups
- DHCP subnets/hosts, registered hosts and port-to-host bindings

Deletes cascade to owned objects the way the real backend does. Names are not
unique, so duplicate devices can exist exactly as they can in production.
The simulator also supports fault injection and JSON snapshots.
"""

import json
import threading
import uuid
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Optional

from vpcmido.backend.base import (
    BackendConflict,
    BackendNotFound,
    BackendObject,
    BackendTransient,
    Kind,
    SdnClient,
)

# (kind) -> parent must exist and names are unique under the parent
_UNIQUE_CHILD_KINDS = {Kind.IPADDRGROUP_IP, Kind.DHCP_HOST, Kind.PORTGROUP_PORT, Kind.HOST_BINDING}
_MUTATING_OPS = ("create", "update", "delete", "link")


class InMemorySdnClient(SdnClient):
    def __init__(self):
        self._objects: Dict[str, BackendObject] = {}
        self._rule_order: Dict[str, List[str]] = {}
        self._faults: Dict[str, List[Exception]] = {}
        self._lock = threading.RLock()
        self.calls: Counter = Counter()

    # ------------------------------------------------------------------
    # Simulator controls
    # ------------------------------------------------------------------
    def register_host(self, name: str, **props) -> BackendObject:
        """Hosts are registered by their agents, never created by the driver."""
        with self._lock:
            for obj in self._objects.values():
                if obj.kind == Kind.HOST and obj.name == name:
                    return obj
            host = BackendObject(id=self._new_id(), kind=Kind.HOST, name=name, props=dict(props))
            self._objects[host.id] = host
            return host

    def fail_next(self, op: str, count: int = 1, error: Optional[Exception] = None):
        """Make the next `count` calls of `op` raise `error` (default BackendTransient)."""
        with self._lock:
            queue = self._faults.setdefault(op, [])
            for _ in range(count):
                queue.append(error or BackendTransient(f"injected failure on {op}"))

    def reset_calls(self):
        with self._lock:
            self.calls.clear()

    @property
    def mutations(self) -> int:
        return sum(self.calls[op] for op in _MUTATING_OPS)

    def objects(self) -> List[BackendObject]:
        with self._lock:
            return list(self._objects.values())

    def find(self, kind: Kind, name: str) -> List[BackendObject]:
        with self._lock:
            return [o for o in self._objects.values() if o.kind == kind and o.name == name]

    # ------------------------------------------------------------------
    # SdnClient
    # ------------------------------------------------------------------
    def list(self, kind: Kind, parent: Optional[str] = None) -> List[BackendObject]:
        with self._lock:
            self._enter("list")
            if kind == Kind.RULE and parent is not None:
                return [self._objects[rid] for rid in self._rule_order.get(parent, [])]
            return [
                o for o in self._objects.values()
                if o.kind == kind and (parent is None or o.parent == parent)
            ]

    def create(
        self,
        kind: Kind,
        name: str,
        parent: Optional[str] = None,
        props: Optional[Dict[str, Any]] = None,
        position: Optional[int] = None,
    ) -> BackendObject:
        with self._lock:
            self._enter("create")
            if parent is not None and parent not in self._objects:
                raise BackendNotFound(f"parent {parent} of {kind.value} {name} not found")
            if kind in _UNIQUE_CHILD_KINDS:
                for o in self._objects.values():
                    if o.kind == kind and o.parent == parent and (o.name == name or kind == Kind.HOST_BINDING):
                        raise BackendConflict(f"{kind.value} {name} already exists under {parent}")
            obj = BackendObject(id=self._new_id(), kind=kind, name=name, parent=parent, props=dict(props or {}))
            self._objects[obj.id] = obj
            if kind == Kind.RULE:
                order = self._rule_order.setdefault(parent, [])
                if position is None or position > len(order):
                    order.append(obj.id)
                else:
                    order.insert(max(position, 1) - 1, obj.id)
            return obj

    def update(self, obj_id: str, props: Dict[str, Any]) -> BackendObject:
        with self._lock:
            self._enter("update")
            obj = self._objects.get(obj_id)
            if obj is None:
                raise BackendNotFound(f"object {obj_id} not found")
            obj.props.update(props)
            return obj

    def delete(self, obj_id: str) -> None:
        with self._lock:
            self._enter("delete")
            if obj_id not in self._objects:
                raise BackendNotFound(f"object {obj_id} not found")
            self._cascade(obj_id)

    def link(self, port_id: str, peer_id: str) -> None:
        with self._lock:
            self._enter("link")
            for pid in (port_id, peer_id):
                if pid not in self._objects:
                    raise BackendNotFound(f"port {pid} not found")
            self._objects[port_id].props["peer"] = peer_id
            self._objects[peer_id].props["peer"] = port_id

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "objects": [o.to_dict() for o in self._objects.values()],
                "rule_order": {k: list(v) for k, v in self._rule_order.items()},
            }

    def save(self, path: str):
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")

    @classmethod
    def load(cls, path: str) -> "InMemorySdnClient":
        client = cls()
        source = Path(path)
        if not source.exists():
            return client
        data = json.loads(source.read_text(encoding="utf-8"))
        for item in data.get("objects", []):
            obj = BackendObject.from_dict(item)
            client._objects[obj.id] = obj
        client._rule_order = {k: list(v) for k, v in data.get("rule_order", {}).items()}
        return client

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _enter(self, op: str):
        self.calls[op] += 1
        queue = self._faults.get(op)
        if queue:
            raise queue.pop(0)

    def _new_id(self) -> str:
        return str(uuid.uuid4())

    def _cascade(self, obj_id: str):
        obj = self._objects.pop(obj_id, None)
        if obj is None:
            return

        children = [o.id for o in self._objects.values() if o.parent == obj_id]
        for child in children:
            self._cascade(child)

        if obj.kind == Kind.RULE and obj.parent in self._rule_order:
            self._rule_order[obj.parent] = [r for r in self._rule_order[obj.parent] if r != obj_id]
        if obj.kind == Kind.CHAIN:
            self._rule_order.pop(obj_id, None)
            jumps = [
                o.id for o in self._objects.values()
                if o.kind == Kind.RULE and o.props.get("jump_chain") == obj_id
            ]
            for rule_id in jumps:
                self._cascade(rule_id)
            for other in self._objects.values():
                for key in ("inbound_filter", "outbound_filter"):
                    if other.props.get(key) == obj_id:
                        other.props[key] = None
        if obj.kind == Kind.IPADDRGROUP:
            refs = [
                o.id for o in self._objects.values()
                if o.kind == Kind.RULE and obj_id in (o.props.get("ip_addr_group_src"), o.props.get("ip_addr_group_dst"))
            ]
            for rule_id in refs:
                self._cascade(rule_id)
        if obj.kind == Kind.PORT:
            peer = obj.props.get("peer")
            if peer in self._objects:
                self._objects[peer].props["peer"] = None
            routes = [o.id for o in self._objects.values() if o.kind == Kind.ROUTE and o.props.get("port") == obj_id]
            for route_id in routes:
                self._cascade(route_id)
            members = [o.id for o in self._objects.values() if o.kind == Kind.PORTGROUP_PORT and o.props.get("port") == obj_id]
            for member_id in members:
                self._cascade(member_id)
