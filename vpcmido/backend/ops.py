# backend/ops.py
"""
Retrying wrapper around an SdnClient.

All driver code talks to the backend through MidoOps:
- transient failures are retried with exponential backoff, then re-raised
- "not found" on delete means already absent
- "conflict" on create means already present: the existing object is returned
- ensure/link/update skip the call when the backend already matches
"""

import logging
import threading
import time
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Union

from vpcmido.backend.base import (
    BackendConflict,
    BackendNotFound,
    BackendObject,
    BackendTransient,
    Kind,
    SdnClient,
)
from vpcmido.metrics import METRICS

logger = logging.getLogger(__name__)


class MidoOps:
    def __init__(
        self,
        client: SdnClient,
        retries: int = 3,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.retries = max(retries, 1)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self.stats: Counter = Counter()
        self._stats_lock = threading.Lock()

    def _count(self, key: str):
        with self._stats_lock:
            self.stats[key] += 1

    def _call(self, op: str, fn: Callable, *args, **kwargs):
        attempt = 0
        while True:
            attempt += 1
            METRICS["backend_calls"].labels(operation=op).inc()
            try:
                return fn(*args, **kwargs)
            except BackendTransient as e:
                if attempt >= self.retries:
                    logger.error(f"backend {op} failed after {attempt} attempts: {e}")
                    raise
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(f"backend {op} failed (attempt {attempt}/{self.retries}), retrying in {delay:.2f}s: {e}")
                if delay > 0:
                    self._sleep(delay)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def list(self, kind: Kind, parent: Optional[str] = None) -> List[BackendObject]:
        return self._call("list", self.client.list, kind, parent)

    def find_all(self, kind: Kind, name: str, parent: Optional[str] = None) -> List[BackendObject]:
        return [o for o in self.list(kind, parent) if o.name == name]

    def find(self, kind: Kind, name: str, parent: Optional[str] = None) -> Optional[BackendObject]:
        matches = self.find_all(kind, name, parent)
        return matches[0] if matches else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def create(
        self,
        kind: Kind,
        name: str,
        parent: Optional[str] = None,
        props: Optional[Dict[str, Any]] = None,
        position: Optional[int] = None,
    ) -> BackendObject:
        try:
            obj = self._call("create", self.client.create, kind, name, parent, props, position)
        except BackendConflict:
            existing = self.find(kind, name, parent)
            if existing is None:
                raise
            logger.info(f"{kind.value} {name} already present, reusing {existing.id}")
            return existing
        self._count("created")
        logger.debug(f"created {kind.value} {name} ({obj.id})")
        return obj

    def ensure(
        self,
        kind: Kind,
        name: str,
        parent: Optional[str] = None,
        props: Optional[Dict[str, Any]] = None,
    ) -> BackendObject:
        """Return the object named `name` under `parent`, creating it if missing."""
        existing = self.find(kind, name, parent)
        if existing is not None:
            if props:
                self.update_if_changed(existing, props)
            return existing
        return self.create(kind, name, parent, props)

    def update_if_changed(self, obj: BackendObject, props: Dict[str, Any]) -> BackendObject:
        if all(obj.props.get(k) == v for k, v in props.items()):
            return obj
        updated = self._call("update", self.client.update, obj.id, props)
        self._count("updated")
        return updated

    def delete(self, target: Union[BackendObject, str, None]) -> bool:
        """Delete an object; returns False when it was already absent."""
        if target is None:
            return False
        obj_id = target.id if isinstance(target, BackendObject) else target
        try:
            self._call("delete", self.client.delete, obj_id)
        except BackendNotFound:
            logger.debug(f"object {obj_id} already absent")
            return False
        self._count("deleted")
        return True

    def link(self, port: BackendObject, peer: BackendObject):
        if port.props.get("peer") == peer.id and peer.props.get("peer") == port.id:
            return
        self._call("link", self.client.link, port.id, peer.id)
        port.props["peer"] = peer.id
        peer.props["peer"] = port.id
        self._count("linked")
