# File: vpcmido/ids.py
"""
Router ID pool.

Every VPC router and NAT gateway router carries a small integer ID in its
backend name. IDs are never persisted locally: on population the IDs found in
backend names are reserved, so live routers never see their ID reissued.
"""

import threading
from typing import List, Set

from vpcmido.errors import CapacityExceeded

DEFAULT_MAX_ROUTER_IDS = 1024


class RouterIdAllocator:
    """Fixed-capacity pool of router IDs in the range [1, max_ids]."""

    def __init__(self, max_ids: int = DEFAULT_MAX_ROUTER_IDS):
        if max_ids < 1:
            raise ValueError("max_ids must be positive")
        self.max_ids = max_ids
        self._in_use: Set[int] = set()
        self._lock = threading.Lock()

    def allocate(self) -> int:
        """Return the lowest unused ID and mark it in use."""
        with self._lock:
            for rtid in range(1, self.max_ids + 1):
                if rtid not in self._in_use:
                    self._in_use.add(rtid)
                    return rtid
        raise CapacityExceeded(f"router ID pool exhausted ({self.max_ids} in use)")

    def reserve(self, rtid: int):
        """Mark an externally discovered ID as in use. Reserving twice is a no-op."""
        if not 1 <= rtid <= self.max_ids:
            raise CapacityExceeded(f"router ID {rtid} outside pool [1, {self.max_ids}]")
        with self._lock:
            self._in_use.add(rtid)

    def release(self, rtid: int):
        with self._lock:
            self._in_use.discard(rtid)

    def in_use(self, rtid: int) -> bool:
        with self._lock:
            return rtid in self._in_use

    def allocated(self) -> List[int]:
        with self._lock:
            return sorted(self._in_use)

    def clear(self):
        with self._lock:
            self._in_use.clear()
