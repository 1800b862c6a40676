#!/usr/bin/env python3
"""
Host Namespace Manager

Manages the Linux network constructs the metadata proxy needs on the
eucanetd host:
- Network namespaces (one per VPC)
- veth pairs (host side bound to a backend port, peer inside the namespace)
- IP addresses

Commands are idempotent: creating something that exists, or deleting
something that is gone, is not an error.
"""

import logging
import subprocess
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from vpcmido.errors import HostNetworkError

logger = logging.getLogger(__name__)


@dataclass
class NetworkNamespace:
    """A network namespace and the interfaces moved into it."""

    name: str
    interfaces: List[str] = field(default_factory=list)


@dataclass
class VethPair:
    """A virtual ethernet pair."""

    name: str
    peer_name: str
    namespace: Optional[str] = None


class NetlinkManager:
    """Manages namespaces and veth pairs through the `ip` command."""

    def __init__(self):
        self.namespaces: Dict[str, NetworkNamespace] = {}
        self.veth_pairs: Dict[str, VethPair] = {}

    def _run(self, cmd: List[str], check: bool = True) -> subprocess.CompletedProcess:
        logger.debug(f"running: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise HostNetworkError(f"cannot run {cmd[0]}: {e}") from e
        if check and result.returncode != 0:
            raise HostNetworkError(f"{' '.join(cmd)} failed: {(result.stderr or '').strip()}")
        return result

    def list_namespaces(self) -> List[str]:
        result = self._run(["ip", "netns", "list"])
        # lines look like "meta-vpc1 (id: 3)"
        return [line.split()[0] for line in (result.stdout or "").splitlines() if line.strip()]

    def create_namespace(self, name: str) -> NetworkNamespace:
        """Create a network namespace unless it already exists."""
        if name not in self.list_namespaces():
            logger.info(f"NetlinkManager: creating namespace {name}")
            self._run(["ip", "netns", "add", name])
            self._run(["ip", "netns", "exec", name, "ip", "link", "set", "lo", "up"])
        return self.namespaces.setdefault(name, NetworkNamespace(name=name))

    def delete_namespace(self, name: str):
        """Delete a network namespace and every interface inside it."""
        if name in self.list_namespaces():
            logger.info(f"NetlinkManager: deleting namespace {name}")
            self._run(["ip", "netns", "del", name])
        self.namespaces.pop(name, None)
        for pair in [p for p in self.veth_pairs.values() if p.namespace == name]:
            del self.veth_pairs[pair.name]

    def link_exists(self, name: str, namespace: Optional[str] = None) -> bool:
        cmd = ["ip", "link", "show", name]
        if namespace:
            cmd = ["ip", "netns", "exec", namespace] + cmd
        return self._run(cmd, check=False).returncode == 0

    def create_veth_pair(self, name: str, peer_name: str, namespace: Optional[str] = None) -> VethPair:
        """
        Create a veth pair with `peer_name` moved into `namespace`.
        Both ends are brought up.
        """
        if not self.link_exists(name):
            logger.info(f"NetlinkManager: creating veth pair {name} <-> {peer_name}")
            self._run(["ip", "link", "add", name, "type", "veth", "peer", "name", peer_name])
            if namespace:
                self._run(["ip", "link", "set", peer_name, "netns", namespace])
        self._run(["ip", "link", "set", name, "up"])
        peer_up = ["ip", "link", "set", peer_name, "up"]
        if namespace:
            peer_up = ["ip", "netns", "exec", namespace] + peer_up
        self._run(peer_up)

        pair = VethPair(name=name, peer_name=peer_name, namespace=namespace)
        self.veth_pairs[name] = pair
        if namespace and namespace in self.namespaces:
            interfaces = self.namespaces[namespace].interfaces
            if peer_name not in interfaces:
                interfaces.append(peer_name)
        return pair

    def list_links(self) -> List[str]:
        """Names of the links in the host namespace."""
        result = self._run(["ip", "-o", "link", "show"])
        # lines look like "12: vn2_subnet-1@if11: <BROADCAST,...> mtu 1500 ..."
        names = []
        for line in (result.stdout or "").splitlines():
            parts = line.split(": ", 2)
            if len(parts) >= 2:
                names.append(parts[1].split("@", 1)[0])
        return names

    def delete_link(self, name: str):
        if self.link_exists(name):
            logger.info(f"NetlinkManager: deleting link {name}")
            self._run(["ip", "link", "del", name])
        self.veth_pairs.pop(name, None)

    def add_ip_address(self, interface: str, address: str, namespace: Optional[str] = None):
        """Add an IP address to an interface; an address already present is kept."""
        cmd = ["ip", "addr", "add", address, "dev", interface]
        if namespace:
            cmd = ["ip", "netns", "exec", namespace] + cmd
        result = self._run(cmd, check=False)
        if result.returncode != 0 and "exists" not in (result.stderr or ""):
            raise HostNetworkError(f"{' '.join(cmd)} failed: {(result.stderr or '').strip()}")
