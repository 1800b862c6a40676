# File: vpcmido/reconciler/metaproxy.py
"""
Metadata proxy plumbing on the eucanetd host.

Every Present VPC gets a network namespace holding the metadata address.
Every Present subnet gets a veth pair: the host end is the interface the
subnet metadata port is bound to, the namespace end carries the subnet +2
address. Namespaces of VPCs that are gone, and host veth ends of subnets
that are gone, are removed.
"""

import logging
from typing import Dict, Optional

from vpcmido.cidr import split_cidr
from vpcmido.netlink.netlink_manager import NetlinkManager
from vpcmido.reconciler import naming
from vpcmido.reconciler.model import EntityState, ReconciliationContext

logger = logging.getLogger(__name__)

NAMESPACE_PREFIX = "meta-"


def namespace_name(vpc: str) -> str:
    return f"{NAMESPACE_PREFIX}{vpc}"


def peer_iface(subnet: str) -> str:
    return f"vn3_{subnet}"[:15]


class MetaProxyManager:
    def __init__(self, netlink: Optional[NetlinkManager] = None):
        self.netlink = netlink or NetlinkManager()

    def sync(self, ctx: ReconciliationContext) -> Dict[str, int]:
        """Create missing namespaces/veths and delete stale namespaces and veths."""
        wanted = set()
        keep_ifaces = set()
        veths = 0
        for vpc in ctx.vpcs.values():
            if vpc.skipped:
                wanted.add(namespace_name(vpc.name))
                keep_ifaces.update(naming.subnet_meta_iface(s) for s in vpc.subnets)
                continue
            if vpc.state != EntityState.PRESENT:
                continue
            ns = namespace_name(vpc.name)
            wanted.add(ns)
            self.netlink.create_namespace(ns)
            self.netlink.add_ip_address("lo", f"{ctx.config.metadata_ip}/32", namespace=ns)
            for subnet in vpc.subnets.values():
                host_iface = naming.subnet_meta_iface(subnet.name)
                if subnet.skipped:
                    keep_ifaces.add(host_iface)
                if subnet.state != EntityState.PRESENT or subnet.gni is None:
                    continue
                parts = split_cidr(subnet.gni.cidr)
                peer = peer_iface(subnet.name)
                self.netlink.create_veth_pair(host_iface, peer, namespace=ns)
                self.netlink.add_ip_address(peer, f"{parts.plus_two}/{parts.prefix_length}", namespace=ns)
                keep_ifaces.add(host_iface)
                veths += 1

        removed = 0
        for ns in self.netlink.list_namespaces():
            if ns.startswith(NAMESPACE_PREFIX) and ns not in wanted:
                self.netlink.delete_namespace(ns)
                removed += 1
        # host ends of subnets that are gone; deleting one end removes its peer
        for iface in self.netlink.list_links():
            if naming.is_meta_iface(iface) and iface not in keep_ifaces:
                self.netlink.delete_link(iface)
                removed += 1
        logger.info(f"metadata proxy: {len(wanted)} namespaces, {veths} veths, {removed} removed")
        return {"namespaces": len(wanted), "veths": veths, "removed": removed}

    def teardown(self) -> int:
        removed = 0
        for ns in self.netlink.list_namespaces():
            if ns.startswith(NAMESPACE_PREFIX):
                self.netlink.delete_namespace(ns)
                removed += 1
        return removed
