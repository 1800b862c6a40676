# File: vpcmido/reconciler/populate.py
"""
Topology populator.

Rebuilds the in-memory mirror of the backend from object names alone:
- core objects and configured gateway ports
- VPCs from `vr_<vpc>_<rtid>` routers (router IDs are reserved on the way)
- subnets from `vb_<vpc>_<subnet>` bridges, instances and NAT gateways from
  the ports on those bridges
- security groups from their chains and address groups

Backend-discovered entities are merged with the desired-state model, which
only decides `gnipresent`. A backend error while reading one entity marks
that entity (and its children) skipped; the rest of the inventory is still
populated so nothing it owns looks orphaned.
"""

import logging
from typing import Callable, Dict, List, Optional, Tuple

from vpcmido.backend.base import BackendObject, Kind
from vpcmido.backend.ops import MidoOps
from vpcmido.cidr import ip_in_cidr
from vpcmido.errors import BackendError, CapacityExceeded
from vpcmido.reconciler import naming
from vpcmido.reconciler.model import (
    CoreSlot,
    GatewayPort,
    InstanceSlot,
    MidoEntity,
    MidoInstance,
    MidoNatGateway,
    MidoSecurityGroup,
    MidoSubnet,
    MidoVpc,
    NatgSlot,
    ReconciliationContext,
    SgSlot,
    SubnetSlot,
    VpcSlot,
)
from vpcmido.reconciler.rules import SRCDST_RULE

logger = logging.getLogger(__name__)


class BackendIndex:
    """Caches backend listings for the duration of one populate pass."""

    def __init__(self, ops: MidoOps):
        self.ops = ops
        self._lists: Dict[Tuple[Kind, Optional[str]], List[BackendObject]] = {}

    def list(self, kind: Kind, parent: Optional[str] = None) -> List[BackendObject]:
        key = (kind, parent)
        if key not in self._lists:
            self._lists[key] = self.ops.list(kind, parent)
        return self._lists[key]

    def find(self, kind: Kind, name: str) -> Optional[BackendObject]:
        return next((o for o in self.list(kind) if o.name == name), None)

    def child(self, kind: Kind, name: str, parent: Optional[BackendObject]) -> Optional[BackendObject]:
        if parent is None:
            return None
        return next((o for o in self.list(kind, parent.id) if o.name == name), None)

    def first_child(self, kind: Kind, parent: Optional[BackendObject]) -> Optional[BackendObject]:
        if parent is None:
            return None
        items = self.list(kind, parent.id)
        return items[0] if items else None

    def host_name(self, host_id: Optional[str]) -> Optional[str]:
        host = next((h for h in self.list(Kind.HOST) if h.id == host_id), None)
        return host.name if host else None


def _populate_guarded(ctx: ReconciliationContext, kind: str, entity: MidoEntity, fn: Callable, *args) -> bool:
    try:
        fn(*args)
    except BackendError as e:
        entity.mark_skipped(f"populate failed: {e}")
        ctx.report.record_entity(kind, entity.name, False, entity.skip_reason)
        return False
    return True


def _inherit_skip(ctx: ReconciliationContext, kind: str, parent: MidoEntity, child: MidoEntity):
    if parent.skipped and not child.skipped:
        child.mark_skipped(f"parent {parent.name} failed to populate")
        ctx.report.record_entity(kind, child.name, False, child.skip_reason)


def _require_consistent(entity: MidoEntity, ok: bool, what: str):
    """A complete slot table whose objects are miswired still needs repair."""
    if entity.midopresent and not ok:
        logger.info(f"{entity.name}: {what}, scheduling repair")
        entity.midopresent = False
        entity.population_failed = True


def _check_address(ctx: ReconciliationContext, kind: str, entity: MidoEntity, ip: str):
    """A private address must sit inside its subnet and must not be the subnet's metadata (+2) address."""
    subnet = ctx.parent_subnet(entity)
    if subnet is None or subnet.gni is None:
        return
    if not ip_in_cidr(ip, subnet.gni.cidr):
        problem = f"address {ip} is outside subnet {subnet.name} ({subnet.gni.cidr})"
    elif ctx.is_plustwo(entity, ip):
        problem = f"address {ip} is the metadata address of subnet {subnet.name}"
    else:
        return
    entity.mark_skipped(problem)
    ctx.report.record_entity(kind, entity.name, False, problem)


def _linked(a: Optional[BackendObject], b: Optional[BackendObject]) -> bool:
    return a is not None and b is not None and a.props.get("peer") == b.id and b.props.get("peer") == a.id


def _filtered(port: Optional[BackendObject], inbound: Optional[BackendObject], outbound: Optional[BackendObject]) -> bool:
    return (
        port is not None
        and inbound is not None
        and outbound is not None
        and port.props.get("inbound_filter") == inbound.id
        and port.props.get("outbound_filter") == outbound.id
    )


# ============================================================================
# Core
# ============================================================================

def populate_core(ctx: ReconciliationContext, index: BackendIndex):
    core = ctx.core
    m = core.midos
    m[CoreSlot.EUCART] = index.find(Kind.ROUTER, naming.EUCART)
    m[CoreSlot.EUCABR] = index.find(Kind.BRIDGE, naming.EUCABR)
    m[CoreSlot.EUCART_BRPORT] = index.child(Kind.PORT, naming.EUCART_BRPORT, m[CoreSlot.EUCART])
    m[CoreSlot.EUCABR_RTPORT] = index.child(Kind.PORT, naming.EUCABR_RTPORT, m[CoreSlot.EUCABR])
    m[CoreSlot.EUCABR_INFILTER] = index.find(Kind.CHAIN, naming.EUCABR_INFILTER)
    m[CoreSlot.METADATA_IPADDRGROUP] = index.find(Kind.IPADDRGROUP, naming.METADATA_IPADDRGROUP)
    m[CoreSlot.GWPORTGROUP] = index.find(Kind.PORTGROUP, naming.GWPORTGROUP)
    core.metadata_ip = index.child(Kind.IPADDRGROUP_IP, ctx.config.metadata_ip, m[CoreSlot.METADATA_IPADDRGROUP])

    core.gateways = {}
    eucart = m[CoreSlot.EUCART]
    if eucart is not None:
        for port in index.list(Kind.PORT, eucart.id):
            host = naming.parse_gw_port(port.name)
            if host is None:
                continue
            core.gateways[host] = GatewayPort(
                host=host,
                port=port,
                binding=index.first_child(Kind.HOST_BINDING, port),
                member=index.child(Kind.PORTGROUP_PORT, naming.gw_member(host), m[CoreSlot.GWPORTGROUP]),
                route=index.child(Kind.ROUTE, naming.gw_route(host), eucart),
            )

    core.update_presence()
    eucabr = m[CoreSlot.EUCABR]
    infilter = m[CoreSlot.EUCABR_INFILTER]
    _require_consistent(core, _linked(m[CoreSlot.EUCART_BRPORT], m[CoreSlot.EUCABR_RTPORT]), "core ports unlinked")
    _require_consistent(
        core,
        eucabr is not None and infilter is not None and eucabr.props.get("inbound_filter") == infilter.id,
        "core bridge filter missing",
    )
    _require_consistent(core, core.metadata_ip is not None, "metadata address missing")


# ============================================================================
# VPCs, subnets, NAT gateways, instances
# ============================================================================

def _reserve(ctx: ReconciliationContext, rtid: int, router: BackendObject):
    try:
        ctx.allocator.reserve(rtid)
    except CapacityExceeded as e:
        ctx.report.log_warning(f"router {router.name}: {e}", {"router": router.id})


def populate_vpcs(ctx: ReconciliationContext, index: BackendIndex):
    natg_routers: Dict[str, Tuple[BackendObject, int]] = {}
    for router in index.list(Kind.ROUTER):
        parsed = naming.parse_vpc_router(router.name)
        if parsed:
            name, rtid = parsed
            _reserve(ctx, rtid, router)
            vpc = ctx.vpcs.setdefault(name, MidoVpc(name=name))
            if vpc.midos[VpcSlot.VPCRT] is None:
                vpc.midos[VpcSlot.VPCRT] = router
                vpc.rtid = rtid
            else:
                vpc.duplicate_routers.append(router)
                logger.warning(f"vpc {name}: duplicate router {router.name} ({router.id})")
            continue
        parsed = naming.parse_natg_router(router.name)
        if parsed:
            name, rtid = parsed
            _reserve(ctx, rtid, router)
            natg_routers.setdefault(name, (router, rtid))

    for gvpc in ctx.gni.vpcs:
        if not naming.valid_identifier(gvpc.name):
            ctx.report.log_warning(f"skipping vpc with invalid name {gvpc.name!r}", {"kind": "vpc"})
            continue
        vpc = ctx.vpcs.setdefault(gvpc.name, MidoVpc(name=gvpc.name))
        vpc.gnipresent = True
        vpc.gni = gvpc

    bridges: Dict[str, List[Tuple[str, BackendObject]]] = {}
    for bridge in index.list(Kind.BRIDGE):
        parsed = naming.parse_subnet_bridge(bridge.name)
        if parsed:
            bridges.setdefault(parsed[0], []).append((parsed[1], bridge))

    for vpc in list(ctx.vpcs.values()):
        _populate_guarded(ctx, "vpc", vpc, _populate_vpc, ctx, index, vpc)
        _attach_subnets(ctx, vpc, bridges.get(vpc.name, []))
        for subnet in vpc.subnets.values():
            _populate_guarded(ctx, "subnet", subnet, _populate_subnet, ctx, index, vpc, subnet, natg_routers)
            _inherit_skip(ctx, "subnet", vpc, subnet)
            for natg in subnet.natgateways.values():
                _populate_guarded(ctx, "nat_gateway", natg, _populate_natgateway, ctx, index, vpc, subnet, natg)
                _inherit_skip(ctx, "nat_gateway", subnet, natg)
            for inst in subnet.instances.values():
                _populate_guarded(ctx, "instance", inst, _populate_instance, ctx, index, vpc, subnet, inst)
                _inherit_skip(ctx, "instance", subnet, inst)

    for gi in ctx.gni.instances:
        if ctx.find_subnet(gi.vpc, gi.subnet) is None:
            ctx.report.record_entity("instance", gi.name, False, f"subnet {gi.vpc}/{gi.subnet} is not in the model")


def _populate_vpc(ctx: ReconciliationContext, index: BackendIndex, vpc: MidoVpc):
    m = vpc.midos
    router = m[VpcSlot.VPCRT]
    m[VpcSlot.EUCABR_DOWNLINK] = index.child(Kind.PORT, naming.vpc_downlink(vpc.name), ctx.core.midos[CoreSlot.EUCABR])
    m[VpcSlot.VPCRT_UPLINK] = index.child(Kind.PORT, naming.vpc_uplink(vpc.name), router)
    m[VpcSlot.VPCRT_UPLINK_PRECHAIN] = index.find(Kind.CHAIN, naming.vpc_uplink_prechain(vpc.name))
    m[VpcSlot.VPCRT_UPLINK_POSTCHAIN] = index.find(Kind.CHAIN, naming.vpc_uplink_postchain(vpc.name))
    m[VpcSlot.VPCRT_PREELIPCHAIN] = index.find(Kind.CHAIN, naming.vpc_preelip_chain(vpc.name))
    vpc.update_presence()

    uplink = m[VpcSlot.VPCRT_UPLINK]
    _require_consistent(vpc, _linked(uplink, m[VpcSlot.EUCABR_DOWNLINK]), "uplink not linked")
    _require_consistent(
        vpc,
        _filtered(uplink, m[VpcSlot.VPCRT_UPLINK_PRECHAIN], m[VpcSlot.VPCRT_UPLINK_POSTCHAIN]),
        "uplink filters missing",
    )
    prechain = m[VpcSlot.VPCRT_UPLINK_PRECHAIN]
    if prechain is not None:
        jump = index.child(Kind.RULE, naming.vpc_preelip_jump(vpc.name), prechain)
        _require_consistent(vpc, jump is not None, "pre-elip jump missing")


def _attach_subnets(ctx: ReconciliationContext, vpc: MidoVpc, bridges: List[Tuple[str, BackendObject]]):
    for subnet_name, bridge in bridges:
        subnet = vpc.subnets.setdefault(subnet_name, MidoSubnet(name=subnet_name, vpc_name=vpc.name))
        if subnet.midos[SubnetSlot.BR] is None:
            subnet.midos[SubnetSlot.BR] = bridge
        else:
            logger.warning(f"subnet {subnet_name}: duplicate bridge {bridge.id}")

    if vpc.gni is None:
        return
    for gsubnet in vpc.gni.subnets:
        if not naming.valid_identifier(gsubnet.name):
            ctx.report.log_warning(f"skipping subnet with invalid name {gsubnet.name!r}", {"vpc": vpc.name})
            continue
        subnet = vpc.subnets.setdefault(gsubnet.name, MidoSubnet(name=gsubnet.name, vpc_name=vpc.name))
        subnet.gnipresent = True
        subnet.gni = gsubnet


def _populate_subnet(
    ctx: ReconciliationContext,
    index: BackendIndex,
    vpc: MidoVpc,
    subnet: MidoSubnet,
    natg_routers: Dict[str, Tuple[BackendObject, int]],
):
    m = subnet.midos
    router = vpc.midos[VpcSlot.VPCRT]
    bridge = m[SubnetSlot.BR]
    m[SubnetSlot.BR_RTPORT] = index.child(Kind.PORT, naming.subnet_rtport(subnet.name), bridge)
    m[SubnetSlot.VPCRT_BRPORT] = index.child(Kind.PORT, naming.subnet_vpcrt_brport(subnet.name), router)
    m[SubnetSlot.BR_DHCP] = index.child(Kind.DHCP, naming.subnet_dhcp(subnet.name), bridge)
    m[SubnetSlot.BR_METAPORT] = index.child(Kind.PORT, naming.subnet_metaport(subnet.name), bridge)
    m[SubnetSlot.BR_METAHOST] = index.first_child(Kind.HOST_BINDING, m[SubnetSlot.BR_METAPORT])
    prefix = naming.subnet_route_prefix(subnet.name)
    subnet.routes = [r for r in index.list(Kind.ROUTE, router.id) if r.name.startswith(prefix)] if router else []
    subnet.update_presence()
    _require_consistent(subnet, _linked(m[SubnetSlot.BR_RTPORT], m[SubnetSlot.VPCRT_BRPORT]), "router port not linked")

    # children discovered from the bridge ports, then merged with the model
    for port in index.list(Kind.PORT, bridge.id) if bridge else []:
        inst_name = naming.parse_instance_port(port.name)
        if inst_name:
            subnet.instances.setdefault(
                inst_name, MidoInstance(name=inst_name, vpc_name=vpc.name, subnet_name=subnet.name)
            )
            continue
        natg_name = naming.parse_natg_subnet_port(port.name)
        if natg_name:
            subnet.natgateways.setdefault(
                natg_name, MidoNatGateway(name=natg_name, vpc_name=vpc.name, subnet_name=subnet.name)
            )

    if subnet.gnipresent and vpc.gni is not None:
        for gnatg in vpc.gni.nat_gateways:
            if gnatg.subnet != subnet.name:
                continue
            if not naming.valid_identifier(gnatg.name):
                ctx.report.log_warning(f"skipping nat gateway with invalid name {gnatg.name!r}", {"vpc": vpc.name})
                continue
            natg = subnet.natgateways.setdefault(
                gnatg.name, MidoNatGateway(name=gnatg.name, vpc_name=vpc.name, subnet_name=subnet.name)
            )
            natg.gnipresent = True
            natg.gni = gnatg
            _check_address(ctx, "nat_gateway", natg, gnatg.private_ip)
        for ginst in ctx.gni.instances_in_subnet(vpc.name, subnet.name):
            if not naming.valid_identifier(ginst.name):
                ctx.report.log_warning(f"skipping instance with invalid name {ginst.name!r}", {"vpc": vpc.name})
                continue
            inst = subnet.instances.setdefault(
                ginst.name, MidoInstance(name=ginst.name, vpc_name=vpc.name, subnet_name=subnet.name)
            )
            inst.gnipresent = True
            inst.gni = ginst
            _check_address(ctx, "instance", inst, ginst.private_ip)

    for natg in subnet.natgateways.values():
        found = natg_routers.get(natg.name)
        if found and natg.midos[NatgSlot.RT] is None:
            natg.midos[NatgSlot.RT], natg.rtid = found


def _populate_natgateway(
    ctx: ReconciliationContext, index: BackendIndex, vpc: MidoVpc, subnet: MidoSubnet, natg: MidoNatGateway
):
    core = ctx.core.midos
    m = natg.midos
    router = m[NatgSlot.RT]
    m[NatgSlot.EUCABR_DOWNLINK] = index.child(Kind.PORT, naming.natg_downlink(natg.name), core[CoreSlot.EUCABR])
    m[NatgSlot.RT_UPLINK] = index.child(Kind.PORT, naming.natg_uplink(natg.name), router)
    m[NatgSlot.RT_BRPORT] = index.child(Kind.PORT, naming.natg_brport(natg.name), router)
    m[NatgSlot.SUBNBR_RTPORT] = index.child(Kind.PORT, naming.natg_subnet_port(natg.name), subnet.midos[SubnetSlot.BR])
    m[NatgSlot.ELIP_PRE_IPADDRGROUP] = index.find(Kind.IPADDRGROUP, naming.elip_pre_group(natg.name))
    m[NatgSlot.ELIP_PRE_IPADDRGROUP_IP] = index.first_child(Kind.IPADDRGROUP_IP, m[NatgSlot.ELIP_PRE_IPADDRGROUP])
    m[NatgSlot.ELIP_ROUTE] = index.child(Kind.ROUTE, naming.elip_route(natg.name), core[CoreSlot.EUCART])
    m[NatgSlot.RT_INCHAIN] = index.find(Kind.CHAIN, naming.natg_inchain(natg.name))
    m[NatgSlot.RT_OUTCHAIN] = index.find(Kind.CHAIN, naming.natg_outchain(natg.name))
    natg.routes = [
        r for r in (
            index.child(Kind.ROUTE, naming.natg_default_route(natg.name), router),
            index.child(Kind.ROUTE, naming.natg_vpc_route(natg.name), router),
        )
        if r is not None
    ]
    natg.update_presence()
    _require_consistent(natg, _linked(m[NatgSlot.RT_UPLINK], m[NatgSlot.EUCABR_DOWNLINK]), "uplink not linked")
    _require_consistent(natg, _linked(m[NatgSlot.RT_BRPORT], m[NatgSlot.SUBNBR_RTPORT]), "subnet port not linked")
    _require_consistent(
        natg, _filtered(m[NatgSlot.RT_UPLINK], m[NatgSlot.RT_INCHAIN], m[NatgSlot.RT_OUTCHAIN]), "uplink filters missing"
    )
    if natg.gni is not None:
        public_ip = m[NatgSlot.ELIP_PRE_IPADDRGROUP_IP]
        _require_consistent(
            natg, public_ip is not None and public_ip.name == natg.gni.public_ip, "public address changed"
        )
        _require_consistent(natg, len(natg.routes) == 2, "router routes missing")


def _populate_instance(
    ctx: ReconciliationContext, index: BackendIndex, vpc: MidoVpc, subnet: MidoSubnet, inst: MidoInstance
):
    core = ctx.core.midos
    m = inst.midos
    port = index.child(Kind.PORT, naming.instance_port(inst.name), subnet.midos[SubnetSlot.BR])
    m[InstanceSlot.VPCBR_VMPORT] = port
    m[InstanceSlot.VMHOST] = index.first_child(Kind.HOST_BINDING, port)
    m[InstanceSlot.VPCBR_DHCPHOST] = index.child(Kind.DHCP_HOST, inst.name, subnet.midos[SubnetSlot.BR_DHCP])
    m[InstanceSlot.PRECHAIN] = index.find(Kind.CHAIN, naming.instance_prechain(inst.name))
    m[InstanceSlot.POSTCHAIN] = index.find(Kind.CHAIN, naming.instance_postchain(inst.name))
    m[InstanceSlot.ELIP_PRE_IPADDRGROUP] = index.find(Kind.IPADDRGROUP, naming.elip_pre_group(inst.name))
    m[InstanceSlot.ELIP_POST_IPADDRGROUP] = index.find(Kind.IPADDRGROUP, naming.elip_post_group(inst.name))
    m[InstanceSlot.ELIP_PRE_IPADDRGROUP_IP] = index.first_child(
        Kind.IPADDRGROUP_IP, m[InstanceSlot.ELIP_PRE_IPADDRGROUP]
    )
    m[InstanceSlot.ELIP_POST_IPADDRGROUP_IP] = index.first_child(
        Kind.IPADDRGROUP_IP, m[InstanceSlot.ELIP_POST_IPADDRGROUP]
    )
    m[InstanceSlot.ELIP_PRE] = index.child(
        Kind.RULE, naming.elip_pre_group(inst.name), vpc.midos[VpcSlot.VPCRT_PREELIPCHAIN]
    )
    m[InstanceSlot.ELIP_POST] = index.child(
        Kind.RULE, naming.elip_post_group(inst.name), vpc.midos[VpcSlot.VPCRT_UPLINK_POSTCHAIN]
    )
    m[InstanceSlot.ELIP_ROUTE] = index.child(Kind.ROUTE, naming.elip_route(inst.name), core[CoreSlot.EUCART])
    inst.update_presence()
    _require_consistent(
        inst, _filtered(port, m[InstanceSlot.PRECHAIN], m[InstanceSlot.POSTCHAIN]), "port filters missing"
    )

    inst.privip = port.props.get("ip") if port else None
    pre_ip = m[InstanceSlot.ELIP_PRE_IPADDRGROUP_IP]
    inst.pubip = pre_ip.name if pre_ip else None
    _derive_change_flags(index, inst)


_ELIP_SLOTS = (
    InstanceSlot.ELIP_PRE_IPADDRGROUP_IP,
    InstanceSlot.ELIP_POST_IPADDRGROUP_IP,
    InstanceSlot.ELIP_PRE,
    InstanceSlot.ELIP_POST,
    InstanceSlot.ELIP_ROUTE,
)


def _derive_change_flags(index: BackendIndex, inst: MidoInstance):
    """Compare what the backend holds for an instance with the model."""
    gi = inst.gni
    if gi is None:
        inst.pubip_changed = inst.host_changed = inst.srcdst_changed = inst.sg_changed = False
        return
    m = inst.midos

    if gi.public_ip:
        post_ip = m[InstanceSlot.ELIP_POST_IPADDRGROUP_IP]
        inst.pubip_changed = (
            inst.pubip != gi.public_ip
            or any(slot not in m for slot in _ELIP_SLOTS)
            or post_ip is None
            or post_ip.name != gi.private_ip
        )
    else:
        inst.pubip_changed = any(slot in m for slot in _ELIP_SLOTS)

    binding = m[InstanceSlot.VMHOST]
    bound_host = index.host_name(binding.props.get("host")) if binding else None
    inst.host_changed = (
        bound_host != gi.node
        or (binding is not None and binding.name != naming.instance_iface(inst.name))
        or m[InstanceSlot.VPCBR_DHCPHOST] is None
    )

    prechain = m[InstanceSlot.PRECHAIN]
    postchain = m[InstanceSlot.POSTCHAIN]
    pre_rules = index.list(Kind.RULE, prechain.id) if prechain else []
    post_rules = index.list(Kind.RULE, postchain.id) if postchain else []
    inst.srcdst_changed = any(r.name == SRCDST_RULE for r in pre_rules) != gi.srcdst_check

    def jumps(rules: List[BackendObject]) -> List[Tuple[str, Optional[str]]]:
        return [(r.name, r.props.get("jump_chain")) for r in rules if r.props.get("type") == "jump"]

    def wanted(chain_name: Callable[[str], str]) -> List[Tuple[str, Optional[str]]]:
        chains = [index.find(Kind.CHAIN, chain_name(sg)) for sg in gi.security_groups]
        return [(c.name, c.id) for c in chains if c is not None]

    inst.sg_changed = (
        jumps(pre_rules) != wanted(naming.sg_egress)
        or jumps(post_rules) != wanted(naming.sg_ingress)
    )


# ============================================================================
# Security groups
# ============================================================================

def populate_secgroups(ctx: ReconciliationContext, index: BackendIndex):
    for obj in index.list(Kind.CHAIN) + index.list(Kind.IPADDRGROUP):
        name = naming.parse_secgroup_object(obj.name)
        if name:
            ctx.secgroups.setdefault(name, MidoSecurityGroup(name=name))

    for gsg in ctx.gni.security_groups:
        if not naming.valid_identifier(gsg.name):
            ctx.report.log_warning(f"skipping security group with invalid name {gsg.name!r}", {"kind": "security_group"})
            continue
        sg = ctx.secgroups.setdefault(gsg.name, MidoSecurityGroup(name=gsg.name))
        sg.gnipresent = True
        sg.gni = gsg

    for sg in ctx.secgroups.values():
        _populate_guarded(ctx, "security_group", sg, _populate_secgroup, ctx, index, sg)


def _populate_secgroup(ctx: ReconciliationContext, index: BackendIndex, sg: MidoSecurityGroup):
    m = sg.midos
    m[SgSlot.INGRESS] = index.find(Kind.CHAIN, naming.sg_ingress(sg.name))
    m[SgSlot.EGRESS] = index.find(Kind.CHAIN, naming.sg_egress(sg.name))
    m[SgSlot.IAGPRIV] = index.find(Kind.IPADDRGROUP, naming.sg_priv_group(sg.name))
    m[SgSlot.IAGPUB] = index.find(Kind.IPADDRGROUP, naming.sg_pub_group(sg.name))
    m[SgSlot.IAGALL] = index.find(Kind.IPADDRGROUP, naming.sg_all_group(sg.name))

    def members(slot: SgSlot) -> Dict[str, BackendObject]:
        group = m[slot]
        return {o.name: o for o in index.list(Kind.IPADDRGROUP_IP, group.id)} if group else {}

    sg.midopresent_privips = members(SgSlot.IAGPRIV)
    sg.midopresent_pubips = members(SgSlot.IAGPUB)
    sg.midopresent_allips = members(SgSlot.IAGALL)
    sg.update_presence()

    if sg.gni is not None:
        wanted_priv = {i.private_ip for i in ctx.gni.secgroup_members(sg.name)}
        sg.interfaces_changed = set(sg.midopresent_privips) != wanted_priv


# ============================================================================
# Entry point
# ============================================================================

def populate(ctx: ReconciliationContext) -> BackendIndex:
    """Pass 1: fill the context from the backend and merge the model in."""
    index = BackendIndex(ctx.ops)
    _populate_guarded(ctx, "core", ctx.core, populate_core, ctx, index)
    try:
        populate_vpcs(ctx, index)
    except BackendError as e:
        # the device listings themselves failed: nothing can be matched safely
        for gvpc in ctx.gni.vpcs:
            ctx.vpcs.setdefault(gvpc.name, MidoVpc(name=gvpc.name, gnipresent=True))
        for vpc in ctx.vpcs.values():
            vpc.mark_skipped(f"backend listing failed: {e}")
            for subnet in vpc.subnets.values():
                subnet.mark_skipped(vpc.skip_reason)
                for child in list(subnet.instances.values()) + list(subnet.natgateways.values()):
                    child.mark_skipped(vpc.skip_reason)
        ctx.report.log_error(f"failed to list VPC devices: {e}", {"kind": "vpc"})
    try:
        populate_secgroups(ctx, index)
    except BackendError as e:
        for gsg in ctx.gni.security_groups:
            ctx.secgroups.setdefault(gsg.name, MidoSecurityGroup(name=gsg.name, gnipresent=True))
        for sg in ctx.secgroups.values():
            sg.mark_skipped(f"backend listing failed: {e}")
        ctx.report.log_error(f"failed to list security group objects: {e}", {"kind": "security_group"})

    logger.info(
        f"populated {len(ctx.vpcs)} vpcs, {len(ctx.all_subnets())} subnets, "
        f"{len(ctx.all_instances())} instances, {len(ctx.all_natgateways())} nat gateways, "
        f"{len(ctx.secgroups)} security groups"
    )
    return index
