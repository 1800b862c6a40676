# File: vpcmido/reconciler/build.py
"""
Topology builder.

Create/delete operations per entity kind, plus the incremental updates a
Present entity can receive (gateway set, routes, instance connect/elastic IP,
chain rules, security-group membership).

Every create is an ensure-by-name, so a partially populated entity is
repaired instead of duplicated. Deletes run in reverse creation order and
treat "not found" as done. Building a child whose parent is not Present
raises DependencyMissing.
"""

import ipaddress
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from vpcmido.backend.base import BackendObject, Kind
from vpcmido.cidr import RouteTarget, classify_route_target, offset_address, split_cidr
from vpcmido.config import DriverConfig, GatewayConfig
from vpcmido.errors import CapacityExceeded, DependencyMissing, MalformedCIDR
from vpcmido.reconciler import naming, rules
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

logger = logging.getLogger(__name__)

ANY = "0.0.0.0/0"


@dataclass
class RouteSpec:
    name: str
    props: Dict[str, Any]


def _require_present(entity: Optional[MidoEntity], what: str):
    if entity is None or not entity.midopresent:
        raise DependencyMissing(f"{what} is not present")


# ============================================================================
# Addressing
# ============================================================================

def core_router_ip(config: DriverConfig) -> str:
    """Address of the core router on the internal router network."""
    return offset_address(config.int_rtnetwork, 1)


def router_uplink_ip(config: DriverConfig, rtid: int) -> str:
    """Uplink address of the VPC or NAT router holding `rtid`."""
    net = ipaddress.IPv4Network(config.int_rtcidr, strict=False)
    try:
        ip = ipaddress.IPv4Address(offset_address(config.int_rtnetwork, 1 + rtid))
    except ipaddress.AddressValueError as e:
        raise CapacityExceeded(f"router ID {rtid} has no uplink address: {e}") from e
    if ip not in net or ip >= net.broadcast_address:
        raise CapacityExceeded(f"router ID {rtid} does not fit in {config.int_rtcidr}")
    return str(ip)


def _assign_rtid(ctx: ReconciliationContext, entity) -> str:
    allocated = False
    if entity.rtid is None:
        entity.rtid = ctx.allocator.allocate()
        allocated = True
    try:
        return router_uplink_ip(ctx.config, entity.rtid)
    except CapacityExceeded:
        if allocated:
            ctx.allocator.release(entity.rtid)
            entity.rtid = None
        raise


def _release_rtid(ctx: ReconciliationContext, entity):
    if entity.rtid is not None:
        ctx.allocator.release(entity.rtid)
        entity.rtid = None


# ============================================================================
# Shared helpers
# ============================================================================

def _delete_slots(ctx: ReconciliationContext, entity: MidoEntity, slots):
    for slot in slots:
        ctx.ops.delete(entity.midos[slot])
        entity.midos.clear(slot)


def _ensure_binding(ctx: ReconciliationContext, port: BackendObject, host: BackendObject, iface: str) -> BackendObject:
    """One binding per port: `iface` on `host`."""
    ops = ctx.ops
    keep = None
    for binding in ops.list(Kind.HOST_BINDING, port.id):
        if keep is None and binding.name == iface:
            keep = binding
        else:
            ops.delete(binding)
    if keep is not None:
        ops.update_if_changed(keep, {"host": host.id})
        return keep
    return ops.create(Kind.HOST_BINDING, iface, port.id, {"host": host.id})


def _sync_presence(
    ctx: ReconciliationContext,
    group: BackendObject,
    present: Dict[str, BackendObject],
    wanted: Set[str],
) -> Tuple[Dict[str, BackendObject], bool]:
    """Bring an address group from `present` to `wanted` without a rebuild."""
    changed = False
    result: Dict[str, BackendObject] = {}
    for ip, obj in present.items():
        if ip in wanted:
            result[ip] = obj
        else:
            ctx.ops.delete(obj)
            changed = True
    for ip in sorted(wanted - set(result)):
        result[ip] = ctx.ops.create(Kind.IPADDRGROUP_IP, ip, group.id)
        changed = True
    return result, changed


def _sync_group_ips(ctx: ReconciliationContext, group: BackendObject, wanted: Set[str]) -> Dict[str, BackendObject]:
    present: Dict[str, BackendObject] = {}
    for item in ctx.ops.list(Kind.IPADDRGROUP_IP, group.id):
        if item.name in present:
            ctx.ops.delete(item)
        else:
            present[item.name] = item
    result, _ = _sync_presence(ctx, group, present, wanted)
    return result


# ============================================================================
# Core
# ============================================================================

def create_core(ctx: ReconciliationContext):
    """Create or repair the objects every VPC hangs off."""
    cfg, ops, core = ctx.config, ctx.ops, ctx.core
    with ctx.lock:
        m = core.midos
        eucart = ops.ensure(Kind.ROUTER, naming.EUCART)
        infilter = ops.ensure(Kind.CHAIN, naming.EUCABR_INFILTER)
        eucabr = ops.ensure(Kind.BRIDGE, naming.EUCABR, None, {"inbound_filter": infilter.id})
        rt_port = ops.ensure(
            Kind.PORT, naming.EUCART_BRPORT, eucart.id, {"ip": core_router_ip(cfg), "network": cfg.int_rtcidr}
        )
        br_port = ops.ensure(Kind.PORT, naming.EUCABR_RTPORT, eucabr.id)
        ops.link(rt_port, br_port)
        mdgroup = ops.ensure(Kind.IPADDRGROUP, naming.METADATA_IPADDRGROUP)
        core.metadata_ip = _sync_group_ips(ctx, mdgroup, {cfg.metadata_ip})[cfg.metadata_ip]
        portgroup = ops.ensure(Kind.PORTGROUP, naming.GWPORTGROUP, None, {"stateful": True})

        m[CoreSlot.EUCART] = eucart
        m[CoreSlot.EUCABR] = eucabr
        m[CoreSlot.EUCART_BRPORT] = rt_port
        m[CoreSlot.EUCABR_RTPORT] = br_port
        m[CoreSlot.EUCABR_INFILTER] = infilter
        m[CoreSlot.METADATA_IPADDRGROUP] = mdgroup
        m[CoreSlot.GWPORTGROUP] = portgroup
        core.update_presence()
    logger.info("core topology ready")


def sync_core_rules(ctx: ReconciliationContext) -> bool:
    _require_present(ctx.core, "core")
    m = ctx.core.midos
    return rules.sync_chain_rules(
        ctx.ops, m[CoreSlot.EUCABR_INFILTER], rules.core_infilter_rules(m[CoreSlot.METADATA_IPADDRGROUP].id)
    )


def sync_gateways(ctx: ReconciliationContext):
    """Add ports for new gateway hosts and remove the ones no longer configured."""
    _require_present(ctx.core, "core")
    core = ctx.core
    wanted = {gw.host: gw for gw in ctx.config.gateways}
    with ctx.lock:
        for host in sorted(set(core.gateways) - set(wanted)):
            _delete_gateway(ctx, host)
        for host, gw in wanted.items():
            core.gateways[host] = _ensure_gateway(ctx, gw)


def _ensure_gateway(ctx: ReconciliationContext, gw: GatewayConfig) -> GatewayPort:
    cfg, ops = ctx.config, ctx.ops
    m = ctx.core.midos
    eucart = m[CoreSlot.EUCART]
    state = GatewayPort(host=gw.host)
    state.port = ops.ensure(
        Kind.PORT, naming.gw_port(gw.host), eucart.id, {"ip": gw.ip, "network": cfg.public_network}
    )
    state.member = ops.ensure(
        Kind.PORTGROUP_PORT, naming.gw_member(gw.host), m[CoreSlot.GWPORTGROUP].id, {"port": state.port.id}
    )
    if cfg.public_gateway_ip:
        state.route = ops.ensure(
            Kind.ROUTE,
            naming.gw_route(gw.host),
            eucart.id,
            {"src": ANY, "dst": ANY, "port": state.port.id, "gateway": cfg.public_gateway_ip},
        )
    host = ops.find(Kind.HOST, gw.host)
    if host is None:
        ctx.report.record_entity("gateway", gw.host, False, f"host {gw.host} is not registered")
        return state
    state.binding = _ensure_binding(ctx, state.port, host, gw.iface)
    ctx.report.record_entity("gateway", gw.host, True)
    return state


def _delete_gateway(ctx: ReconciliationContext, host: str):
    gw = ctx.core.gateways.pop(host, None)
    if gw is None:
        return
    logger.info(f"removing gateway {host}")
    for obj in (gw.route, gw.member, gw.binding, gw.port):
        ctx.ops.delete(obj)


def delete_core(ctx: ReconciliationContext):
    core = ctx.core
    with ctx.lock:
        for host in list(core.gateways):
            _delete_gateway(ctx, host)
        _delete_slots(ctx, core, reversed(list(CoreSlot)))
        core.metadata_ip = None
        core.update_presence()


# ============================================================================
# VPC
# ============================================================================

def create_vpc(ctx: ReconciliationContext, vpc: MidoVpc):
    _require_present(ctx.core, "core")
    cfg, ops = ctx.config, ctx.ops
    core = ctx.core.midos
    uplink_ip = _assign_rtid(ctx, vpc)
    m = vpc.midos

    router = m[VpcSlot.VPCRT] or ops.ensure(Kind.ROUTER, naming.vpc_router(vpc.name, vpc.rtid))
    prechain = ops.ensure(Kind.CHAIN, naming.vpc_uplink_prechain(vpc.name))
    postchain = ops.ensure(Kind.CHAIN, naming.vpc_uplink_postchain(vpc.name))
    preelip = ops.ensure(Kind.CHAIN, naming.vpc_preelip_chain(vpc.name))
    downlink = ops.ensure(Kind.PORT, naming.vpc_downlink(vpc.name), core[CoreSlot.EUCABR].id)
    uplink = ops.ensure(
        Kind.PORT,
        naming.vpc_uplink(vpc.name),
        router.id,
        {
            "ip": uplink_ip,
            "network": cfg.int_rtcidr,
            "inbound_filter": prechain.id,
            "outbound_filter": postchain.id,
        },
    )
    ops.link(uplink, downlink)
    rules.ensure_rule(
        ops,
        prechain,
        rules.RuleSpec(naming.vpc_preelip_jump(vpc.name), {"type": "jump", "jump_chain": preelip.id}),
        position=1,
    )

    m[VpcSlot.VPCRT] = router
    m[VpcSlot.EUCABR_DOWNLINK] = downlink
    m[VpcSlot.VPCRT_UPLINK] = uplink
    m[VpcSlot.VPCRT_UPLINK_PRECHAIN] = prechain
    m[VpcSlot.VPCRT_UPLINK_POSTCHAIN] = postchain
    m[VpcSlot.VPCRT_PREELIPCHAIN] = preelip
    vpc.update_presence()
    logger.info(f"vpc {vpc.name} ready (router id {vpc.rtid})")


def delete_vpc(ctx: ReconciliationContext, vpc: MidoVpc):
    for subnet in reversed(list(vpc.subnets.values())):
        delete_subnet(ctx, vpc, subnet)
    _delete_slots(ctx, vpc, reversed(list(VpcSlot)))
    _release_rtid(ctx, vpc)
    vpc.update_presence()
    logger.info(f"vpc {vpc.name} deleted")


# ============================================================================
# Subnet
# ============================================================================

def _dhcp_props(ctx: ReconciliationContext, cidr: str) -> Dict[str, Any]:
    parts = split_cidr(cidr)
    return {
        "subnet": parts.cidr,
        "gateway": parts.gateway,
        "dns_servers": list(ctx.gni.instance_dns_servers) or [parts.plus_two],
        "domain": ctx.gni.instance_dns_domain,
    }


def create_subnet(ctx: ReconciliationContext, vpc: MidoVpc, subnet: MidoSubnet):
    _require_present(vpc, f"vpc {vpc.name}")
    ops = ctx.ops
    parts = split_cidr(subnet.gni.cidr)
    router = vpc.midos[VpcSlot.VPCRT]
    m = subnet.midos

    bridge = m[SubnetSlot.BR] or ops.ensure(
        Kind.BRIDGE, naming.subnet_bridge(vpc.name, subnet.name), None, {"cidr": parts.cidr}
    )
    rtport = ops.ensure(Kind.PORT, naming.subnet_rtport(subnet.name), bridge.id)
    brport = ops.ensure(
        Kind.PORT,
        naming.subnet_vpcrt_brport(subnet.name),
        router.id,
        {"ip": parts.gateway, "network": parts.cidr},
    )
    ops.link(brport, rtport)
    dhcp = ops.ensure(Kind.DHCP, naming.subnet_dhcp(subnet.name), bridge.id, _dhcp_props(ctx, subnet.gni.cidr))

    m[SubnetSlot.BR] = bridge
    m[SubnetSlot.BR_RTPORT] = rtport
    m[SubnetSlot.VPCRT_BRPORT] = brport
    m[SubnetSlot.BR_DHCP] = dhcp
    if ctx.config.eucanetd_host:
        ensure_subnet_metaport(ctx, subnet)
    subnet.update_presence()
    logger.info(f"subnet {subnet.name} ready ({parts.cidr}, gateway {parts.gateway})")


def sync_subnet_props(ctx: ReconciliationContext, subnet: MidoSubnet) -> bool:
    """Re-apply the cidr derived settings of a Present subnet."""
    ops = ctx.ops
    parts = split_cidr(subnet.gni.cidr)
    m = subnet.midos
    wanted = (
        (SubnetSlot.BR, {"cidr": parts.cidr}),
        (SubnetSlot.VPCRT_BRPORT, {"ip": parts.gateway, "network": parts.cidr}),
        (SubnetSlot.BR_DHCP, _dhcp_props(ctx, subnet.gni.cidr)),
    )
    changed = False
    for slot, props in wanted:
        if any(m[slot].props.get(k) != v for k, v in props.items()):
            m[slot] = ops.update_if_changed(m[slot], props)
            changed = True
    if changed:
        logger.info(f"subnet {subnet.name} settings updated ({parts.cidr})")
    return changed


def ensure_subnet_metaport(ctx: ReconciliationContext, subnet: MidoSubnet):
    """Metadata port of a subnet, bound to the eucanetd host."""
    ops = ctx.ops
    m = subnet.midos
    port = m[SubnetSlot.BR_METAPORT] or ops.ensure(
        Kind.PORT, naming.subnet_metaport(subnet.name), m[SubnetSlot.BR].id
    )
    m[SubnetSlot.BR_METAPORT] = port
    host = ops.find(Kind.HOST, ctx.config.eucanetd_host)
    if host is None:
        ctx.report.log_warning(
            f"metadata host {ctx.config.eucanetd_host} not registered", {"kind": "subnet", "name": subnet.name}
        )
        return
    m[SubnetSlot.BR_METAHOST] = _ensure_binding(ctx, port, host, naming.subnet_meta_iface(subnet.name))


def delete_subnet(ctx: ReconciliationContext, vpc: MidoVpc, subnet: MidoSubnet):
    for inst in reversed(list(subnet.instances.values())):
        delete_instance(ctx, inst)
    for natg in reversed(list(subnet.natgateways.values())):
        delete_natgateway(ctx, natg)
    for route in subnet.routes:
        ctx.ops.delete(route)
    subnet.routes = []
    _delete_slots(ctx, subnet, reversed(list(SubnetSlot)))
    subnet.update_presence()
    logger.info(f"subnet {subnet.name} deleted")


# ============================================================================
# Route tables
# ============================================================================

def _normalize_destination(destination: str) -> str:
    try:
        return str(ipaddress.IPv4Network(str(destination).strip(), strict=False))
    except ValueError as e:
        raise MalformedCIDR(f"invalid route destination {destination!r}: {e}") from e


def _route_next_hop(
    ctx: ReconciliationContext, vpc: MidoVpc, kind: RouteTarget, target: str
) -> Optional[Tuple[BackendObject, str]]:
    """Router port and gateway address for a route target, or None to skip it."""
    context = {"kind": "route", "vpc": vpc.name, "target": target}
    if kind == RouteTarget.INTERNET_GATEWAY:
        return vpc.midos[VpcSlot.VPCRT_UPLINK], core_router_ip(ctx.config)

    if kind == RouteTarget.ENI:
        gi = ctx.gni.find_instance(target)
        if gi is None or gi.vpc != vpc.name:
            ctx.report.log_warning(f"route target {target} is not an interface of {vpc.name}", context)
            return None
        subnet_name, next_hop = gi.subnet, gi.private_ip
    elif kind == RouteTarget.NAT_GATEWAY:
        gnatg = vpc.gni.find_nat_gateway(target) if vpc.gni else None
        if gnatg is None:
            ctx.report.log_warning(f"route target {target} is not a nat gateway of {vpc.name}", context)
            return None
        subnet_name, next_hop = gnatg.subnet, gnatg.private_ip
    else:
        ctx.report.log_warning(f"route target {target} ({kind.value}) is not supported", context)
        return None

    subnet = vpc.subnets.get(subnet_name)
    port = subnet.midos[SubnetSlot.VPCRT_BRPORT] if subnet else None
    if port is None:
        ctx.report.log_warning(f"route target {target}: subnet {subnet_name} has no router port yet", context)
        return None
    return port, next_hop


def parse_subnet_routes(ctx: ReconciliationContext, vpc: MidoVpc, subnet: MidoSubnet) -> List[RouteSpec]:
    """
    Desired router routes for the route table associated with a subnet.
    Local routes are implicit; entries with an invalid destination or an
    unusable target are skipped with a diagnostic.
    """
    if vpc.gni is None or subnet.gni is None:
        return []
    table = vpc.gni.find_route_table(subnet.gni.route_table)
    if table is None:
        return []
    source = split_cidr(subnet.gni.cidr).cidr

    specs: List[RouteSpec] = []
    for entry in table.entries:
        kind = classify_route_target(entry.target)
        if kind == RouteTarget.LOCAL:
            continue
        try:
            destination = _normalize_destination(entry.destination)
        except MalformedCIDR as e:
            ctx.report.log_warning(str(e), {"kind": "route", "subnet": subnet.name, "table": table.name})
            continue
        hop = _route_next_hop(ctx, vpc, kind, entry.target)
        if hop is None:
            continue
        if len(specs) >= ctx.config.max_routes_per_subnet:
            raise CapacityExceeded(
                f"subnet {subnet.name}: more than {ctx.config.max_routes_per_subnet} routes"
            )
        port, gateway = hop
        specs.append(RouteSpec(
            naming.subnet_route(subnet.name, entry.target, destination),
            {"src": source, "dst": destination, "target": entry.target, "port": port.id, "gateway": gateway},
        ))
    return specs


def sync_subnet_routes(ctx: ReconciliationContext, vpc: MidoVpc, subnet: MidoSubnet) -> bool:
    """
    Re-parse the route table and reconcile the router routes of one subnet,
    matching on (destination, target). Returns True when anything changed.
    """
    _require_present(subnet, f"subnet {subnet.name}")
    ops = ctx.ops
    router = vpc.midos[VpcSlot.VPCRT]
    wanted = {(s.props["dst"], s.props["target"]): s for s in parse_subnet_routes(ctx, vpc, subnet)}

    changed = False
    kept: Dict[Tuple[str, str], BackendObject] = {}
    prefix = naming.subnet_route_prefix(subnet.name)
    for route in ops.list(Kind.ROUTE, router.id):
        if not route.name.startswith(prefix):
            continue
        key = (route.props.get("dst"), route.props.get("target"))
        spec = wanted.get(key)
        if spec is None or key in kept or route.name != spec.name or route.props != spec.props:
            ops.delete(route)
            changed = True
        else:
            kept[key] = route
    for key, spec in wanted.items():
        if key not in kept:
            kept[key] = ops.create(Kind.ROUTE, spec.name, router.id, spec.props)
            changed = True
    subnet.routes = list(kept.values())
    return changed


# ============================================================================
# NAT gateway
# ============================================================================

def create_natgateway(ctx: ReconciliationContext, vpc: MidoVpc, subnet: MidoSubnet, natg: MidoNatGateway):
    _require_present(ctx.core, "core")
    _require_present(vpc, f"vpc {vpc.name}")
    _require_present(subnet, f"subnet {subnet.name}")
    cfg, ops = ctx.config, ctx.ops
    core = ctx.core.midos
    gn = natg.gni
    parts = split_cidr(subnet.gni.cidr)
    vpc_cidr = split_cidr(vpc.gni.cidr).cidr
    uplink_ip = _assign_rtid(ctx, natg)
    m = natg.midos

    router = m[NatgSlot.RT] or ops.ensure(Kind.ROUTER, naming.natg_router(natg.name, natg.rtid))
    inchain = ops.ensure(Kind.CHAIN, naming.natg_inchain(natg.name))
    outchain = ops.ensure(Kind.CHAIN, naming.natg_outchain(natg.name))
    downlink = ops.ensure(Kind.PORT, naming.natg_downlink(natg.name), core[CoreSlot.EUCABR].id)
    uplink = ops.ensure(
        Kind.PORT,
        naming.natg_uplink(natg.name),
        router.id,
        {"ip": uplink_ip, "network": cfg.int_rtcidr, "inbound_filter": inchain.id, "outbound_filter": outchain.id},
    )
    ops.link(uplink, downlink)
    brport = ops.ensure(
        Kind.PORT,
        naming.natg_brport(natg.name),
        router.id,
        {"ip": gn.private_ip, "network": parts.cidr, "mac": gn.mac},
    )
    subnport = ops.ensure(Kind.PORT, naming.natg_subnet_port(natg.name), subnet.midos[SubnetSlot.BR].id)
    ops.link(brport, subnport)
    rules.sync_chain_rules(ops, inchain, rules.natg_inchain_rules(gn.public_ip))
    rules.sync_chain_rules(ops, outchain, rules.natg_outchain_rules(gn.public_ip, vpc_cidr))

    group = ops.ensure(Kind.IPADDRGROUP, naming.elip_pre_group(natg.name))
    public_ip = _sync_group_ips(ctx, group, {gn.public_ip})[gn.public_ip]
    elip_route = ops.ensure(
        Kind.ROUTE,
        naming.elip_route(natg.name),
        core[CoreSlot.EUCART].id,
        {"src": ANY, "dst": f"{gn.public_ip}/32", "port": core[CoreSlot.EUCART_BRPORT].id, "gateway": uplink_ip},
    )
    natg.routes = [
        ops.ensure(
            Kind.ROUTE,
            naming.natg_default_route(natg.name),
            router.id,
            {"src": ANY, "dst": ANY, "port": uplink.id, "gateway": core_router_ip(cfg)},
        ),
        ops.ensure(
            Kind.ROUTE,
            naming.natg_vpc_route(natg.name),
            router.id,
            {"src": ANY, "dst": vpc_cidr, "port": brport.id, "gateway": parts.gateway},
        ),
    ]

    m[NatgSlot.RT] = router
    m[NatgSlot.EUCABR_DOWNLINK] = downlink
    m[NatgSlot.RT_UPLINK] = uplink
    m[NatgSlot.RT_BRPORT] = brport
    m[NatgSlot.SUBNBR_RTPORT] = subnport
    m[NatgSlot.ELIP_PRE_IPADDRGROUP] = group
    m[NatgSlot.ELIP_PRE_IPADDRGROUP_IP] = public_ip
    m[NatgSlot.ELIP_ROUTE] = elip_route
    m[NatgSlot.RT_INCHAIN] = inchain
    m[NatgSlot.RT_OUTCHAIN] = outchain
    natg.update_presence()
    logger.info(f"nat gateway {natg.name} ready ({gn.public_ip} -> {gn.private_ip})")


def delete_natgateway(ctx: ReconciliationContext, natg: MidoNatGateway):
    for route in natg.routes:
        ctx.ops.delete(route)
    natg.routes = []
    _delete_slots(ctx, natg, reversed(list(NatgSlot)))
    _release_rtid(ctx, natg)
    natg.update_presence()
    logger.info(f"nat gateway {natg.name} deleted")


# ============================================================================
# Instance
# ============================================================================

def create_instance(ctx: ReconciliationContext, vpc: MidoVpc, subnet: MidoSubnet, inst: MidoInstance):
    _require_present(vpc, f"vpc {vpc.name}")
    _require_present(subnet, f"subnet {subnet.name}")
    ops = ctx.ops
    gi = inst.gni
    m = inst.midos

    prechain = ops.ensure(Kind.CHAIN, naming.instance_prechain(inst.name))
    postchain = ops.ensure(Kind.CHAIN, naming.instance_postchain(inst.name))
    port = ops.ensure(
        Kind.PORT,
        naming.instance_port(inst.name),
        subnet.midos[SubnetSlot.BR].id,
        {"ip": gi.private_ip, "mac": gi.mac, "inbound_filter": prechain.id, "outbound_filter": postchain.id},
    )
    pre_group = ops.ensure(Kind.IPADDRGROUP, naming.elip_pre_group(inst.name))
    post_group = ops.ensure(Kind.IPADDRGROUP, naming.elip_post_group(inst.name))

    m[InstanceSlot.PRECHAIN] = prechain
    m[InstanceSlot.POSTCHAIN] = postchain
    m[InstanceSlot.VPCBR_VMPORT] = port
    m[InstanceSlot.ELIP_PRE_IPADDRGROUP] = pre_group
    m[InstanceSlot.ELIP_POST_IPADDRGROUP] = post_group
    inst.privip = gi.private_ip
    inst.update_presence()
    logger.info(f"instance {inst.name} ready on {subnet.name} ({gi.private_ip})")


def connect_instance(ctx: ReconciliationContext, subnet: MidoSubnet, inst: MidoInstance):
    """DHCP entry and host binding of an instance port."""
    _require_present(inst, f"instance {inst.name}")
    ops = ctx.ops
    gi = inst.gni
    m = inst.midos

    m[InstanceSlot.VPCBR_DHCPHOST] = ops.ensure(
        Kind.DHCP_HOST, inst.name, subnet.midos[SubnetSlot.BR_DHCP].id, {"mac": gi.mac, "ip": gi.private_ip}
    )
    if not gi.node:
        ops.delete(m[InstanceSlot.VMHOST])
        m.clear(InstanceSlot.VMHOST)
        inst.host_changed = False
        return
    host = ops.find(Kind.HOST, gi.node)
    if host is None:
        ctx.report.log_warning(
            f"instance {inst.name}: node {gi.node} is not registered", {"kind": "instance", "name": inst.name}
        )
        return
    m[InstanceSlot.VMHOST] = _ensure_binding(
        ctx, m[InstanceSlot.VPCBR_VMPORT], host, naming.instance_iface(inst.name)
    )
    inst.host_changed = False
    logger.info(f"instance {inst.name} bound to {gi.node}")


def disconnect_instance(ctx: ReconciliationContext, inst: MidoInstance):
    _delete_slots(ctx, inst, (InstanceSlot.VMHOST, InstanceSlot.VPCBR_DHCPHOST))


def connect_elip(ctx: ReconciliationContext, vpc: MidoVpc, inst: MidoInstance):
    """Map the model public IP onto the instance private IP."""
    _require_present(ctx.core, "core")
    _require_present(vpc, f"vpc {vpc.name}")
    _require_present(inst, f"instance {inst.name}")
    ops = ctx.ops
    core = ctx.core.midos
    gi = inst.gni
    m = inst.midos
    public_ip = gi.public_ip
    uplink = vpc.midos[VpcSlot.VPCRT_UPLINK]
    uplink_ip = uplink.props.get("ip") or router_uplink_ip(ctx.config, vpc.rtid)

    pre_group = m[InstanceSlot.ELIP_PRE_IPADDRGROUP]
    post_group = m[InstanceSlot.ELIP_POST_IPADDRGROUP]
    m[InstanceSlot.ELIP_PRE_IPADDRGROUP_IP] = _sync_group_ips(ctx, pre_group, {public_ip})[public_ip]
    m[InstanceSlot.ELIP_POST_IPADDRGROUP_IP] = _sync_group_ips(ctx, post_group, {gi.private_ip})[gi.private_ip]
    m[InstanceSlot.ELIP_PRE] = rules.ensure_rule(
        ops,
        vpc.midos[VpcSlot.VPCRT_PREELIPCHAIN],
        rules.elip_dnat_rule(naming.elip_pre_group(inst.name), pre_group.id, gi.private_ip),
    )
    m[InstanceSlot.ELIP_POST] = rules.ensure_rule(
        ops,
        vpc.midos[VpcSlot.VPCRT_UPLINK_POSTCHAIN],
        rules.elip_snat_rule(naming.elip_post_group(inst.name), post_group.id, public_ip),
    )
    m[InstanceSlot.ELIP_ROUTE] = ops.ensure(
        Kind.ROUTE,
        naming.elip_route(inst.name),
        core[CoreSlot.EUCART].id,
        {"src": ANY, "dst": f"{public_ip}/32", "port": core[CoreSlot.EUCART_BRPORT].id, "gateway": uplink_ip},
    )
    inst.pubip = public_ip
    inst.pubip_changed = False
    logger.info(f"instance {inst.name} elastic ip {public_ip} connected")


def disconnect_elip(ctx: ReconciliationContext, inst: MidoInstance):
    _delete_slots(ctx, inst, (
        InstanceSlot.ELIP_ROUTE,
        InstanceSlot.ELIP_POST,
        InstanceSlot.ELIP_PRE,
        InstanceSlot.ELIP_POST_IPADDRGROUP_IP,
        InstanceSlot.ELIP_PRE_IPADDRGROUP_IP,
    ))
    vpc = ctx.parent_vpc(inst)
    if vpc is not None:
        # copies left behind by an interrupted run are not in the slot table
        rules.delete_rules_named(ctx.ops, vpc.midos[VpcSlot.VPCRT_PREELIPCHAIN], naming.elip_pre_group(inst.name))
        rules.delete_rules_named(ctx.ops, vpc.midos[VpcSlot.VPCRT_UPLINK_POSTCHAIN], naming.elip_post_group(inst.name))
    for slot in (InstanceSlot.ELIP_PRE_IPADDRGROUP, InstanceSlot.ELIP_POST_IPADDRGROUP):
        group = inst.midos[slot]
        if group is not None:
            _sync_group_ips(ctx, group, set())
    if inst.pubip:
        logger.info(f"instance {inst.name} elastic ip {inst.pubip} disconnected")
    inst.pubip = None
    inst.pubip_changed = False


def sync_instance_chains(ctx: ReconciliationContext, inst: MidoInstance) -> bool:
    """Rewrite the instance pre/post chains when their rules differ from the model."""
    _require_present(inst, f"instance {inst.name}")
    gi = inst.gni
    m = inst.midos

    groups: List[MidoSecurityGroup] = []
    for name in gi.security_groups:
        sg = ctx.secgroups.get(name)
        if sg is None or not (sg.gnipresent and sg.midopresent):
            ctx.report.log_warning(
                f"instance {inst.name}: security group {name} has no backend objects",
                {"kind": "instance", "name": inst.name},
            )
            continue
        groups.append(sg)

    mdgroup = ctx.core.midos[CoreSlot.METADATA_IPADDRGROUP]
    pre_rules = rules.instance_prechain_rules(
        gi.private_ip,
        gi.srcdst_check and not ctx.config.disable_l2_isolation,
        mdgroup.id if mdgroup else None,
        [sg.midos[SgSlot.EGRESS] for sg in groups],
    )
    post_rules = rules.instance_postchain_rules([sg.midos[SgSlot.INGRESS] for sg in groups])
    pre_changed = rules.sync_chain_rules(ctx.ops, m[InstanceSlot.PRECHAIN], pre_rules)
    post_changed = rules.sync_chain_rules(ctx.ops, m[InstanceSlot.POSTCHAIN], post_rules)
    inst.srcdst_changed = inst.sg_changed = False
    return pre_changed or post_changed


def delete_instance(ctx: ReconciliationContext, inst: MidoInstance):
    disconnect_elip(ctx, inst)
    disconnect_instance(ctx, inst)
    _delete_slots(ctx, inst, (
        InstanceSlot.ELIP_POST_IPADDRGROUP,
        InstanceSlot.ELIP_PRE_IPADDRGROUP,
        InstanceSlot.VPCBR_VMPORT,
        InstanceSlot.POSTCHAIN,
        InstanceSlot.PRECHAIN,
    ))
    inst.privip = None
    inst.host_changed = inst.srcdst_changed = inst.sg_changed = False
    inst.update_presence()
    logger.info(f"instance {inst.name} deleted")


# ============================================================================
# Security group
# ============================================================================

def create_secgroup(ctx: ReconciliationContext, sg: MidoSecurityGroup):
    ops = ctx.ops
    m = sg.midos
    m[SgSlot.INGRESS] = ops.ensure(Kind.CHAIN, naming.sg_ingress(sg.name))
    m[SgSlot.EGRESS] = ops.ensure(Kind.CHAIN, naming.sg_egress(sg.name))
    m[SgSlot.IAGPRIV] = ops.ensure(Kind.IPADDRGROUP, naming.sg_priv_group(sg.name))
    m[SgSlot.IAGPUB] = ops.ensure(Kind.IPADDRGROUP, naming.sg_pub_group(sg.name))
    m[SgSlot.IAGALL] = ops.ensure(Kind.IPADDRGROUP, naming.sg_all_group(sg.name))
    sg.update_presence()
    logger.info(f"security group {sg.name} ready")


def sync_secgroup_members(ctx: ReconciliationContext, sg: MidoSecurityGroup) -> bool:
    """Keep the private/public/all address groups equal to the model membership."""
    _require_present(sg, f"security group {sg.name}")
    m = sg.midos
    members = ctx.gni.secgroup_members(sg.name)
    private = {i.private_ip for i in members}
    public = {i.public_ip for i in members if i.public_ip}

    sg.midopresent_privips, priv_changed = _sync_presence(ctx, m[SgSlot.IAGPRIV], sg.midopresent_privips, private)
    sg.midopresent_pubips, pub_changed = _sync_presence(ctx, m[SgSlot.IAGPUB], sg.midopresent_pubips, public)
    sg.midopresent_allips, all_changed = _sync_presence(
        ctx, m[SgSlot.IAGALL], sg.midopresent_allips, private | public
    )
    sg.interfaces_changed = False
    return priv_changed or pub_changed or all_changed


def _secgroup_all_group_id(ctx: ReconciliationContext, name: str) -> Optional[str]:
    sg = ctx.secgroups.get(name)
    if sg is None or not (sg.gnipresent and sg.midopresent):
        return None
    return sg.midos[SgSlot.IAGALL].id


def sync_secgroup_rules(ctx: ReconciliationContext, sg: MidoSecurityGroup) -> bool:
    _require_present(sg, f"security group {sg.name}")
    m = sg.midos

    def resolve(name: str) -> Optional[str]:
        return _secgroup_all_group_id(ctx, name)

    ingress = rules.translate_secgroup_rules(sg.gni, rules.RuleDirection.INGRESS, resolve, ctx.report)
    egress = rules.translate_secgroup_rules(sg.gni, rules.RuleDirection.EGRESS, resolve, ctx.report)
    sg.ingress_changed = rules.sync_chain_rules(ctx.ops, m[SgSlot.INGRESS], ingress)
    sg.egress_changed = rules.sync_chain_rules(ctx.ops, m[SgSlot.EGRESS], egress)
    return sg.ingress_changed or sg.egress_changed


def delete_secgroup(ctx: ReconciliationContext, sg: MidoSecurityGroup):
    """Drop references held by instances and other groups, then the group itself."""
    ops = ctx.ops
    m = sg.midos
    chain_ids = {c.id for c in (m[SgSlot.INGRESS], m[SgSlot.EGRESS]) if c is not None}
    group_ids = {g.id for g in (m[SgSlot.IAGPRIV], m[SgSlot.IAGPUB], m[SgSlot.IAGALL]) if g is not None}

    for inst in ctx.all_instances():
        for chain in (inst.midos[InstanceSlot.PRECHAIN], inst.midos[InstanceSlot.POSTCHAIN]):
            if chain is None:
                continue
            for rule in ops.list(Kind.RULE, chain.id):
                if rule.props.get("jump_chain") in chain_ids:
                    ops.delete(rule)
                    inst.sg_changed = True
    for other in ctx.secgroups.values():
        if other is sg:
            continue
        for chain in (other.midos[SgSlot.INGRESS], other.midos[SgSlot.EGRESS]):
            if chain is None:
                continue
            for rule in ops.list(Kind.RULE, chain.id):
                if group_ids & {rule.props.get("ip_addr_group_src"), rule.props.get("ip_addr_group_dst")}:
                    ops.delete(rule)

    _delete_slots(ctx, sg, reversed(list(SgSlot)))
    sg.midopresent_privips = {}
    sg.midopresent_pubips = {}
    sg.midopresent_allips = {}
    sg.update_presence()
    logger.info(f"security group {sg.name} deleted")
