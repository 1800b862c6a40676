# File: vpcmido/reconciler/naming.py
"""
Backend naming convention.

Backend names are the only tags the driver relies on: they tie backend
objects to entities (VPC, subnet, instance, NAT gateway, security group) and
carry router IDs so the ID pool can be rebuilt from the backend alone.
Entity identifiers must not contain underscores.
"""

import re
from typing import Optional, Tuple

from vpcmido.backend.base import BackendObject, Kind

_ID = r"[^_\s]+"

# Core
EUCART = "eucart"
EUCABR = "eucabr"
EUCART_BRPORT = "eucart_brport"
EUCABR_RTPORT = "eucabr_rtport"
EUCABR_INFILTER = "ic_eucabr_infilter"
METADATA_IPADDRGROUP = "metadata_ip"
GWPORTGROUP = "eucapg"


def valid_identifier(name: str) -> bool:
    return bool(name) and re.fullmatch(_ID, name) is not None


def gw_port(host: str) -> str:
    return f"eucart_gw_{host}"


def gw_route(host: str) -> str:
    return f"eucart_gw_default_{host}"


def gw_member(host: str) -> str:
    return f"gw_{host}"


# VPC
def vpc_router(vpc: str, rtid: int) -> str:
    return f"vr_{vpc}_{rtid}"


def vpc_downlink(vpc: str) -> str:
    return f"vr_{vpc}_downlink"


def vpc_uplink(vpc: str) -> str:
    return f"vr_{vpc}_uplink"


def vpc_uplink_prechain(vpc: str) -> str:
    return f"ic_vr_{vpc}_uplink_pre"


def vpc_uplink_postchain(vpc: str) -> str:
    return f"ic_vr_{vpc}_uplink_post"


def vpc_preelip_chain(vpc: str) -> str:
    return f"ic_vr_{vpc}_preelip"


def vpc_preelip_jump(vpc: str) -> str:
    return f"vr_{vpc}_preelip_jump"


# Subnet
def subnet_bridge(vpc: str, subnet: str) -> str:
    return f"vb_{vpc}_{subnet}"


def subnet_rtport(subnet: str) -> str:
    return f"vb_{subnet}_rtport"


def subnet_vpcrt_brport(subnet: str) -> str:
    return f"vr_{subnet}_brport"


def subnet_dhcp(subnet: str) -> str:
    return f"dhcp_{subnet}"


def subnet_metaport(subnet: str) -> str:
    return f"vb_{subnet}_metaport"


def subnet_meta_iface(subnet: str) -> str:
    # host side of the metadata veth, bound to the subnet metadata port
    return f"vn2_{subnet}"[:15]


def is_meta_iface(name: str) -> bool:
    return name.startswith("vn2_")


def subnet_route_prefix(subnet: str) -> str:
    return f"rt_{subnet}_"


def subnet_route(subnet: str, target: str, destination: str) -> str:
    return f"{subnet_route_prefix(subnet)}{target}_{destination}"


# Instance
def instance_port(inst: str) -> str:
    return f"vp_{inst}"


def instance_prechain(inst: str) -> str:
    return f"ic_{inst}_prechain"


def instance_postchain(inst: str) -> str:
    return f"ic_{inst}_postchain"


def elip_pre_group(name: str) -> str:
    return f"elip_pre_{name}"


def elip_post_group(name: str) -> str:
    return f"elip_post_{name}"


def elip_route(name: str) -> str:
    return f"elip_{name}"


def instance_iface(inst: str) -> str:
    return f"vn_{inst}"[:15]


# NAT gateway
def natg_router(natg: str, rtid: int) -> str:
    return f"natr_{natg}_{rtid}"


def natg_downlink(natg: str) -> str:
    return f"natr_{natg}_downlink"


def natg_uplink(natg: str) -> str:
    return f"natr_{natg}_uplink"


def natg_brport(natg: str) -> str:
    return f"natr_{natg}_brport"


def natg_subnet_port(natg: str) -> str:
    return f"np_{natg}"


def natg_inchain(natg: str) -> str:
    return f"ic_natr_{natg}_in"


def natg_outchain(natg: str) -> str:
    return f"ic_natr_{natg}_out"


def natg_default_route(natg: str) -> str:
    return f"natr_{natg}_default"


def natg_vpc_route(natg: str) -> str:
    return f"natr_{natg}_vpc"


# Security group
def sg_ingress(sg: str) -> str:
    return f"sg_ingress_{sg}"


def sg_egress(sg: str) -> str:
    return f"sg_egress_{sg}"


def sg_priv_group(sg: str) -> str:
    return f"sg_priv_{sg}"


def sg_pub_group(sg: str) -> str:
    return f"sg_pub_{sg}"


def sg_all_group(sg: str) -> str:
    return f"sg_all_{sg}"


# ============================================================================
# Parsers
# ============================================================================

_VPC_ROUTER = re.compile(rf"^vr_(?P<vpc>{_ID})_(?P<rtid>\d+)$")
_NATG_ROUTER = re.compile(rf"^natr_(?P<natg>{_ID})_(?P<rtid>\d+)$")
_SUBNET_BRIDGE = re.compile(rf"^vb_(?P<vpc>{_ID})_(?P<subnet>{_ID})$")
_INSTANCE_PORT = re.compile(rf"^vp_(?P<inst>{_ID})$")
_NATG_SUBNET_PORT = re.compile(rf"^np_(?P<natg>{_ID})$")
_SECGROUP_OBJECT = re.compile(rf"^sg_(ingress|egress|priv|pub|all)_(?P<sg>{_ID})$")
_GW_PORT = re.compile(r"^eucart_gw_(?P<host>.+)$")

_MANAGED_TOP_LEVEL = {
    Kind.ROUTER: (re.compile(rf"^({EUCART}|vr_{_ID}_\d+|natr_{_ID}_\d+)$"),),
    Kind.BRIDGE: (re.compile(rf"^({EUCABR}|vb_{_ID}_{_ID})$"),),
    Kind.CHAIN: (
        re.compile(rf"^({EUCABR_INFILTER}|ic_vr_{_ID}_(uplink_pre|uplink_post|preelip))$"),
        re.compile(rf"^ic_natr_{_ID}_(in|out)$"),
        re.compile(rf"^ic_{_ID}_(prechain|postchain)$"),
        re.compile(rf"^sg_(ingress|egress)_{_ID}$"),
    ),
    Kind.IPADDRGROUP: (
        re.compile(rf"^({METADATA_IPADDRGROUP}|elip_(pre|post)_{_ID}|sg_(priv|pub|all)_{_ID})$"),
    ),
    Kind.PORTGROUP: (re.compile(rf"^{GWPORTGROUP}$"),),
}


def parse_vpc_router(name: str) -> Optional[Tuple[str, int]]:
    m = _VPC_ROUTER.match(name)
    return (m.group("vpc"), int(m.group("rtid"))) if m else None


def parse_natg_router(name: str) -> Optional[Tuple[str, int]]:
    m = _NATG_ROUTER.match(name)
    return (m.group("natg"), int(m.group("rtid"))) if m else None


def parse_subnet_bridge(name: str) -> Optional[Tuple[str, str]]:
    m = _SUBNET_BRIDGE.match(name)
    return (m.group("vpc"), m.group("subnet")) if m else None


def parse_instance_port(name: str) -> Optional[str]:
    m = _INSTANCE_PORT.match(name)
    return m.group("inst") if m else None


def parse_natg_subnet_port(name: str) -> Optional[str]:
    m = _NATG_SUBNET_PORT.match(name)
    return m.group("natg") if m else None


def parse_secgroup_object(name: str) -> Optional[str]:
    m = _SECGROUP_OBJECT.match(name)
    return m.group("sg") if m else None


def parse_gw_port(name: str) -> Optional[str]:
    m = _GW_PORT.match(name)
    return m.group("host") if m else None


def is_managed(obj: BackendObject) -> bool:
    """True for top-level objects whose name follows the driver convention."""
    patterns = _MANAGED_TOP_LEVEL.get(obj.kind, ())
    return any(p.match(obj.name) for p in patterns)


def logical_identity(obj: BackendObject) -> Tuple[str, Optional[str], str]:
    """
    Key under which two backend objects count as the same logical object.
    Routers ignore the router ID suffix: two routers for one VPC are duplicates.
    """
    if obj.kind == Kind.ROUTER:
        parsed = parse_vpc_router(obj.name)
        if parsed:
            return ("vpc_router", None, parsed[0])
        parsed = parse_natg_router(obj.name)
        if parsed:
            return ("natg_router", None, parsed[0])
    return (obj.kind.value, obj.parent, obj.name)
