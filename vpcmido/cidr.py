# File: vpcmido/cidr.py
"""
CIDR and route-target parsing.

Pure helpers shared by the populator and the builder:
- split_cidr: network / prefix / gateway (+1) / second host (+2)
- classify_route_target: route-table target identifier classification
"""

import ipaddress
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from vpcmido.errors import MalformedCIDR


class RouteTarget(Enum):
    LOCAL = "local"
    INTERNET_GATEWAY = "internet_gateway"
    VIRTUAL_PRIVATE_GATEWAY = "virtual_private_gateway"
    ENI = "eni"
    PEERING = "peering"
    NAT_GATEWAY = "nat_gateway"
    INVALID = "invalid"


_TARGET_PATTERNS = (
    (re.compile(r"^igw-[0-9a-zA-Z]+$"), RouteTarget.INTERNET_GATEWAY),
    (re.compile(r"^vgw-[0-9a-zA-Z]+$"), RouteTarget.VIRTUAL_PRIVATE_GATEWAY),
    (re.compile(r"^eni-[0-9a-zA-Z]+$"), RouteTarget.ENI),
    (re.compile(r"^pcx-[0-9a-zA-Z]+$"), RouteTarget.PEERING),
    (re.compile(r"^nat-[0-9a-zA-Z]+$"), RouteTarget.NAT_GATEWAY),
)


@dataclass(frozen=True)
class CidrParts:
    network: str
    prefix_length: int
    gateway: str
    plus_two: str

    @property
    def cidr(self) -> str:
        return f"{self.network}/{self.prefix_length}"


def split_cidr(cidr: str) -> CidrParts:
    """
    Split an IPv4 CIDR into its network address, prefix length, gateway
    (first usable address) and second host (first usable + 1).

    Host bits are normalized away, so "10.0.0.7/24" splits like "10.0.0.0/24".
    Networks smaller than /30 cannot hold the reserved addresses and are rejected.
    """
    if not isinstance(cidr, str) or "/" not in cidr:
        raise MalformedCIDR(f"not a CIDR: {cidr!r}")
    try:
        net = ipaddress.IPv4Network(cidr.strip(), strict=False)
    except (ipaddress.AddressValueError, ipaddress.NetmaskValueError, ValueError) as e:
        raise MalformedCIDR(f"invalid CIDR {cidr!r}: {e}") from e
    if net.prefixlen > 30:
        raise MalformedCIDR(f"CIDR {cidr!r} too small for gateway reservation")
    base = net.network_address
    return CidrParts(
        network=str(base),
        prefix_length=net.prefixlen,
        gateway=str(base + 1),
        plus_two=str(base + 2),
    )


def classify_route_target(target: Optional[str]) -> RouteTarget:
    """Classify a route-table entry target. Never raises."""
    if not isinstance(target, str):
        return RouteTarget.INVALID
    target = target.strip()
    if target == "local":
        return RouteTarget.LOCAL
    for pattern, kind in _TARGET_PATTERNS:
        if pattern.match(target):
            return kind
    return RouteTarget.INVALID


def ip_in_cidr(ip: str, cidr: str) -> bool:
    try:
        return ipaddress.IPv4Address(ip) in ipaddress.IPv4Network(cidr, strict=False)
    except ValueError:
        return False


def offset_address(network: str, offset: int) -> str:
    return str(ipaddress.IPv4Address(network) + offset)
