# File: vpcmido/gni.py
"""
Global network info (GNI): the read-only desired-state network model.

The driver never mutates a GlobalNetworkInfo. It can be built from a plain
mapping (YAML/JSON document) or read from the SQL desired-state store.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import yaml

from vpcmido.errors import MalformedInput


@dataclass(frozen=True)
class GniRule:
    protocol: str = "-1"
    from_port: Optional[int] = None
    to_port: Optional[int] = None
    icmp_type: Optional[int] = None
    icmp_code: Optional[int] = None
    cidr: Optional[str] = None
    group: Optional[str] = None


@dataclass(frozen=True)
class GniSecurityGroup:
    name: str
    ingress_rules: Tuple[GniRule, ...] = ()
    egress_rules: Tuple[GniRule, ...] = ()


@dataclass(frozen=True)
class GniRouteEntry:
    destination: str
    target: str


@dataclass(frozen=True)
class GniRouteTable:
    name: str
    entries: Tuple[GniRouteEntry, ...] = ()


@dataclass(frozen=True)
class GniSubnet:
    name: str
    vpc: str
    cidr: str
    route_table: Optional[str] = None


@dataclass(frozen=True)
class GniNatGateway:
    name: str
    vpc: str
    subnet: str
    public_ip: str
    private_ip: str
    mac: Optional[str] = None


@dataclass(frozen=True)
class GniVpc:
    name: str
    cidr: str
    subnets: Tuple[GniSubnet, ...] = ()
    route_tables: Tuple[GniRouteTable, ...] = ()
    nat_gateways: Tuple[GniNatGateway, ...] = ()

    def find_subnet(self, name: str) -> Optional[GniSubnet]:
        return next((s for s in self.subnets if s.name == name), None)

    def find_route_table(self, name: Optional[str]) -> Optional[GniRouteTable]:
        if not name:
            return None
        return next((r for r in self.route_tables if r.name == name), None)

    def find_nat_gateway(self, name: str) -> Optional[GniNatGateway]:
        return next((n for n in self.nat_gateways if n.name == name), None)


@dataclass(frozen=True)
class GniInstance:
    """One instance network interface."""

    name: str
    vpc: str
    subnet: str
    private_ip: str
    node: Optional[str] = None
    public_ip: Optional[str] = None
    mac: Optional[str] = None
    security_groups: Tuple[str, ...] = ()
    srcdst_check: bool = True


@dataclass(frozen=True)
class GlobalNetworkInfo:
    vpcs: Tuple[GniVpc, ...] = ()
    instances: Tuple[GniInstance, ...] = ()
    security_groups: Tuple[GniSecurityGroup, ...] = ()
    instance_dns_domain: str = "eucalyptus.internal"
    instance_dns_servers: Tuple[str, ...] = field(default_factory=tuple)
    # messages for model items dropped while loading
    skipped: Tuple[str, ...] = ()

    def find_vpc(self, name: str) -> Optional[GniVpc]:
        return next((v for v in self.vpcs if v.name == name), None)

    def find_subnet(self, vpc_name: str, subnet_name: str) -> Optional[GniSubnet]:
        vpc = self.find_vpc(vpc_name)
        return vpc.find_subnet(subnet_name) if vpc else None

    def find_instance(self, name: str) -> Optional[GniInstance]:
        return next((i for i in self.instances if i.name == name), None)

    def find_secgroup(self, name: str) -> Optional[GniSecurityGroup]:
        return next((g for g in self.security_groups if g.name == name), None)

    def find_nat_gateway(self, vpc_name: str, name: str) -> Optional[GniNatGateway]:
        vpc = self.find_vpc(vpc_name)
        return vpc.find_nat_gateway(name) if vpc else None

    def instances_in_subnet(self, vpc_name: str, subnet_name: str) -> List[GniInstance]:
        return [i for i in self.instances if i.vpc == vpc_name and i.subnet == subnet_name]

    def secgroup_members(self, sg_name: str) -> List[GniInstance]:
        return [i for i in self.instances if sg_name in i.security_groups]


# ============================================================================
# Loaders
# ============================================================================
#
# A malformed item is dropped on its own: the loaders collect a message for
# each skipped VPC, subnet, route table, NAT gateway, instance, security group
# or rule in GlobalNetworkInfo.skipped and keep the rest of the document.

def _require(data: Dict[str, Any], key: str, what: str) -> Any:
    value = data.get(key)
    if value in (None, ""):
        raise MalformedInput(f"{what} is missing '{key}': {data!r}")
    return value


def _opt_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MalformedInput(f"expected an integer, got {value!r}")


def _collect(items: Optional[Iterable[Any]], loader: Callable[[Dict[str, Any]], Any], what: str,
             skipped: List[str]) -> tuple:
    loaded = []
    for item in items or []:
        if not isinstance(item, dict):
            skipped.append(f"skipping {what}: entry must be a mapping, got {item!r}")
            continue
        try:
            loaded.append(loader(item))
        except MalformedInput as e:
            skipped.append(f"skipping {what}: {e}")
    return tuple(loaded)


def rule_from_dict(data: Dict[str, Any]) -> GniRule:
    return GniRule(
        protocol=str(data.get("protocol", "-1")),
        from_port=_opt_int(data.get("from_port")),
        to_port=_opt_int(data.get("to_port")),
        icmp_type=_opt_int(data.get("icmp_type")),
        icmp_code=_opt_int(data.get("icmp_code")),
        cidr=data.get("cidr"),
        group=data.get("group"),
    )


def secgroup_from_dict(data: Dict[str, Any], skipped: Optional[List[str]] = None) -> GniSecurityGroup:
    skipped = [] if skipped is None else skipped
    name = _require(data, "name", "security group")
    return GniSecurityGroup(
        name=name,
        ingress_rules=_collect(data.get("ingress"), rule_from_dict, f"ingress rule of {name}", skipped),
        egress_rules=_collect(data.get("egress"), rule_from_dict, f"egress rule of {name}", skipped),
    )


def vpc_from_dict(data: Dict[str, Any], skipped: Optional[List[str]] = None) -> GniVpc:
    skipped = [] if skipped is None else skipped
    name = _require(data, "name", "vpc")
    cidr = _require(data, "cidr", "vpc")

    def subnet(s: Dict[str, Any]) -> GniSubnet:
        return GniSubnet(
            name=_require(s, "name", "subnet"),
            vpc=name,
            cidr=_require(s, "cidr", "subnet"),
            route_table=s.get("route_table"),
        )

    def route_entry(e: Dict[str, Any]) -> GniRouteEntry:
        return GniRouteEntry(destination=str(e.get("destination", "")), target=str(e.get("target", "")))

    def route_table(rt: Dict[str, Any]) -> GniRouteTable:
        rt_name = _require(rt, "name", "route table")
        return GniRouteTable(
            name=rt_name,
            entries=_collect(rt.get("routes"), route_entry, f"route of {name}/{rt_name}", skipped),
        )

    def nat_gateway(n: Dict[str, Any]) -> GniNatGateway:
        return GniNatGateway(
            name=_require(n, "name", "nat gateway"),
            vpc=name,
            subnet=_require(n, "subnet", "nat gateway"),
            public_ip=_require(n, "public_ip", "nat gateway"),
            private_ip=_require(n, "private_ip", "nat gateway"),
            mac=n.get("mac"),
        )

    return GniVpc(
        name=name,
        cidr=cidr,
        subnets=_collect(data.get("subnets"), subnet, f"subnet of {name}", skipped),
        route_tables=_collect(data.get("route_tables"), route_table, f"route table of {name}", skipped),
        nat_gateways=_collect(data.get("nat_gateways"), nat_gateway, f"nat gateway of {name}", skipped),
    )


def instance_from_dict(data: Dict[str, Any]) -> GniInstance:
    return GniInstance(
        name=_require(data, "name", "instance"),
        vpc=_require(data, "vpc", "instance"),
        subnet=_require(data, "subnet", "instance"),
        private_ip=_require(data, "private_ip", "instance"),
        node=data.get("node"),
        public_ip=data.get("public_ip") or None,
        mac=data.get("mac"),
        security_groups=tuple(data.get("security_groups", []) or []),
        srcdst_check=bool(data.get("srcdst_check", True)),
    )


def gni_from_dict(data: Optional[Dict[str, Any]]) -> GlobalNetworkInfo:
    """Build the model from a mapping; only a non-mapping document is rejected outright."""
    data = data or {}
    if not isinstance(data, dict):
        raise MalformedInput("network info document must be a mapping")
    skipped: List[str] = []
    vpcs = _collect(data.get("vpcs"), lambda v: vpc_from_dict(v, skipped), "vpc", skipped)
    instances = _collect(data.get("instances"), instance_from_dict, "instance", skipped)
    security_groups = _collect(
        data.get("security_groups"), lambda sg: secgroup_from_dict(sg, skipped), "security group", skipped
    )
    return GlobalNetworkInfo(
        vpcs=vpcs,
        instances=instances,
        security_groups=security_groups,
        instance_dns_domain=data.get("instance_dns_domain", "eucalyptus.internal"),
        instance_dns_servers=tuple(data.get("instance_dns_servers", []) or []),
        skipped=tuple(skipped),
    )


def load_gni_file(path: str) -> GlobalNetworkInfo:
    source = Path(path)
    if not source.exists():
        raise MalformedInput(f"network info file not found: {path}")
    try:
        data = yaml.safe_load(source.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise MalformedInput(f"failed to parse network info file {path}: {e}") from e
    return gni_from_dict(data)
