# File: vpcmido/reconciler/rules.py
"""
Rule translator.

Turns model-level policy into ordered backend filter rules:
- security-group rules into accept rules of the group's ingress/egress chain
- instance pre/post chains (source check, established, metadata, jumps, drop)
- elastic-IP DNAT/SNAT and NAT gateway SNAT / reverse-SNAT rules

Rule positions are explicit. Chains owned by one entity are rebuilt in full
when their ordered rule list differs; rules in shared chains are kept by name.
"""

import ipaddress
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from vpcmido.backend.base import BackendObject, Kind
from vpcmido.backend.ops import MidoOps
from vpcmido.diagnostic_logger import DiagnosticLogger
from vpcmido.errors import MalformedCIDR, MalformedInput, UnsupportedRule
from vpcmido.gni import GniRule, GniSecurityGroup

logger = logging.getLogger(__name__)

PROTOCOL_NUMBERS = {"tcp": 6, "udp": 17, "icmp": 1}
ALL_PROTOCOLS = ("-1", "all")
PORT_MIN, PORT_MAX = 0, 65535
ICMP_MAX = 255

# Rule names inside instance chains
SRCDST_RULE = "srcdst"
ESTABLISHED_RULE = "established"
METADATA_RULE = "metadata"
DROP_RULE = "drop"


class RuleDirection(Enum):
    INGRESS = "ingress"
    EGRESS = "egress"


@dataclass
class RuleSpec:
    """One desired backend rule: its name and its full property set."""

    name: str
    props: Dict[str, Any]

    def matches(self, rule: BackendObject) -> bool:
        return rule.name == self.name and rule.props == self.props


@dataclass(frozen=True)
class ParsedRule:
    direction: RuleDirection
    protocol: Optional[int] = None
    tp_src: Optional[Tuple[int, int]] = None
    tp_dst: Optional[Tuple[int, int]] = None
    cidr: Optional[str] = None
    group: Optional[str] = None


# ============================================================================
# Security-group rules
# ============================================================================

def _parse_protocol(raw: str) -> Optional[int]:
    value = str(raw).strip().lower()
    if value in ALL_PROTOCOLS:
        return None
    if value in PROTOCOL_NUMBERS:
        return PROTOCOL_NUMBERS[value]
    try:
        number = int(value)
    except ValueError:
        raise UnsupportedRule(f"unknown protocol {raw!r}")
    if number == -1:
        return None
    if not 0 <= number <= 255:
        raise UnsupportedRule(f"protocol number {number} out of range")
    return number


def _port_range(from_port: Optional[int], to_port: Optional[int]) -> Tuple[int, int]:
    if from_port in (None, -1) and to_port in (None, -1):
        return PORT_MIN, PORT_MAX
    start = from_port if from_port is not None else to_port
    end = to_port if to_port is not None else from_port
    if not (PORT_MIN <= start <= PORT_MAX and PORT_MIN <= end <= PORT_MAX):
        raise UnsupportedRule(f"port range {start}-{end} out of range")
    if start > end:
        raise UnsupportedRule(f"port range {start}-{end} is inverted")
    return start, end


def _icmp_match(value: Optional[int], what: str) -> Optional[Tuple[int, int]]:
    if value is None or value == -1:
        return None
    if not 0 <= value <= ICMP_MAX:
        raise UnsupportedRule(f"icmp {what} {value} out of range")
    return value, value


def _normalize_cidr(cidr: str) -> str:
    try:
        return str(ipaddress.IPv4Network(str(cidr).strip(), strict=False))
    except ValueError as e:
        raise MalformedCIDR(f"invalid rule CIDR {cidr!r}: {e}") from e


def parse_secgroup_rule(rule: GniRule, direction: RuleDirection) -> ParsedRule:
    """
    Validate one model rule.

    tcp/udp ports become a destination port range; icmp type/code map onto
    the source/destination match fields the backend uses for icmp. Ports of
    any other protocol are ignored. A rule matches either a remote CIDR or
    a remote group; a rule with neither is malformed.
    """
    protocol = _parse_protocol(rule.protocol)
    tp_src = tp_dst = None
    if protocol in (PROTOCOL_NUMBERS["tcp"], PROTOCOL_NUMBERS["udp"]):
        tp_dst = _port_range(rule.from_port, rule.to_port)
    elif protocol == PROTOCOL_NUMBERS["icmp"]:
        # icmp type falls back to from_port, code to to_port
        icmp_type = rule.icmp_type if rule.icmp_type is not None else rule.from_port
        icmp_code = rule.icmp_code if rule.icmp_code is not None else rule.to_port
        tp_src = _icmp_match(icmp_type, "type")
        tp_dst = _icmp_match(icmp_code, "code")

    if rule.group:
        return ParsedRule(direction, protocol, tp_src, tp_dst, group=rule.group)
    if not rule.cidr:
        raise MalformedInput("rule has neither a cidr nor a group")
    return ParsedRule(direction, protocol, tp_src, tp_dst, cidr=_normalize_cidr(rule.cidr))


def secgroup_rule_props(parsed: ParsedRule, group_id: Optional[str] = None) -> Dict[str, Any]:
    """Backend properties of an accept rule; direction picks src or dst matching."""
    props: Dict[str, Any] = {"type": "accept"}
    if parsed.protocol is not None:
        props["nw_proto"] = parsed.protocol
    if parsed.tp_src is not None:
        props["tp_src"] = list(parsed.tp_src)
    if parsed.tp_dst is not None:
        props["tp_dst"] = list(parsed.tp_dst)

    if parsed.direction == RuleDirection.INGRESS:
        nw_key, group_key = "nw_src", "ip_addr_group_src"
    else:
        nw_key, group_key = "nw_dst", "ip_addr_group_dst"
    if parsed.group is not None:
        props[group_key] = group_id
    elif parsed.cidr and parsed.cidr != "0.0.0.0/0":
        props[nw_key] = parsed.cidr
    return props


def translate_secgroup_rules(
    sg: GniSecurityGroup,
    direction: RuleDirection,
    resolve_group: Callable[[str], Optional[str]],
    report: Optional[DiagnosticLogger] = None,
) -> List[RuleSpec]:
    """
    Ordered rules for one chain of a security group. Rules that cannot be
    expressed, or that reference a group without backend objects, are
    skipped with a diagnostic.
    """
    source = sg.ingress_rules if direction == RuleDirection.INGRESS else sg.egress_rules
    specs: List[RuleSpec] = []
    for index, rule in enumerate(source):
        context = {"kind": "security_group", "name": sg.name, "direction": direction.value, "rule": index}
        try:
            parsed = parse_secgroup_rule(rule, direction)
        except MalformedInput as e:
            _warn(report, f"skipping rule of {sg.name}: {e}", context)
            continue
        group_id = None
        if parsed.group is not None:
            group_id = resolve_group(parsed.group)
            if group_id is None:
                _warn(report, f"skipping rule of {sg.name}: group {parsed.group} has no backend objects", context)
                continue
        specs.append(RuleSpec(f"{direction.value}_{len(specs) + 1}", secgroup_rule_props(parsed, group_id)))
    return specs


def _warn(report: Optional[DiagnosticLogger], message: str, context: Dict[str, Any]):
    if report is not None:
        report.log_warning(message, context)
    else:
        logger.warning(message)


# ============================================================================
# Instance chains
# ============================================================================

def jump_rule(chain: BackendObject) -> RuleSpec:
    return RuleSpec(chain.name, {"type": "jump", "jump_chain": chain.id})


def instance_prechain_rules(
    private_ip: str,
    srcdst_check: bool,
    metadata_group_id: Optional[str],
    egress_chains: Sequence[BackendObject],
) -> List[RuleSpec]:
    """Rules for traffic leaving the instance, evaluated in order."""
    rules: List[RuleSpec] = []
    if srcdst_check:
        rules.append(RuleSpec(SRCDST_RULE, {"type": "drop", "nw_src": f"{private_ip}/32", "inv_nw_src": True}))
    rules.append(RuleSpec(ESTABLISHED_RULE, {"type": "accept", "match_return_flow": True}))
    if metadata_group_id:
        rules.append(RuleSpec(METADATA_RULE, {"type": "accept", "ip_addr_group_dst": metadata_group_id}))
    rules.extend(jump_rule(chain) for chain in egress_chains)
    rules.append(RuleSpec(DROP_RULE, {"type": "drop"}))
    return rules


def instance_postchain_rules(ingress_chains: Sequence[BackendObject]) -> List[RuleSpec]:
    """Rules for traffic entering the instance, evaluated in order."""
    rules = [RuleSpec(ESTABLISHED_RULE, {"type": "accept", "match_return_flow": True})]
    rules.extend(jump_rule(chain) for chain in ingress_chains)
    rules.append(RuleSpec(DROP_RULE, {"type": "drop"}))
    return rules


def core_infilter_rules(metadata_group_id: str) -> List[RuleSpec]:
    # the metadata address is never reachable from outside the cloud
    return [RuleSpec("metadata_drop", {"type": "drop", "ip_addr_group_dst": metadata_group_id})]


# ============================================================================
# NAT policy
# ============================================================================

def _nat_target(address: str, port_from: int = 0, port_to: int = 0) -> Dict[str, Any]:
    return {"address_from": address, "address_to": address, "port_from": port_from, "port_to": port_to}


def elip_dnat_rule(name: str, pre_group_id: str, private_ip: str) -> RuleSpec:
    """Public address (pre group) to the instance private address."""
    return RuleSpec(name, {
        "type": "dnat",
        "ip_addr_group_dst": pre_group_id,
        "nat_targets": [_nat_target(private_ip)],
        "flow_action": "accept",
    })


def elip_snat_rule(name: str, post_group_id: str, public_ip: str) -> RuleSpec:
    """Instance private address (post group) to its public address."""
    return RuleSpec(name, {
        "type": "snat",
        "ip_addr_group_src": post_group_id,
        "nat_targets": [_nat_target(public_ip)],
        "flow_action": "accept",
    })


def natg_inchain_rules(public_ip: str) -> List[RuleSpec]:
    return [
        RuleSpec("rev_snat", {"type": "rev_snat", "nw_dst": f"{public_ip}/32", "flow_action": "accept"}),
        RuleSpec(DROP_RULE, {"type": "drop", "nw_dst": f"{public_ip}/32"}),
    ]


def natg_outchain_rules(public_ip: str, vpc_cidr: str) -> List[RuleSpec]:
    return [
        RuleSpec("snat", {
            "type": "snat",
            "nw_src": vpc_cidr,
            "nat_targets": [_nat_target(public_ip, 1024, 65535)],
            "flow_action": "accept",
        }),
    ]


# ============================================================================
# Applying rules
# ============================================================================

def sync_chain_rules(ops: MidoOps, chain: BackendObject, desired: Sequence[RuleSpec]) -> bool:
    """
    Make the chain hold exactly `desired`, in order. The chain is only
    touched when its current ordered rule list differs. Returns True when
    rules were rewritten.
    """
    current = ops.list(Kind.RULE, chain.id)
    if len(current) == len(desired) and all(spec.matches(rule) for spec, rule in zip(desired, current)):
        return False

    logger.info(f"rewriting {len(desired)} rules of chain {chain.name}")
    for rule in current:
        ops.delete(rule)
    for position, spec in enumerate(desired, start=1):
        ops.create(Kind.RULE, spec.name, chain.id, spec.props, position=position)
    return True


def ensure_rule(ops: MidoOps, chain: BackendObject, spec: RuleSpec, position: Optional[int] = None) -> BackendObject:
    """
    Keep one named rule in a chain shared with other entities. A rule with
    stale properties is replaced; extra copies are removed.
    """
    existing = [r for r in ops.list(Kind.RULE, chain.id) if r.name == spec.name]
    keep = next((r for r in existing if spec.matches(r)), None)
    for rule in existing:
        if rule is not keep:
            ops.delete(rule)
    if keep is not None:
        return keep
    return ops.create(Kind.RULE, spec.name, chain.id, spec.props, position=position)


def delete_rules_named(ops: MidoOps, chain: Optional[BackendObject], name: str) -> int:
    if chain is None:
        return 0
    deleted = 0
    for rule in ops.list(Kind.RULE, chain.id):
        if rule.name == name and ops.delete(rule):
            deleted += 1
    return deleted
