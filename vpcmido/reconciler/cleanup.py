# File: vpcmido/reconciler/cleanup.py
"""
Duplicate/orphan cleanup and the administrative operations built on the
populated context: delete-by-identifier and inventory listing.

Only objects following the driver naming convention are ever considered.
Objects referenced by an entity slot are never deleted here.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from vpcmido.backend.base import TOP_LEVEL_KINDS, BackendObject, Kind
from vpcmido.errors import MalformedInput
from vpcmido.metrics import METRICS
from vpcmido.reconciler import build, naming
from vpcmido.reconciler.model import ReconciliationContext

logger = logging.getLogger(__name__)

# Child kinds owned by managed devices that can go stale on their own
_DEVICE_CHILD_KINDS = (Kind.PORT, Kind.ROUTE, Kind.DHCP)


@dataclass
class CleanupReport:
    check_only: bool
    duplicates: List[BackendObject] = field(default_factory=list)
    orphans: List[BackendObject] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    orphans_skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        def describe(objs: List[BackendObject]) -> List[Dict[str, Any]]:
            return [{"id": o.id, "kind": o.kind.value, "name": o.name} for o in objs]

        return {
            "check_only": self.check_only,
            "duplicates": describe(self.duplicates),
            "orphans": describe(self.orphans),
            "deleted": list(self.deleted),
            "orphans_skipped": self.orphans_skipped,
        }


def _managed_objects(ctx: ReconciliationContext) -> List[BackendObject]:
    """Managed top-level objects plus the ports/routes/DHCP of managed devices."""
    ops = ctx.ops
    objects: List[BackendObject] = []
    for kind in TOP_LEVEL_KINDS:
        objects.extend(o for o in ops.list(kind) if naming.is_managed(o))

    devices = [o for o in objects if o.kind in (Kind.ROUTER, Kind.BRIDGE)]
    for device in devices:
        for kind in _DEVICE_CHILD_KINDS:
            objects.extend(ops.list(kind, device.id))
    return objects


def find_duplicates(
    ctx: ReconciliationContext, objects: List[BackendObject], referenced: Set[str]
) -> List[BackendObject]:
    """
    Objects claiming an already claimed logical identity. The referenced
    object of each group survives, otherwise the first one listed.
    """
    groups: Dict[Tuple[str, Optional[str], str], List[BackendObject]] = {}
    for obj in objects:
        groups.setdefault(naming.logical_identity(obj), []).append(obj)

    extras: List[BackendObject] = []
    for identity, members in groups.items():
        if len(members) < 2:
            continue
        keep = next((o for o in members if o.id in referenced), members[0])
        for obj in members:
            if obj is keep or obj.id in referenced:
                continue
            logger.warning(f"duplicate {obj.kind.value} {obj.name} ({obj.id}), keeping {keep.id}")
            extras.append(obj)
    return extras


def find_orphans(
    ctx: ReconciliationContext,
    objects: List[BackendObject],
    referenced: Set[str],
    doomed: Set[str],
) -> List[BackendObject]:
    """Managed objects no entity references. Children of doomed parents go with them."""
    orphans: List[BackendObject] = []
    for obj in objects:
        if obj.id in referenced or obj.id in doomed:
            continue
        if obj.parent is not None and obj.parent in doomed:
            continue
        orphans.append(obj)
        doomed.add(obj.id)
    return orphans


def _release_router_id(ctx: ReconciliationContext, obj: BackendObject):
    if obj.kind != Kind.ROUTER:
        return
    parsed = naming.parse_vpc_router(obj.name) or naming.parse_natg_router(obj.name)
    if parsed and parsed[1] not in _live_router_ids(ctx):
        ctx.allocator.release(parsed[1])


def _live_router_ids(ctx: ReconciliationContext) -> Set[int]:
    ids = {v.rtid for v in ctx.vpcs.values() if v.rtid is not None}
    ids.update(n.rtid for n in ctx.all_natgateways() if n.rtid is not None)
    return ids


def delete_dups_and_orphans(ctx: ReconciliationContext, check_only: bool = False) -> CleanupReport:
    """
    Find duplicates and orphans among managed objects and delete them unless
    `check_only`. Orphan detection needs a complete inventory, so it is
    skipped when any entity failed to populate.
    """
    report = CleanupReport(check_only=check_only)
    referenced = ctx.referenced_ids()
    objects = _managed_objects(ctx)

    report.duplicates = find_duplicates(ctx, objects, referenced)
    doomed = {o.id for o in report.duplicates}
    if ctx.population_failures():
        report.orphans_skipped = True
        logger.warning("skipping orphan detection: inventory incomplete")
    else:
        remaining = [o for o in objects if o.id not in doomed]
        report.orphans = find_orphans(ctx, remaining, referenced, doomed)

    for reason, found in (("duplicate", report.duplicates), ("orphan", report.orphans)):
        for obj in found:
            if check_only:
                logger.info(f"would delete {reason} {obj.kind.value} {obj.name} ({obj.id})")
                continue
            if ctx.ops.delete(obj):
                report.deleted.append(obj.id)
                METRICS["cleanup_deletions"].labels(reason=reason).inc()
                logger.info(f"deleted {reason} {obj.kind.value} {obj.name} ({obj.id})")
            _release_router_id(ctx, obj)

    for vpc in ctx.vpcs.values():
        if not check_only:
            vpc.duplicate_routers = []
    return report


# ============================================================================
# Delete by identifier
# ============================================================================

_PREFIXES = (
    ("vpc-", "vpc"),
    ("subnet-", "subnet"),
    ("nat-", "nat_gateway"),
    ("eni-", "instance"),
    ("i-", "instance"),
    ("sg-", "security_group"),
)


def resolve_object(obj_id: str) -> str:
    """Entity kind addressed by an identifier, from its prefix."""
    for prefix, kind in _PREFIXES:
        if obj_id.startswith(prefix):
            return kind
    raise MalformedInput(f"unrecognized object identifier {obj_id!r}")


def delete_object(ctx: ReconciliationContext, obj_id: str, check_only: bool = False) -> bool:
    """
    Delete the backend objects of one entity. Returns False when no such
    entity exists in the populated context.
    """
    kind = resolve_object(obj_id)
    action = "would delete" if check_only else "deleting"

    if kind == "vpc":
        vpc = ctx.find_vpc(obj_id)
        if vpc is None:
            return _not_found(kind, obj_id)
        logger.info(f"{action} vpc {obj_id} with {len(vpc.subnets)} subnets")
        if not check_only:
            build.delete_vpc(ctx, vpc)
        return True

    if kind == "subnet":
        vpc, subnet = ctx.find_subnet_global(obj_id)
        if subnet is None:
            return _not_found(kind, obj_id)
        logger.info(f"{action} subnet {obj_id} of {vpc.name}")
        if not check_only:
            build.delete_subnet(ctx, vpc, subnet)
        return True

    if kind == "nat_gateway":
        natg = ctx.find_natgateway_global(obj_id)
        if natg is None:
            return _not_found(kind, obj_id)
        logger.info(f"{action} nat gateway {obj_id}")
        if not check_only:
            build.delete_natgateway(ctx, natg)
        return True

    if kind == "instance":
        inst = ctx.find_instance_global(obj_id)
        if inst is None:
            return _not_found(kind, obj_id)
        logger.info(f"{action} instance {obj_id}")
        if not check_only:
            build.delete_instance(ctx, inst)
        return True

    sg = ctx.find_secgroup(obj_id)
    if sg is None:
        return _not_found(kind, obj_id)
    logger.info(f"{action} security group {obj_id}")
    if not check_only:
        build.delete_secgroup(ctx, sg)
    return True


def _not_found(kind: str, obj_id: str) -> bool:
    logger.warning(f"{kind} {obj_id} not found in backend inventory")
    return False


# ============================================================================
# Listing
# ============================================================================

def list_inventory(ctx: ReconciliationContext) -> Dict[str, Any]:
    inventory = ctx.to_dict()
    inventory["counts"] = {
        "vpcs": len(ctx.vpcs),
        "subnets": len(ctx.all_subnets()),
        "instances": len(ctx.all_instances()),
        "nat_gateways": len(ctx.all_natgateways()),
        "security_groups": len(ctx.secgroups),
    }
    return inventory
