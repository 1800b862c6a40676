# File: vpcmido/reconciler/model.py
"""
In-memory mirror of the backend topology.

Each entity owns an object-slot table: one slot per named backend object the
entity is made of. The reconciliation context owns every entity of a run and
is passed explicitly to every populate/build/cleanup operation.
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Dict, Iterator, List, Optional, Set, Tuple, Type

from vpcmido.backend.base import BackendObject
from vpcmido.backend.ops import MidoOps
from vpcmido.cidr import split_cidr
from vpcmido.config import DriverConfig
from vpcmido.diagnostic_logger import DiagnosticLogger
from vpcmido.errors import MalformedCIDR
from vpcmido.gni import (
    GlobalNetworkInfo,
    GniInstance,
    GniNatGateway,
    GniSecurityGroup,
    GniSubnet,
    GniVpc,
)
from vpcmido.ids import RouterIdAllocator


class CoreSlot(Enum):
    EUCART = "eucart"
    EUCABR = "eucabr"
    EUCART_BRPORT = "eucart_brport"
    EUCABR_RTPORT = "eucabr_rtport"
    EUCABR_INFILTER = "eucabr_infilter"
    METADATA_IPADDRGROUP = "metadata_ipaddrgroup"
    GWPORTGROUP = "gwportgroup"


class VpcSlot(Enum):
    VPCRT = "vpcrt"
    EUCABR_DOWNLINK = "eucabr_downlink"
    VPCRT_UPLINK = "vpcrt_uplink"
    VPCRT_UPLINK_PRECHAIN = "vpcrt_uplink_prechain"
    VPCRT_UPLINK_POSTCHAIN = "vpcrt_uplink_postchain"
    VPCRT_PREELIPCHAIN = "vpcrt_preelipchain"


class SubnetSlot(Enum):
    BR = "br"
    BR_RTPORT = "br_rtport"
    VPCRT_BRPORT = "vpcrt_brport"
    BR_DHCP = "br_dhcp"
    BR_METAPORT = "br_metaport"
    BR_METAHOST = "br_metahost"


class InstanceSlot(Enum):
    VMHOST = "vmhost"
    VPCBR_VMPORT = "vpcbr_vmport"
    VPCBR_DHCPHOST = "vpcbr_dhcphost"
    PRECHAIN = "prechain"
    POSTCHAIN = "postchain"
    ELIP_PRE_IPADDRGROUP = "elip_pre_ipaddrgroup"
    ELIP_POST_IPADDRGROUP = "elip_post_ipaddrgroup"
    ELIP_PRE_IPADDRGROUP_IP = "elip_pre_ipaddrgroup_ip"
    ELIP_POST_IPADDRGROUP_IP = "elip_post_ipaddrgroup_ip"
    ELIP_PRE = "elip_pre"
    ELIP_POST = "elip_post"
    ELIP_ROUTE = "elip_route"


class NatgSlot(Enum):
    RT = "rt"
    EUCABR_DOWNLINK = "eucabr_downlink"
    RT_UPLINK = "rt_uplink"
    RT_BRPORT = "rt_brport"
    SUBNBR_RTPORT = "subnbr_rtport"
    ELIP_PRE_IPADDRGROUP = "elip_pre_ipaddrgroup"
    ELIP_PRE_IPADDRGROUP_IP = "elip_pre_ipaddrgroup_ip"
    ELIP_ROUTE = "elip_route"
    RT_INCHAIN = "rt_inchain"
    RT_OUTCHAIN = "rt_outchain"


class SgSlot(Enum):
    INGRESS = "ingress"
    EGRESS = "egress"
    IAGPRIV = "iagpriv"
    IAGPUB = "iagpub"
    IAGALL = "iagall"


class EntityState(Enum):
    ABSENT = "absent"
    TO_CREATE = "to_create"
    PRESENT = "present"
    TO_DELETE = "to_delete"


class SlotTable:
    """Mapping from one slot enumeration to the backend object filling it."""

    def __init__(self, slots: Type[Enum]):
        self.slots = slots
        self._objects: Dict[Enum, BackendObject] = {}

    def __getitem__(self, slot: Enum) -> Optional[BackendObject]:
        return self._objects.get(self._check(slot))

    def __setitem__(self, slot: Enum, obj: Optional[BackendObject]):
        self._check(slot)
        if obj is None:
            self._objects.pop(slot, None)
        else:
            self._objects[slot] = obj

    def __contains__(self, slot: Enum) -> bool:
        return self._check(slot) in self._objects

    def __iter__(self) -> Iterator[Tuple[Enum, BackendObject]]:
        for slot in self.slots:
            if slot in self._objects:
                yield slot, self._objects[slot]

    def __len__(self) -> int:
        return len(self._objects)

    def clear(self, slot: Optional[Enum] = None):
        if slot is None:
            self._objects.clear()
        else:
            self._objects.pop(self._check(slot), None)

    def ids(self) -> Set[str]:
        return {obj.id for obj in self._objects.values()}

    def to_dict(self) -> Dict[str, Dict[str, str]]:
        return {slot.value: {"id": obj.id, "name": obj.name} for slot, obj in self}

    def _check(self, slot: Enum) -> Enum:
        if not isinstance(slot, self.slots):
            raise KeyError(f"{slot!r} is not a {self.slots.__name__}")
        return slot


@dataclass
class MidoEntity:
    name: str
    gnipresent: bool = False
    midopresent: bool = False
    population_failed: bool = False
    # set when the entity must not be touched this run (populate error, parent failed)
    skip_reason: Optional[str] = None

    SLOTS: ClassVar[Type[Enum]]
    REQUIRED: ClassVar[Tuple[Enum, ...]] = ()

    def __post_init__(self):
        self.midos = SlotTable(self.SLOTS)

    def update_presence(self):
        """Complete slot table -> present; partial -> population_failed."""
        found = [slot for slot in self.REQUIRED if slot in self.midos]
        if len(found) == len(self.REQUIRED):
            self.midopresent = True
            self.population_failed = False
        elif found or len(self.midos):
            self.midopresent = False
            self.population_failed = True
        else:
            self.midopresent = False
            self.population_failed = False
        if self.skip_reason:
            self.population_failed = True

    def mark_skipped(self, reason: str):
        self.skip_reason = reason
        self.population_failed = True

    @property
    def skipped(self) -> bool:
        return self.skip_reason is not None

    @property
    def state(self) -> EntityState:
        in_backend = self.midopresent or len(self.midos) > 0
        if self.gnipresent and self.midopresent:
            return EntityState.PRESENT
        if self.gnipresent:
            return EntityState.TO_CREATE
        if in_backend:
            return EntityState.TO_DELETE
        return EntityState.ABSENT

    def referenced_ids(self) -> Set[str]:
        return self.midos.ids()

    def to_dict(self) -> Dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "gnipresent": self.gnipresent,
            "midopresent": self.midopresent,
            "population_failed": self.population_failed,
            "skip_reason": self.skip_reason,
            "midos": self.midos.to_dict(),
        }


@dataclass
class GatewayPort:
    host: str
    port: Optional[BackendObject] = None
    binding: Optional[BackendObject] = None
    member: Optional[BackendObject] = None
    route: Optional[BackendObject] = None

    def objects(self) -> List[BackendObject]:
        return [o for o in (self.port, self.binding, self.member, self.route) if o is not None]


@dataclass
class MidoCore(MidoEntity):
    SLOTS: ClassVar[Type[Enum]] = CoreSlot
    REQUIRED: ClassVar[Tuple[Enum, ...]] = tuple(CoreSlot)

    gateways: Dict[str, GatewayPort] = field(default_factory=dict)
    metadata_ip: Optional[BackendObject] = None

    def referenced_ids(self) -> Set[str]:
        ids = self.midos.ids()
        for gw in self.gateways.values():
            ids.update(o.id for o in gw.objects())
        if self.metadata_ip:
            ids.add(self.metadata_ip.id)
        return ids

    def to_dict(self) -> Dict:
        data = super().to_dict()
        data["gateways"] = {
            host: [o.name for o in gw.objects()] for host, gw in self.gateways.items()
        }
        return data


@dataclass
class MidoInstance(MidoEntity):
    SLOTS: ClassVar[Type[Enum]] = InstanceSlot
    REQUIRED: ClassVar[Tuple[Enum, ...]] = (
        InstanceSlot.VPCBR_VMPORT,
        InstanceSlot.PRECHAIN,
        InstanceSlot.POSTCHAIN,
        InstanceSlot.ELIP_PRE_IPADDRGROUP,
        InstanceSlot.ELIP_POST_IPADDRGROUP,
    )

    vpc_name: str = ""
    subnet_name: str = ""
    privip: Optional[str] = None
    pubip: Optional[str] = None
    gni: Optional[GniInstance] = None
    pubip_changed: bool = False
    host_changed: bool = False
    srcdst_changed: bool = False
    sg_changed: bool = False

    def to_dict(self) -> Dict:
        data = super().to_dict()
        data.update({
            "privip": self.privip,
            "pubip": self.pubip,
            "pubip_changed": self.pubip_changed,
            "host_changed": self.host_changed,
            "srcdst_changed": self.srcdst_changed,
            "sg_changed": self.sg_changed,
        })
        return data


@dataclass
class MidoNatGateway(MidoEntity):
    SLOTS: ClassVar[Type[Enum]] = NatgSlot
    REQUIRED: ClassVar[Tuple[Enum, ...]] = tuple(NatgSlot)

    vpc_name: str = ""
    subnet_name: str = ""
    rtid: Optional[int] = None
    gni: Optional[GniNatGateway] = None
    # routes owned by the NAT router itself (default and VPC return route)
    routes: List[BackendObject] = field(default_factory=list)

    def referenced_ids(self) -> Set[str]:
        ids = self.midos.ids()
        ids.update(r.id for r in self.routes)
        return ids

    def to_dict(self) -> Dict:
        data = super().to_dict()
        data["rtid"] = self.rtid
        data["routes"] = [r.name for r in self.routes]
        return data


@dataclass
class MidoSubnet(MidoEntity):
    SLOTS: ClassVar[Type[Enum]] = SubnetSlot
    REQUIRED: ClassVar[Tuple[Enum, ...]] = (
        SubnetSlot.BR,
        SubnetSlot.BR_RTPORT,
        SubnetSlot.VPCRT_BRPORT,
        SubnetSlot.BR_DHCP,
    )

    vpc_name: str = ""
    gni: Optional[GniSubnet] = None
    instances: Dict[str, MidoInstance] = field(default_factory=dict)
    natgateways: Dict[str, MidoNatGateway] = field(default_factory=dict)
    routes: List[BackendObject] = field(default_factory=list)

    def referenced_ids(self) -> Set[str]:
        ids = self.midos.ids()
        ids.update(r.id for r in self.routes)
        return ids

    def to_dict(self) -> Dict:
        data = super().to_dict()
        data["routes"] = [r.name for r in self.routes]
        data["instances"] = [i.to_dict() for i in self.instances.values()]
        data["natgateways"] = [n.to_dict() for n in self.natgateways.values()]
        return data


@dataclass
class MidoVpc(MidoEntity):
    SLOTS: ClassVar[Type[Enum]] = VpcSlot
    REQUIRED: ClassVar[Tuple[Enum, ...]] = tuple(VpcSlot)

    rtid: Optional[int] = None
    gni: Optional[GniVpc] = None
    subnets: Dict[str, MidoSubnet] = field(default_factory=dict)
    duplicate_routers: List[BackendObject] = field(default_factory=list)

    def to_dict(self) -> Dict:
        data = super().to_dict()
        data["rtid"] = self.rtid
        data["subnets"] = [s.to_dict() for s in self.subnets.values()]
        return data


@dataclass
class MidoSecurityGroup(MidoEntity):
    SLOTS: ClassVar[Type[Enum]] = SgSlot
    REQUIRED: ClassVar[Tuple[Enum, ...]] = tuple(SgSlot)

    gni: Optional[GniSecurityGroup] = None
    # member IP -> address-group entry currently in the backend
    midopresent_privips: Dict[str, BackendObject] = field(default_factory=dict)
    midopresent_pubips: Dict[str, BackendObject] = field(default_factory=dict)
    midopresent_allips: Dict[str, BackendObject] = field(default_factory=dict)
    ingress_changed: bool = False
    egress_changed: bool = False
    interfaces_changed: bool = False

    def referenced_ids(self) -> Set[str]:
        ids = self.midos.ids()
        for table in (self.midopresent_privips, self.midopresent_pubips, self.midopresent_allips):
            ids.update(o.id for o in table.values())
        return ids

    def to_dict(self) -> Dict:
        data = super().to_dict()
        data.update({
            "privips": sorted(self.midopresent_privips),
            "pubips": sorted(self.midopresent_pubips),
            "allips": sorted(self.midopresent_allips),
        })
        return data


class ReconciliationContext:
    """All state of one reconciliation run."""

    def __init__(
        self,
        config: DriverConfig,
        ops: MidoOps,
        gni: Optional[GlobalNetworkInfo] = None,
        allocator: Optional[RouterIdAllocator] = None,
        report: Optional[DiagnosticLogger] = None,
    ):
        self.config = config
        self.ops = ops
        self.gni = gni or GlobalNetworkInfo()
        self.allocator = allocator or RouterIdAllocator(config.max_router_ids)
        self.report = report or DiagnosticLogger()
        self.core = MidoCore(name="core", gnipresent=True)
        self.vpcs: Dict[str, MidoVpc] = {}
        self.secgroups: Dict[str, MidoSecurityGroup] = {}
        # guards the core slot table and the entity collections
        self.lock = threading.RLock()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def find_vpc(self, name: str) -> Optional[MidoVpc]:
        return self.vpcs.get(name)

    def find_subnet(self, vpc_name: str, subnet_name: str) -> Optional[MidoSubnet]:
        vpc = self.vpcs.get(vpc_name)
        return vpc.subnets.get(subnet_name) if vpc else None

    def find_subnet_global(self, subnet_name: str) -> Tuple[Optional[MidoVpc], Optional[MidoSubnet]]:
        for vpc in self.vpcs.values():
            if subnet_name in vpc.subnets:
                return vpc, vpc.subnets[subnet_name]
        return None, None

    def find_instance_global(self, name: str) -> Optional[MidoInstance]:
        return next((i for i in self.all_instances() if i.name == name), None)

    def find_natgateway_global(self, name: str) -> Optional[MidoNatGateway]:
        return next((n for n in self.all_natgateways() if n.name == name), None)

    def find_secgroup(self, name: str) -> Optional[MidoSecurityGroup]:
        return self.secgroups.get(name)

    def parent_vpc(self, entity) -> Optional[MidoVpc]:
        return self.vpcs.get(getattr(entity, "vpc_name", ""))

    def parent_subnet(self, entity) -> Optional[MidoSubnet]:
        return self.find_subnet(getattr(entity, "vpc_name", ""), getattr(entity, "subnet_name", ""))

    def all_subnets(self) -> List[MidoSubnet]:
        return [s for v in self.vpcs.values() for s in v.subnets.values()]

    def all_instances(self) -> List[MidoInstance]:
        return [i for s in self.all_subnets() for i in s.instances.values()]

    def all_natgateways(self) -> List[MidoNatGateway]:
        return [n for s in self.all_subnets() for n in s.natgateways.values()]

    def all_entities(self) -> List[MidoEntity]:
        entities: List[MidoEntity] = [self.core]
        for vpc in self.vpcs.values():
            entities.append(vpc)
            for subnet in vpc.subnets.values():
                entities.append(subnet)
                entities.extend(subnet.natgateways.values())
                entities.extend(subnet.instances.values())
        entities.extend(self.secgroups.values())
        return entities

    def is_plustwo(self, entity, ip: str) -> bool:
        """True when `ip` is the +2 (metadata) address of the subnet holding `entity`."""
        subnet = self.parent_subnet(entity)
        if subnet is None or subnet.gni is None:
            return False
        try:
            return split_cidr(subnet.gni.cidr).plus_two == ip
        except MalformedCIDR:
            return False

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------
    def referenced_ids(self) -> Set[str]:
        ids: Set[str] = set()
        for entity in self.all_entities():
            ids.update(entity.referenced_ids())
        return ids

    def population_failures(self) -> List[MidoEntity]:
        return [e for e in self.all_entities() if e.population_failed]

    def to_dict(self) -> Dict:
        return {
            "core": self.core.to_dict(),
            "vpcs": [v.to_dict() for v in self.vpcs.values()],
            "security_groups": [g.to_dict() for g in self.secgroups.values()],
            "router_ids": self.allocator.allocated(),
        }
