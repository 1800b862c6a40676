# File: vpcmido/api/models.py
"""
SQL desired-state store.

The cloud controller writes the network model into these tables; the driver
only reads them (gni_from_session) at the start of each run.
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, create_engine, func
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from vpcmido.gni import GlobalNetworkInfo, gni_from_dict

Base = declarative_base()


class VPC(Base):
    __tablename__ = "vpcs"
    id = Column(String, primary_key=True)
    cidr = Column(String, nullable=False)
    created_at = Column(DateTime, server_default=func.now())


class RouteTable(Base):
    __tablename__ = "route_tables"
    id = Column(String, primary_key=True)
    vpc_id = Column(String, ForeignKey("vpcs.id"), nullable=False)


class Route(Base):
    __tablename__ = "routes"
    id = Column(Integer, primary_key=True, autoincrement=True)
    route_table_id = Column(String, ForeignKey("route_tables.id"), nullable=False)
    destination = Column(String, nullable=False)
    target = Column(String, nullable=False)


class Subnet(Base):
    __tablename__ = "subnets"
    id = Column(String, primary_key=True)
    vpc_id = Column(String, ForeignKey("vpcs.id"), nullable=False)
    cidr = Column(String, nullable=False)
    route_table_id = Column(String, ForeignKey("route_tables.id"), nullable=True)


class NATGateway(Base):
    __tablename__ = "nat_gateways"
    id = Column(String, primary_key=True)
    vpc_id = Column(String, ForeignKey("vpcs.id"), nullable=False)
    subnet_id = Column(String, ForeignKey("subnets.id"), nullable=False)
    public_ip = Column(String, nullable=False)
    private_ip = Column(String, nullable=False)
    mac = Column(String, nullable=True)


class SecurityGroup(Base):
    __tablename__ = "security_groups"
    id = Column(String, primary_key=True)
    description = Column(String)
    rules = Column(JSON, default=list)  # [{"direction": "ingress"|"egress", ...}]


class Instance(Base):
    """One instance network interface (eni-*)."""

    __tablename__ = "instances"
    id = Column(String, primary_key=True)
    vpc_id = Column(String, ForeignKey("vpcs.id"), nullable=False)
    subnet_id = Column(String, ForeignKey("subnets.id"), nullable=False)
    node = Column(String, nullable=True)
    private_ip = Column(String, nullable=False)
    public_ip = Column(String, nullable=True)
    mac = Column(String, nullable=True)
    security_groups = Column(JSON, default=list)
    srcdst_check = Column(Boolean, default=True)


# ============================================================================
# Session helpers
# ============================================================================

def make_session_factory(database_url: str, create_tables: bool = False):
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    engine = create_engine(database_url, connect_args=connect_args)
    if create_tables:
        Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def gni_from_session(db: Session) -> GlobalNetworkInfo:
    """Read the whole desired-state model into a GlobalNetworkInfo."""
    routes_by_table = {}
    for route in db.query(Route).order_by(Route.id).all():
        routes_by_table.setdefault(route.route_table_id, []).append(
            {"destination": route.destination, "target": route.target}
        )

    vpcs = []
    for vpc in db.query(VPC).order_by(VPC.id).all():
        vpcs.append({
            "name": vpc.id,
            "cidr": vpc.cidr,
            "subnets": [
                {"name": s.id, "cidr": s.cidr, "route_table": s.route_table_id}
                for s in db.query(Subnet).filter(Subnet.vpc_id == vpc.id).order_by(Subnet.id).all()
            ],
            "route_tables": [
                {"name": rt.id, "routes": routes_by_table.get(rt.id, [])}
                for rt in db.query(RouteTable).filter(RouteTable.vpc_id == vpc.id).order_by(RouteTable.id).all()
            ],
            "nat_gateways": [
                {
                    "name": n.id,
                    "subnet": n.subnet_id,
                    "public_ip": n.public_ip,
                    "private_ip": n.private_ip,
                    "mac": n.mac,
                }
                for n in db.query(NATGateway).filter(NATGateway.vpc_id == vpc.id).order_by(NATGateway.id).all()
            ],
        })

    security_groups = []
    for sg in db.query(SecurityGroup).order_by(SecurityGroup.id).all():
        rules = sg.rules or []
        security_groups.append({
            "name": sg.id,
            "ingress": [r for r in rules if r.get("direction", "ingress") == "ingress"],
            "egress": [r for r in rules if r.get("direction") == "egress"],
        })

    instances = [
        {
            "name": i.id,
            "vpc": i.vpc_id,
            "subnet": i.subnet_id,
            "node": i.node,
            "private_ip": i.private_ip,
            "public_ip": i.public_ip,
            "mac": i.mac,
            "security_groups": i.security_groups or [],
            "srcdst_check": True if i.srcdst_check is None else i.srcdst_check,
        }
        for i in db.query(Instance).order_by(Instance.id).all()
    ]

    return gni_from_dict({"vpcs": vpcs, "instances": instances, "security_groups": security_groups})
