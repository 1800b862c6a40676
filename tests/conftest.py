import copy
import os
from dataclasses import replace

import pytest

# Drop any driver settings from the environment BEFORE importing project modules
for _key in [k for k in os.environ if k.startswith("VPCMIDO_")]:
    del os.environ[_key]

from vpcmido.api.models import make_session_factory
from vpcmido.backend.memory import InMemorySdnClient
from vpcmido.config import DriverConfig, GatewayConfig
from vpcmido.gni import GlobalNetworkInfo, gni_from_dict
from vpcmido.reconciler.reconciler import ReconciliationEngine

GATEWAY_HOST = "gw1"
EUCANETD_HOST = "clc"
NODES = ("node1", "node2")


class ModelBuilder:
    """
    Mutable desired-state document. Calling it returns a fresh
    GlobalNetworkInfo, so it doubles as an engine model provider and tests
    can change the model between runs.
    """

    def __init__(self):
        self.data = {"vpcs": [], "instances": [], "security_groups": []}

    def __call__(self) -> GlobalNetworkInfo:
        return gni_from_dict(copy.deepcopy(self.data))

    def _vpc(self, name):
        return next(v for v in self.data["vpcs"] if v["name"] == name)

    def vpc(self, name, cidr="10.0.0.0/16"):
        entry = {"name": name, "cidr": cidr, "subnets": [], "route_tables": [], "nat_gateways": []}
        self.data["vpcs"].append(entry)
        return entry

    def subnet(self, vpc, name, cidr, route_table=None):
        entry = {"name": name, "cidr": cidr, "route_table": route_table}
        self._vpc(vpc)["subnets"].append(entry)
        return entry

    def route(self, vpc, table, destination, target):
        tables = self._vpc(vpc)["route_tables"]
        entry = next((t for t in tables if t["name"] == table), None)
        if entry is None:
            entry = {"name": table, "routes": []}
            tables.append(entry)
        entry["routes"].append({"destination": destination, "target": target})

    def natg(self, vpc, name, subnet, public_ip, private_ip):
        entry = {"name": name, "subnet": subnet, "public_ip": public_ip, "private_ip": private_ip}
        self._vpc(vpc)["nat_gateways"].append(entry)
        return entry

    def instance(self, name, vpc, subnet, private_ip, node=None, public_ip=None, security_groups=(), srcdst_check=True):
        entry = {
            "name": name,
            "vpc": vpc,
            "subnet": subnet,
            "private_ip": private_ip,
            "node": node,
            "public_ip": public_ip,
            "mac": None,
            "security_groups": list(security_groups),
            "srcdst_check": srcdst_check,
        }
        self.data["instances"].append(entry)
        return entry

    def secgroup(self, name, ingress=(), egress=()):
        entry = {"name": name, "ingress": list(ingress), "egress": list(egress)}
        self.data["security_groups"].append(entry)
        return entry

    def find_instance(self, name):
        return next(i for i in self.data["instances"] if i["name"] == name)

    def remove_vpc(self, name):
        self.data["vpcs"] = [v for v in self.data["vpcs"] if v["name"] != name]
        self.data["instances"] = [i for i in self.data["instances"] if i["vpc"] != name]

    def remove_instance(self, name):
        self.data["instances"] = [i for i in self.data["instances"] if i["name"] != name]

    def remove_secgroup(self, name):
        self.data["security_groups"] = [g for g in self.data["security_groups"] if g["name"] != name]
        for inst in self.data["instances"]:
            inst["security_groups"] = [g for g in inst["security_groups"] if g != name]


@pytest.fixture
def config():
    return DriverConfig(
        eucanetd_host=EUCANETD_HOST,
        gateways=[GatewayConfig(host=GATEWAY_HOST, ip="203.0.113.10", iface="eth1")],
        public_network="203.0.113.0/24",
        public_gateway_ip="203.0.113.1",
        backend_backoff_seconds=0,
        interval_seconds=1,
    )


@pytest.fixture
def client():
    sdn = InMemorySdnClient()
    for host in (GATEWAY_HOST, EUCANETD_HOST) + NODES:
        sdn.register_host(host)
    return sdn


@pytest.fixture
def model():
    return ModelBuilder()


@pytest.fixture
def make_engine(config, client, model):
    def factory(metaproxy=None, **overrides):
        cfg = replace(config, **overrides) if overrides else config
        return ReconciliationEngine(cfg, client, model, metaproxy=metaproxy, sleep=lambda seconds: None)

    return factory


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def db_factory():
    # in-memory SQLite shares one connection per thread, so tables survive between sessions
    return make_session_factory("sqlite://", create_tables=True)


@pytest.fixture
def db(db_factory):
    database = db_factory()
    try:
        yield database
    finally:
        database.close()
