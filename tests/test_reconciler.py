import pytest

from vpcmido.backend.base import Kind
from vpcmido.config import DriverConfig, GatewayConfig
from vpcmido.errors import CapacityExceeded, ExitCode
from vpcmido.reconciler.build import core_router_ip, router_uplink_ip
from vpcmido.reconciler.model import EntityState

SSH = {"protocol": "tcp", "from_port": 22, "to_port": 22, "cidr": "0.0.0.0/0"}
HTTP = {"protocol": "tcp", "from_port": 80, "to_port": 80, "cidr": "0.0.0.0/0"}


def _names(client, kind, prefix=""):
    return sorted(o.name for o in client.objects() if o.kind == kind and o.name.startswith(prefix))


def _one(client, kind, name):
    found = client.find(kind, name)
    assert len(found) == 1, f"expected one {kind.value} {name}, found {len(found)}"
    return found[0]


def _rule_names(client, chain_name):
    chain = _one(client, Kind.CHAIN, chain_name)
    return [r.name for r in client.list(Kind.RULE, chain.id)]


@pytest.fixture
def full_model(model):
    """Two subnets, a NAT gateway, two interfaces and two security groups."""
    model.vpc("vpc-1", "10.0.0.0/16")
    model.subnet("vpc-1", "subnet-1", "10.0.1.0/24", route_table="rtb-public")
    model.subnet("vpc-1", "subnet-2", "10.0.2.0/24", route_table="rtb-private")
    model.route("vpc-1", "rtb-public", "10.0.0.0/16", "local")
    model.route("vpc-1", "rtb-public", "0.0.0.0/0", "igw-1")
    model.route("vpc-1", "rtb-private", "0.0.0.0/0", "nat-1")
    model.natg("vpc-1", "nat-1", "subnet-1", "198.51.100.5", "10.0.1.5")
    model.secgroup("sg-web", ingress=[HTTP])
    model.secgroup("sg-db", ingress=[{"protocol": "tcp", "from_port": 5432, "to_port": 5432, "group": "sg-web"}])
    model.instance("eni-1", "vpc-1", "subnet-1", "10.0.1.10", node="node1", public_ip="198.51.100.10",
                   security_groups=["sg-web"])
    model.instance("eni-2", "vpc-1", "subnet-2", "10.0.2.10", node="node2", security_groups=["sg-web", "sg-db"])
    return model


class TestAddressing:
    def test_router_addresses(self):
        config = DriverConfig()
        assert core_router_ip(config) == "169.254.0.1"
        assert router_uplink_ip(config, 1) == "169.254.0.2"
        assert router_uplink_ip(config, 7) == "169.254.0.8"

    def test_uplink_outside_internal_network(self):
        config = DriverConfig(int_rtslashnet=30)
        assert router_uplink_ip(config, 1) == "169.254.0.2"
        with pytest.raises(CapacityExceeded):
            router_uplink_ip(config, 2)


class TestCore:
    def test_empty_model_builds_core_only(self, engine, client):
        result = engine.reconcile()
        assert result.status == ExitCode.OK
        assert _names(client, Kind.ROUTER) == ["eucart"]
        assert _names(client, Kind.BRIDGE) == ["eucabr"]
        assert _names(client, Kind.IPADDRGROUP_IP) == ["169.254.169.254"]
        assert _rule_names(client, "ic_eucabr_infilter") == ["metadata_drop"]

    def test_gateway_port_is_bound(self, engine, client):
        engine.reconcile()
        port = _one(client, Kind.PORT, "eucart_gw_gw1")
        assert port.props["ip"] == "203.0.113.10"
        binding = client.list(Kind.HOST_BINDING, port.id)
        assert [b.name for b in binding] == ["eth1"]
        assert binding[0].props["host"] == client.find(Kind.HOST, "gw1")[0].id
        route = _one(client, Kind.ROUTE, "eucart_gw_default_gw1")
        assert route.props["gateway"] == "203.0.113.1"

    def test_removed_gateway_is_deleted(self, make_engine, client):
        make_engine().reconcile()
        result = make_engine(gateways=[]).reconcile()
        assert result.status == ExitCode.OK
        assert client.find(Kind.PORT, "eucart_gw_gw1") == []
        assert client.find(Kind.ROUTE, "eucart_gw_default_gw1") == []

    def test_unregistered_gateway_host(self, make_engine, config, client):
        gateways = list(config.gateways) + [GatewayConfig("gw9", "203.0.113.19", "eth1")]
        result = make_engine(gateways=gateways).reconcile()
        assert result.status == ExitCode.PARTIAL
        assert result.failed_entities == ["gateway/gw9"]
        assert client.find(Kind.PORT, "eucart_gw_gw9") != []


class TestVpcLifecycle:
    def test_vpc_without_subnets(self, engine, client, model):
        model.vpc("vpc-1")
        result = engine.reconcile()
        assert result.status == ExitCode.OK
        assert _names(client, Kind.ROUTER, "vr_") == ["vr_vpc-1_1"]
        assert _names(client, Kind.BRIDGE, "vb_") == []
        assert _one(client, Kind.PORT, "vr_vpc-1_uplink").props["ip"] == "169.254.0.2"
        assert _rule_names(client, "ic_vr_vpc-1_uplink_pre") == ["vr_vpc-1_preelip_jump"]

        client.reset_calls()
        assert engine.reconcile().status == ExitCode.OK
        assert client.mutations == 0

    def test_subnet_with_internet_route(self, engine, client, model):
        model.vpc("vpc-1", "10.0.0.0/16")
        model.subnet("vpc-1", "subnet-1", "10.0.0.0/24", route_table="rtb-1")
        model.route("vpc-1", "rtb-1", "10.0.0.0/16", "local")
        model.route("vpc-1", "rtb-1", "0.0.0.0/0", "igw-1")
        result = engine.reconcile()
        assert result.status == ExitCode.OK

        assert _names(client, Kind.BRIDGE, "vb_") == ["vb_vpc-1_subnet-1"]
        assert _one(client, Kind.PORT, "vr_subnet-1_brport").props["ip"] == "10.0.0.1"
        dhcp = _one(client, Kind.DHCP, "dhcp_subnet-1")
        assert dhcp.props["gateway"] == "10.0.0.1"
        assert dhcp.props["dns_servers"] == ["10.0.0.2"]

        routes = _names(client, Kind.ROUTE, "rt_")
        assert routes == ["rt_subnet-1_igw-1_0.0.0.0/0"]
        route = _one(client, Kind.ROUTE, routes[0])
        assert route.props["port"] == _one(client, Kind.PORT, "vr_vpc-1_uplink").id
        assert route.props["gateway"] == "169.254.0.1"

        client.reset_calls()
        engine.reconcile()
        assert client.mutations == 0

    def test_metadata_port_bound_to_eucanetd_host(self, engine, client, model):
        model.vpc("vpc-1")
        model.subnet("vpc-1", "subnet-1", "10.0.1.0/24")
        engine.reconcile()
        port = _one(client, Kind.PORT, "vb_subnet-1_metaport")
        binding = client.list(Kind.HOST_BINDING, port.id)
        assert [b.name for b in binding] == ["vn2_subnet-1"]

    def test_removed_vpc_is_deleted(self, engine, client, model):
        model.vpc("vpc-1")
        model.subnet("vpc-1", "subnet-1", "10.0.1.0/24")
        engine.reconcile()
        model.remove_vpc("vpc-1")
        result = engine.reconcile()
        assert result.status == ExitCode.OK
        assert _names(client, Kind.ROUTER) == ["eucart"]
        assert _names(client, Kind.BRIDGE) == ["eucabr"]
        assert _names(client, Kind.CHAIN) == ["ic_eucabr_infilter"]
        assert _names(client, Kind.PORT, "vr_") == []

    def test_router_id_is_reused_after_delete(self, engine, client, model):
        model.vpc("vpc-1")
        engine.reconcile()
        model.remove_vpc("vpc-1")
        model.vpc("vpc-2")
        engine.reconcile()
        assert _names(client, Kind.ROUTER, "vr_") == ["vr_vpc-2_1"]

    def test_route_targets(self, engine, client, model):
        model.vpc("vpc-1", "10.0.0.0/16")
        model.subnet("vpc-1", "subnet-1", "10.0.1.0/24", route_table="rtb-1")
        model.subnet("vpc-1", "subnet-2", "10.0.2.0/24")
        model.route("vpc-1", "rtb-1", "192.168.0.0/16", "eni-9")
        model.route("vpc-1", "rtb-1", "not-a-cidr", "igw-1")
        model.route("vpc-1", "rtb-1", "172.16.0.0/12", "pcx-1")
        model.route("vpc-1", "rtb-1", "10.9.0.0/16", "eni-missing")
        model.instance("eni-9", "vpc-1", "subnet-2", "10.0.2.9")
        result = engine.reconcile()

        assert result.status == ExitCode.OK
        assert _names(client, Kind.ROUTE, "rt_") == ["rt_subnet-1_eni-9_192.168.0.0/16"]
        route = _one(client, Kind.ROUTE, "rt_subnet-1_eni-9_192.168.0.0/16")
        assert route.props["gateway"] == "10.0.2.9"
        assert route.props["port"] == _one(client, Kind.PORT, "vr_subnet-2_brport").id
        assert len(result.report["warnings"]) == 3

    def test_changed_route_table(self, engine, client, model):
        model.vpc("vpc-1")
        model.subnet("vpc-1", "subnet-1", "10.0.1.0/24", route_table="rtb-1")
        model.route("vpc-1", "rtb-1", "0.0.0.0/0", "igw-1")
        engine.reconcile()
        model.data["vpcs"][0]["route_tables"][0]["routes"] = [{"destination": "10.8.0.0/16", "target": "igw-1"}]
        engine.reconcile()
        assert _names(client, Kind.ROUTE, "rt_") == ["rt_subnet-1_igw-1_10.8.0.0/16"]

    def test_changed_subnet_cidr_is_applied(self, engine, client, model):
        model.vpc("vpc-1")
        subnet = model.subnet("vpc-1", "subnet-1", "10.0.1.0/24")
        engine.reconcile()
        subnet["cidr"] = "10.0.2.0/24"
        assert engine.reconcile().status == ExitCode.OK
        brport = _one(client, Kind.PORT, "vr_subnet-1_brport")
        assert (brport.props["ip"], brport.props["network"]) == ("10.0.2.1", "10.0.2.0/24")
        dhcp = _one(client, Kind.DHCP, "dhcp_subnet-1")
        assert (dhcp.props["subnet"], dhcp.props["gateway"]) == ("10.0.2.0/24", "10.0.2.1")

        client.reset_calls()
        engine.reconcile()
        assert client.mutations == 0

    def test_too_many_routes(self, make_engine, client, model):
        model.vpc("vpc-1")
        model.subnet("vpc-1", "subnet-1", "10.0.1.0/24", route_table="rtb-1")
        model.route("vpc-1", "rtb-1", "0.0.0.0/0", "igw-1")
        model.route("vpc-1", "rtb-1", "192.168.0.0/16", "igw-1")
        result = make_engine(max_routes_per_subnet=1).reconcile()
        assert result.status == ExitCode.PARTIAL
        assert result.failed_entities == ["route_table/subnet-1"]
        assert _names(client, Kind.BRIDGE, "vb_") == ["vb_vpc-1_subnet-1"]


class TestSecurityGroups:
    def test_rules_and_members(self, engine, client, model):
        model.vpc("vpc-1")
        model.subnet("vpc-1", "subnet-1", "10.0.1.0/24")
        model.secgroup("sg-1", ingress=[SSH], egress=[{"protocol": "-1", "cidr": "0.0.0.0/0"}])
        model.instance("eni-1", "vpc-1", "subnet-1", "10.0.1.10", public_ip="198.51.100.10", security_groups=["sg-1"])
        assert engine.reconcile().status == ExitCode.OK

        ingress = client.list(Kind.RULE, _one(client, Kind.CHAIN, "sg_ingress_sg-1").id)
        assert [r.props for r in ingress] == [{"type": "accept", "nw_proto": 6, "tp_dst": [22, 22]}]
        priv = _one(client, Kind.IPADDRGROUP, "sg_priv_sg-1")
        pub = _one(client, Kind.IPADDRGROUP, "sg_pub_sg-1")
        everyone = _one(client, Kind.IPADDRGROUP, "sg_all_sg-1")
        assert [o.name for o in client.list(Kind.IPADDRGROUP_IP, priv.id)] == ["10.0.1.10"]
        assert [o.name for o in client.list(Kind.IPADDRGROUP_IP, pub.id)] == ["198.51.100.10"]
        assert sorted(o.name for o in client.list(Kind.IPADDRGROUP_IP, everyone.id)) == ["10.0.1.10", "198.51.100.10"]

    def test_removed_group_is_deleted(self, engine, client, model):
        model.vpc("vpc-1")
        model.secgroup("sg-1", ingress=[SSH])
        engine.reconcile()
        assert _names(client, Kind.CHAIN, "sg_") == ["sg_egress_sg-1", "sg_ingress_sg-1"]

        model.remove_secgroup("sg-1")
        assert engine.reconcile().status == ExitCode.OK
        assert _names(client, Kind.CHAIN, "sg_") == []
        assert _names(client, Kind.IPADDRGROUP, "sg_") == []

        client.reset_calls()
        engine.reconcile()
        assert client.mutations == 0

    def test_membership_follows_model(self, engine, client, model):
        model.vpc("vpc-1")
        model.subnet("vpc-1", "subnet-1", "10.0.1.0/24")
        model.secgroup("sg-1")
        model.instance("eni-1", "vpc-1", "subnet-1", "10.0.1.10", security_groups=["sg-1"])
        model.instance("eni-2", "vpc-1", "subnet-1", "10.0.1.11", security_groups=["sg-1"])
        engine.reconcile()
        model.remove_instance("eni-1")
        engine.reconcile()
        priv = _one(client, Kind.IPADDRGROUP, "sg_priv_sg-1")
        assert [o.name for o in client.list(Kind.IPADDRGROUP_IP, priv.id)] == ["10.0.1.11"]


class TestFullTopology:
    def test_converges_and_is_idempotent(self, engine, client, full_model):
        result = engine.reconcile()
        assert result.status == ExitCode.OK, result.failed_entities
        assert result.counts["vpcs"] == 1
        assert result.counts["subnets"] == 2
        assert result.counts["instances"] == 2
        assert result.counts["nat_gateways"] == 1
        assert result.counts["security_groups"] == 2

        client.reset_calls()
        again = engine.reconcile()
        assert again.status == ExitCode.OK
        assert client.mutations == 0
        assert again.counts.get("created", 0) == 0

    def test_nat_gateway(self, engine, client, full_model):
        engine.reconcile()
        assert _names(client, Kind.ROUTER, "natr_") == ["natr_nat-1_2"]
        uplink = _one(client, Kind.PORT, "natr_nat-1_uplink")
        assert uplink.props["ip"] == "169.254.0.3"
        brport = _one(client, Kind.PORT, "natr_nat-1_brport")
        assert brport.props["peer"] == _one(client, Kind.PORT, "np_nat-1").id
        assert _rule_names(client, "ic_natr_nat-1_in") == ["rev_snat", "drop"]
        assert _rule_names(client, "ic_natr_nat-1_out") == ["snat"]
        assert _one(client, Kind.ROUTE, "elip_nat-1").props["gateway"] == "169.254.0.3"

        private_route = _one(client, Kind.ROUTE, "rt_subnet-2_nat-1_0.0.0.0/0")
        assert private_route.props["gateway"] == "10.0.1.5"
        assert private_route.props["port"] == _one(client, Kind.PORT, "vr_subnet-1_brport").id

    def test_instance_wiring(self, engine, client, full_model):
        engine.reconcile()
        port = _one(client, Kind.PORT, "vp_eni-1")
        assert port.props["inbound_filter"] == _one(client, Kind.CHAIN, "ic_eni-1_prechain").id
        binding = client.list(Kind.HOST_BINDING, port.id)
        assert binding[0].name == "vn_eni-1"
        assert binding[0].props["host"] == client.find(Kind.HOST, "node1")[0].id
        assert _one(client, Kind.DHCP_HOST, "eni-1").props["ip"] == "10.0.1.10"

        assert _rule_names(client, "ic_eni-1_prechain") == [
            "srcdst", "established", "metadata", "sg_egress_sg-web", "drop"
        ]
        assert _rule_names(client, "ic_eni-2_postchain") == [
            "established", "sg_ingress_sg-web", "sg_ingress_sg-db", "drop"
        ]
        db_rule = client.list(Kind.RULE, _one(client, Kind.CHAIN, "sg_ingress_sg-db").id)[0]
        assert db_rule.props["ip_addr_group_src"] == _one(client, Kind.IPADDRGROUP, "sg_all_sg-web").id

    def test_elastic_ip(self, engine, client, full_model):
        engine.reconcile()
        assert _one(client, Kind.ROUTE, "elip_eni-1").props["dst"] == "198.51.100.10/32"
        assert _one(client, Kind.ROUTE, "elip_eni-1").props["gateway"] == "169.254.0.2"
        assert _rule_names(client, "ic_vr_vpc-1_preelip") == ["elip_pre_eni-1"]
        assert _rule_names(client, "ic_vr_vpc-1_uplink_post") == ["elip_post_eni-1"]
        assert client.find(Kind.ROUTE, "elip_eni-2") == []

        full_model.find_instance("eni-1")["public_ip"] = "198.51.100.11"
        assert engine.reconcile().status == ExitCode.OK
        assert _one(client, Kind.ROUTE, "elip_eni-1").props["dst"] == "198.51.100.11/32"
        pre = _one(client, Kind.IPADDRGROUP, "elip_pre_eni-1")
        assert [o.name for o in client.list(Kind.IPADDRGROUP_IP, pre.id)] == ["198.51.100.11"]
        pub = _one(client, Kind.IPADDRGROUP, "sg_pub_sg-web")
        assert [o.name for o in client.list(Kind.IPADDRGROUP_IP, pub.id)] == ["198.51.100.11"]

        full_model.find_instance("eni-1")["public_ip"] = None
        engine.reconcile()
        assert client.find(Kind.ROUTE, "elip_eni-1") == []
        assert _rule_names(client, "ic_vr_vpc-1_preelip") == []

    def test_stray_elastic_ip_rule_is_removed(self, engine, client, full_model):
        engine.reconcile()
        chain = _one(client, Kind.CHAIN, "ic_vr_vpc-1_preelip")
        client.create(Kind.RULE, "elip_pre_eni-1", chain.id, {"type": "dnat"})
        full_model.find_instance("eni-1")["public_ip"] = None
        assert engine.reconcile().status == ExitCode.OK
        assert _rule_names(client, "ic_vr_vpc-1_preelip") == []
        assert _rule_names(client, "ic_vr_vpc-1_uplink_post") == []

    def test_instance_moves_host(self, engine, client, full_model):
        engine.reconcile()
        full_model.find_instance("eni-1")["node"] = "node2"
        engine.reconcile()
        port = _one(client, Kind.PORT, "vp_eni-1")
        binding = client.list(Kind.HOST_BINDING, port.id)
        assert len(binding) == 1
        assert binding[0].props["host"] == client.find(Kind.HOST, "node2")[0].id

    def test_source_check_toggle(self, engine, client, full_model):
        engine.reconcile()
        full_model.find_instance("eni-1")["srcdst_check"] = False
        engine.reconcile()
        assert "srcdst" not in _rule_names(client, "ic_eni-1_prechain")

    def test_l2_isolation_disabled(self, make_engine, client, full_model):
        make_engine(disable_l2_isolation=True).reconcile()
        assert "srcdst" not in _rule_names(client, "ic_eni-1_prechain")

    def test_removed_instance_is_deleted(self, engine, client, full_model):
        engine.reconcile()
        full_model.remove_instance("eni-2")
        assert engine.reconcile().status == ExitCode.OK
        assert client.find(Kind.PORT, "vp_eni-2") == []
        assert client.find(Kind.CHAIN, "ic_eni-2_prechain") == []
        assert client.find(Kind.DHCP_HOST, "eni-2") == []
        assert client.find(Kind.IPADDRGROUP, "elip_pre_eni-2") == []
        priv = _one(client, Kind.IPADDRGROUP, "sg_priv_sg-db")
        assert client.list(Kind.IPADDRGROUP_IP, priv.id) == []

    def test_removed_nat_gateway_is_deleted(self, engine, client, full_model):
        engine.reconcile()
        full_model.data["vpcs"][0]["nat_gateways"] = []
        result = engine.reconcile()
        assert result.status == ExitCode.OK
        assert _names(client, Kind.ROUTER, "natr_") == []
        assert client.find(Kind.ROUTE, "elip_nat-1") == []
        assert _names(client, Kind.ROUTE, "rt_subnet-2") == []

    def test_recreated_group_chain_is_jumped_to_again(self, engine, client, full_model):
        engine.reconcile()
        client.delete(_one(client, Kind.CHAIN, "sg_ingress_sg-web").id)
        assert _rule_names(client, "ic_eni-1_postchain") == ["established", "drop"]

        assert engine.reconcile().status == ExitCode.OK
        chain = _one(client, Kind.CHAIN, "sg_ingress_sg-web")
        post = client.list(Kind.RULE, _one(client, Kind.CHAIN, "ic_eni-1_postchain").id)
        assert [r.name for r in post] == ["established", "sg_ingress_sg-web", "drop"]
        assert post[1].props["jump_chain"] == chain.id
        assert _rule_names(client, "ic_eni-2_postchain") == [
            "established", "sg_ingress_sg-web", "sg_ingress_sg-db", "drop"
        ]

        client.reset_calls()
        engine.reconcile()
        assert client.mutations == 0

    def test_workers_run_vpcs_in_parallel(self, make_engine, client, model):
        for i in range(1, 5):
            model.vpc(f"vpc-{i}", f"10.{i}.0.0/16")
            model.subnet(f"vpc-{i}", f"subnet-{i}", f"10.{i}.1.0/24")
            model.instance(f"eni-{i}", f"vpc-{i}", f"subnet-{i}", f"10.{i}.1.10")
        result = make_engine(workers=4).reconcile()
        assert result.status == ExitCode.OK
        ids = sorted(int(n.rsplit("_", 1)[1]) for n in _names(client, Kind.ROUTER, "vr_"))
        assert ids == [1, 2, 3, 4]


class TestFailureIsolation:
    def test_router_id_exhaustion_fails_one_vpc(self, make_engine, client, model):
        model.vpc("vpc-a", "10.1.0.0/16")
        model.vpc("vpc-b", "10.2.0.0/16")
        model.secgroup("sg-1")
        result = make_engine(max_router_ids=1).reconcile()
        assert result.status == ExitCode.PARTIAL
        assert result.failed_entities == ["vpc/vpc-b"]
        assert _names(client, Kind.ROUTER, "vr_") == ["vr_vpc-a_1"]
        assert _names(client, Kind.CHAIN, "sg_") == ["sg_egress_sg-1", "sg_ingress_sg-1"]

    def test_transient_core_failure_is_retried_next_run(self, engine, client, model):
        model.vpc("vpc-1")
        client.fail_next("create", 3)
        result = engine.reconcile()
        assert result.status == ExitCode.PARTIAL
        assert "core/core" in result.failed_entities
        assert "vpc/vpc-1" in result.failed_entities
        assert _names(client, Kind.ROUTER) == []

        result = engine.reconcile()
        assert result.status == ExitCode.OK
        assert _names(client, Kind.ROUTER) == ["eucart", "vr_vpc-1_1"]

    def test_single_transient_failure_is_absorbed(self, engine, client, model):
        model.vpc("vpc-1")
        client.fail_next("create", 2)
        assert engine.reconcile().status == ExitCode.OK

    def test_listing_failure_never_deletes(self, engine, client, model):
        model.vpc("vpc-1")
        engine.reconcile()
        model.remove_vpc("vpc-1")
        # core lookup and the device listing both exhaust their retries
        client.fail_next("list", 6)
        result = engine.reconcile()
        assert result.status == ExitCode.PARTIAL
        assert _names(client, Kind.ROUTER, "vr_") == ["vr_vpc-1_1"]

    def test_partial_vpc_is_repaired(self, engine, client, model):
        model.vpc("vpc-1")
        engine.reconcile()
        client.delete(_one(client, Kind.CHAIN, "ic_vr_vpc-1_preelip").id)

        assert engine.initialize() == ExitCode.PARTIAL
        vpc = engine.context.vpcs["vpc-1"]
        assert vpc.state == EntityState.TO_CREATE
        assert vpc.rtid == 1

        assert engine.reconcile().status == ExitCode.OK
        assert _names(client, Kind.ROUTER, "vr_") == ["vr_vpc-1_1"]
        assert _rule_names(client, "ic_vr_vpc-1_uplink_pre") == ["vr_vpc-1_preelip_jump"]

        client.reset_calls()
        engine.reconcile()
        assert client.mutations == 0

    def test_instance_in_unknown_subnet(self, engine, model):
        model.vpc("vpc-1")
        model.instance("eni-1", "vpc-1", "subnet-x", "10.0.1.10")
        result = engine.reconcile()
        assert result.status == ExitCode.PARTIAL
        assert result.failed_entities == ["instance/eni-1"]

    def test_malformed_model_items_are_skipped(self, engine, client, model):
        model.vpc("vpc-1")
        model.subnet("vpc-1", "subnet-1", "10.0.1.0/24")
        model.secgroup("sg-bad", ingress=[{"protocol": "tcp", "from_port": "abc"}, HTTP])
        model.instance("eni-1", "vpc-1", "subnet-1", None)
        model.instance("eni-2", "vpc-1", "subnet-1", "10.0.1.20")
        result = engine.reconcile()

        assert result.status == ExitCode.OK
        assert _names(client, Kind.ROUTER) == ["eucart", "vr_vpc-1_1"]
        assert _names(client, Kind.PORT, "vp_") == ["vp_eni-2"]
        assert len(client.list(Kind.RULE, _one(client, Kind.CHAIN, "sg_ingress_sg-bad").id)) == 1
        skipped = [w["warning"] for w in result.report["warnings"] if w["context"] == {"kind": "model"}]
        assert len(skipped) == 2
        assert any("'abc'" in w for w in skipped)
        assert any("private_ip" in w for w in skipped)

    def test_instance_address_outside_subnet(self, engine, client, model):
        model.vpc("vpc-1")
        model.subnet("vpc-1", "subnet-1", "10.0.1.0/24")
        model.instance("eni-1", "vpc-1", "subnet-1", "10.0.9.10")
        result = engine.reconcile()
        assert result.status == ExitCode.PARTIAL
        assert result.failed_entities == ["instance/eni-1"]
        assert client.find(Kind.PORT, "vp_eni-1") == []

    def test_metadata_address_is_reserved(self, engine, client, model):
        model.vpc("vpc-1")
        model.subnet("vpc-1", "subnet-1", "10.0.1.0/24")
        model.natg("vpc-1", "nat-1", "subnet-1", "198.51.100.5", "10.0.1.2")
        model.instance("eni-1", "vpc-1", "subnet-1", "10.0.1.2")
        result = engine.reconcile()
        assert result.status == ExitCode.PARTIAL
        assert result.failed_entities == ["instance/eni-1", "nat_gateway/nat-1"]
        assert _names(client, Kind.ROUTER, "natr_") == []
        assert _names(client, Kind.ROUTER, "vr_") == ["vr_vpc-1_1"]

    def test_cancelled_run(self, engine, client, model):
        model.vpc("vpc-1")
        engine.cancel()
        result = engine.reconcile()
        assert result.cancelled
        assert result.status == ExitCode.FAILURE
        assert client.mutations == 0

        assert engine.reconcile().status == ExitCode.OK


class TestCleanup:
    def test_duplicate_router(self, engine, client, model):
        model.vpc("vpc-1")
        engine.reconcile()
        client.create(Kind.ROUTER, "vr_vpc-1_7")

        status, report = engine.delete_dups_and_orphans(check_only=True)
        assert status == ExitCode.OK
        assert [d["name"] for d in report["duplicates"]] == ["vr_vpc-1_7"]
        assert report["deleted"] == []
        assert _names(client, Kind.ROUTER, "vr_") == ["vr_vpc-1_1", "vr_vpc-1_7"]

        status, report = engine.delete_dups_and_orphans()
        assert status == ExitCode.OK
        assert len(report["deleted"]) == 1
        assert _names(client, Kind.ROUTER, "vr_") == ["vr_vpc-1_1"]

    def test_orphans(self, engine, client, model):
        model.vpc("vpc-1")
        engine.reconcile()
        stray = client.create(Kind.CHAIN, "ic_eni-gone_prechain")
        router = _one(client, Kind.ROUTER, "vr_vpc-1_1")
        client.create(Kind.ROUTE, "rt_subnet-gone_igw-1_0.0.0.0/0", router.id)
        foreign = client.create(Kind.ROUTER, "provider-router")

        status, report = engine.delete_dups_and_orphans()
        assert status == ExitCode.OK
        assert sorted(o["name"] for o in report["orphans"]) == [
            "ic_eni-gone_prechain", "rt_subnet-gone_igw-1_0.0.0.0/0"
        ]
        assert client.find(Kind.CHAIN, stray.name) == []
        assert client.find(Kind.ROUTER, foreign.name) != []

    def test_regular_run_removes_stray_subnet_bridge(self, engine, client, model):
        model.vpc("vpc-1")
        engine.reconcile()
        client.create(Kind.BRIDGE, "vb_vpc-1_subnet-old")
        engine.reconcile()
        assert _names(client, Kind.BRIDGE, "vb_") == []


class TestAdministration:
    def test_teardown_removes_everything(self, engine, client, full_model):
        engine.reconcile()
        assert engine.teardown() == ExitCode.OK
        assert [o for o in client.objects() if o.kind != Kind.HOST] == []

    def test_delete_object(self, engine, client, full_model):
        engine.reconcile()
        assert engine.delete_object("eni-1", check_only=True) == ExitCode.OK
        assert client.find(Kind.PORT, "vp_eni-1") != []

        assert engine.delete_object("eni-1") == ExitCode.OK
        assert client.find(Kind.PORT, "vp_eni-1") == []
        assert client.find(Kind.ROUTE, "elip_eni-1") == []

    def test_delete_subnet_and_group(self, engine, client, full_model):
        engine.reconcile()
        assert engine.delete_object("subnet-2") == ExitCode.OK
        assert client.find(Kind.BRIDGE, "vb_vpc-1_subnet-2") == []
        assert client.find(Kind.PORT, "vp_eni-2") == []
        assert engine.delete_object("sg-db") == ExitCode.OK
        assert client.find(Kind.CHAIN, "sg_ingress_sg-db") == []

    def test_delete_unknown_object(self, engine):
        engine.reconcile()
        assert engine.delete_object("vpc-missing") == ExitCode.FAILURE
        assert engine.delete_object("bogus-1") == ExitCode.CONFIG_ERROR

    def test_list_inventory(self, engine, full_model):
        engine.reconcile()
        status, inventory = engine.list_inventory()
        assert status == ExitCode.OK
        assert inventory["counts"] == {
            "vpcs": 1, "subnets": 2, "instances": 2, "nat_gateways": 1, "security_groups": 2
        }
        assert inventory["router_ids"] == [1, 2]
        assert inventory["vpcs"][0]["state"] == "present"

    def test_state_file_is_written(self, config, client, model, tmp_path):
        from vpcmido.backend.memory import InMemorySdnClient
        from vpcmido.reconciler.reconciler import ReconciliationEngine

        path = tmp_path / "backend.json"
        model.vpc("vpc-1")
        ReconciliationEngine(config, client, model, state_file=str(path), sleep=lambda s: None).reconcile()
        restored = InMemorySdnClient.load(str(path))
        assert [o.name for o in restored.objects() if o.kind == Kind.ROUTER] == ["eucart", "vr_vpc-1_1"]
