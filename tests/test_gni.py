import pytest
import yaml

from vpcmido.api.models import VPC, Instance, Route, RouteTable, SecurityGroup, Subnet, gni_from_session
from vpcmido.config import DriverConfig
from vpcmido.errors import MalformedInput
from vpcmido.gni import gni_from_dict, load_gni_file
from vpcmido.reconciler.reconciler import make_gni_provider

DOCUMENT = {
    "vpcs": [
        {
            "name": "vpc-1",
            "cidr": "10.0.0.0/16",
            "subnets": [{"name": "subnet-1", "cidr": "10.0.1.0/24", "route_table": "rtb-1"}],
            "route_tables": [{"name": "rtb-1", "routes": [{"destination": "0.0.0.0/0", "target": "igw-1"}]}],
            "nat_gateways": [
                {"name": "nat-1", "subnet": "subnet-1", "public_ip": "198.51.100.5", "private_ip": "10.0.1.5"}
            ],
        }
    ],
    "instances": [
        {
            "name": "eni-1",
            "vpc": "vpc-1",
            "subnet": "subnet-1",
            "private_ip": "10.0.1.10",
            "public_ip": "198.51.100.10",
            "security_groups": ["sg-1"],
        }
    ],
    "security_groups": [
        {"name": "sg-1", "ingress": [{"protocol": "tcp", "from_port": 22, "to_port": "22", "cidr": "0.0.0.0/0"}]}
    ],
    "instance_dns_servers": ["10.0.0.53"],
}


class TestGniFromDict:
    def test_full_document(self):
        gni = gni_from_dict(DOCUMENT)
        vpc = gni.find_vpc("vpc-1")
        assert vpc.find_subnet("subnet-1").route_table == "rtb-1"
        assert vpc.find_route_table("rtb-1").entries[0].target == "igw-1"
        assert gni.find_nat_gateway("vpc-1", "nat-1").private_ip == "10.0.1.5"
        assert gni.find_instance("eni-1").srcdst_check is True
        assert gni.find_secgroup("sg-1").ingress_rules[0].to_port == 22
        assert gni.instance_dns_servers == ("10.0.0.53",)

    def test_lookups(self):
        gni = gni_from_dict(DOCUMENT)
        assert [i.name for i in gni.secgroup_members("sg-1")] == ["eni-1"]
        assert [i.name for i in gni.instances_in_subnet("vpc-1", "subnet-1")] == ["eni-1"]
        assert gni.find_subnet("vpc-2", "subnet-1") is None
        assert gni.find_vpc("vpc-1").find_route_table(None) is None

    def test_empty_document(self):
        gni = gni_from_dict(None)
        assert gni.vpcs == ()
        assert gni.instance_dns_domain == "eucalyptus.internal"

    def test_missing_required_field_drops_only_that_vpc(self):
        gni = gni_from_dict({"vpcs": [{"name": "vpc-1"}, {"name": "vpc-2", "cidr": "10.1.0.0/16"}]})
        assert [v.name for v in gni.vpcs] == ["vpc-2"]
        assert len(gni.skipped) == 1
        assert "cidr" in gni.skipped[0]

    def test_bad_port_drops_only_that_rule(self):
        gni = gni_from_dict({
            "security_groups": [{
                "name": "sg-1",
                "ingress": [{"protocol": "tcp", "from_port": "x"}, {"protocol": "tcp", "from_port": 22, "to_port": 22}],
            }],
        })
        assert [r.from_port for r in gni.find_secgroup("sg-1").ingress_rules] == [22]
        assert gni.skipped == ("skipping ingress rule of sg-1: expected an integer, got 'x'",)

    def test_bad_children_are_skipped(self):
        gni = gni_from_dict({
            "vpcs": [{
                "name": "vpc-1",
                "cidr": "10.0.0.0/16",
                "subnets": [{"name": "subnet-1"}, {"name": "subnet-2", "cidr": "10.0.2.0/24"}],
                "nat_gateways": [{"name": "nat-1", "subnet": "subnet-2"}],
                "route_tables": ["rtb-1"],
            }],
            "instances": [{"name": "eni-1", "vpc": "vpc-1", "subnet": "subnet-2", "private_ip": None}],
        })
        vpc = gni.find_vpc("vpc-1")
        assert [s.name for s in vpc.subnets] == ["subnet-2"]
        assert vpc.nat_gateways == ()
        assert vpc.route_tables == ()
        assert gni.instances == ()
        assert len(gni.skipped) == 4

    def test_document_must_be_mapping(self):
        with pytest.raises(MalformedInput):
            gni_from_dict(["vpc-1"])


class TestGniFile:
    def test_load(self, tmp_path):
        path = tmp_path / "gni.yaml"
        path.write_text(yaml.safe_dump(DOCUMENT))
        assert load_gni_file(str(path)).find_vpc("vpc-1").cidr == "10.0.0.0/16"

    def test_missing_file(self, tmp_path):
        with pytest.raises(MalformedInput):
            load_gni_file(str(tmp_path / "absent.yaml"))

    def test_provider_reads_file_each_call(self, tmp_path):
        path = tmp_path / "gni.yaml"
        path.write_text(yaml.safe_dump({"vpcs": []}))
        provider = make_gni_provider(DriverConfig(gni_file=str(path)))
        assert provider().vpcs == ()
        path.write_text(yaml.safe_dump(DOCUMENT))
        assert [v.name for v in provider().vpcs] == ["vpc-1"]

    def test_provider_without_source_is_empty(self):
        assert make_gni_provider(DriverConfig())().vpcs == ()


class TestSqlStore:
    def test_reads_model_from_tables(self, db):
        db.add(VPC(id="vpc-1", cidr="10.0.0.0/16"))
        db.add(RouteTable(id="rtb-1", vpc_id="vpc-1"))
        db.add(Route(route_table_id="rtb-1", destination="0.0.0.0/0", target="igw-1"))
        db.add(Subnet(id="subnet-1", vpc_id="vpc-1", cidr="10.0.1.0/24", route_table_id="rtb-1"))
        db.add(SecurityGroup(id="sg-1", rules=[
            {"direction": "ingress", "protocol": "tcp", "from_port": 22, "to_port": 22, "cidr": "0.0.0.0/0"},
            {"direction": "egress", "protocol": "-1", "cidr": "0.0.0.0/0"},
        ]))
        db.add(Instance(
            id="eni-1", vpc_id="vpc-1", subnet_id="subnet-1", private_ip="10.0.1.10", security_groups=["sg-1"]
        ))
        db.commit()

        gni = gni_from_session(db)
        vpc = gni.find_vpc("vpc-1")
        assert vpc.find_subnet("subnet-1").cidr == "10.0.1.0/24"
        assert vpc.find_route_table("rtb-1").entries[0].destination == "0.0.0.0/0"
        sg = gni.find_secgroup("sg-1")
        assert sg.ingress_rules[0].from_port == 22
        assert sg.egress_rules[0].protocol == "-1"
        inst = gni.find_instance("eni-1")
        assert inst.security_groups == ("sg-1",)
        assert inst.srcdst_check is True
