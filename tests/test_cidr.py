import pytest

from vpcmido.cidr import RouteTarget, classify_route_target, ip_in_cidr, offset_address, split_cidr
from vpcmido.errors import MalformedCIDR


class TestSplitCidr:
    def test_reserved_addresses(self):
        parts = split_cidr("10.0.0.0/24")
        assert parts.network == "10.0.0.0"
        assert parts.prefix_length == 24
        assert parts.gateway == "10.0.0.1"
        assert parts.plus_two == "10.0.0.2"
        assert parts.cidr == "10.0.0.0/24"

    def test_host_bits_are_normalized(self):
        assert split_cidr("10.0.0.7/24") == split_cidr("10.0.0.0/24")

    def test_smallest_usable_network(self):
        parts = split_cidr("192.168.1.4/30")
        assert parts.gateway == "192.168.1.5"
        assert parts.plus_two == "192.168.1.6"

    @pytest.mark.parametrize("value", ["10.0.0.0/31", "10.0.0.1/32", "10.0.0.0", "garbage/8", "300.0.0.0/8", "", None])
    def test_rejects_malformed(self, value):
        with pytest.raises(MalformedCIDR):
            split_cidr(value)


class TestClassifyRouteTarget:
    @pytest.mark.parametrize(
        "target,expected",
        [
            ("local", RouteTarget.LOCAL),
            ("igw-1a2b", RouteTarget.INTERNET_GATEWAY),
            ("vgw-77", RouteTarget.VIRTUAL_PRIVATE_GATEWAY),
            ("eni-abc123", RouteTarget.ENI),
            ("pcx-9", RouteTarget.PEERING),
            ("nat-0f", RouteTarget.NAT_GATEWAY),
        ],
    )
    def test_known_targets(self, target, expected):
        assert classify_route_target(target) == expected

    @pytest.mark.parametrize("target", ["", "igw-", "igw_1", "blackhole", "nat-1/2", None, 42])
    def test_anything_else_is_invalid(self, target):
        assert classify_route_target(target) == RouteTarget.INVALID


def test_address_helpers():
    assert ip_in_cidr("10.0.1.5", "10.0.0.0/16")
    assert not ip_in_cidr("10.1.0.1", "10.0.0.0/16")
    assert not ip_in_cidr("not-an-ip", "10.0.0.0/16")
    assert offset_address("169.254.0.0", 3) == "169.254.0.3"
