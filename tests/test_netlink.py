import subprocess
from unittest.mock import patch

import pytest

from vpcmido.errors import HostNetworkError
from vpcmido.netlink.netlink_manager import NetlinkManager


class FakeIp:
    """Answers `ip` invocations from a table of (command prefix -> result)."""

    def __init__(self, namespaces=(), links=()):
        self.namespaces = list(namespaces)
        self.links = set(links)
        self.commands = []
        self.errors = {}

    def __call__(self, cmd, capture_output=True, text=True):
        self.commands.append(cmd)
        joined = " ".join(cmd)
        for prefix, (code, stderr) in self.errors.items():
            if joined.startswith(prefix):
                return subprocess.CompletedProcess(cmd, code, "", stderr)
        if cmd[:3] == ["ip", "netns", "list"]:
            out = "".join(f"{ns} (id: {i})\n" for i, ns in enumerate(self.namespaces))
            return subprocess.CompletedProcess(cmd, 0, out, "")
        if cmd[:4] == ["ip", "-o", "link", "show"]:
            out = "".join(f"{i}: {name}@if{i + 10}: <BROADCAST,UP> mtu 1500\n" for i, name in enumerate(sorted(self.links), 1))
            return subprocess.CompletedProcess(cmd, 0, out, "")
        if cmd[:3] == ["ip", "link", "show"]:
            return subprocess.CompletedProcess(cmd, 0 if cmd[3] in self.links else 1, "", "")
        return subprocess.CompletedProcess(cmd, 0, "", "")


@pytest.fixture
def fake_ip():
    fake = FakeIp()
    with patch("vpcmido.netlink.netlink_manager.subprocess.run", side_effect=fake):
        yield fake


def test_list_namespaces(fake_ip):
    fake_ip.namespaces = ["meta-vpc-1", "other"]
    assert NetlinkManager().list_namespaces() == ["meta-vpc-1", "other"]


def test_list_links_strips_peer_suffix(fake_ip):
    fake_ip.links = {"eth0", "vn2_subnet-1"}
    assert NetlinkManager().list_links() == ["eth0", "vn2_subnet-1"]


def test_existing_namespace_is_kept(fake_ip):
    fake_ip.namespaces = ["meta-vpc-1"]
    ns = NetlinkManager().create_namespace("meta-vpc-1")
    assert ns.name == "meta-vpc-1"
    assert ["ip", "netns", "add", "meta-vpc-1"] not in fake_ip.commands


def test_missing_namespace_is_created(fake_ip):
    NetlinkManager().create_namespace("meta-vpc-1")
    assert ["ip", "netns", "add", "meta-vpc-1"] in fake_ip.commands
    assert ["ip", "netns", "exec", "meta-vpc-1", "ip", "link", "set", "lo", "up"] in fake_ip.commands


def test_create_veth_pair(fake_ip):
    manager = NetlinkManager()
    manager.create_namespace("meta-vpc-1")
    pair = manager.create_veth_pair("vn2_subnet-1", "vn3_subnet-1", namespace="meta-vpc-1")

    assert pair.namespace == "meta-vpc-1"
    assert ["ip", "link", "add", "vn2_subnet-1", "type", "veth", "peer", "name", "vn3_subnet-1"] in fake_ip.commands
    assert ["ip", "link", "set", "vn3_subnet-1", "netns", "meta-vpc-1"] in fake_ip.commands
    assert fake_ip.commands[-1] == ["ip", "netns", "exec", "meta-vpc-1", "ip", "link", "set", "vn3_subnet-1", "up"]
    assert manager.namespaces["meta-vpc-1"].interfaces == ["vn3_subnet-1"]


def test_existing_veth_is_only_brought_up(fake_ip):
    fake_ip.links = {"vn2_subnet-1"}
    NetlinkManager().create_veth_pair("vn2_subnet-1", "vn3_subnet-1")
    assert [c for c in fake_ip.commands if c[:3] == ["ip", "link", "add"]] == []
    assert ["ip", "link", "set", "vn3_subnet-1", "up"] in fake_ip.commands


def test_delete_namespace_forgets_its_veths(fake_ip):
    fake_ip.namespaces = ["meta-vpc-1"]
    manager = NetlinkManager()
    manager.create_namespace("meta-vpc-1")
    manager.create_veth_pair("vn2_subnet-1", "vn3_subnet-1", namespace="meta-vpc-1")
    manager.delete_namespace("meta-vpc-1")
    assert ["ip", "netns", "del", "meta-vpc-1"] in fake_ip.commands
    assert manager.veth_pairs == {}


def test_existing_address_is_tolerated(fake_ip):
    fake_ip.errors["ip netns exec meta-vpc-1 ip addr add"] = (2, "RTNETLINK answers: File exists")
    NetlinkManager().add_ip_address("lo", "169.254.169.254/32", namespace="meta-vpc-1")


def test_address_failure_raises(fake_ip):
    fake_ip.errors["ip addr add"] = (1, "Cannot find device")
    with pytest.raises(HostNetworkError):
        NetlinkManager().add_ip_address("vn3_subnet-1", "10.0.1.2/24")


def test_failed_command_raises(fake_ip):
    fake_ip.errors["ip netns add"] = (1, "permission denied")
    with pytest.raises(HostNetworkError):
        NetlinkManager().create_namespace("meta-vpc-1")


def test_missing_ip_binary():
    with patch("vpcmido.netlink.netlink_manager.subprocess.run", side_effect=FileNotFoundError("ip")):
        with pytest.raises(HostNetworkError):
            NetlinkManager().list_namespaces()
