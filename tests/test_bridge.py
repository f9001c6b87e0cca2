from ipaddress import ip_address, ip_interface
from types import SimpleNamespace

import pytest

from netavark import constants
from netavark.bridge import (
    NO_BRIDGE_NAME_ERROR,
    Bridge,
    DnsEntry,
    get_interface_name,
    get_isolate_option,
)
from netavark.core_utils import create_network_hash
from netavark.internal_types import DriverInfo, IsolateOption, NetavarkError
from netavark.types import Network, PerNetworkOptions, Route, Subnet


class FakeSocket:
    def __init__(self, connected=(), fail_del_link=False):
        self.calls = []
        self.connected = list(connected)
        self.fail_del_link = fail_del_link

    def del_route(self, route):
        self.calls.append(("del_route", route))

    def del_link(self, link):
        self.calls.append(("del_link", link))
        if self.fail_del_link:
            raise NetavarkError("boom")

    def get_link(self, link):
        self.calls.append(("get_link", link))
        return SimpleNamespace(index=7)

    def dump_links(self, attrs):
        self.calls.append(("dump_links", attrs))
        return self.connected


class FakeFirewall:
    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def teardown_network(self, tn):
        self.calls.append(("teardown_network", tn))

    def teardown_port_forward(self, tpf):
        self.calls.append(("teardown_port_forward", tpf))
        if self.fail:
            raise NetavarkError("firewall broken")


def make_info(options=None, interface="podman0", if_name="eth0", internal=False,
              static_mac=None, routes=None, firewall=None):
    network = Network(
        dns_enabled=True,
        driver="bridge",
        id="abc",
        internal=internal,
        ipv6_enabled=False,
        name="podman",
        network_interface=interface,
        options=options,
        subnets=[Subnet(subnet=ip_interface("10.88.0.0/16"), gateway=ip_address("10.88.0.1"))],
        routes=routes,
    )
    opts = PerNetworkOptions(
        interface_name=if_name,
        aliases=["alias"],
        static_ips=[ip_address("10.88.0.2")],
        static_mac=static_mac,
    )
    return DriverInfo(
        firewall=firewall or FakeFirewall(),
        container_id="cid",
        container_name="cname",
        container_dns_servers=None,
        netns_host=-1,
        netns_container=-1,
        netns_path="/run/netns/test",
        network=network,
        per_network_opts=opts,
        port_mappings=None,
        dns_port=53,
    )


def test_get_interface_name():
    assert get_interface_name("podman0") == "podman0"
    with pytest.raises(NetavarkError, match=NO_BRIDGE_NAME_ERROR):
        get_interface_name(None)
    with pytest.raises(NetavarkError, match=NO_BRIDGE_NAME_ERROR):
        get_interface_name("")


@pytest.mark.parametrize(
    "opts, expected",
    [
        (None, IsolateOption.NEVER),
        ({"isolate": "strict"}, IsolateOption.STRICT),
        ({"isolate": "true"}, IsolateOption.NORMAL),
        ({"isolate": "false"}, IsolateOption.NEVER),
        ({"isolate": "bogus"}, IsolateOption.NEVER),
    ],
)
def test_get_isolate_option(opts, expected):
    assert get_isolate_option(opts) is expected


def test_network_name():
    assert Bridge(make_info()).network_name() == "podman"


def test_validate_defaults():
    bridge = Bridge(make_info())
    bridge.validate()
    data = bridge.data
    assert data.bridge_interface_name == "podman0"
    assert data.container_interface_name == "eth0"
    assert data.mtu == 0
    assert data.metric == constants.DEFAULT_METRIC
    assert data.isolate is IsolateOption.NEVER
    assert data.no_default_route is False
    assert data.vrf is None
    assert data.ipam.container_addresses == [ip_interface("10.88.0.2/16")]


def test_validate_options():
    bridge = Bridge(make_info(
        options={"mtu": "1400", "metric": "50", "isolate": "strict",
                 "no_default_route": "true", "vrf": "vrf0"},
        static_mac="02:00:00:00:00:01",
    ))
    bridge.validate()
    data = bridge.data
    assert data.mtu == 1400
    assert data.metric == 50
    assert data.isolate is IsolateOption.STRICT
    assert data.no_default_route is True
    assert data.vrf == "vrf0"
    assert data.mac_address == bytes([2, 0, 0, 0, 0, 1])


def test_validate_errors():
    with pytest.raises(NetavarkError, match=NO_BRIDGE_NAME_ERROR):
        Bridge(make_info(interface=None)).validate()
    with pytest.raises(NetavarkError, match=constants.NO_CONTAINER_INTERFACE_ERROR):
        Bridge(make_info(if_name="")).validate()
    with pytest.raises(NetavarkError, match='unable to parse "mtu"'):
        Bridge(make_info(options={"mtu": "abc"})).validate()


def test_setup_requires_validate():
    with pytest.raises(NetavarkError, match="must call validate"):
        Bridge(make_info()).setup((FakeSocket(), FakeSocket()))


def test_teardown_complete_removes_bridge_and_firewall():
    firewall = FakeFirewall()
    route = Route(gateway=ip_address("10.88.0.1"), destination=ip_interface("192.168.0.0/24"))
    info = make_info(routes=[route], firewall=firewall, options={"isolate": "true"})
    host, netns = FakeSocket(), FakeSocket()
    Bridge(info).teardown((host, netns))

    assert [c[0] for c in netns.calls] == ["del_route", "del_link"]
    assert netns.calls[0][1].gw == ip_address("10.88.0.1")
    assert netns.calls[1][1] == "eth0"
    assert ("del_link", 7) in host.calls

    names = [c[0] for c in firewall.calls]
    assert names == ["teardown_network", "teardown_port_forward"]
    tn = firewall.calls[0][1]
    assert tn.complete_teardown is True
    assert tn.config.isolation is IsolateOption.NORMAL
    spf = firewall.calls[1][1].config
    assert spf.container_ip_v4 == ip_address("10.88.0.2")
    assert spf.subnet_v4 == ip_interface("10.88.0.0/16").network
    assert spf.container_ip_v6 is None
    assert spf.dns_server_ips == [ip_address("10.88.0.1")]
    assert spf.network_hash_name == create_network_hash("podman", len(spf.network_hash_name))
    assert len(spf.network_hash_name) == 13


def test_teardown_bridge_in_use_keeps_network_rules():
    firewall = FakeFirewall()
    host = FakeSocket(connected=[SimpleNamespace(index=9)])
    Bridge(make_info(firewall=firewall)).teardown((host, FakeSocket()))
    assert [c[0] for c in firewall.calls] == ["teardown_port_forward"]
    assert firewall.calls[0][1].complete_teardown is False
    assert not any(c[0] == "del_link" for c in host.calls)


def test_teardown_internal_skips_firewall():
    firewall = FakeFirewall()
    Bridge(make_info(internal=True, firewall=firewall)).teardown((FakeSocket(), FakeSocket()))
    assert firewall.calls == []


def test_teardown_collects_errors():
    firewall = FakeFirewall(fail=True)
    netns = FakeSocket(fail_del_link=True)
    with pytest.raises(NetavarkError) as info:
        Bridge(make_info(firewall=firewall)).teardown((FakeSocket(), netns))
    message = str(info.value)
    assert "failed to delete container veth eth0" in message
    assert "firewall broken" in message
    assert len(info.value.errors) == 2


def test_dns_entry_defaults():
    entry = DnsEntry(network_name="podman", container_id="cid")
    assert entry.container_names == []
    assert entry.network_dns_servers is None