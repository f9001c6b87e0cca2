import errno
from ipaddress import ip_interface

import pytest

from netavark.bridge_links import (
    BridgeData,
    check_link_is_bridge,
    check_link_is_vrf,
    create_interfaces,
    remove_link,
)
from netavark.internal_types import IPAMAddresses, NetavarkError, NetlinkError
from netavark.netlink import InfoKind, LinkMessage, VethInfo


class FakeSocket:
    def __init__(self, links=(), dump=(), errors=None, create_errors=None):
        self.links = list(links)
        self.dump = list(dump)
        self.errors = dict(errors or {})
        self.create_errors = dict(create_errors or {})
        self.calls = []
        self.created = []
        self._next_index = 100

    def _record(self, name, *args):
        self.calls.append((name, *args))
        if name in self.errors:
            raise self.errors[name]

    def get_link(self, link):
        self._record("get_link", link)
        for msg in self.links:
            if msg.ifname == link or msg.index == link:
                return msg
        raise NetlinkError(errno.ENODEV)

    def create_link(self, options):
        self._record("create_link", options)
        self.created.append(options)
        if options.name in self.create_errors:
            raise self.create_errors[options.name]
        self._next_index += 1
        self.links.append(
            LinkMessage(index=self._next_index, ifname=options.name, kind=options.kind)
        )

    def add_addr(self, index, addr):
        self._record("add_addr", index, addr)

    def set_up(self, link):
        self._record("set_up", link)

    def del_link(self, link):
        self._record("del_link", link)

    def dump_links(self, attrs):
        self._record("dump_links", attrs)
        return list(self.dump)


def _data(**kwargs):
    kwargs.setdefault("container_interface_name", "eth0")
    kwargs.setdefault("bridge_interface_name", "br0")
    return BridgeData(**kwargs)


def test_check_link_is_bridge_accepts_bridge():
    msg = LinkMessage(index=3, ifname="br0", kind=InfoKind.BRIDGE)
    assert check_link_is_bridge(msg, "br0") is msg


def test_check_link_is_bridge_rejects_other_kind():
    msg = LinkMessage(index=3, ifname="br0", kind=InfoKind.VETH)
    with pytest.raises(NetavarkError, match="bridge interface br0 already exists but is a"):
        check_link_is_bridge(msg, "br0")


def test_check_link_is_bridge_without_kind():
    with pytest.raises(
        NetavarkError, match="could not determine namespace link kind for bridge br0"
    ):
        check_link_is_bridge(LinkMessage(index=3), "br0")


def test_check_link_is_vrf():
    msg = LinkMessage(index=4, ifname="red", kind=InfoKind.VRF)
    assert check_link_is_vrf(msg, "red") is msg
    with pytest.raises(NetavarkError, match="vrf red already exists but is a"):
        check_link_is_vrf(LinkMessage(index=4, kind=InfoKind.BRIDGE), "red")
    with pytest.raises(NetavarkError, match="could not determine namespace link kind for vrf red"):
        check_link_is_vrf(LinkMessage(index=4), "red")


def test_remove_link_removes_unused_bridge():
    host = FakeSocket(links=[LinkMessage(index=7, ifname="br0", kind=InfoKind.BRIDGE)])
    netns = FakeSocket()
    assert remove_link(host, netns, "br0", "eth0") is True
    assert netns.calls == [("del_link", "eth0")]
    assert ("dump_links", {"master": 7}) in host.calls
    assert host.calls[-1] == ("del_link", 7)


def test_remove_link_keeps_bridge_in_use():
    host = FakeSocket(
        links=[LinkMessage(index=7, ifname="br0", kind=InfoKind.BRIDGE)],
        dump=[LinkMessage(index=9, master=7)],
    )
    assert remove_link(host, FakeSocket(), "br0", "eth0") is False
    assert all(call[0] != "del_link" for call in host.calls)


def test_remove_link_reports_failed_veth_delete():
    netns = FakeSocket(errors={"del_link": NetlinkError(errno.ENODEV)})
    with pytest.raises(NetavarkError) as info:
        remove_link(FakeSocket(), netns, "br0", "eth0")
    assert str(info.value).startswith("failed to delete container veth eth0")


def test_create_interfaces_reports_unexpected_lookup_error():
    host = FakeSocket(errors={"get_link": NetlinkError(errno.EPERM)})
    with pytest.raises(NetavarkError) as info:
        create_interfaces(host, FakeSocket(), _data(), False, 0, 0)
    assert info.value.message == "get bridge interface"
    assert info.value.cause.errno == errno.EPERM


def test_create_interfaces_rejects_existing_non_bridge():
    host = FakeSocket(links=[LinkMessage(index=5, ifname="br0", kind=InfoKind.VETH)])
    with pytest.raises(NetavarkError, match="already exists"):
        create_interfaces(host, FakeSocket(), _data(), False, 0, 0)
    assert not host.created


def test_create_interfaces_rejects_vrf_of_wrong_kind():
    host = FakeSocket(links=[LinkMessage(index=5, ifname="red", kind=InfoKind.BRIDGE)])
    with pytest.raises(NetavarkError, match="vrf red already exists"):
        create_interfaces(host, FakeSocket(), _data(vrf="red"), False, 0, 0)
    assert not host.created


def test_create_interfaces_creates_bridge_then_reports_existing_veth():
    gateway = ip_interface("10.88.0.1/16")
    data = _data(mtu=1400, ipam=IPAMAddresses(gateway_addresses=[gateway]))
    host = FakeSocket(create_errors={"": NetlinkError(errno.EEXIST)})
    with pytest.raises(NetavarkError) as info:
        create_interfaces(host, FakeSocket(), data, False, 0, 0)
    assert info.value.message == (
        "create veth pair: interface eth0 already exists on container namespace"
    )

    bridge_opts, veth_opts = host.created
    assert bridge_opts.name == "br0"
    assert bridge_opts.kind == InfoKind.BRIDGE
    assert bridge_opts.mtu == 1400
    bridge = next(link for link in host.links if link.ifname == "br0")
    assert ("add_addr", bridge.index, gateway) in host.calls
    assert ("set_up", bridge.index) in host.calls
    assert veth_opts.primary_index == bridge.index
    assert veth_opts.mtu == 1400


def test_create_interfaces_attaches_bridge_to_vrf():
    vrf = LinkMessage(index=42, ifname="red", kind=InfoKind.VRF)
    host = FakeSocket(links=[vrf], create_errors={"": NetlinkError(errno.EPERM)})
    with pytest.raises(NetavarkError) as info:
        create_interfaces(host, FakeSocket(), _data(vrf="red"), False, 0, 0)
    assert info.value.message == "create veth pair"
    assert host.created[0].primary_index == 42


def test_create_interfaces_requires_container_mac():
    bridge = LinkMessage(index=5, ifname="br0", kind=InfoKind.BRIDGE)
    host = FakeSocket(links=[bridge])
    netns = FakeSocket(links=[LinkMessage(index=2, ifname="eth0", link=11)])
    mac = bytes([0x02, 0, 0, 0, 0, 0x01])
    with pytest.raises(NetavarkError, match="failed to get the mac address"):
        create_interfaces(host, netns, _data(mac_address=mac, mtu=1500), False, 0, 0)

    (veth_opts,) = host.created
    assert veth_opts.name == ""
    assert veth_opts.primary_index == 5
    assert isinstance(veth_opts.info_data, VethInfo)
    peer = veth_opts.info_data.peer
    assert peer.ifname == "eth0"
    assert peer.address == mac
    assert peer.mtu == 1500
    assert peer.netns_fd == 0