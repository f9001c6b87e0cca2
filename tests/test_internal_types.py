import errno
import os
from ipaddress import ip_address, ip_network

import pytest

from netavark.internal_types import (
    IPAMAddresses,
    IsolateOption,
    NetavarkError,
    NetlinkError,
    NetworkDriver,
    PortForwardConfig,
    SetupNetwork,
    TearDownNetwork,
    TeardownPortForward,
)
from netavark.types import Network, StatusBlock


def test_plain_error_message():
    err = NetavarkError("boom")
    assert str(err) == "boom"
    assert err.cause is None


def test_wrap_prefixes_message():
    inner = NetavarkError("boom")
    err = NetavarkError.wrap("setns", inner)
    assert str(err) == "setns: boom"
    assert err.cause is inner


def test_wrap_chains():
    err = NetavarkError.wrap("a", NetavarkError.wrap("b", ValueError("c")))
    assert str(err) == "a: b: c"


def test_netlink_error_carries_errno():
    err = NetlinkError(errno.ENODEV)
    assert err.errno == errno.ENODEV
    assert os.strerror(errno.ENODEV) in str(err)
    assert isinstance(err, NetavarkError)


def test_netlink_error_custom_message():
    assert str(NetlinkError(errno.EEXIST, "exists")) == "exists"


def test_wrapped_netlink_error_keeps_cause():
    err = NetlinkError.wrap("create bridge", NetlinkError(errno.EEXIST))
    assert type(err) is NetavarkError
    assert err.cause.errno == errno.EEXIST
    assert str(err).startswith("create bridge: ")


def test_isolate_option_values():
    assert IsolateOption("strict") is IsolateOption.STRICT
    assert IsolateOption("true") is IsolateOption.NORMAL
    assert IsolateOption("false") is IsolateOption.NEVER
    with pytest.raises(ValueError):
        IsolateOption("sometimes")


def test_ipam_addresses_defaults_are_independent():
    first = IPAMAddresses()
    second = IPAMAddresses()
    first.nameservers.append(ip_address("10.0.0.1"))
    assert second.nameservers == []
    assert not first.dhcp_enabled


def _network():
    return Network(
        dns_enabled=False, driver="bridge", id="n1", internal=False, ipv6_enabled=False, name="net"
    )


def test_teardown_structures_nest():
    setup = SetupNetwork(net=_network(), network_hash_name="ABC", isolation=IsolateOption.NEVER)
    teardown = TearDownNetwork(config=setup, dns_port=53, complete_teardown=True)
    pf = PortForwardConfig(
        container_id="c1",
        port_mappings=None,
        network_name="net",
        network_hash_name="ABC",
        container_ip_v4=ip_address("10.0.0.2"),
        subnet_v4=ip_network("10.0.0.0/24"),
        container_ip_v6=None,
        subnet_v6=None,
        dns_port=53,
        dns_server_ips=[],
    )
    tpf = TeardownPortForward(config=pf, complete_teardown=False)
    assert teardown.config.net.name == tpf.config.network_name
    assert tpf.config.container_ip_v4 in tpf.config.subnet_v4


def test_network_driver_is_abstract():
    with pytest.raises(TypeError):
        NetworkDriver()


def test_network_driver_subclass():
    class Dummy(NetworkDriver):
        def validate(self):
            return None

        def setup(self, sockets):
            return StatusBlock(), None

        def teardown(self, sockets):
            return None

        def network_name(self):
            return "dummy"

    driver = Dummy()
    status, entry = driver.setup((None, None))
    assert driver.network_name() == "dummy"
    assert status == StatusBlock()
    assert entry is None