from ipaddress import ip_address, ip_interface

import pytest

from netavark import constants
from netavark.core_utils import get_ipam_addresses, parse_option
from netavark.types import Network, PerNetworkOptions, Route, Subnet


def _network(**kwargs):
    values = dict(
        dns_enabled=False,
        driver=constants.DRIVER_BRIDGE,
        id="id",
        internal=False,
        ipv6_enabled=False,
        name="podman",
    )
    values.update(kwargs)
    return Network(**values)


def test_default_metric_survives_route_round_trip():
    data = {
        "gateway": "10.1.0.1",
        "destination": "10.2.0.0/16",
        "metric": constants.DEFAULT_METRIC,
    }
    route = Route.from_dict(data)
    assert route.metric == constants.DEFAULT_METRIC
    assert route.to_dict() == data


def test_host_local_ipam_driver_is_recognised():
    network = _network(
        ipam_options={"driver": constants.IPAM_HOSTLOCAL},
        subnets=[Subnet(subnet=ip_interface("10.88.0.0/16"), gateway=ip_address("10.88.0.1"))],
    )
    opts = PerNetworkOptions(interface_name="eth0", static_ips=[ip_address("10.88.0.5")])
    ipam = get_ipam_addresses(opts, network)
    assert ipam.dhcp_enabled is False
    assert ipam.container_addresses == [ip_interface("10.88.0.5/16")]


@pytest.mark.parametrize(
    "driver, dhcp",
    [(constants.IPAM_DHCP, True), (constants.IPAM_NONE, False)],
)
def test_addressless_ipam_drivers_are_recognised(driver, dhcp):
    network = _network(ipam_options={"driver": driver})
    ipam = get_ipam_addresses(PerNetworkOptions(interface_name="eth0"), network)
    assert ipam.dhcp_enabled is dhcp
    assert ipam.container_addresses == []


@pytest.mark.parametrize(
    "value",
    [
        constants.ISOLATE_OPTION_TRUE,
        constants.ISOLATE_OPTION_FALSE,
        constants.ISOLATE_OPTION_STRICT,
    ],
)
def test_isolate_values_parse_under_option_key(value):
    opts = {constants.OPTION_ISOLATE: value}
    assert parse_option(opts, constants.OPTION_ISOLATE, str) == value


def test_option_keys_are_looked_up_independently():
    opts = {
        constants.OPTION_MTU: "1400",
        constants.OPTION_METRIC: "250",
        constants.OPTION_NO_DEFAULT_ROUTE: "true",
        constants.OPTION_BCLIM: "-1",
        constants.OPTION_VRF: "blue",
        constants.OPTION_MODE: "l3",
    }
    assert parse_option(opts, constants.OPTION_MTU, int) == 1400
    assert parse_option(opts, constants.OPTION_METRIC, int) == 250
    assert parse_option(opts, constants.OPTION_NO_DEFAULT_ROUTE, bool) is True
    assert parse_option(opts, constants.OPTION_VRF, str) == "blue"
    assert parse_option(opts, constants.OPTION_MODE, str) == "l3"
    assert parse_option(opts, constants.OPTION_ISOLATE, str) is None