"""Bridge network driver: a veth pair per container attached to a host bridge."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from netavark import constants
from netavark.bridge_links import (
    BridgeData,
    create_interfaces,
    remove_link,
    setup_ipv4_fw_sysctl,
    setup_ipv6_fw_sysctl,
)
from netavark.core_utils import (
    apply_sysctl_value,
    create_network_hash,
    create_route_list,
    decode_address_from_hex,
    get_ipam_addresses,
    parse_option,
)
from netavark.internal_types import (
    DriverInfo,
    IsolateOption,
    NetavarkError,
    NetworkDriver,
    PortForwardConfig,
    SetupNetwork,
    TearDownNetwork,
    TeardownPortForward,
)
from netavark.types import IpAddress, IpNet, NetInterface, StatusBlock

logger = logging.getLogger(__name__)

NO_BRIDGE_NAME_ERROR = "no bridge interface name given"

# length of the network hash used in firewall chain names
_MAX_HASH_SIZE = 13


class _ErrorList(NetavarkError):
    """Several errors collected while doing as much cleanup as possible."""

    def __init__(self, errors: list[NetavarkError]) -> None:
        super().__init__("; ".join(str(err) for err in errors))
        self.errors = list(errors)


@dataclass
class DnsEntry:
    """What the DNS server needs to know about a container on a network."""

    network_name: str
    container_id: str
    network_gateways: list[IpAddress] = field(default_factory=list)
    network_dns_servers: list[IpAddress] | None = None
    container_ips_v4: list[IpAddress] = field(default_factory=list)
    container_ips_v6: list[IpAddress] = field(default_factory=list)
    container_names: list[str] = field(default_factory=list)
    container_dns_servers: list[IpAddress] | None = None


def get_interface_name(name: str | None) -> str:
    """Return the bridge name, raising when it is missing or empty."""
    if not name:
        raise NetavarkError(NO_BRIDGE_NAME_ERROR)
    return name


def get_isolate_option(opts: Mapping[str, str] | None) -> IsolateOption:
    """Read the isolate option; unknown or missing values mean no isolation."""
    value = parse_option(opts, constants.OPTION_ISOLATE)
    if value is None:
        value = constants.ISOLATE_OPTION_FALSE
    return {
        constants.ISOLATE_OPTION_STRICT: IsolateOption.STRICT,
        constants.ISOLATE_OPTION_TRUE: IsolateOption.NORMAL,
        constants.ISOLATE_OPTION_FALSE: IsolateOption.NEVER,
    }.get(value, IsolateOption.NEVER)


class Bridge(NetworkDriver):
    """Driver connecting a container to a bridge network."""

    def __init__(self, info: DriverInfo) -> None:
        self.info = info
        self.data: BridgeData | None = None

    def network_name(self) -> str:
        return self.info.network.name

    def validate(self) -> None:
        network = self.info.network
        opts = self.info.per_network_opts
        bridge_name = get_interface_name(network.network_interface)
        if not opts.interface_name:
            raise NetavarkError(constants.NO_CONTAINER_INTERFACE_ERROR)
        ipam = get_ipam_addresses(opts, network)

        mtu = parse_option(network.options, constants.OPTION_MTU, int)
        isolate = get_isolate_option(network.options)
        metric = parse_option(network.options, constants.OPTION_METRIC, int)
        no_default_route = parse_option(network.options, constants.OPTION_NO_DEFAULT_ROUTE, bool)
        vrf = parse_option(network.options, constants.OPTION_VRF)

        static_mac = None if opts.static_mac is None else decode_address_from_hex(opts.static_mac)

        self.data = BridgeData(
            container_interface_name=opts.interface_name,
            bridge_interface_name=bridge_name,
            mac_address=static_mac,
            ipam=ipam,
            mtu=0 if mtu is None else mtu,
            isolate=isolate,
            metric=constants.DEFAULT_METRIC if metric is None else metric,
            no_default_route=bool(no_default_route),
            vrf=vrf,
        )

    def setup(self, sockets: tuple[Any, Any]) -> tuple[StatusBlock, DnsEntry | None]:
        data = self.data
        if data is None:
            raise NetavarkError("must call validate() before setup()")

        network = self.info.network
        logger.debug("Setup network %s", network.name)
        logger.debug(
            "Container interface name: %s with IP addresses %s",
            data.container_interface_name,
            data.ipam.container_addresses,
        )
        logger.debug(
            "Bridge name: %s with IP addresses %s",
            data.bridge_interface_name,
            data.ipam.gateway_addresses,
        )

        setup_ipv4_fw_sysctl()
        if data.ipam.ipv6_enabled:
            setup_ipv6_fw_sysctl()

        host, netns = sockets
        mac = create_interfaces(
            host,
            netns,
            data,
            network.internal,
            self.info.netns_host,
            self.info.netns_container,
        )

        response = StatusBlock(
            dns_search_domains=[],
            dns_server_ips=[],
            interfaces={
                data.container_interface_name: NetInterface(
                    mac_address=mac, subnets=list(data.ipam.net_addresses)
                )
            },
        )

        entry: DnsEntry | None = None
        if network.dns_enabled:
            response.dns_server_ips = list(data.ipam.nameservers)
            # kept for compatibility with clients expecting the old search domain
            response.dns_search_domains = [constants.PODMAN_DEFAULT_SEARCH_DOMAIN]
            entry = self._dns_entry(data)
        elif self.info.container_dns_servers is not None:
            # without network dns the custom servers go straight to resolv.conf
            response.dns_server_ips = list(self.info.container_dns_servers)

        if network.internal:
            # internal networks do not route and get no firewall rules
            bridge = data.bridge_interface_name
            apply_sysctl_value(f"/proc/sys/net/ipv4/conf/{bridge}/forwarding", "0")
            if data.ipam.ipv6_enabled:
                apply_sysctl_value(f"/proc/sys/net/ipv6/conf/{bridge}/forwarding", "0")
            return response, entry

        self._setup_firewall(data)
        return response, entry

    def teardown(self, sockets: tuple[Any, Any]) -> None:
        host, netns = sockets
        errors: list[NetavarkError] = []

        for route in create_route_list(self.info.network.routes):
            try:
                netns.del_route(route)
            except NetavarkError as err:
                errors.append(err)

        bridge_name = get_interface_name(self.info.network.network_interface)
        try:
            complete_teardown = remove_link(
                host, netns, bridge_name, self.info.per_network_opts.interface_name
            )
        except NetavarkError as err:
            errors.append(err)
            complete_teardown = False

        if not self.info.network.internal:
            try:
                self._teardown_firewall(complete_teardown)
            except NetavarkError as err:
                errors.append(err)

        if errors:
            raise _ErrorList(errors)

    def _dns_entry(self, data: BridgeData) -> DnsEntry:
        ipv4 = [addr.ip for addr in data.ipam.container_addresses if addr.version == 4]
        ipv6 = [addr.ip for addr in data.ipam.container_addresses if addr.version == 6]
        names = [self.info.container_name, *(self.info.per_network_opts.aliases or [])]
        return DnsEntry(
            network_name=self.info.network.name,
            container_id=self.info.container_id,
            network_gateways=[gw.ip for gw in data.ipam.gateway_addresses],
            network_dns_servers=self.info.network.network_dns_servers,
            container_ips_v4=ipv4,
            container_ips_v6=ipv6,
            container_names=names,
            container_dns_servers=self.info.container_dns_servers,
        )

    def _firewall_conf(
        self,
        container_addresses: list[IpNet],
        nameservers: list[IpAddress],
        isolate: IsolateOption,
    ) -> tuple[SetupNetwork, PortForwardConfig]:
        hash_name = create_network_hash(self.info.network.name, _MAX_HASH_SIZE)
        setup = SetupNetwork(
            net=self.info.network, network_hash_name=hash_name, isolation=isolate
        )

        first: dict[int, IpNet] = {}
        for net in container_addresses:
            first.setdefault(net.version, net)
        v4 = first.get(4)
        v6 = first.get(6)

        forward = PortForwardConfig(
            container_id=self.info.container_id,
            port_mappings=self.info.port_mappings,
            network_name=self.info.network.name,
            network_hash_name=hash_name,
            container_ip_v4=None if v4 is None else v4.ip,
            subnet_v4=None if v4 is None else v4.network,
            container_ip_v6=None if v6 is None else v6.ip,
            subnet_v6=None if v6 is None else v6.network,
            dns_port=self.info.dns_port,
            dns_server_ips=nameservers,
        )
        return setup, forward

    def _setup_firewall(self, data: BridgeData) -> None:
        setup, forward = self._firewall_conf(
            data.ipam.container_addresses, data.ipam.nameservers, data.isolate
        )
        self.info.firewall.setup_network(setup, forward.dns_port)

        if forward.port_mappings is not None:
            # let traffic through localhost reach the containers
            apply_sysctl_value(
                f"net.ipv4.conf.{data.bridge_interface_name}.route_localnet", "1"
            )

        self.info.firewall.setup_port_forward(forward)

    def _teardown_firewall(self, complete_teardown: bool) -> None:
        if self.data is not None:
            addresses = self.data.ipam.container_addresses
            nameservers = self.data.ipam.nameservers
            isolate = self.data.isolate
        else:
            # errors are only logged so that as much as possible gets cleaned up
            try:
                isolate = get_isolate_option(self.info.network.options)
            except NetavarkError as err:
                logger.error("failed to parse %s option: %s", constants.OPTION_ISOLATE, err)
                isolate = IsolateOption.NEVER
            try:
                ipam = get_ipam_addresses(self.info.per_network_opts, self.info.network)
                addresses, nameservers = ipam.container_addresses, ipam.nameservers
            except NetavarkError as err:
                logger.error("failed to parse ipam options: %s", err)
                addresses, nameservers = [], []

        setup, forward = self._firewall_conf(addresses, nameservers, isolate)

        if complete_teardown:
            self.info.firewall.teardown_network(
                TearDownNetwork(
                    config=setup,
                    dns_port=forward.dns_port,
                    complete_teardown=complete_teardown,
                )
            )

        self.info.firewall.teardown_port_forward(
            TeardownPortForward(config=forward, complete_teardown=complete_teardown)
        )