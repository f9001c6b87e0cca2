"""macvlan and ipvlan network driver."""

from __future__ import annotations

import errno
import logging
import re
import secrets
import string
from dataclasses import dataclass, replace
from typing import Any

from netavark import constants
from netavark.core_utils import (
    add_default_routes,
    create_route_list,
    decode_address_from_hex,
    disable_ipv6_autoconf,
    encode_address_to_hex,
    get_ipam_addresses,
    get_ipvlan_mode_from_string,
    get_macvlan_mode_from_string,
    in_netns,
    parse_option,
)
from netavark.internal_types import (
    DriverInfo,
    IPAMAddresses,
    NetavarkError,
    NetlinkError,
    NetworkDriver,
)
from netavark.netlink import (
    CreateLinkOptions,
    InfoKind,
    IpVlanInfo,
    LinkMessage,
    MacVlanInfo,
)
from netavark.types import NetAddress, NetInterface, StatusBlock

logger = logging.getLogger(__name__)

_TMP_NAME_CHARS = string.ascii_letters + string.digits
_CREATE_ATTEMPTS = 3
_SIGNED = re.compile(r"[+-]?[0-9]+")


def _parse_i32(text: str) -> int:
    if not text:
        raise ValueError("cannot parse integer from empty string")
    if not _SIGNED.fullmatch(text):
        raise ValueError("invalid digit found in string")
    value = int(text)
    if value >= 1 << 31:
        raise ValueError("number too large to fit in target type")
    if value < -(1 << 31):
        raise ValueError("number too small to fit in target type")
    return value


@dataclass
class _MacVlan:
    mode: int
    mac_address: bytes | None = None
    bclim: int | None = None

    def __str__(self) -> str:
        return "macvlan"


@dataclass
class _IpVlan:
    mode: int

    def __str__(self) -> str:
        return "ipvlan"


@dataclass
class _VlanData:
    container_interface_name: str
    host_interface_name: str
    ipam: IPAMAddresses
    mtu: int
    metric: int | None
    kind: _MacVlan | _IpVlan
    no_default_route: bool


def _get_dhcp_lease(host_iface: str, container_iface: str, ns_path: str, mac: str) -> list[NetAddress]:
    raise NetavarkError(
        f"unable to obtain lease for {container_iface} via {host_iface or 'default interface'}: "
        "dhcp proxy is not available"
    )


def _release_dhcp_lease(host_iface: str, container_iface: str, ns_path: str, mac: str) -> None:
    raise NetavarkError(
        f"unable to release lease for {container_iface}: dhcp proxy is not available"
    )


class Vlan(NetworkDriver):
    """Driver connecting a container to a macvlan or ipvlan network."""

    def __init__(self, info: DriverInfo) -> None:
        self.info = info
        self._data: _VlanData | None = None

    def network_name(self) -> str:
        return self.info.network.name

    def validate(self) -> None:
        opts = self.info.per_network_opts
        network = self.info.network
        if not opts.interface_name:
            raise NetavarkError(constants.NO_CONTAINER_INTERFACE_ERROR)

        mode = parse_option(network.options, constants.OPTION_MODE)
        ipam = get_ipam_addresses(opts, network)

        mtu = parse_option(network.options, constants.OPTION_MTU, int)
        metric = parse_option(network.options, constants.OPTION_METRIC, int)
        no_default_route = parse_option(network.options, constants.OPTION_NO_DEFAULT_ROUTE, bool)

        # internal networks get no gateways
        if network.internal:
            ipam.gateway_addresses = []

        kind: _MacVlan | _IpVlan
        if network.driver == constants.DRIVER_IPVLAN:
            kind = _IpVlan(mode=get_ipvlan_mode_from_string(mode))
        elif network.driver == constants.DRIVER_MACVLAN:
            bclim = parse_option(network.options, constants.OPTION_BCLIM, _parse_i32)
            kind = _MacVlan(
                mode=get_macvlan_mode_from_string(mode),
                mac_address=(
                    None if opts.static_mac is None else decode_address_from_hex(opts.static_mac)
                ),
                bclim=bclim,
            )
        else:
            raise NetavarkError(f"unsupported VLAN type {network.driver}")

        self._data = _VlanData(
            container_interface_name=opts.interface_name,
            host_interface_name=network.network_interface or "",
            ipam=ipam,
            mtu=0 if mtu is None else mtu,
            metric=constants.DEFAULT_METRIC if metric is None else metric,
            kind=kind,
            no_default_route=bool(no_default_route),
        )

    def setup(self, sockets: tuple[Any, Any]) -> tuple[StatusBlock, None]:
        data = self._data
        if data is None:
            raise NetavarkError("must call validate() before setup()")

        if_name = self.info.per_network_opts.interface_name
        logger.debug("Setup network %s", self.info.network.name)
        logger.debug(
            "Container interface name: %s with IP addresses %s",
            if_name,
            data.ipam.container_addresses,
        )

        host, netns = sockets
        mac = _setup_link(
            host, netns, if_name, data, self.info.netns_host, self.info.netns_container
        )

        # with dhcp the proxy obtains the lease and assigns the address
        if data.ipam.dhcp_enabled:
            subnets = _get_dhcp_lease(
                data.host_interface_name,
                data.container_interface_name,
                self.info.netns_path,
                mac,
            )
        else:
            subnets = list(data.ipam.net_addresses)

        response = StatusBlock(
            dns_search_domains=[],
            dns_server_ips=[],
            interfaces={if_name: NetInterface(mac_address=mac, subnets=subnets)},
        )
        return response, None

    def teardown(self, sockets: tuple[Any, Any]) -> None:
        _host, netns = sockets
        opts = self.info.per_network_opts
        ipam = get_ipam_addresses(opts, self.info.network)

        # the proxy has to release the lease and update its cache
        if ipam.dhcp_enabled:
            try:
                dev = netns.get_link(opts.interface_name)
            except NetavarkError as err:
                raise NetavarkError.wrap(
                    f"get macvlan interface {opts.interface_name}", err
                ) from err
            _release_dhcp_lease(
                self.info.network.network_interface or "",
                opts.interface_name,
                self.info.netns_path,
                get_mac_address(dev),
            )

        for route in create_route_list(self.info.network.routes):
            netns.del_route(route)

        netns.del_link(opts.interface_name)


def _wrapped(message: str, call: Any, *args: Any) -> Any:
    try:
        return call(*args)
    except NetavarkError as err:
        raise NetavarkError.wrap(message, err) from err


def _link_options(if_name: str, data: _VlanData, link_index: int, netns_fd: Any) -> CreateLinkOptions:
    kind = data.kind
    if isinstance(kind, _IpVlan):
        return CreateLinkOptions(
            name=if_name,
            kind=InfoKind.IPVLAN,
            info_data=IpVlanInfo(mode=kind.mode),
            mtu=data.mtu,
            link=link_index,
            netns=netns_fd,
        )
    if kind.bclim is not None:
        logger.debug("setting macvlan bclim to %s", kind.bclim)
    return CreateLinkOptions(
        name=if_name,
        kind=InfoKind.MACVLAN,
        info_data=MacVlanInfo(mode=kind.mode, bc_cutoff=kind.bclim),
        mtu=data.mtu,
        link=link_index,
        mac=kind.mac_address or b"",
        netns=netns_fd,
    )


def _is_eexist(err: NetavarkError) -> bool:
    return isinstance(err, NetlinkError) and err.errno == errno.EEXIST


def _create_with_tmp_name(
    host: Any, netns: Any, opts: CreateLinkOptions, if_name: str, kind: Any
) -> None:
    # The kernel creates the link in the host namespace before moving it, so the
    # name may clash there. Create it under a random name, then rename it.
    for attempt in range(_CREATE_ATTEMPTS):
        tmp_name = "mv-" + "".join(secrets.choice(_TMP_NAME_CHARS) for _ in range(10))
        try:
            host.create_link(replace(opts, name=tmp_name))
        except NetavarkError as err:
            if attempt == _CREATE_ATTEMPTS - 1:
                raise NetavarkError(f"create {kind} interface: {err}") from err
            if _is_eexist(err):
                continue
            raise NetavarkError.wrap(f"create {kind} interface", err) from err

        tmp_link = _wrapped(f"get tmp {kind} interface", netns.get_link, tmp_name)
        try:
            netns.set_link_name(tmp_link.index, if_name)
        except NetavarkError as err:
            wrapped = NetavarkError.wrap(f"rename tmp {kind} interface", err)
            # the name is most likely taken in the netns; drop the tmp link
            try:
                netns.del_link(tmp_link.index)
            except NetavarkError as del_err:
                logger.error("failed to delete tmp %s link %s: %s", kind, tmp_name, del_err)
            raise wrapped from err
        return


def _setup_link(
    host: Any, netns: Any, if_name: str, data: _VlanData, hostns_fd: Any, netns_fd: Any
) -> str:
    kind = data.kind
    primary_ifname = data.host_interface_name or get_default_route_interface(host)
    link = host.get_link(primary_ifname)

    opts = _link_options(if_name, data, link.index, netns_fd)
    try:
        host.create_link(opts)
    except NetavarkError as err:
        if not _is_eexist(err):
            raise NetavarkError.wrap(f"create {kind} interface", err) from err
        _create_with_tmp_name(host, netns, opts, if_name, kind)

    with in_netns(hostns_fd, netns_fd):
        disable_ipv6_autoconf(if_name)

    dev = _wrapped(f"get {kind} interface", netns.get_link, if_name)
    for addr in data.ipam.container_addresses:
        _wrapped(f"add ip addr to {kind}", netns.add_addr, dev.index, addr)
    _wrapped(f"set {kind} up", netns.set_up, dev.index)

    if not data.no_default_route:
        add_default_routes(netns, data.ipam.gateway_addresses, data.metric)

    for route in data.ipam.routes:
        netns.add_route(route)

    return get_mac_address(dev)


def get_mac_address(link: LinkMessage) -> str:
    """Return the hardware address of a link as colon separated hex."""
    if link.address is None:
        raise NetavarkError("failed to get the the container mac address")
    return encode_address_to_hex(link.address)


def get_default_route_interface(host: Any) -> str:
    """Return the name of the interface that carries the default route."""
    routes = _wrapped("dump routes", host.dump_routes)
    for route in routes:
        # a route without destination is a default route
        if route.destination is None and route.oif:
            link = host.get_link(route.oif)
            if link.ifname is not None:
                return link.ifname
    raise NetavarkError("failed to get default route interface")