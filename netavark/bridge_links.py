"""Link handling for the bridge driver: the bridge itself, the veth pair and forwarding sysctls."""

from __future__ import annotations

import errno
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from netavark import constants
from netavark.core_utils import (
    add_default_routes,
    apply_sysctl_value,
    disable_ipv6_autoconf,
    encode_address_to_hex,
    in_netns,
)
from netavark.internal_types import (
    IPAMAddresses,
    IsolateOption,
    NetavarkError,
    NetlinkError,
)
from netavark.netlink import (
    CreateLinkOptions,
    InfoKind,
    LinkMessage,
    VethInfo,
    parse_create_link_options,
)

logger = logging.getLogger(__name__)

IPV4_FORWARD = "net.ipv4.ip_forward"
IPV6_FORWARD = "net.ipv6.conf.all.forwarding"

_forward_lock = threading.Lock()
_forward_applied: set[str] = set()


@dataclass
class BridgeData:
    """Validated settings of one container on a bridge network."""

    container_interface_name: str
    bridge_interface_name: str
    mac_address: bytes | None = None
    ipam: IPAMAddresses = field(default_factory=IPAMAddresses)
    mtu: int = 0
    isolate: IsolateOption = IsolateOption.NEVER
    metric: int | None = constants.DEFAULT_METRIC
    no_default_route: bool = False
    vrf: str | None = None


def _apply_once(name: str) -> None:
    # Only the first caller sets the value; later callers see success.
    with _forward_lock:
        if name in _forward_applied:
            return
        _forward_applied.add(name)
    apply_sysctl_value(name, "1")


def setup_ipv4_fw_sysctl() -> None:
    """Enable IPv4 forwarding, once per process."""
    _apply_once(IPV4_FORWARD)


def setup_ipv6_fw_sysctl() -> None:
    """Enable IPv6 forwarding, once per process."""
    _apply_once(IPV6_FORWARD)


def _wrapped(message: str, call: Callable[..., Any], *args: Any) -> Any:
    try:
        return call(*args)
    except NetavarkError as err:
        raise NetavarkError.wrap(message, err) from err


def _kind_label(kind: InfoKind | str) -> str:
    return kind.value if isinstance(kind, InfoKind) else str(kind)


def _check_kind(msg: LinkMessage, expected: InfoKind, exists_prefix: str, what: str) -> LinkMessage:
    if msg.kind is None:
        raise NetavarkError(f"could not determine namespace link kind for {what}")
    if msg.kind == expected:
        return msg
    raise NetavarkError(
        f"{exists_prefix} already exists but is a {_kind_label(msg.kind)} interface"
    )


def check_link_is_bridge(msg: LinkMessage, name: str) -> LinkMessage:
    """Return ``msg`` if it describes a bridge, otherwise raise."""
    return _check_kind(msg, InfoKind.BRIDGE, f"bridge interface {name}", f"bridge {name}")


def check_link_is_vrf(msg: LinkMessage, name: str) -> LinkMessage:
    """Return ``msg`` if it describes a VRF, otherwise raise."""
    return _check_kind(msg, InfoKind.VRF, f"vrf {name}", f"vrf {name}")


def _create_bridge(host: Any, data: BridgeData) -> LinkMessage:
    name = data.bridge_interface_name
    opts = CreateLinkOptions(name=name, kind=InfoKind.BRIDGE, mtu=data.mtu)

    if data.vrf:
        vrf = _wrapped("get vrf to set up bridge interface", host.get_link, data.vrf)
        vrf = check_link_is_vrf(vrf, data.vrf)
        opts.primary_index = vrf.index

    _wrapped("create bridge", host.create_link, opts)

    if data.ipam.ipv6_enabled:
        # no duplicate address detection and no router advertisements on the bridge
        apply_sysctl_value(f"/proc/sys/net/ipv6/conf/{name}/accept_dad", "0")
        apply_sysctl_value(f"/proc/sys/net/ipv6/conf/{name}/accept_ra", "0")

    link = _wrapped("get bridge interface", host.get_link, name)
    for addr in data.ipam.gateway_addresses:
        _wrapped("add ip addr to bridge", host.add_addr, link.index, addr)
    _wrapped("set bridge up", host.set_up, link.index)
    return link


def create_interfaces(
    host: Any,
    netns: Any,
    data: BridgeData,
    internal: bool,
    hostns_fd: Any,
    netns_fd: Any,
) -> str:
    """Make sure the bridge exists, attach a veth pair to it; return the container MAC."""
    name = data.bridge_interface_name
    try:
        link = host.get_link(name)
    except NetlinkError as err:
        # a missing bridge is created, every other failure is reported
        if err.errno != errno.ENODEV:
            raise NetavarkError.wrap("get bridge interface", err) from err
        bridge = _create_bridge(host, data)
    else:
        bridge = check_link_is_bridge(link, name)

    return create_veth_pair(host, netns, data, bridge.index, internal, hostns_fd, netns_fd)


def create_veth_pair(
    host: Any,
    netns: Any,
    data: BridgeData,
    primary_index: int,
    internal: bool,
    hostns_fd: Any,
    netns_fd: Any,
) -> str:
    """Create a veth pair with one end in the container; return the container MAC."""
    if_name = data.container_interface_name
    peer = parse_create_link_options(
        CreateLinkOptions(
            name=if_name,
            kind=InfoKind.VETH,
            mac=data.mac_address or b"",
            mtu=data.mtu,
            netns=netns_fd,
        )
    )
    host_veth = CreateLinkOptions(
        name="",
        kind=InfoKind.VETH,
        mtu=data.mtu,
        primary_index=primary_index,
        info_data=VethInfo(peer=peer),
    )

    try:
        host.create_link(host_veth)
    except NetavarkError as err:
        if isinstance(err, NetlinkError) and err.errno == errno.EEXIST:
            message = (
                f"create veth pair: interface {if_name} already exists on container namespace"
            )
        else:
            message = "create veth pair"
        raise NetavarkError.wrap(message, err) from err

    veth = _wrapped("get container veth", netns.get_link, if_name)
    if not veth.address:
        raise NetavarkError("failed to get the mac address from the container veth interface")
    mac = encode_address_to_hex(veth.address)
    host_link = veth.link or 0

    with in_netns(hostns_fd, netns_fd):
        disable_ipv6_autoconf(if_name)
        if data.ipam.ipv6_enabled:
            apply_sysctl_value(f"/proc/sys/net/ipv6/conf/{if_name}/accept_dad", "0")

    if data.ipam.ipv6_enabled:
        host_end = host.get_link(host_link)
        if host_end.ifname is not None:
            apply_sysctl_value(f"/proc/sys/net/ipv6/conf/{host_end.ifname}/accept_dad", "0")

    _wrapped("failed to set host veth up", host.set_up, host_link)

    for addr in data.ipam.container_addresses:
        _wrapped("add ip addr to container veth", netns.add_addr, veth.index, addr)

    _wrapped("set container veth up", netns.set_up, veth.index)

    if not internal and not data.no_default_route:
        add_default_routes(netns, data.ipam.gateway_addresses, data.metric)

    for route in data.ipam.routes:
        netns.add_route(route)

    return mac


def remove_link(host: Any, netns: Any, br_name: str, container_veth_name: str) -> bool:
    """Delete the container veth and, if nothing else uses it, the bridge.

    Returns True when the bridge was removed as well.
    """
    _wrapped(
        f"failed to delete container veth {container_veth_name}",
        netns.del_link,
        container_veth_name,
    )
    bridge = _wrapped("failed to get bridge interface", host.get_link, br_name)
    links = _wrapped(
        "failed to get connected bridge interfaces", host.dump_links, {"master": bridge.index}
    )
    if links:
        return False
    logger.info("removing bridge %s", br_name)
    _wrapped(f"failed to delete bridge {br_name}", host.del_link, bridge.index)
    return True