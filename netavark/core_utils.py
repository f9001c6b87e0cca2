"""Helpers shared by the network drivers: IPAM, sysctl, namespaces and routes."""

from __future__ import annotations

import errno
import hashlib
import logging
import os
import re
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from ipaddress import ip_address, ip_interface
from typing import Any, BinaryIO

from netavark import constants
from netavark.internal_types import IPAMAddresses, NetavarkError
from netavark.netlink import (
    MACVLAN_MODE_BRIDGE,
    MACVLAN_MODE_PASSTHRU,
    MACVLAN_MODE_PRIVATE,
    MACVLAN_MODE_SOURCE,
    MACVLAN_MODE_VEPA,
    NetlinkRoute,
    Socket,
)
from netavark.types import IpNet, NetAddress, Network, PerNetworkOptions, Route

logger = logging.getLogger(__name__)

IPVLAN_MODE_L2 = 0
IPVLAN_MODE_L3 = 1
IPVLAN_MODE_L3S = 2

_CLONE_NEWNET = getattr(os, "CLONE_NEWNET", 0x40000000)
_SYSCTL_ROOT = "/proc/sys/"
_HOST_NETNS = "/proc/self/ns/net"

_UNSIGNED = re.compile(r"\+?[0-9]+")
_HEX_BYTE = re.compile(r"\+?[0-9A-Fa-f]+")


def _parse_unsigned(text: str, bits: int) -> int:
    if not text:
        raise ValueError("cannot parse integer from empty string")
    if not _UNSIGNED.fullmatch(text):
        raise ValueError("invalid digit found in string")
    value = int(text)
    if value >= 1 << bits:
        raise ValueError("number too large to fit in target type")
    return value


def _parse_u16(text: str) -> int:
    return _parse_unsigned(text, 16)


def _parse_u32(text: str) -> int:
    return _parse_unsigned(text, 32)


def _parse_bool(text: str) -> bool:
    if text == "true":
        return True
    if text == "false":
        return False
    raise ValueError("provided string was not `true` or `false`")


def _converter(kind: Any) -> Callable[[str], Any]:
    if kind is bool:
        return _parse_bool
    if kind is int:
        return _parse_u32
    if kind is str:
        return str
    return kind


def get_netavark_dns_port() -> int:
    """Return the DNS port from NETAVARK_DNS_PORT, or 53 when it is not set."""
    text = os.environ.get("NETAVARK_DNS_PORT")
    if text is None:
        return 53
    try:
        return _parse_u16(text)
    except ValueError as exc:
        raise NetavarkError(f"Invalid NETAVARK_DNS_PORT {text}: {exc}") from exc


def parse_option(opts: Mapping[str, str] | None, name: str, kind: Any = str) -> Any:
    """Parse option ``name`` from ``opts``; None when the option is not set.

    ``kind`` is ``str``, ``bool`` (``true``/``false``), ``int`` (unsigned 32 bit)
    or any callable that turns the text into a value and raises ValueError.
    """
    if opts is None or name not in opts:
        return None
    try:
        return _converter(kind)(opts[name])
    except ValueError as exc:
        raise NetavarkError(f'unable to parse "{name}": {exc}') from exc


def get_ipam_addresses(
    per_network_opts: PerNetworkOptions, network: Network
) -> IPAMAddresses:
    """Work out the container addresses, gateways and routes for a network."""
    driver = (network.ipam_options or {}).get("driver")
    if driver is None or driver == constants.IPAM_HOSTLOCAL:
        return _host_local_addresses(per_network_opts, network)
    if driver == constants.IPAM_NONE:
        return IPAMAddresses()
    if driver == constants.IPAM_DHCP:
        return IPAMAddresses(dhcp_enabled=True)
    raise NetavarkError(f"unsupported ipam driver {driver}")


def _host_local_addresses(
    per_network_opts: PerNetworkOptions, network: Network
) -> IPAMAddresses:
    static_ips = per_network_opts.static_ips
    if static_ips is None:
        raise NetavarkError("no static ips provided")

    addresses = IPAMAddresses()
    for idx, subnet in enumerate(network.subnets or []):
        prefix = subnet.subnet.network.prefixlen
        gateway = subnet.gateway
        if gateway is not None:
            try:
                gateway_net = ip_interface(f"{gateway}/{prefix}")
            except ValueError as exc:
                raise NetavarkError(
                    f"failed to parse address {gateway}/{prefix}: {exc}"
                ) from exc
            addresses.gateway_addresses.append(gateway_net)
            addresses.nameservers.append(gateway)

        # a dual stack network may not be flagged as ipv6, so check each subnet
        if subnet.subnet.version == 6:
            addresses.ipv6_enabled = True

        if idx >= len(static_ips):
            raise NetavarkError(f"no static ip provided for subnet {subnet.subnet}")
        try:
            container_address = ip_interface(f"{static_ips[idx]}/{prefix}")
        except ValueError as exc:
            raise NetavarkError(str(exc)) from exc
        addresses.container_addresses.append(container_address)
        addresses.net_addresses.append(NetAddress(ipnet=container_address, gateway=gateway))

    addresses.routes = create_route_list(network.routes)
    return addresses


def encode_address_to_hex(data: bytes) -> str:
    """Format a hardware address as lower case hex bytes joined by colons."""
    return ":".join(f"{byte:02x}" for byte in data)


def decode_address_from_hex(text: str) -> bytes:
    """Parse a MAC address written with ``:`` or ``-`` separators."""
    values = []
    for part in re.split(r"[:-]", text):
        if not part:
            reason = "cannot parse integer from empty string"
        elif not _HEX_BYTE.fullmatch(part):
            reason = "invalid digit found in string"
        else:
            value = int(part, 16)
            if value <= 0xFF:
                values.append(value)
                continue
            reason = "number too large to fit in target type"
        raise NetavarkError(f"unable to parse mac address {text}: {reason}")
    if len(values) != 6:
        raise NetavarkError(f"invalid mac length for address: {text}")
    return bytes(values)


def get_macvlan_mode_from_string(mode: str | None) -> int:
    """Map a macvlan mode name to its kernel value; bridge when unset."""
    modes = {
        None: MACVLAN_MODE_BRIDGE,
        "": MACVLAN_MODE_BRIDGE,
        "bridge": MACVLAN_MODE_BRIDGE,
        "private": MACVLAN_MODE_PRIVATE,
        "vepa": MACVLAN_MODE_VEPA,
        "passthru": MACVLAN_MODE_PASSTHRU,
        "source": MACVLAN_MODE_SOURCE,
    }
    try:
        return modes[mode]
    except KeyError:
        raise NetavarkError(f'invalid macvlan mode "{mode}"') from None


def get_ipvlan_mode_from_string(mode: str | None) -> int:
    """Map an ipvlan mode name to its kernel value; l2 when unset."""
    modes = {
        None: IPVLAN_MODE_L2,
        "": IPVLAN_MODE_L2,
        "l2": IPVLAN_MODE_L2,
        "l3": IPVLAN_MODE_L3,
        "l3s": IPVLAN_MODE_L3S,
    }
    try:
        return modes[mode]
    except KeyError:
        raise NetavarkError(f'invalid ipvlan mode "{mode}"') from None


def create_network_hash(network_name: str, length: int) -> str:
    """Return the first ``length`` upper case hex digits of the SHA-512 of the name."""
    digest = hashlib.sha512(network_name.encode()).hexdigest().upper()
    if not 0 <= length <= len(digest):
        raise ValueError(f"hash length {length} is out of range 0..{len(digest)}")
    return digest[:length]


def _sysctl_path(name: str) -> str:
    if name.startswith(_SYSCTL_ROOT):
        return name
    return _SYSCTL_ROOT + name.replace(".", "/")


def apply_sysctl_value(name: str, value: str) -> str:
    """Set a sysctl, given as a /proc/sys path or a dotted name, unless it already holds the value."""
    logger.debug("Setting sysctl value for %s to %s", name, value)
    path = _sysctl_path(name)
    try:
        with open(path, encoding="utf-8") as handle:
            current = handle.read().strip()
        if current == value:
            return current
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(value)
    except OSError as exc:
        raise NetavarkError.wrap(f"sysctl {name}", exc) from exc
    return value


def _fileno(fd: Any) -> int:
    return fd if isinstance(fd, int) else fd.fileno()


def join_netns(fd: Any) -> None:
    """Move the calling thread into the network namespace referred to by ``fd``."""
    setns = getattr(os, "setns", None)
    try:
        if setns is None:
            raise OSError(errno.ENOSYS, "setns is not available")
        setns(_fileno(fd), _CLONE_NEWNET)
    except OSError as exc:
        raise NetavarkError.wrap("setns", exc) from exc


@contextmanager
def in_netns(host_fd: Any, netns_fd: Any) -> Iterator[None]:
    """Run the body inside the container namespace, then return to the host one."""
    join_netns(netns_fd)
    try:
        yield
    finally:
        join_netns(host_fd)


@dataclass
class NamespaceOptions:
    """An open namespace file together with a netlink socket inside it."""

    file: BinaryIO
    netlink: Socket


def _open_namespace(path: str, context: str) -> BinaryIO:
    try:
        return open(path, "rb")
    except OSError as exc:
        raise NetavarkError.wrap(context, NetavarkError.wrap(f"open {path}", exc)) from exc


def _new_socket(context: str) -> Socket:
    try:
        return Socket()
    except NetavarkError as err:
        raise NetavarkError.wrap(context, err) from err


def open_netlink_sockets(netns_path: str) -> tuple[NamespaceOptions, NamespaceOptions]:
    """Open netlink sockets in the host and in the container namespace."""
    with ExitStack() as stack:
        netns = _open_namespace(netns_path, "open container netns")
        stack.callback(netns.close)
        hostns = _open_namespace(_HOST_NETNS, "open host netns")
        stack.callback(hostns.close)

        host_socket = _new_socket("host netlink socket")
        stack.callback(host_socket.close)
        with in_netns(hostns, netns):
            netns_socket = _new_socket("netns netlink socket")
        stack.pop_all()
    return (
        NamespaceOptions(file=hostns, netlink=host_socket),
        NamespaceOptions(file=netns, netlink=netns_socket),
    )


def add_default_routes(sock: Any, gateways: Sequence[IpNet], metric: int | None) -> None:
    """Add one default route per IP version, through the first gateway of that version."""
    done: set[int] = set()
    for gateway in gateways:
        gateway = ip_interface(str(gateway))
        if gateway.version in done:
            continue
        done.add(gateway.version)
        dest = ip_interface("0.0.0.0/0" if gateway.version == 4 else "::/0")
        route = NetlinkRoute(dest=dest, gw=gateway.ip, metric=metric)
        try:
            sock.add_route(route)
        except NetavarkError as err:
            raise NetavarkError.wrap(f"add default route {route}", err) from err


def create_route_list(routes: Sequence[Route] | None) -> list[NetlinkRoute]:
    """Turn configured static routes into netlink routes."""
    result = []
    for route in routes or []:
        gateway = ip_address(str(route.gateway))
        dest = ip_interface(str(route.destination))
        if gateway.version == 4 and dest.version == 6:
            raise NetavarkError(
                f"Route with ipv6 destination and ipv4 gateway ({dest} via {gateway})"
            )
        if gateway.version == 6 and dest.version == 4:
            raise NetavarkError(
                f"Route with ipv4 destination and ipv6 gateway ({dest} via {gateway})"
            )
        result.append(NetlinkRoute(dest=dest, gw=gateway, metric=route.metric))
    return result


def disable_ipv6_autoconf(if_name: str) -> None:
    """Turn off ipv6 autoconf on an interface; missing ipv6 or a read-only /proc is ignored."""
    try:
        apply_sysctl_value(f"/proc/sys/net/ipv6/conf/{if_name}/autoconf", "0")
    except NetavarkError as err:
        cause = err.cause
        if isinstance(cause, FileNotFoundError):
            return
        if isinstance(cause, OSError) and cause.errno == errno.EROFS:
            return
        raise NetavarkError.wrap("failed to set autoconf sysctl", err) from err


def ns_checks(path: str) -> None:
    """Check that the network namespace path can be opened."""
    logger.debug("Validating network namespace...")
    try:
        with open(path, "rb") as handle:
            os.fstat(handle.fileno())
    except OSError as exc:
        raise NetavarkError(str(exc)) from exc