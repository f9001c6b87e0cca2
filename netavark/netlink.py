"""Minimal rtnetlink client for managing links, addresses and routes."""

from __future__ import annotations

import enum
import errno
import logging
import socket
import struct
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from ipaddress import (
    IPv4Address,
    IPv4Interface,
    IPv6Address,
    IPv6Interface,
    ip_address,
    ip_interface,
)
from typing import Any, Union

from netavark.constants import DEFAULT_METRIC
from netavark.internal_types import NetavarkError, NetlinkError

logger = logging.getLogger(__name__)

AF_NETLINK = getattr(socket, "AF_NETLINK", 16)
NETLINK_ROUTE = 0
AF_INET = 2
AF_INET6 = 10

# netlink message types
NLMSG_NOOP = 1
NLMSG_ERROR = 2
NLMSG_DONE = 3
NLMSG_OVERRUN = 4

RTM_NEWLINK = 16
RTM_DELLINK = 17
RTM_GETLINK = 18
RTM_SETLINK = 19
RTM_NEWADDR = 20
RTM_DELADDR = 21
RTM_GETADDR = 22
RTM_NEWROUTE = 24
RTM_DELROUTE = 25
RTM_GETROUTE = 26

# netlink header flags
NLM_F_REQUEST = 0x1
NLM_F_MULTI = 0x2
NLM_F_ACK = 0x4
NLM_F_EXCL = 0x200
NLM_F_CREATE = 0x400
NLM_F_DUMP = 0x300

# link attributes
IFLA_ADDRESS = 1
IFLA_IFNAME = 3
IFLA_MTU = 4
IFLA_LINK = 5
IFLA_MASTER = 10
IFLA_LINKINFO = 18
IFLA_NET_NS_FD = 28
IFLA_INFO_KIND = 1
IFLA_INFO_DATA = 2
VETH_INFO_PEER = 1
IFLA_IPVLAN_MODE = 1
IFLA_MACVLAN_MODE = 1
IFLA_MACVLAN_BC_CUTOFF = 9

IFF_UP = 0x1

# macvlan modes
MACVLAN_MODE_PRIVATE = 1
MACVLAN_MODE_VEPA = 2
MACVLAN_MODE_BRIDGE = 4
MACVLAN_MODE_PASSTHRU = 8
MACVLAN_MODE_SOURCE = 16

# address attributes
IFA_ADDRESS = 1
IFA_LOCAL = 2
IFA_LABEL = 3
IFA_BROADCAST = 4

# route attributes and header values
RTA_DST = 1
RTA_OIF = 4
RTA_GATEWAY = 5
RTA_PRIORITY = 6
RT_TABLE_MAIN = 254
RTPROT_UNSPEC = 0
RTPROT_STATIC = 4
RT_SCOPE_UNIVERSE = 0
RTN_UNICAST = 1

_BUFFER_SIZE = 8192
_NLMSG_HEADER = struct.Struct("=IHHII")
_IFINFOMSG = struct.Struct("=BxHIII")
_IFADDRMSG = struct.Struct("=BBBBI")
_RTMSG = struct.Struct("=BBBBBBBBI")
_ATTR_HEADER = struct.Struct("=HH")
_ATTR_TYPE_MASK = 0x3FFF


def _align(length: int) -> int:
    return (length + 3) & ~3


def _attr(kind: int, payload: bytes) -> bytes:
    length = _ATTR_HEADER.size + len(payload)
    return _ATTR_HEADER.pack(length, kind) + payload + b"\0" * (_align(length) - length)


def _iter_attrs(data: bytes) -> Iterator[tuple[int, bytes]]:
    offset = 0
    while offset + _ATTR_HEADER.size <= len(data):
        length, kind = _ATTR_HEADER.unpack_from(data, offset)
        if length < _ATTR_HEADER.size or offset + length > len(data):
            raise ValueError(f"invalid netlink attribute length {length}")
        yield kind & _ATTR_TYPE_MASK, data[offset + _ATTR_HEADER.size : offset + length]
        offset += _align(length)


def _cstr(text: str) -> bytes:
    return text.encode() + b"\0"


def _decode_str(payload: bytes) -> str:
    return payload.split(b"\0", 1)[0].decode()


def _u32(payload: bytes) -> int:
    return struct.unpack_from("=I", payload)[0]


def _fd(value: Any) -> int:
    return value if isinstance(value, int) else value.fileno()


class InfoKind(enum.Enum):
    """Kinds of links that can be created or recognised."""

    BRIDGE = "bridge"
    VETH = "veth"
    IPVLAN = "ipvlan"
    MACVLAN = "macvlan"
    VRF = "vrf"
    DUMMY = "dummy"
    VLAN = "vlan"
    BOND = "bond"
    VXLAN = "vxlan"
    TUN = "tun"
    WIREGUARD = "wireguard"


def _kind_from(name: str) -> InfoKind | str:
    try:
        return InfoKind(name)
    except ValueError:
        return name


def _kind_name(kind: InfoKind | str) -> str:
    return kind.value if isinstance(kind, InfoKind) else kind


@dataclass
class VethInfo:
    """Kind specific data of a veth link: its peer."""

    peer: LinkMessage

    def to_bytes(self) -> bytes:
        return _attr(VETH_INFO_PEER, self.peer.to_bytes())


@dataclass
class IpVlanInfo:
    """Kind specific data of an ipvlan link."""

    mode: int

    def to_bytes(self) -> bytes:
        return _attr(IFLA_IPVLAN_MODE, struct.pack("=H", self.mode))


@dataclass
class MacVlanInfo:
    """Kind specific data of a macvlan link."""

    mode: int
    bc_cutoff: int | None = None

    def to_bytes(self) -> bytes:
        data = _attr(IFLA_MACVLAN_MODE, struct.pack("=I", self.mode))
        if self.bc_cutoff is not None:
            data += _attr(IFLA_MACVLAN_BC_CUTOFF, struct.pack("=i", self.bc_cutoff))
        return data


InfoData = Union[VethInfo, IpVlanInfo, MacVlanInfo]


def _decode_info_data(kind: InfoKind | str | None, payload: bytes) -> InfoData | None:
    attrs = list(_iter_attrs(payload))
    if kind is InfoKind.VETH:
        for attr_type, value in attrs:
            if attr_type == VETH_INFO_PEER:
                return VethInfo(LinkMessage.from_bytes(value))
        return None
    if kind is InfoKind.IPVLAN:
        for attr_type, value in attrs:
            if attr_type == IFLA_IPVLAN_MODE:
                return IpVlanInfo(struct.unpack_from("=H", value)[0])
        return None
    if kind is InfoKind.MACVLAN:
        mode = None
        bc_cutoff = None
        for attr_type, value in attrs:
            if attr_type == IFLA_MACVLAN_MODE:
                mode = _u32(value)
            elif attr_type == IFLA_MACVLAN_BC_CUTOFF:
                bc_cutoff = struct.unpack_from("=i", value)[0]
        return None if mode is None else MacVlanInfo(mode, bc_cutoff)
    return None


@dataclass
class LinkMessage:
    """An rtnetlink link message (ifinfomsg with its attributes)."""

    family: int = 0
    link_type: int = 0
    index: int = 0
    flags: int = 0
    change_mask: int = 0
    ifname: str | None = None
    mtu: int | None = None
    address: bytes | None = None
    master: int | None = None
    link: int | None = None
    netns_fd: int | None = None
    kind: InfoKind | str | None = None
    info_data: InfoData | None = None

    def to_bytes(self) -> bytes:
        data = _IFINFOMSG.pack(
            self.family, self.link_type, self.index, self.flags, self.change_mask
        )
        if self.kind is not None:
            info = _attr(IFLA_INFO_KIND, _cstr(_kind_name(self.kind)))
            if self.info_data is not None:
                info += _attr(IFLA_INFO_DATA, self.info_data.to_bytes())
            data += _attr(IFLA_LINKINFO, info)
        if self.ifname is not None:
            data += _attr(IFLA_IFNAME, _cstr(self.ifname))
        if self.mtu is not None:
            data += _attr(IFLA_MTU, struct.pack("=I", self.mtu))
        if self.address is not None:
            data += _attr(IFLA_ADDRESS, bytes(self.address))
        if self.master is not None:
            data += _attr(IFLA_MASTER, struct.pack("=I", self.master))
        if self.link is not None:
            data += _attr(IFLA_LINK, struct.pack("=I", self.link))
        if self.netns_fd is not None:
            data += _attr(IFLA_NET_NS_FD, struct.pack("=i", self.netns_fd))
        return data

    @classmethod
    def from_bytes(cls, data: bytes) -> LinkMessage:
        if len(data) < _IFINFOMSG.size:
            raise ValueError("link message too short")
        family, link_type, index, flags, change_mask = _IFINFOMSG.unpack_from(data)
        msg = cls(
            family=family, link_type=link_type, index=index, flags=flags, change_mask=change_mask
        )
        for attr_type, payload in _iter_attrs(data[_IFINFOMSG.size :]):
            if attr_type == IFLA_ADDRESS:
                msg.address = bytes(payload)
            elif attr_type == IFLA_IFNAME:
                msg.ifname = _decode_str(payload)
            elif attr_type == IFLA_MTU:
                msg.mtu = _u32(payload)
            elif attr_type == IFLA_LINK:
                msg.link = _u32(payload)
            elif attr_type == IFLA_MASTER:
                msg.master = _u32(payload)
            elif attr_type == IFLA_NET_NS_FD:
                msg.netns_fd = struct.unpack_from("=i", payload)[0]
            elif attr_type == IFLA_LINKINFO:
                info_data = None
                for info_type, info_payload in _iter_attrs(payload):
                    if info_type == IFLA_INFO_KIND:
                        msg.kind = _kind_from(_decode_str(info_payload))
                    elif info_type == IFLA_INFO_DATA:
                        info_data = info_payload
                if info_data is not None:
                    msg.info_data = _decode_info_data(msg.kind, info_data)
        return msg


@dataclass
class AddressMessage:
    """An rtnetlink address message (ifaddrmsg with its attributes)."""

    family: int = 0
    prefix_len: int = 0
    flags: int = 0
    scope: int = 0
    index: int = 0
    address: bytes | None = None
    broadcast: bytes | None = None
    local: bytes | None = None
    label: str | None = None

    def to_bytes(self) -> bytes:
        data = _IFADDRMSG.pack(self.family, self.prefix_len, self.flags, self.scope, self.index)
        if self.address is not None:
            data += _attr(IFA_ADDRESS, self.address)
        if self.broadcast is not None:
            data += _attr(IFA_BROADCAST, self.broadcast)
        if self.local is not None:
            data += _attr(IFA_LOCAL, self.local)
        if self.label is not None:
            data += _attr(IFA_LABEL, _cstr(self.label))
        return data

    @classmethod
    def from_bytes(cls, data: bytes) -> AddressMessage:
        if len(data) < _IFADDRMSG.size:
            raise ValueError("address message too short")
        family, prefix_len, flags, scope, index = _IFADDRMSG.unpack_from(data)
        msg = cls(family=family, prefix_len=prefix_len, flags=flags, scope=scope, index=index)
        for attr_type, payload in _iter_attrs(data[_IFADDRMSG.size :]):
            if attr_type == IFA_ADDRESS:
                msg.address = bytes(payload)
            elif attr_type == IFA_BROADCAST:
                msg.broadcast = bytes(payload)
            elif attr_type == IFA_LOCAL:
                msg.local = bytes(payload)
            elif attr_type == IFA_LABEL:
                msg.label = _decode_str(payload)
        return msg


@dataclass
class RouteMessage:
    """An rtnetlink route message (rtmsg with its attributes)."""

    family: int = 0
    destination_prefix_length: int = 0
    source_prefix_length: int = 0
    tos: int = 0
    table: int = 0
    protocol: int = 0
    scope: int = 0
    kind: int = 0
    flags: int = 0
    destination: bytes | None = None
    gateway: bytes | None = None
    priority: int | None = None
    oif: int | None = None

    def to_bytes(self) -> bytes:
        data = _RTMSG.pack(
            self.family,
            self.destination_prefix_length,
            self.source_prefix_length,
            self.tos,
            self.table,
            self.protocol,
            self.scope,
            self.kind,
            self.flags,
        )
        if self.destination is not None:
            data += _attr(RTA_DST, self.destination)
        if self.gateway is not None:
            data += _attr(RTA_GATEWAY, self.gateway)
        if self.priority is not None:
            data += _attr(RTA_PRIORITY, struct.pack("=I", self.priority))
        if self.oif is not None:
            data += _attr(RTA_OIF, struct.pack("=I", self.oif))
        return data

    @classmethod
    def from_bytes(cls, data: bytes) -> RouteMessage:
        if len(data) < _RTMSG.size:
            raise ValueError("route message too short")
        fields = _RTMSG.unpack_from(data)
        msg = cls(*fields)
        for attr_type, payload in _iter_attrs(data[_RTMSG.size :]):
            if attr_type == RTA_DST:
                msg.destination = bytes(payload)
            elif attr_type == RTA_GATEWAY:
                msg.gateway = bytes(payload)
            elif attr_type == RTA_PRIORITY:
                msg.priority = _u32(payload)
            elif attr_type == RTA_OIF:
                msg.oif = _u32(payload)
        return msg


@dataclass
class NetlinkRoute:
    """A route to add or delete: destination, gateway and optional metric."""

    dest: IPv4Interface | IPv6Interface
    gw: IPv4Address | IPv6Address
    metric: int | None = None

    def __post_init__(self) -> None:
        self.dest = ip_interface(str(self.dest))
        self.gw = ip_address(str(self.gw))
        if self.dest.version != self.gw.version:
            raise ValueError(
                f"route destination {self.dest} and gateway {self.gw} "
                "are of different IP versions"
            )

    def __str__(self) -> str:
        metric = DEFAULT_METRIC if self.metric is None else self.metric
        return f"(dest: {self.dest} ,gw: {self.gw}, metric {metric})"


@dataclass
class CreateLinkOptions:
    """Options describing a link to create."""

    name: str
    kind: InfoKind | str
    info_data: InfoData | None = None
    mtu: int = 0
    primary_index: int = 0
    link: int = 0
    mac: bytes = b""
    netns: Any = None


def parse_create_link_options(options: CreateLinkOptions) -> LinkMessage:
    """Build the link message that creates a link with the given options."""
    return LinkMessage(
        kind=options.kind,
        info_data=options.info_data,
        ifname=options.name or None,
        mtu=options.mtu or None,
        address=bytes(options.mac) or None,
        master=options.primary_index or None,
        link=options.link or None,
        netns_fd=None if options.netns is None else _fd(options.netns),
    )


_LINK_TYPES = {RTM_NEWLINK, RTM_DELLINK, RTM_GETLINK, RTM_SETLINK}
_ADDR_TYPES = {RTM_NEWADDR, RTM_DELADDR, RTM_GETADDR}
_ROUTE_TYPES = {RTM_NEWROUTE, RTM_DELROUTE, RTM_GETROUTE}

_Reply = tuple[int, Union[LinkMessage, AddressMessage, RouteMessage]]


def _decode_message(msg_type: int, body: bytes) -> _Reply:
    if msg_type in _LINK_TYPES:
        return msg_type, LinkMessage.from_bytes(body)
    if msg_type in _ADDR_TYPES:
        return msg_type, AddressMessage.from_bytes(body)
    if msg_type in _ROUTE_TYPES:
        return msg_type, RouteMessage.from_bytes(body)
    raise ValueError(f"unknown message type {msg_type}")


def _expect(function: str, result: list, count: int) -> None:
    if len(result) != count:
        raise NetavarkError(
            f"{function}: unexpected netlink result (got {len(result)} result(s), want {count})"
        )


def _only(result: list[_Reply], expected_type: int) -> list[Any]:
    messages = []
    for msg_type, msg in result:
        if msg_type != expected_type:
            raise NetavarkError(f"unexpected netlink message type: {msg_type}")
        messages.append(msg)
    return messages


def _route_message(route: NetlinkRoute) -> RouteMessage:
    return RouteMessage(
        family=AF_INET if route.dest.version == 4 else AF_INET6,
        destination_prefix_length=route.dest.network.prefixlen,
        table=RT_TABLE_MAIN,
        protocol=RTPROT_STATIC,
        scope=RT_SCOPE_UNIVERSE,
        kind=RTN_UNICAST,
        destination=route.dest.ip.packed,
        gateway=route.gw.packed,
        priority=DEFAULT_METRIC if route.metric is None else route.metric,
    )


def _address_message(index: int, addr: IPv4Interface | IPv6Interface) -> AddressMessage:
    addr = ip_interface(str(addr))
    msg = AddressMessage(index=index, prefix_len=addr.network.prefixlen, local=addr.ip.packed)
    if addr.version == 4:
        msg.family = AF_INET
        msg.broadcast = addr.network.broadcast_address.packed
    else:
        msg.family = AF_INET6
    return msg


def _link_selector(link: int | str) -> LinkMessage:
    if isinstance(link, str):
        return LinkMessage(ifname=link)
    return LinkMessage(index=link)


class Socket:
    """A route netlink socket bound to the current network namespace."""

    def __init__(self) -> None:
        try:
            sock = socket.socket(AF_NETLINK, socket.SOCK_RAW, NETLINK_ROUTE)
        except OSError as exc:
            raise NetavarkError.wrap("open", exc) from exc
        try:
            try:
                sock.bind((0, 0))
            except OSError as exc:
                raise NetavarkError.wrap("bind", exc) from exc
            try:
                sock.connect((0, 0))
            except OSError as exc:
                raise NetavarkError.wrap("connect", exc) from exc
        except NetavarkError:
            sock.close()
            raise
        self._sock = sock
        self._sequence_number = 0

    def close(self) -> None:
        """Close the underlying socket."""
        self._sock.close()

    def __enter__(self) -> Socket:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def get_link(self, link: int | str) -> LinkMessage:
        """Return the link with the given index or name."""
        result = self._request(RTM_GETLINK, _link_selector(link).to_bytes(), 0)
        _expect("get_link", result, 1)
        return _only(result, RTM_NEWLINK)[0]

    def create_link(self, options: CreateLinkOptions) -> None:
        """Create a new link."""
        msg = parse_create_link_options(options)
        result = self._request(
            RTM_NEWLINK, msg.to_bytes(), NLM_F_ACK | NLM_F_EXCL | NLM_F_CREATE
        )
        _expect("create_link", result, 0)

    def set_link_name(self, index: int, name: str) -> None:
        """Rename the link with the given index."""
        msg = LinkMessage(index=index, ifname=name)
        result = self._request(RTM_SETLINK, msg.to_bytes(), NLM_F_ACK)
        _expect("set_link_name", result, 0)

    def del_link(self, link: int | str) -> None:
        """Delete the link with the given index or name."""
        result = self._request(RTM_DELLINK, _link_selector(link).to_bytes(), NLM_F_ACK)
        _expect("del_link", result, 0)

    def set_link_ns(self, index: int, netns_fd: Any) -> None:
        """Move the link into the namespace referred to by a file descriptor."""
        msg = LinkMessage(index=index, netns_fd=_fd(netns_fd))
        result = self._request(RTM_SETLINK, msg.to_bytes(), NLM_F_ACK)
        _expect("set_link_ns", result, 0)

    def add_addr(self, index: int, addr: IPv4Interface | IPv6Interface) -> None:
        """Add an address to the link with the given index."""
        msg = _address_message(index, addr)
        try:
            result = self._request(
                RTM_NEWADDR, msg.to_bytes(), NLM_F_ACK | NLM_F_EXCL | NLM_F_CREATE
            )
        except NetlinkError as err:
            # the kernel answers EACCES when ipv6 is disabled
            if err.errno == errno.EACCES and msg.family == AF_INET6:
                raise NetavarkError.wrap(
                    "failed to add ipv6 address, is ipv6 enabled in the kernel?", err
                ) from err
            raise
        _expect("add_addr", result, 0)

    def del_addr(self, index: int, addr: IPv4Interface | IPv6Interface) -> None:
        """Remove an address from the link with the given index."""
        msg = _address_message(index, addr)
        result = self._request(RTM_DELADDR, msg.to_bytes(), NLM_F_ACK)
        _expect("del_addr", result, 0)

    def add_route(self, route: NetlinkRoute) -> None:
        """Add a route to the main table."""
        logger.info("Adding route %s", route)
        result = self._request(
            RTM_NEWROUTE, _route_message(route).to_bytes(), NLM_F_ACK | NLM_F_CREATE
        )
        _expect("add_route", result, 0)

    def del_route(self, route: NetlinkRoute) -> None:
        """Delete a route from the main table."""
        logger.info("Deleting route %s", route)
        result = self._request(RTM_DELROUTE, _route_message(route).to_bytes(), NLM_F_ACK)
        _expect("del_route", result, 0)

    def dump_routes(self) -> list[RouteMessage]:
        """Return all routes of the main table."""
        msg = RouteMessage(
            table=RT_TABLE_MAIN,
            protocol=RTPROT_UNSPEC,
            scope=RT_SCOPE_UNIVERSE,
            kind=RTN_UNICAST,
        )
        result = self._request(RTM_GETROUTE, msg.to_bytes(), NLM_F_DUMP | NLM_F_ACK)
        return _only(result, RTM_NEWROUTE)

    def dump_links(self, attrs: Mapping[str, Any] | None = None) -> list[LinkMessage]:
        """Return all links, filtered by the given link message fields (e.g. ``master``)."""
        msg = LinkMessage(**dict(attrs or {}))
        result = self._request(RTM_GETLINK, msg.to_bytes(), NLM_F_DUMP | NLM_F_ACK)
        return _only(result, RTM_NEWLINK)

    def dump_addresses(self) -> list[AddressMessage]:
        """Return all addresses."""
        result = self._request(
            RTM_GETADDR, AddressMessage().to_bytes(), NLM_F_DUMP | NLM_F_ACK
        )
        return _only(result, RTM_NEWADDR)

    def set_up(self, link: int | str) -> None:
        """Bring the link with the given index or name up."""
        msg = _link_selector(link)
        msg.flags |= IFF_UP
        msg.change_mask |= IFF_UP
        result = self._request(
            RTM_SETLINK, msg.to_bytes(), NLM_F_ACK | NLM_F_EXCL | NLM_F_CREATE
        )
        _expect("set_up", result, 0)

    def _request(self, msg_type: int, payload: bytes, flags: int) -> list[_Reply]:
        try:
            self._send(msg_type, payload, flags)
        except OSError as exc:
            raise NetavarkError.wrap("send to netlink", exc) from exc
        return self._recv(flags & NLM_F_DUMP == NLM_F_DUMP)

    def _send(self, msg_type: int, payload: bytes, flags: int) -> None:
        self._sequence_number += 1
        header = _NLMSG_HEADER.pack(
            _NLMSG_HEADER.size + len(payload),
            msg_type,
            NLM_F_REQUEST | flags,
            self._sequence_number,
            0,
        )
        packet = header + payload
        logger.debug("send netlink packet: type %d, %d bytes", msg_type, len(packet))
        self._sock.send(packet, 0)

    def _recv(self, multi: bool) -> list[_Reply]:
        result: list[_Reply] = []
        while True:
            try:
                data = self._sock.recv(_BUFFER_SIZE, 0)
            except OSError as exc:
                raise NetavarkError.wrap("recv from netlink", exc) from exc
            offset = 0
            while True:
                try:
                    length, msg_type, _flags, seq, _pid = _NLMSG_HEADER.unpack_from(data, offset)
                    if length < _NLMSG_HEADER.size or offset + length > len(data):
                        raise ValueError(f"invalid netlink message length {length}")
                    body = bytes(data[offset + _NLMSG_HEADER.size : offset + length])
                    if msg_type == NLMSG_ERROR:
                        code = struct.unpack_from("=i", body)[0]
                    reply = (
                        None
                        if msg_type in (NLMSG_ERROR, NLMSG_DONE, NLMSG_NOOP, NLMSG_OVERRUN)
                        else _decode_message(msg_type, body)
                    )
                except (ValueError, struct.error) as exc:
                    raise NetavarkError(f"failed to deserialize netlink message: {exc}") from exc
                logger.debug("read netlink packet: type %d, %d bytes", msg_type, length)

                if seq != self._sequence_number:
                    raise NetavarkError(
                        "netlink: sequence_number out of sync "
                        f"(got {seq}, want {self._sequence_number})"
                    )
                if msg_type == NLMSG_DONE:
                    return result
                if msg_type == NLMSG_ERROR:
                    if code:
                        raise NetlinkError(-code)
                    return result
                if msg_type == NLMSG_NOOP:
                    raise NetavarkError("unimplemented netlink message type NOOP")
                if msg_type == NLMSG_OVERRUN:
                    raise NetavarkError("unimplemented netlink message type OVERRUN")
                result.append(reply)
                if not multi:
                    return result

                offset += _align(length)
                if offset >= len(data):
                    break