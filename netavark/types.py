"""Configuration and result types exchanged with the caller as JSON."""

from __future__ import annotations

import json
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from ipaddress import (
    IPv4Address,
    IPv4Interface,
    IPv6Address,
    IPv6Interface,
    ip_address,
    ip_interface,
)
from typing import Any, TypeVar

from netavark.internal_types import NetavarkError

IpAddress = IPv4Address | IPv6Address
IpNet = IPv4Interface | IPv6Interface

_T = TypeVar("_T")


def _mapping(data: Any, what: str) -> Mapping:
    if not isinstance(data, Mapping):
        raise ValueError(f"invalid type: expected {what} object, got {type(data).__name__}")
    return data


def _required(data: Mapping, key: str) -> Any:
    value = data.get(key)
    if value is None:
        raise ValueError(f"missing field `{key}`")
    return value


def _optional(data: Mapping, key: str, convert: Callable[[Any, str], _T]) -> _T | None:
    value = data.get(key)
    return None if value is None else convert(value, key)


def _string(value: Any, key: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"field `{key}`: expected a string, got {type(value).__name__}")
    return value


def _boolean(value: Any, key: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"field `{key}`: expected a boolean, got {type(value).__name__}")
    return value


def _unsigned(bits: int) -> Callable[[Any, str], int]:
    def convert(value: Any, key: str) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"field `{key}`: expected an integer, got {type(value).__name__}")
        if not 0 <= value < 1 << bits:
            raise ValueError(f"field `{key}`: {value} is out of range for u{bits}")
        return value

    return convert


_u16 = _unsigned(16)
_u32 = _unsigned(32)


def _address(value: Any, key: str) -> IpAddress:
    text = _string(value, key)
    try:
        return ip_address(text)
    except ValueError as exc:
        raise ValueError(f"field `{key}`: invalid IP address syntax: {text!r}") from exc


def _network(value: Any, key: str) -> IpNet:
    text = _string(value, key)
    _, sep, prefix = text.partition("/")
    if not sep or not prefix.isdigit():
        raise ValueError(f"field `{key}`: invalid IP network syntax: {text!r}")
    try:
        return ip_interface(text)
    except ValueError as exc:
        raise ValueError(f"field `{key}`: invalid IP network syntax: {text!r}") from exc


def _list(convert: Callable[[Any, str], _T]) -> Callable[[Any, str], list[_T]]:
    def convert_list(value: Any, key: str) -> list[_T]:
        if not isinstance(value, list):
            raise ValueError(f"field `{key}`: expected a list, got {type(value).__name__}")
        return [convert(item, key) for item in value]

    return convert_list


def _string_map(value: Any, key: str) -> dict[str, str]:
    if not isinstance(value, Mapping):
        raise ValueError(f"field `{key}`: expected an object, got {type(value).__name__}")
    return {_string(k, key): _string(v, key) for k, v in value.items()}


def _nested(cls: Any) -> Callable[[Any, str], Any]:
    return lambda value, _key: cls.from_dict(value)


def _addresses_out(values: list[IpAddress] | None) -> list[str] | None:
    return None if values is None else [str(v) for v in values]


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)


@dataclass
class LeaseRange:
    """Range of addresses inside a subnet that may be leased."""

    end_ip: str | None = None
    start_ip: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> LeaseRange:
        data = _mapping(data, "lease range")
        return cls(
            end_ip=_optional(data, "end_ip", _string),
            start_ip=_optional(data, "start_ip", _string),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"end_ip": self.end_ip, "start_ip": self.start_ip}


@dataclass
class Subnet:
    """A subnet of a network with its optional gateway."""

    subnet: IpNet
    gateway: IpAddress | None = None
    lease_range: LeaseRange | None = None

    @classmethod
    def from_dict(cls, data: Any) -> Subnet:
        data = _mapping(data, "subnet")
        return cls(
            subnet=_network(_required(data, "subnet"), "subnet"),
            gateway=_optional(data, "gateway", _address),
            lease_range=_optional(data, "lease_range", _nested(LeaseRange)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "gateway": _optional_str(self.gateway),
            "lease_range": None if self.lease_range is None else self.lease_range.to_dict(),
            "subnet": str(self.subnet),
        }


@dataclass
class Route:
    """A static route of a network."""

    gateway: IpAddress
    destination: IpNet
    metric: int | None = None

    @classmethod
    def from_dict(cls, data: Any) -> Route:
        data = _mapping(data, "route")
        return cls(
            gateway=_address(_required(data, "gateway"), "gateway"),
            destination=_network(_required(data, "destination"), "destination"),
            metric=_optional(data, "metric", _u32),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "gateway": str(self.gateway),
            "destination": str(self.destination),
            "metric": self.metric,
        }


@dataclass
class Network:
    """Attributes of one network."""

    dns_enabled: bool
    driver: str
    id: str
    internal: bool
    ipv6_enabled: bool
    name: str
    network_interface: str | None = None
    options: dict[str, str] | None = None
    ipam_options: dict[str, str] | None = None
    subnets: list[Subnet] | None = None
    routes: list[Route] | None = None
    network_dns_servers: list[IpAddress] | None = None

    @classmethod
    def from_dict(cls, data: Any) -> Network:
        data = _mapping(data, "network")
        return cls(
            dns_enabled=_boolean(_required(data, "dns_enabled"), "dns_enabled"),
            driver=_string(_required(data, "driver"), "driver"),
            id=_string(_required(data, "id"), "id"),
            internal=_boolean(_required(data, "internal"), "internal"),
            ipv6_enabled=_boolean(_required(data, "ipv6_enabled"), "ipv6_enabled"),
            name=_string(_required(data, "name"), "name"),
            network_interface=_optional(data, "network_interface", _string),
            options=_optional(data, "options", _string_map),
            ipam_options=_optional(data, "ipam_options", _string_map),
            subnets=_optional(data, "subnets", _list(_nested(Subnet))),
            routes=_optional(data, "routes", _list(_nested(Route))),
            network_dns_servers=_optional(data, "network_dns_servers", _list(_address)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "dns_enabled": self.dns_enabled,
            "driver": self.driver,
            "id": self.id,
            "internal": self.internal,
            "ipv6_enabled": self.ipv6_enabled,
            "name": self.name,
            "network_interface": self.network_interface,
            "options": None if self.options is None else dict(self.options),
            "ipam_options": None if self.ipam_options is None else dict(self.ipam_options),
            "subnets": None if self.subnets is None else [s.to_dict() for s in self.subnets],
            "routes": None if self.routes is None else [r.to_dict() for r in self.routes],
            "network_dns_servers": _addresses_out(self.network_dns_servers),
        }


@dataclass
class PerNetworkOptions:
    """Options for a container that apply to a single network."""

    interface_name: str
    aliases: list[str] | None = None
    static_ips: list[IpAddress] | None = None
    static_mac: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> PerNetworkOptions:
        data = _mapping(data, "per network options")
        return cls(
            interface_name=_string(_required(data, "interface_name"), "interface_name"),
            aliases=_optional(data, "aliases", _list(_string)),
            static_ips=_optional(data, "static_ips", _list(_address)),
            static_mac=_optional(data, "static_mac", _string),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "aliases": None if self.aliases is None else list(self.aliases),
            "interface_name": self.interface_name,
            "static_ips": _addresses_out(self.static_ips),
            "static_mac": self.static_mac,
        }


@dataclass
class PortMapping:
    """One or more ports mapped from the host into the container."""

    container_port: int
    host_ip: str
    host_port: int
    protocol: str
    range: int

    @classmethod
    def from_dict(cls, data: Any) -> PortMapping:
        data = _mapping(data, "port mapping")
        return cls(
            container_port=_u16(_required(data, "container_port"), "container_port"),
            host_ip=_string(_required(data, "host_ip"), "host_ip"),
            host_port=_u16(_required(data, "host_port"), "host_port"),
            protocol=_string(_required(data, "protocol"), "protocol"),
            range=_u16(_required(data, "range"), "range"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "container_port": self.container_port,
            "host_ip": self.host_ip,
            "host_port": self.host_port,
            "protocol": self.protocol,
            "range": self.range,
        }


@dataclass
class NetworkOptions:
    """Everything needed to connect one container to its networks."""

    container_id: str
    container_name: str
    networks: dict[str, PerNetworkOptions]
    network_info: dict[str, Network]
    port_mappings: list[PortMapping] | None = None
    dns_servers: list[IpAddress] | None = None

    @classmethod
    def from_dict(cls, data: Any) -> NetworkOptions:
        data = _mapping(data, "network options")
        networks = _mapping(_required(data, "networks"), "networks")
        network_info = _mapping(_required(data, "network_info"), "network_info")
        return cls(
            container_id=_string(_required(data, "container_id"), "container_id"),
            container_name=_string(_required(data, "container_name"), "container_name"),
            networks={
                _string(name, "networks"): PerNetworkOptions.from_dict(opts)
                for name, opts in networks.items()
            },
            network_info={
                _string(name, "network_info"): Network.from_dict(net)
                for name, net in network_info.items()
            },
            port_mappings=_optional(data, "port_mappings", _list(_nested(PortMapping))),
            dns_servers=_optional(data, "dns_servers", _list(_address)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "container_id": self.container_id,
            "container_name": self.container_name,
            "networks": {name: opts.to_dict() for name, opts in self.networks.items()},
            "network_info": {name: net.to_dict() for name, net in self.network_info.items()},
            "port_mappings": (
                None if self.port_mappings is None else [p.to_dict() for p in self.port_mappings]
            ),
            "dns_servers": _addresses_out(self.dns_servers),
        }


@dataclass
class NetAddress:
    """An interface address with its subnet and optional gateway."""

    ipnet: IpNet
    gateway: IpAddress | None = None

    @classmethod
    def from_dict(cls, data: Any) -> NetAddress:
        data = _mapping(data, "net address")
        return cls(
            ipnet=_network(_required(data, "ipnet"), "ipnet"),
            gateway=_optional(data, "gateway", _address),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"gateway": _optional_str(self.gateway), "ipnet": str(self.ipnet)}


@dataclass
class NetInterface:
    """Settings of one network interface in the container."""

    mac_address: str
    subnets: list[NetAddress] | None = None

    @classmethod
    def from_dict(cls, data: Any) -> NetInterface:
        data = _mapping(data, "net interface")
        return cls(
            mac_address=_string(_required(data, "mac_address"), "mac_address"),
            subnets=_optional(data, "subnets", _list(_nested(NetAddress))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "mac_address": self.mac_address,
            "subnets": None if self.subnets is None else [s.to_dict() for s in self.subnets],
        }


@dataclass
class StatusBlock:
    """Network information about a container connected to one network."""

    dns_search_domains: list[str] | None = None
    dns_server_ips: list[IpAddress] | None = None
    interfaces: dict[str, NetInterface] | None = None

    @classmethod
    def from_dict(cls, data: Any) -> StatusBlock:
        data = _mapping(data, "status block")
        interfaces = data.get("interfaces")
        if interfaces is not None:
            interfaces = {
                _string(name, "interfaces"): NetInterface.from_dict(iface)
                for name, iface in _mapping(interfaces, "interfaces").items()
            }
        return cls(
            dns_search_domains=_optional(data, "dns_search_domains", _list(_string)),
            dns_server_ips=_optional(data, "dns_server_ips", _list(_address)),
            interfaces=interfaces,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "dns_search_domains": (
                None if self.dns_search_domains is None else list(self.dns_search_domains)
            ),
            "dns_server_ips": _addresses_out(self.dns_server_ips),
            "interfaces": (
                None
                if self.interfaces is None
                else {name: iface.to_dict() for name, iface in self.interfaces.items()}
            ),
        }


@dataclass
class NetworkPluginExec:
    """Input handed to a network plugin for setup and teardown."""

    container_id: str
    container_name: str
    network: Network
    network_options: PerNetworkOptions
    port_mappings: list[PortMapping] | None = None

    @classmethod
    def from_dict(cls, data: Any) -> NetworkPluginExec:
        data = _mapping(data, "plugin input")
        return cls(
            container_id=_string(_required(data, "container_id"), "container_id"),
            container_name=_string(_required(data, "container_name"), "container_name"),
            network=Network.from_dict(_required(data, "network")),
            network_options=PerNetworkOptions.from_dict(_required(data, "network_options")),
            port_mappings=_optional(data, "port_mappings", _list(_nested(PortMapping))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "container_id": self.container_id,
            "container_name": self.container_name,
            "port_mappings": (
                None if self.port_mappings is None else [p.to_dict() for p in self.port_mappings]
            ),
            "network": self.network.to_dict(),
            "network_options": self.network_options.to_dict(),
        }


def load_network_options(path: str | None = None) -> NetworkOptions:
    """Read network options as JSON from a file, or from stdin when no path is given."""
    try:
        if path is None:
            data = json.load(sys.stdin)
        else:
            with open(path, encoding="utf-8") as handle:
                data = json.load(handle)
        return NetworkOptions.from_dict(data)
    except (OSError, ValueError) as exc:
        raise NetavarkError.wrap("failed to load network options", exc) from exc