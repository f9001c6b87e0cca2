"""Errors, driver interface and data passed between the network drivers."""

from __future__ import annotations

import enum
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from ipaddress import IPv4Network, IPv6Network
from typing import TYPE_CHECKING, Any

from netavark.constants import (
    ISOLATE_OPTION_FALSE,
    ISOLATE_OPTION_STRICT,
    ISOLATE_OPTION_TRUE,
)

if TYPE_CHECKING:
    from netavark.types import (
        IpAddress,
        IpNet,
        NetAddress,
        Network,
        PerNetworkOptions,
        PortMapping,
        StatusBlock,
    )


class NetavarkError(Exception):
    """Error raised by netavark, optionally wrapping the error that caused it."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        if self.cause is None:
            return self.message
        return f"{self.message}: {self.cause}"

    @classmethod
    def wrap(cls, message: str, error: BaseException) -> NetavarkError:
        """Return an error that prefixes ``error`` with ``message``."""
        return NetavarkError(message, error)


class NetlinkError(NetavarkError):
    """Error reported by the kernel in a netlink reply."""

    def __init__(self, errno: int, message: str | None = None) -> None:
        super().__init__(message or f"{os.strerror(errno)} (os error {errno})")
        self.errno = errno


class IsolateOption(enum.Enum):
    """How strictly a network is isolated from other networks."""

    STRICT = ISOLATE_OPTION_STRICT
    NORMAL = ISOLATE_OPTION_TRUE
    NEVER = ISOLATE_OPTION_FALSE


@dataclass
class IPAMAddresses:
    """Addresses and routes assigned to a container on one network."""

    container_addresses: list[IpNet] = field(default_factory=list)
    dhcp_enabled: bool = False
    gateway_addresses: list[IpNet] = field(default_factory=list)
    routes: list[Any] = field(default_factory=list)
    ipv6_enabled: bool = False
    net_addresses: list[NetAddress] = field(default_factory=list)
    nameservers: list[IpAddress] = field(default_factory=list)


@dataclass
class SetupNetwork:
    """Firewall options for setting up a network."""

    net: Network
    network_hash_name: str
    isolation: IsolateOption


@dataclass
class TearDownNetwork:
    """Firewall options for tearing down a network."""

    config: SetupNetwork
    dns_port: int
    complete_teardown: bool


@dataclass
class PortForwardConfig:
    """Port forwarding options for one container on one network."""

    container_id: str
    port_mappings: list[PortMapping] | None
    network_name: str
    network_hash_name: str
    container_ip_v4: IpAddress | None
    subnet_v4: IPv4Network | None
    container_ip_v6: IpAddress | None
    subnet_v6: IPv6Network | None
    dns_port: int
    dns_server_ips: list[IpAddress]


@dataclass
class TeardownPortForward:
    """Port forwarding options for tearing down a container."""

    config: PortForwardConfig
    complete_teardown: bool


@dataclass
class DriverInfo:
    """Everything a network driver needs to set up or tear down a container."""

    firewall: Any
    container_id: str
    container_name: str
    container_dns_servers: list[IpAddress] | None
    netns_host: int
    netns_container: int
    netns_path: str
    network: Network
    per_network_opts: PerNetworkOptions
    port_mappings: list[PortMapping] | None
    dns_port: int


class NetworkDriver(ABC):
    """Interface every network driver implements."""

    @abstractmethod
    def validate(self) -> None:
        """Check the driver options."""

    @abstractmethod
    def setup(self, sockets: tuple[Any, Any]) -> tuple[StatusBlock, Any]:
        """Create interfaces and firewall rules; return the status and an optional DNS entry."""

    @abstractmethod
    def teardown(self, sockets: tuple[Any, Any]) -> None:
        """Remove interfaces and firewall rules."""

    @abstractmethod
    def network_name(self) -> str:
        """Return the name of the network."""