"""Selection of the network driver for a network."""

from __future__ import annotations

import os
from collections.abc import Sequence
from pathlib import Path

from netavark import constants
from netavark.bridge import Bridge
from netavark.internal_types import DriverInfo, NetavarkError, NetworkDriver
from netavark.netplugin import PluginDriver
from netavark.vlan import Vlan


def _is_executable_file(path: Path) -> bool:
    try:
        meta = path.stat()
    except OSError:
        return False
    return path.is_file() and meta.st_mode & 0o111 != 0


def get_network_driver(
    info: DriverInfo, plugins_directories: Sequence[str] | None = None
) -> NetworkDriver:
    """Return the built-in driver for the network, or an executable plugin of that name."""
    name = info.network.driver
    if name == constants.DRIVER_BRIDGE:
        return Bridge(info)
    if name in (constants.DRIVER_IPVLAN, constants.DRIVER_MACVLAN):
        return Vlan(info)

    for directory in plugins_directories or []:
        path = Path(directory) / name
        if _is_executable_file(path):
            return PluginDriver(path, info)

    raise NetavarkError(f'unknown network driver "{name}"')


__all__ = ["get_network_driver", "os"]