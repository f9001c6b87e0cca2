"""Framework for writing network plugins that netavark executes."""

from __future__ import annotations

import json
import sys
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, NoReturn

from netavark.internal_types import NetavarkError
from netavark.types import Network, NetworkPluginExec, StatusBlock

API_VERSION = "1.0.0"


def _write_json(data: Any) -> None:
    sys.stdout.write(json.dumps(data, separators=(",", ":")))
    sys.stdout.flush()


@dataclass
class Info:
    """Information printed by the ``info`` command of a plugin."""

    version: str
    api_version: str = API_VERSION
    extra_info: dict[str, str] | None = None

    def to_dict(self) -> dict[str, str]:
        data = {"version": self.version, "api_version": self.api_version}
        if self.extra_info:
            data.update(self.extra_info)
        return data


class Plugin(ABC):
    """Operations a network plugin provides."""

    @abstractmethod
    def create(self, network: Network) -> Network:
        """Create a network config."""

    @abstractmethod
    def setup(self, netns: str, opts: NetworkPluginExec) -> StatusBlock:
        """Set up the network configuration."""

    @abstractmethod
    def teardown(self, netns: str, opts: NetworkPluginExec) -> None:
        """Tear down the network configuration."""


class PluginExec:
    """Command line entry point dispatching to a plugin."""

    def __init__(self, plugin: Plugin, info: Info) -> None:
        self.plugin = plugin
        self.info = info

    def run(self, argv: Sequence[str] | None = None) -> None:
        """Run the subcommand in ``argv`` (program name first); raise on failure."""
        args = list(sys.argv if argv is None else argv)
        if not args:
            raise NetavarkError("zero arguments given")
        command = args[1] if len(args) > 1 else None

        if command == "create":
            network = Network.from_dict(json.load(sys.stdin))
            network = self.plugin.create(network)
            _write_json(network.to_dict())
        elif command in ("setup", "teardown"):
            if len(args) < 3:
                raise NetavarkError("netns path argument is missing")
            netns = args[2]
            opts = NetworkPluginExec.from_dict(json.load(sys.stdin))
            if command == "setup":
                _write_json(self.plugin.setup(netns, opts).to_dict())
            else:
                self.plugin.teardown(netns, opts)
        elif command is None or command == "info":
            _write_json(self.info.to_dict())
        else:
            raise NetavarkError(f"unknown subcommand: {command}")

    def exec(self, argv: Sequence[str] | None = None) -> None:
        """Run the plugin; on failure print a JSON error and exit with status 1."""
        try:
            self.run(argv)
        except Exception as err:  # any plugin failure is reported to the caller
            self._fail(err)

    @staticmethod
    def _fail(err: Exception) -> NoReturn:
        try:
            _write_json({"error": str(err)})
        except (OSError, ValueError) as write_err:
            print(f"failed to write json error: {write_err}: {err}")
        sys.exit(1)