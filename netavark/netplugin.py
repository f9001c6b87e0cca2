"""Network driver that hands setup and teardown to an external plugin executable."""

from __future__ import annotations

import json
import subprocess
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from netavark.internal_types import DriverInfo, NetavarkError, NetworkDriver
from netavark.types import NetworkPluginExec, StatusBlock


class PluginDriver(NetworkDriver):
    """Runs a plugin binary with ``setup``/``teardown`` and exchanges JSON with it."""

    def __init__(self, path: str | Path, info: DriverInfo) -> None:
        self.path = Path(path)
        self.info = info

    def validate(self) -> None:
        """Plugins are not asked to validate; that would only cost an extra exec."""

    def setup(self, sockets: tuple[Any, Any]) -> tuple[StatusBlock, None]:
        status = self._run(setup=True)
        assert status is not None
        return status, None

    def teardown(self, sockets: tuple[Any, Any]) -> None:
        self._run(setup=False)

    def network_name(self) -> str:
        return self.info.network.name

    def _run(self, setup: bool) -> StatusBlock | None:
        try:
            return self._exec_plugin(setup, self.info.netns_path)
        except NetavarkError as err:
            raise NetavarkError.wrap(f'plugin "{self.path.name}" failed', err) from err

    def _exec_plugin(self, setup: bool, netns: str) -> StatusBlock | None:
        request = NetworkPluginExec(
            container_id=self.info.container_id,
            container_name=self.info.container_name,
            network=self.info.network,
            network_options=self.info.per_network_opts,
            port_mappings=self.info.port_mappings,
        )
        try:
            proc = subprocess.run(
                [str(self.path), "setup" if setup else "teardown", netns],
                input=json.dumps(request.to_dict()).encode(),
                stdout=subprocess.PIPE,
                check=False,
            )
        except OSError as exc:
            raise NetavarkError(str(exc)) from exc

        code = proc.returncode
        if code < 0:
            raise NetavarkError("plugin killed by signal")
        if code == 0:
            if not setup:
                return None
            try:
                return StatusBlock.from_dict(json.loads(proc.stdout))
            except ValueError as exc:
                raise NetavarkError(str(exc)) from exc

        try:
            reply = json.loads(proc.stdout)
        except ValueError as exc:
            raise NetavarkError(str(exc)) from exc
        if not isinstance(reply, Mapping) or not isinstance(reply.get("error"), str):
            raise NetavarkError("missing field `error`")
        raise NetavarkError(f"exit code {code}, message: {reply['error']}")