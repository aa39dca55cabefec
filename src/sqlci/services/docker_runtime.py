"""Docker runtime services for SQLCI."""

import os
import re
from typing import Callable, Dict, List, Optional

from sqlci.constants import ISOLATION_MODES
from sqlci.errors import CommandError, LaunchError, TeardownError
from sqlci.errors_catalog import actionable_error
from sqlci.models import ContainerHandle, PortMapping

_PORT_LINE = re.compile(r":(\d+)\s*$")


class DockerRuntimeService:
    """Starts, executes into, stops and removes containers through the docker CLI."""

    def __init__(self, logger, console, run_cmd: Callable, stop_timeout: int = 30):
        self.logger = logger
        self.console = console
        self.run_cmd = run_cmd
        self.stop_timeout = stop_timeout

    def validate_environment(self):
        try:
            self.run_cmd(["docker", "version", "--format", "{{.Server.Os}}"], capture_output=True)
        except CommandError as exc:
            raise LaunchError(actionable_error("docker_unavailable", reason=str(exc))) from exc

    @staticmethod
    def build_run_command(
        name: str,
        image: str,
        env_names: List[str],
        ports: PortMapping,
        isolation: str,
    ) -> List[str]:
        cmd = ["docker", "run", "-d", "--name", name]
        if isolation != "default":
            cmd.append(f"--isolation={isolation}")
        cmd += ["-p", ports.as_publish_arg()]
        for env_name in env_names:
            cmd += ["-e", env_name]
        cmd.append(image)
        return cmd

    def start(
        self,
        name: str,
        image: str,
        env: Dict[str, str],
        ports: PortMapping,
        isolation: str,
    ) -> ContainerHandle:
        if isolation not in ISOLATION_MODES:
            raise LaunchError(
                actionable_error(
                    "invalid_isolation",
                    isolation=isolation,
                    supported=", ".join(ISOLATION_MODES),
                )
            )

        self.console.print(f"[blue]Starting container {name} from {image}...[/blue]")
        # Values travel through the docker client's environment so they never show up in argv.
        cmd = self.build_run_command(name, image, sorted(env), ports, isolation)
        try:
            result = self.run_cmd(
                cmd,
                capture_output=True,
                env={**os.environ, **env},
            )
        except CommandError as exc:
            self._discard_partial_container(name)
            reason = exc.stderr or str(exc)
            raise LaunchError(actionable_error("launch_rejected", image=image, reason=reason)) from exc

        lines = (result.stdout or "").strip().splitlines()
        container_id = lines[-1].strip() if lines else ""
        self.logger.info("Container %s accepted by runtime (id %s).", name, container_id[:12])

        if ports.host_port is None:
            try:
                host_port = self.resolve_host_port(name, ports.container_port)
            except CommandError as exc:
                self._discard_partial_container(name)
                raise LaunchError(
                    actionable_error(
                        "launch_rejected", image=image, reason=exc.stderr or str(exc)
                    )
                ) from exc
            if host_port is None:
                self._discard_partial_container(name)
                raise LaunchError(
                    actionable_error(
                        "launch_rejected",
                        image=image,
                        reason=f"no host port published for {ports.container_port}/tcp",
                    )
                )
            ports = PortMapping(container_port=ports.container_port, host_port=host_port)

        return ContainerHandle(
            name=name,
            container_id=container_id,
            image=image,
            ports=ports,
            isolation=isolation,
        )

    def resolve_host_port(self, name: str, container_port: int) -> Optional[int]:
        result = self.run_cmd(
            ["docker", "port", name, f"{container_port}/tcp"],
            capture_output=True,
        )
        for line in (result.stdout or "").splitlines():
            match = _PORT_LINE.search(line.strip())
            if match:
                return int(match.group(1))
        return None

    def exec(self, handle: ContainerHandle, command: List[str], secrets=(), timeout=None):
        return self.run_cmd(
            ["docker", "exec", handle.name] + list(command),
            check=False,
            capture_output=True,
            secrets=secrets,
            timeout=timeout,
        )

    def stop(self, handle: ContainerHandle):
        try:
            self.run_cmd(
                ["docker", "stop", "-t", str(self.stop_timeout), handle.name],
                capture_output=True,
                # docker waits stop_timeout before killing; give it a margin on top.
                timeout=self.stop_timeout + 30,
            )
        except CommandError as exc:
            raise TeardownError(f"stop failed: {exc}") from exc

    def remove(self, handle: ContainerHandle):
        try:
            self.run_cmd(
                ["docker", "rm", "-f", "-v", handle.name],
                capture_output=True,
                timeout=self.stop_timeout + 30,
            )
        except CommandError as exc:
            raise TeardownError(f"remove failed: {exc}") from exc

    def _discard_partial_container(self, name: str):
        try:
            self.run_cmd(["docker", "rm", "-f", name], check=False, capture_output=True)
        except CommandError as exc:
            self.logger.debug("Nothing to discard for %s: %s", name, exc)
