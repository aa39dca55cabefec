import subprocess

import pytest

from sqlci.errors import CommandError, LaunchError, TeardownError
from sqlci.models import ContainerHandle, PortMapping
from sqlci.services.docker_runtime import DockerRuntimeService


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None

    def debug(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


class RecordingRunCmd:
    def __init__(self, responses=None, failures=None):
        self.calls = []
        self.responses = responses or {}
        self.failures = failures or {}

    def __call__(self, cmd, check=True, capture_output=False, **kwargs):
        self.calls.append((cmd, {"check": check, **kwargs}))
        key = " ".join(cmd[:2])
        if key in self.failures:
            raise self.failures[key]
        stdout = self.responses.get(key, "")
        return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")

    def commands(self):
        return [" ".join(cmd[:2]) for cmd, _ in self.calls]


def _service(run_cmd, stop_timeout=30):
    return DockerRuntimeService(
        logger=DummyLogger(),
        console=DummyConsole(),
        run_cmd=run_cmd,
        stop_timeout=stop_timeout,
    )


def _handle():
    return ContainerHandle(
        name="sqlci_abc",
        container_id="0123456789abcdef",
        image="mcr.microsoft.com/mssql/server:2022-latest",
        ports=PortMapping(1433, 14330),
    )


def test_build_run_command_includes_isolation_ports_and_env_names():
    cmd = DockerRuntimeService.build_run_command(
        "sqlci_abc",
        "microsoft/mssql-server-windows-developer",
        ["ACCEPT_EULA", "sa_password"],
        PortMapping(1433, 14330),
        "hyperv",
    )

    assert cmd[:5] == ["docker", "run", "-d", "--name", "sqlci_abc"]
    assert "--isolation=hyperv" in cmd
    assert cmd[cmd.index("-p") + 1] == "14330:1433"
    assert ["-e", "sa_password"] == cmd[cmd.index("sa_password") - 1 : cmd.index("sa_password") + 1]
    assert cmd[-1] == "microsoft/mssql-server-windows-developer"


def test_build_run_command_omits_default_isolation():
    cmd = DockerRuntimeService.build_run_command("n", "img", [], PortMapping(1433, None), "default")

    assert not any(arg.startswith("--isolation") for arg in cmd)
    assert cmd[cmd.index("-p") + 1] == "1433"


def test_start_keeps_passwords_out_of_argv():
    run_cmd = RecordingRunCmd(responses={"docker run": "0123456789abcdef\n"})
    service = _service(run_cmd)

    handle = service.start(
        name="sqlci_abc",
        image="img",
        env={"ACCEPT_EULA": "Y", "sa_password": "Adm1n!secret"},
        ports=PortMapping(1433, 14330),
        isolation="process",
    )

    cmd, kwargs = run_cmd.calls[0]
    assert "Adm1n!secret" not in " ".join(cmd)
    assert kwargs["env"]["sa_password"] == "Adm1n!secret"
    assert handle.container_id == "0123456789abcdef"
    assert handle.host_port == 14330
    assert run_cmd.commands() == ["docker run"]


def test_start_resolves_ephemeral_host_port():
    run_cmd = RecordingRunCmd(
        responses={
            "docker run": "0123456789abcdef\n",
            "docker port": "0.0.0.0:49153\n[::]:49153\n",
        }
    )
    service = _service(run_cmd)

    handle = service.start("sqlci_abc", "img", {}, PortMapping(1433, None), "default")

    assert handle.host_port == 49153
    assert handle.ports.container_port == 1433
    assert run_cmd.calls[1][0] == ["docker", "port", "sqlci_abc", "1433/tcp"]


def test_start_fails_and_discards_container_when_port_lookup_fails():
    run_cmd = RecordingRunCmd(
        responses={"docker run": "0123456789abcdef\n"},
        failures={
            "docker port": CommandError(
                "Command failed (1)",
                returncode=1,
                stderr="Error: No public port '1433/tcp' published for sqlci_abc",
            )
        },
    )
    service = _service(run_cmd)

    with pytest.raises(LaunchError, match="No public port"):
        service.start("sqlci_abc", "img", {}, PortMapping(1433, None), "default")

    assert run_cmd.commands() == ["docker run", "docker port", "docker rm"]
    assert run_cmd.calls[-1][0] == ["docker", "rm", "-f", "sqlci_abc"]


def test_start_fails_when_port_lookup_prints_no_mapping():
    run_cmd = RecordingRunCmd(responses={"docker run": "0123456789abcdef\n", "docker port": ""})
    service = _service(run_cmd)

    with pytest.raises(LaunchError, match="no host port published for 1433/tcp"):
        service.start("sqlci_abc", "img", {}, PortMapping(1433, None), "default")

    assert run_cmd.calls[-1][0] == ["docker", "rm", "-f", "sqlci_abc"]


def test_resolve_host_port_checks_docker_exit_status():
    run_cmd = RecordingRunCmd(responses={"docker port": "0.0.0.0:49153\n"})

    assert _service(run_cmd).resolve_host_port("sqlci_abc", 1433) == 49153
    assert run_cmd.calls[0][1]["check"] is True


def test_start_rejects_unknown_isolation_without_calling_docker():
    run_cmd = RecordingRunCmd()
    service = _service(run_cmd)

    with pytest.raises(LaunchError, match="Unsupported isolation mode"):
        service.start("sqlci_abc", "img", {}, PortMapping(1433, 1433), "vm")

    assert run_cmd.calls == []


def test_start_failure_raises_launch_error_and_discards_partial_container():
    run_cmd = RecordingRunCmd(
        failures={
            "docker run": CommandError(
                "Command failed (125)",
                returncode=125,
                stderr="The container operating system does not match the host operating system.",
            )
        }
    )
    service = _service(run_cmd)

    with pytest.raises(LaunchError, match="does not match the host operating system"):
        service.start("sqlci_abc", "img", {}, PortMapping(1433, 1433), "process")

    assert run_cmd.calls[-1][0] == ["docker", "rm", "-f", "sqlci_abc"]


def test_validate_environment_maps_missing_docker_to_launch_error():
    run_cmd = RecordingRunCmd(
        failures={"docker version": CommandError("Required command not found: docker.")}
    )

    with pytest.raises(LaunchError, match="Docker is not available"):
        _service(run_cmd).validate_environment()


def test_exec_runs_inside_named_container_without_check():
    run_cmd = RecordingRunCmd()
    service = _service(run_cmd)

    service.exec(_handle(), ["sqlcmd", "-Q", "SELECT 1"], secrets=("pw",), timeout=5)

    cmd, kwargs = run_cmd.calls[0]
    assert cmd == ["docker", "exec", "sqlci_abc", "sqlcmd", "-Q", "SELECT 1"]
    assert kwargs["secrets"] == ("pw",)
    assert kwargs["timeout"] == 5


def test_stop_and_remove_use_bounded_timeouts():
    run_cmd = RecordingRunCmd()
    service = _service(run_cmd, stop_timeout=10)

    service.stop(_handle())
    service.remove(_handle())

    assert run_cmd.calls[0][0] == ["docker", "stop", "-t", "10", "sqlci_abc"]
    assert run_cmd.calls[1][0] == ["docker", "rm", "-f", "-v", "sqlci_abc"]
    assert run_cmd.calls[0][1]["timeout"] == 40


def test_stop_failure_raises_teardown_error():
    run_cmd = RecordingRunCmd(failures={"docker stop": CommandError("Command timed out after 60s")})

    with pytest.raises(TeardownError, match="stop failed"):
        _service(run_cmd).stop(_handle())
