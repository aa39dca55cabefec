import logging
import os
import secrets
import uuid
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from rich.console import Console
from rich.markup import escape

from .constants import CONTAINER_NAME_PREFIX
from .errors import (
    CommandError,
    LaunchError,
    OrchestratorError,
    ProvisionError,
    ReadinessExhausted,
    TeardownError,
)
from .errors_catalog import actionable_error
from .models import (
    ContainerHandle,
    Credential,
    LifecycleSettings,
    LifecycleState,
    PortMapping,
    ProvisionedCredential,
    ReadinessResult,
)
from .services.command_runner import CommandRunner
from .services.docker_runtime import DockerRuntimeService
from .services.readiness import ReadinessPoller
from .services.report import LifecycleReport
from .services.sql_admin import SqlAdminService

console = Console()
logger = logging.getLogger("sqlci")

_LIVE_STATES = {
    LifecycleState.STARTING,
    LifecycleState.WAITING_READY,
    LifecycleState.READY,
    LifecycleState.EXHAUSTED,
    LifecycleState.PROVISIONING,
    LifecycleState.PROVISIONED,
    LifecycleState.PROVISION_FAILED,
}

TRANSITIONS = {
    LifecycleState.NOT_STARTED: {LifecycleState.STARTING},
    LifecycleState.STARTING: {
        LifecycleState.LAUNCH_FAILED,
        LifecycleState.WAITING_READY,
        LifecycleState.TEARING_DOWN,
    },
    LifecycleState.WAITING_READY: {
        LifecycleState.READY,
        LifecycleState.EXHAUSTED,
        LifecycleState.TEARING_DOWN,
    },
    LifecycleState.READY: {LifecycleState.PROVISIONING, LifecycleState.TEARING_DOWN},
    LifecycleState.EXHAUSTED: {LifecycleState.TEARING_DOWN},
    LifecycleState.PROVISIONING: {
        LifecycleState.PROVISIONED,
        LifecycleState.PROVISION_FAILED,
        LifecycleState.TEARING_DOWN,
    },
    LifecycleState.PROVISIONED: {LifecycleState.TEARING_DOWN},
    LifecycleState.PROVISION_FAILED: {LifecycleState.TEARING_DOWN},
    LifecycleState.TEARING_DOWN: {LifecycleState.STOPPED},
    LifecycleState.LAUNCH_FAILED: set(),
    LifecycleState.STOPPED: set(),
}


def _odbc_value(value: str) -> str:
    """Braces a connection-string value so `;` and `}` inside it stay literal."""
    return "{" + value.replace("}", "}}") + "}"


def generate_password() -> str:
    """Random password that satisfies the default SQL Server complexity policy."""
    return f"Sq1!{secrets.token_hex(12)}"


class ContainerOrchestrator:
    """Drives one SQL Server container from start to teardown.

    ``start`` → ``wait_until_ready`` → ``provision_credential`` → tests →
    ``teardown``. The orchestrator exclusively owns the container it started
    and releases it exactly once.
    """

    def __init__(
        self,
        settings: LifecycleSettings,
        runtime=None,
        sql_admin=None,
        report: Optional[LifecycleReport] = None,
        command_runner: Optional[CommandRunner] = None,
    ):
        self.settings = settings
        self.run_id = uuid.uuid4().hex[:10]
        self.container_name = settings.container_name or f"{CONTAINER_NAME_PREFIX}_{self.run_id}"

        self.command_runner = command_runner or CommandRunner(logger=logger)
        self.runtime = runtime or DockerRuntimeService(
            logger=logger,
            console=console,
            run_cmd=self.command_runner.run,
            stop_timeout=settings.stop_timeout,
        )
        self.sql_admin = sql_admin or SqlAdminService(
            runtime=self.runtime,
            logger=logger,
            sqlcmd_path=settings.sqlcmd_path,
            trust_server_certificate=settings.trust_server_certificate,
            timeout=settings.command_timeout,
        )
        self.report = report or LifecycleReport(report_file=settings.report_file, logger=logger)
        self.poller = ReadinessPoller(
            logger=logger,
            console=console,
            on_attempt=self.report.record_attempt,
        )

        self.state = LifecycleState.NOT_STARTED
        self.handle: Optional[ContainerHandle] = None
        self.provisioned: Optional[ProvisionedCredential] = None
        self.teardown_error: Optional[TeardownError] = None
        self._released: set = set()

    def _transition(self, new_state: LifecycleState):
        if new_state not in TRANSITIONS[self.state]:
            raise OrchestratorError(
                f"Invalid lifecycle transition: {self.state.value} -> {new_state.value}"
            )
        logger.debug("Lifecycle: %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    def _run_phase(self, name: str, callback, *args, **kwargs):
        self.report.phase_started(name)
        try:
            result = callback(*args, **kwargs)
        except BaseException as exc:
            self.report.phase_finished(name, "failed", error=str(exc) or exc.__class__.__name__)
            raise
        self.report.phase_finished(name, "success")
        return result

    def attach(self, handle: ContainerHandle):
        """Adopts a container provisioned by an earlier build step so it can be torn down."""
        if self.state is not LifecycleState.NOT_STARTED:
            raise OrchestratorError("Cannot attach a handle to an orchestrator already in use.")
        self.handle = handle
        self.container_name = handle.name
        self.state = LifecycleState.PROVISIONED

    def validate_docker_environment(self):
        self.runtime.validate_environment()

    def start(
        self,
        image: Optional[str] = None,
        credentials: Optional[Credential] = None,
        port_mapping: Optional[PortMapping] = None,
        isolation: Optional[str] = None,
    ) -> ContainerHandle:
        image = image or self.settings.image
        credentials = credentials or self.settings.admin_credential
        port_mapping = port_mapping or self.settings.port_mapping
        isolation = isolation or self.settings.isolation

        self._transition(LifecycleState.STARTING)
        env: Dict[str, str] = {
            "ACCEPT_EULA": "Y",
            "sa_password": credentials.password,
            "MSSQL_SA_PASSWORD": credentials.password,
        }
        env.update({str(key): str(value) for key, value in self.settings.extra_env.items()})

        try:
            handle = self.runtime.start(
                name=self.container_name,
                image=image,
                env=env,
                ports=port_mapping,
                isolation=isolation,
            )
        except LaunchError:
            self._transition(LifecycleState.LAUNCH_FAILED)
            raise
        except OrchestratorError as exc:
            self._transition(LifecycleState.LAUNCH_FAILED)
            raise LaunchError(
                actionable_error("launch_rejected", image=image, reason=str(exc))
            ) from exc

        self.handle = handle
        self.report.set_container(handle.to_dict())
        console.print(f"[green]Container {escape(handle.name)} started.[/green]")
        return handle

    def wait_until_ready(
        self,
        handle: Optional[ContainerHandle] = None,
        admin_credential: Optional[Credential] = None,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> ReadinessResult:
        handle = handle or self.handle
        if handle is None:
            raise OrchestratorError("No container has been started.", phase="readiness")
        admin_credential = admin_credential or self.settings.admin_credential
        max_attempts = self.settings.max_attempts if max_attempts is None else max_attempts
        retry_delay = self.settings.retry_delay if retry_delay is None else retry_delay

        self._transition(LifecycleState.WAITING_READY)

        def probe():
            result = self.sql_admin.execute(handle, admin_credential, self.settings.probe_query)
            return result.ok, result.reason

        result = self.poller.wait(
            probe,
            max_attempts=max_attempts,
            retry_delay=retry_delay,
            label=f"SQL Server in {handle.name}",
        )
        self._transition(LifecycleState.READY if result.ready else LifecycleState.EXHAUSTED)
        return result

    def provision_credential(
        self,
        handle: Optional[ContainerHandle] = None,
        admin_credential: Optional[Credential] = None,
        new_credential: Optional[Credential] = None,
        role: Optional[str] = None,
    ) -> ProvisionedCredential:
        handle = handle or self.handle
        admin_credential = admin_credential or self.settings.admin_credential
        new_credential = new_credential or self.settings.login_credential
        role = role or self.settings.role

        if handle is None or self.state is not LifecycleState.READY:
            raise OrchestratorError(
                actionable_error(
                    "not_ready",
                    container=handle.name if handle else self.container_name,
                    state=self.state.value,
                ),
                phase="provisioning",
            )

        self._transition(LifecycleState.PROVISIONING)
        console.print(
            f"[blue]Creating login {escape(new_credential.login)} ({escape(role)})...[/blue]"
        )
        try:
            result = self.sql_admin.create_login(handle, admin_credential, new_credential, role)
        except CommandError as exc:
            self._transition(LifecycleState.PROVISION_FAILED)
            raise ProvisionError(
                actionable_error(
                    "provision_failed", login=new_credential.login, role=role, reason=str(exc)
                )
            ) from exc

        if not result.ok:
            self._transition(LifecycleState.PROVISION_FAILED)
            raise ProvisionError(
                actionable_error(
                    "provision_failed", login=new_credential.login, role=role, reason=result.reason
                )
            )

        self._transition(LifecycleState.PROVISIONED)
        self.provisioned = ProvisionedCredential(credential=new_credential, role=role, handle=handle)
        logger.info("Login %s provisioned with role %s.", new_credential.login, role)
        return self.provisioned

    def teardown(self, handle: Optional[ContainerHandle] = None) -> Optional[TeardownError]:
        """Stops and removes the container. Errors are logged and returned, never raised."""
        handle = handle or self.handle
        if handle is None:
            return None
        if handle.name in self._released:
            logger.warning("Container %s was already torn down; skipping.", handle.name)
            return None
        if self.state not in _LIVE_STATES:
            logger.warning(
                "Skipping teardown of %s in state %s.", handle.name, self.state.value
            )
            return None

        self._transition(LifecycleState.TEARING_DOWN)
        self._released.add(handle.name)
        console.print(f"[dim]Removing container {escape(handle.name)}...[/dim]")

        failures: List[str] = []
        for step in (self.runtime.stop, self.runtime.remove):
            try:
                step(handle)
            except OrchestratorError as exc:
                failures.append(str(exc))

        self._transition(LifecycleState.STOPPED)
        if not failures:
            logger.info("Container %s stopped and removed.", handle.name)
            return None

        error = TeardownError(
            actionable_error("teardown_failed", container=handle.name, reason="; ".join(failures))
        )
        logger.warning(str(error))
        self.report.record_teardown_error(str(error))
        self.teardown_error = error
        return error

    def _teardown_phase(self):
        # Nothing was started, or it was already released: no phase to record.
        if self.handle is None or self.handle.name in self._released:
            return
        if self.state not in _LIVE_STATES:
            return
        self.report.phase_started("teardown")
        error = self.teardown()
        if error is None:
            self.report.phase_finished("teardown", "success")
        else:
            self.report.phase_finished("teardown", "failed", error=str(error))

    def _await_ready(self) -> ReadinessResult:
        result = self.wait_until_ready()
        if not result.ready:
            raise ReadinessExhausted(
                actionable_error(
                    "readiness_exhausted",
                    container=self.container_name,
                    attempts=str(result.attempts),
                    reason=result.last_failure or "unknown",
                )
            )
        return result

    def _launch(self) -> ContainerHandle:
        self.validate_docker_environment()
        return self.start()

    def bring_up(self) -> ProvisionedCredential:
        """Starts the container, waits for readiness and provisions the login."""
        self._run_phase("launch", self._launch)
        self._run_phase("readiness", self._await_ready)
        return self._run_phase("provisioning", self.provision_credential)

    @contextmanager
    def session(self) -> Iterator[ProvisionedCredential]:
        try:
            yield self.bring_up()
        finally:
            self._teardown_phase()

    def connection_env(self, provisioned: Optional[ProvisionedCredential] = None) -> Dict[str, str]:
        provisioned = provisioned or self.provisioned
        if provisioned is None:
            raise OrchestratorError("No credential has been provisioned.")

        handle = provisioned.handle
        host = self.settings.connect_host
        port = handle.host_port or handle.ports.container_port
        credential = provisioned.credential
        connection_string = (
            f"Server={host},{port};User Id={_odbc_value(credential.login)};"
            f"Password={_odbc_value(credential.password)};TrustServerCertificate=True"
        )
        return {
            "SQLCI_CONTAINER": handle.name,
            "SQLCI_HOST": host,
            "SQLCI_PORT": str(port),
            "SQLCI_USER": credential.login,
            "SQLCI_PASSWORD": credential.password,
            "SQLCI_CONNECTION_STRING": connection_string,
        }

    def run_tests(self, test_command: List[str], provisioned: ProvisionedCredential) -> int:
        console.print(f"[blue]Running tests: {escape(' '.join(test_command))}[/blue]")
        env = {**os.environ, **self.connection_env(provisioned)}
        try:
            result = self.command_runner.run(test_command, check=False, env=env)
        except CommandError as exc:
            raise OrchestratorError(str(exc), phase="tests") from exc
        return result.returncode

    def run(self, test_command: Optional[List[str]] = None) -> int:
        """Full lifecycle around an optional test command; returns the build exit code."""
        exit_code = 1
        status = "failed"
        failed_phase: Optional[str] = None
        error: Optional[str] = None

        try:
            logger.info("Starting SQLCI run %s...", self.run_id)
            self.report.start_run(self.run_id)

            provisioned = self.bring_up()

            if test_command:
                exit_code = self._run_phase("tests", self.run_tests, test_command, provisioned)
            else:
                exit_code = 0

            if exit_code == 0:
                status = "success"
            else:
                failed_phase = "tests"
                error = f"Test command exited with status {exit_code}."
                console.print(f"[bold red]Tests failed[/bold red] (exit code {exit_code}).")
            return exit_code

        except KeyboardInterrupt:
            console.print("[bold red]Operation cancelled by user.[/bold red]")
            logger.info("Operation cancelled by user")
            status = "aborted"
            error = "Operation cancelled by user."
            exit_code = 1
            return exit_code
        except OrchestratorError as exc:
            console.print(f"[bold red]{exc.phase.capitalize()} failed:[/bold red] {escape(str(exc))}")
            logger.error("%s failed: %s", exc.phase, exc)
            failed_phase = exc.phase
            error = str(exc)
            exit_code = 1
            return exit_code
        except Exception as exc:
            console.print(f"[bold red]Unexpected error:[/bold red] {escape(str(exc))}")
            logger.exception("Unexpected error")
            error = str(exc)
            exit_code = 1
            return exit_code
        finally:
            self._teardown_phase()
            self.report.finalize(status, failed_phase=failed_phase, error=error)

