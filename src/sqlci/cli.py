import logging
import os
from typing import Any, Dict, Optional, Tuple

import click
from rich.logging import RichHandler

from .constants import (
    DEFAULT_ADMIN_USER,
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_CONFIG_FILE,
    DEFAULT_CONNECT_HOST,
    DEFAULT_CONTAINER_PORT,
    DEFAULT_HANDLE_FILE,
    DEFAULT_IMAGE,
    DEFAULT_ISOLATION,
    DEFAULT_LOGIN_NAME,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PROBE_QUERY,
    DEFAULT_RETRY_DELAY,
    DEFAULT_ROLE,
    DEFAULT_SQLCMD_PATH,
    DEFAULT_STOP_TIMEOUT,
    ISOLATION_MODES,
)
from .errors import OrchestratorError
from .models import LifecycleSettings
from .orchestrator import ContainerOrchestrator, generate_password
from .services.config_loader import ConfigLoader
from .services.handle_store import HandleStore

SECRET_ENV_KEYS = {"SQLCI_PASSWORD", "SQLCI_CONNECTION_STRING"}


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


def _configure_logging(verbose: bool, log_file: Optional[str]) -> logging.Logger:
    logger = logging.getLogger("sqlci")
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)
    return logger


def _load_config(config: Optional[str]) -> Dict[str, Any]:
    resolved_config = config
    if resolved_config is None:
        default_config_path = os.path.join(os.getcwd(), DEFAULT_CONFIG_FILE)
        if os.path.exists(default_config_path):
            resolved_config = default_config_path
    try:
        return ConfigLoader().load(resolved_config)
    except OrchestratorError as exc:
        raise click.ClickException(str(exc)) from exc


def _parse_env_pairs(pairs: Tuple[str, ...]) -> Dict[str, str]:
    parsed = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"Expected NAME=VALUE, got '{pair}'.", param_hint="--env")
        parsed[name] = value
    return parsed


def build_settings(options: Dict[str, Any], config: Dict[str, Any]) -> LifecycleSettings:
    host_port = _resolve_option(options.get("host_port"), config, "host_port")
    extra_env = dict(config.get("extra_env") or {})
    extra_env.update(_parse_env_pairs(options.get("env") or ()))

    return LifecycleSettings(
        admin_password=str(
            _resolve_option(options.get("admin_password"), config, "admin_password")
            or generate_password()
        ),
        login_password=str(
            _resolve_option(options.get("login_password"), config, "login_password")
            or generate_password()
        ),
        image=_resolve_option(options.get("image"), config, "image", default=DEFAULT_IMAGE),
        container_name=_resolve_option(options.get("container_name"), config, "container_name"),
        host_port=int(host_port) if host_port is not None else None,
        container_port=int(
            _resolve_option(
                options.get("container_port"),
                config,
                "container_port",
                default=DEFAULT_CONTAINER_PORT,
            )
        ),
        isolation=_resolve_option(
            options.get("isolation"), config, "isolation", default=DEFAULT_ISOLATION
        ),
        admin_user=_resolve_option(
            options.get("admin_user"), config, "admin_user", default=DEFAULT_ADMIN_USER
        ),
        login_name=_resolve_option(
            options.get("login_name"), config, "login_name", default=DEFAULT_LOGIN_NAME
        ),
        role=_resolve_option(options.get("role"), config, "role", default=DEFAULT_ROLE),
        max_attempts=int(
            _resolve_option(
                options.get("max_attempts"), config, "max_attempts", default=DEFAULT_MAX_ATTEMPTS
            )
        ),
        retry_delay=float(
            _resolve_option(
                options.get("retry_delay"), config, "retry_delay", default=DEFAULT_RETRY_DELAY
            )
        ),
        probe_query=_resolve_option(
            options.get("probe_query"), config, "probe_query", default=DEFAULT_PROBE_QUERY
        ),
        sqlcmd_path=_resolve_option(
            options.get("sqlcmd_path"), config, "sqlcmd_path", default=DEFAULT_SQLCMD_PATH
        ),
        trust_server_certificate=bool(
            _resolve_option(
                options.get("trust_server_certificate"),
                config,
                "trust_server_certificate",
                default=False,
            )
        ),
        stop_timeout=int(
            _resolve_option(
                options.get("stop_timeout"), config, "stop_timeout", default=DEFAULT_STOP_TIMEOUT
            )
        ),
        command_timeout=float(
            _resolve_option(
                options.get("command_timeout"),
                config,
                "command_timeout",
                default=DEFAULT_COMMAND_TIMEOUT,
            )
        ),
        extra_env=extra_env,
        report_file=_resolve_option(options.get("report_file"), config, "report_file"),
        connect_host=_resolve_option(
            options.get("connect_host"), config, "connect_host", default=DEFAULT_CONNECT_HOST
        ),
    )


_LIFECYCLE_OPTIONS = [
    click.option(
        "--config",
        required=False,
        type=click.Path(),
        help=f"Path to a YAML configuration file. Defaults to {DEFAULT_CONFIG_FILE} if present.",
    ),
    click.option("--image", required=False, help=f"SQL Server image (default: {DEFAULT_IMAGE})."),
    click.option("--container-name", required=False, help="Container name (default: generated)."),
    click.option(
        "--host-port",
        required=False,
        type=int,
        default=None,
        help="Host port to publish SQL Server on (default: a free ephemeral port).",
    ),
    click.option(
        "--container-port",
        required=False,
        type=int,
        default=None,
        help=f"SQL Server port inside the container (default: {DEFAULT_CONTAINER_PORT}).",
    ),
    click.option(
        "--isolation",
        required=False,
        type=click.Choice(ISOLATION_MODES),
        help="Container isolation mode. Use hyperv when the image OS differs from the host.",
    ),
    click.option("--admin-user", required=False, help="Built-in administrative login (default: sa)."),
    click.option(
        "--admin-password",
        required=False,
        envvar="SQLCI_ADMIN_PASSWORD",
        help="Administrative password (default: generated).",
    ),
    click.option("--login-name", required=False, help="Login to provision for the tests."),
    click.option(
        "--login-password",
        required=False,
        envvar="SQLCI_LOGIN_PASSWORD",
        help="Password of the provisioned login (default: generated).",
    ),
    click.option("--role", required=False, help=f"Server role to grant (default: {DEFAULT_ROLE})."),
    click.option(
        "--max-attempts",
        required=False,
        type=int,
        default=None,
        help=f"Readiness probe attempts before giving up (default: {DEFAULT_MAX_ATTEMPTS}).",
    ),
    click.option(
        "--retry-delay",
        required=False,
        type=float,
        default=None,
        help=f"Seconds between readiness probes (default: {DEFAULT_RETRY_DELAY:g}).",
    ),
    click.option("--probe-query", required=False, help="Statement used as readiness probe."),
    click.option("--sqlcmd-path", required=False, help="Path of sqlcmd inside the container."),
    click.option(
        "--trust-server-certificate",
        is_flag=True,
        default=None,
        help="Pass -C to sqlcmd (needed by mssql-tools18).",
    ),
    click.option(
        "--stop-timeout",
        required=False,
        type=int,
        default=None,
        help=f"Seconds docker waits on stop before killing (default: {DEFAULT_STOP_TIMEOUT}).",
    ),
    click.option(
        "--command-timeout",
        required=False,
        type=float,
        default=None,
        help="Timeout in seconds for each sqlcmd invocation.",
    ),
    click.option(
        "--env",
        "env",
        multiple=True,
        help="Extra container environment variable as NAME=VALUE. Repeatable.",
    ),
    click.option("--connect-host", required=False, help="Host name handed to the tests."),
    click.option("--report-file", type=click.Path(), help="Write a JSON lifecycle report here."),
    click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging"),
    click.option("--log-file", type=click.Path(), help="Path to log file"),
]


def lifecycle_options(func):
    for option in reversed(_LIFECYCLE_OPTIONS):
        func = option(func)
    return func


def _prepare(options: Dict[str, Any]) -> Tuple[LifecycleSettings, Dict[str, Any]]:
    config_values = _load_config(options.get("config"))
    verbose = bool(_resolve_option(options.get("verbose"), config_values, "verbose", default=False))
    log_file = _resolve_option(options.get("log_file"), config_values, "log_file")
    _configure_logging(verbose, log_file)
    return build_settings(options, config_values), config_values


def _write_env_file(path: str, env: Dict[str, str]):
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w", encoding="utf-8", newline="\n") as file_obj:
        for key in sorted(env):
            file_obj.write(f"{key}={env[key]}\n")
    try:
        os.chmod(path, 0o600)
    except OSError:
        pass


@click.group()
@click.version_option(package_name="sqlci")
def main():
    """Run SQL Server in a throwaway container around integration tests."""


@main.command()
@lifecycle_options
@click.option(
    "--handle-file",
    type=click.Path(),
    help=f"Where to store the container handle for `sqlci down` (default: {DEFAULT_HANDLE_FILE}).",
)
@click.option("--env-file", type=click.Path(), help="Write connection variables (with secrets) here.")
def up(handle_file, env_file, **options):
    """Start SQL Server, wait until it is ready and provision the test login."""
    settings, config_values = _prepare(options)
    handle_file = _resolve_option(handle_file, config_values, "handle_file", DEFAULT_HANDLE_FILE)
    logger = logging.getLogger("sqlci")

    orchestrator = ContainerOrchestrator(settings)
    orchestrator.report.start_run(orchestrator.run_id)
    try:
        provisioned = orchestrator.bring_up()
        HandleStore(handle_file, logger=logger).save(
            provisioned.handle,
            extra={"login": provisioned.credential.login, "role": provisioned.role},
        )
    except (OrchestratorError, KeyboardInterrupt) as exc:
        orchestrator.teardown()
        phase = getattr(exc, "phase", "lifecycle")
        orchestrator.report.finalize("failed", failed_phase=phase, error=str(exc))
        raise click.ClickException(f"{phase} failed: {exc}") from exc

    env = orchestrator.connection_env(provisioned)
    if env_file:
        _write_env_file(env_file, env)
    for key in sorted(env):
        if key not in SECRET_ENV_KEYS:
            click.echo(f"{key}={env[key]}")
    orchestrator.report.finalize("success")


@main.command()
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help=f"Path to a YAML configuration file. Defaults to {DEFAULT_CONFIG_FILE} if present.",
)
@click.option("--handle-file", type=click.Path(), help="Handle file written by `sqlci up`.")
@click.option("--stop-timeout", type=int, default=None, help="Seconds docker waits on stop.")
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
def down(config, handle_file, stop_timeout, verbose, log_file):
    """Stop and remove the container started by `sqlci up`. Never fails the build."""
    settings, config_values = _prepare(
        {"config": config, "stop_timeout": stop_timeout, "verbose": verbose, "log_file": log_file}
    )
    handle_file = _resolve_option(handle_file, config_values, "handle_file", DEFAULT_HANDLE_FILE)
    logger = logging.getLogger("sqlci")
    store = HandleStore(handle_file, logger=logger)

    try:
        handle = store.load()
    except OrchestratorError as exc:
        logger.warning("%s", exc)
        return

    if handle is None:
        logger.warning("No container handle found at %s; nothing to tear down.", handle_file)
        return

    orchestrator = ContainerOrchestrator(settings)
    orchestrator.attach(handle)
    error = orchestrator.teardown()
    if error is None:
        store.clear()


@main.command(context_settings={"ignore_unknown_options": True})
@lifecycle_options
@click.argument("test_command", nargs=-1, type=click.UNPROCESSED)
def run(test_command, **options):
    """Run TEST_COMMAND against a fresh SQL Server container, then remove it.

    Connection details reach the command through SQLCI_HOST, SQLCI_PORT,
    SQLCI_USER, SQLCI_PASSWORD and SQLCI_CONNECTION_STRING.
    """
    settings, _ = _prepare(options)
    orchestrator = ContainerOrchestrator(settings)
    raise SystemExit(orchestrator.run(list(test_command) or None))


if __name__ == "__main__":
    main()
