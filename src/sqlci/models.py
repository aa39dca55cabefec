"""Shared domain models for SQLCI."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from sqlci.constants import (
    DEFAULT_ADMIN_USER,
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_CONNECT_HOST,
    DEFAULT_CONTAINER_PORT,
    DEFAULT_IMAGE,
    DEFAULT_ISOLATION,
    DEFAULT_LOGIN_NAME,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PROBE_QUERY,
    DEFAULT_RETRY_DELAY,
    DEFAULT_ROLE,
    DEFAULT_SQLCMD_PATH,
    DEFAULT_STOP_TIMEOUT,
)


@dataclass(frozen=True)
class Credential:
    """A SQL Server login and its password."""

    login: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class PortMapping:
    """Host/container port pair. ``host_port=None`` lets the runtime pick one."""

    container_port: int = DEFAULT_CONTAINER_PORT
    host_port: Optional[int] = None

    def as_publish_arg(self) -> str:
        if self.host_port is None:
            return str(self.container_port)
        return f"{self.host_port}:{self.container_port}"


@dataclass(frozen=True)
class ContainerHandle:
    """Identifies one running container owned by an orchestrator."""

    name: str
    container_id: str
    image: str
    ports: PortMapping
    isolation: str = DEFAULT_ISOLATION

    @property
    def host_port(self) -> Optional[int]:
        return self.ports.host_port

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContainerHandle":
        ports = data.get("ports") or {}
        return cls(
            name=data["name"],
            container_id=data.get("container_id", ""),
            image=data.get("image", ""),
            ports=PortMapping(
                container_port=int(ports.get("container_port", DEFAULT_CONTAINER_PORT)),
                host_port=ports.get("host_port"),
            ),
            isolation=data.get("isolation", DEFAULT_ISOLATION),
        )


class ReadinessOutcome(str, Enum):
    READY = "ready"
    EXHAUSTED = "exhausted"


@dataclass
class ReadinessPollState:
    """Per-wait bookkeeping; discarded once the wait finishes."""

    max_attempts: int
    retry_delay: float
    attempts: int = 0
    last_failure: Optional[str] = None

    @property
    def remaining(self) -> int:
        return self.max_attempts - self.attempts


@dataclass(frozen=True)
class ReadinessResult:
    outcome: ReadinessOutcome
    attempts: int
    last_failure: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self.outcome is ReadinessOutcome.READY


@dataclass(frozen=True)
class ProvisionedCredential:
    """A login created inside a running container; lives as long as the container."""

    credential: Credential
    role: str
    handle: ContainerHandle


class LifecycleState(str, Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    LAUNCH_FAILED = "launch_failed"
    WAITING_READY = "waiting_ready"
    READY = "ready"
    EXHAUSTED = "exhausted"
    PROVISIONING = "provisioning"
    PROVISIONED = "provisioned"
    PROVISION_FAILED = "provision_failed"
    TEARING_DOWN = "tearing_down"
    STOPPED = "stopped"


@dataclass(frozen=True)
class LifecycleSettings:
    """Everything needed to drive one container lifecycle."""

    admin_password: str = field(repr=False)
    login_password: str = field(repr=False)
    image: str = DEFAULT_IMAGE
    container_name: Optional[str] = None
    host_port: Optional[int] = None
    container_port: int = DEFAULT_CONTAINER_PORT
    isolation: str = DEFAULT_ISOLATION
    admin_user: str = DEFAULT_ADMIN_USER
    login_name: str = DEFAULT_LOGIN_NAME
    role: str = DEFAULT_ROLE
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_delay: float = DEFAULT_RETRY_DELAY
    probe_query: str = DEFAULT_PROBE_QUERY
    sqlcmd_path: str = DEFAULT_SQLCMD_PATH
    trust_server_certificate: bool = False
    stop_timeout: int = DEFAULT_STOP_TIMEOUT
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    extra_env: Dict[str, str] = field(default_factory=dict)
    report_file: Optional[str] = None
    connect_host: str = DEFAULT_CONNECT_HOST

    @property
    def admin_credential(self) -> Credential:
        return Credential(self.admin_user, self.admin_password)

    @property
    def login_credential(self) -> Credential:
        return Credential(self.login_name, self.login_password)

    @property
    def port_mapping(self) -> PortMapping:
        return PortMapping(container_port=self.container_port, host_port=self.host_port)
