"""Domain errors for SQLCI."""

from typing import Optional


class OrchestratorError(RuntimeError):
    """Raised when the container lifecycle cannot continue safely."""

    phase = "lifecycle"

    def __init__(self, message: str, phase: Optional[str] = None):
        super().__init__(message)
        if phase is not None:
            self.phase = phase


class LaunchError(OrchestratorError):
    """The container runtime rejected the start request."""

    phase = "launch"


class ReadinessExhausted(OrchestratorError):
    """The service never accepted commands within the attempt budget."""

    phase = "readiness"


class ProvisionError(OrchestratorError):
    """The service was ready but the provisioning command failed."""

    phase = "provisioning"


class TeardownError(OrchestratorError):
    """Stopping or removing the container failed."""

    phase = "teardown"


class CommandError(OrchestratorError):
    """An external command failed or could not be executed."""

    phase = "command"

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr
