"""Actionable error catalog for SQLCI."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "docker_unavailable": {
        "what": "Docker is not available: {reason}",
        "next": "Install Docker (or start the Docker service) on the build agent and retry.",
    },
    "invalid_isolation": {
        "what": "Unsupported isolation mode `{isolation}`. Supported modes: {supported}.",
        "next": "Use `process` when the container OS matches the host, `hyperv` otherwise.",
    },
    "launch_rejected": {
        "what": "Container runtime rejected `{image}`: {reason}",
        "next": (
            "Check that the image OS version matches the host kernel or switch to "
            "`--isolation hyperv`, and that nested virtualization is enabled on the VM."
        ),
    },
    "readiness_exhausted": {
        "what": "SQL Server in `{container}` was not ready after {attempts} attempt(s). Last error: {reason}",
        "next": "Inspect `docker logs {container}` and raise `max_attempts` or `retry_delay`.",
    },
    "provision_failed": {
        "what": "Could not provision login `{login}` with role `{role}`: {reason}",
        "next": "Check the password complexity and that the role exists on the server.",
    },
    "teardown_failed": {
        "what": "Could not tear down container `{container}`: {reason}",
        "next": "Remove it manually with `docker rm -f {container}`; a restart of the Docker service may be needed.",
    },
    "not_ready": {
        "what": "Cannot provision a credential in `{container}` before it is ready (state: {state}).",
        "next": "Call `wait_until_ready` and check its result before provisioning.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
