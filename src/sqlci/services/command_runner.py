"""Subprocess execution service for SQLCI."""

import subprocess
from typing import Iterable, List, Optional, Sequence

from sqlci.errors import CommandError

MASK = "******"


def mask_command(cmd: Sequence[str], secrets: Iterable[str] = ()) -> str:
    """Joins ``cmd`` for logging with every secret replaced by a mask."""
    cmd_str = " ".join(cmd)
    for secret in secrets:
        if secret:
            cmd_str = cmd_str.replace(secret, MASK)
    return cmd_str


class CommandRunner:
    """Runs external commands with consistent error handling."""

    def __init__(self, logger):
        self.logger = logger

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = False,
        timeout: Optional[float] = None,
        secrets: Iterable[str] = (),
        env: Optional[dict] = None,
    ) -> subprocess.CompletedProcess:
        secrets = tuple(secrets)
        cmd_str = mask_command(cmd, secrets)
        self.logger.debug("Executing: %s", cmd_str)

        try:
            result = subprocess.run(
                cmd,
                text=True,
                capture_output=capture_output,
                timeout=timeout,
                env=env,
            )
        except FileNotFoundError as exc:
            raise CommandError(
                f"Required command not found: {cmd[0]}. Please install it and try again."
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandError(f"Command timed out after {timeout}s: {cmd_str}") from exc
        except OSError as exc:
            raise CommandError(f"Failed to execute command: {cmd_str}. {exc}") from exc

        if capture_output and result.stdout:
            self.logger.debug("Command output: %s", mask_command([result.stdout.strip()], secrets))

        if result.returncode == 0:
            return result

        stderr = (result.stderr or "").strip() if capture_output else ""
        stderr = mask_command([stderr], secrets) if stderr else ""
        message = f"Command failed ({result.returncode}): {cmd_str}"
        if stderr:
            message = f"{message}\n{stderr}"

        if check:
            raise CommandError(message, returncode=result.returncode, stderr=stderr)

        self.logger.debug(message)
        return result
