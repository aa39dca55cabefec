"""Configuration loader for SQLCI."""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from sqlci.errors import OrchestratorError


class ConfigLoader:
    """Loads YAML configuration files for CLI defaults."""

    SUPPORTED_KEYS = {
        "image",
        "container_name",
        "host_port",
        "container_port",
        "isolation",
        "admin_user",
        "admin_password",
        "login_name",
        "login_password",
        "role",
        "max_attempts",
        "retry_delay",
        "probe_query",
        "sqlcmd_path",
        "trust_server_certificate",
        "stop_timeout",
        "command_timeout",
        "extra_env",
        "handle_file",
        "report_file",
        "connect_host",
        "verbose",
        "log_file",
    }

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise OrchestratorError(f"Config file not found: {config_path}", phase="config")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise OrchestratorError(
                f"Invalid config file '{config_path}': {exc}", phase="config"
            ) from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise OrchestratorError(
                "Config file must contain a YAML mapping at the root.", phase="config"
            )

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise OrchestratorError(f"Unknown configuration keys: {unknown_list}", phase="config")

        extra_env = parsed.get("extra_env")
        if extra_env is not None and not isinstance(extra_env, dict):
            raise OrchestratorError("`extra_env` must be a mapping of names to values.", phase="config")

        return parsed
