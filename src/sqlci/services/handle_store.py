"""Container handle persistence between separate build steps."""

import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlci.errors import OrchestratorError
from sqlci.models import ContainerHandle


class HandleStore:
    """Writes the handle of a started container so a later step can tear it down."""

    SCHEMA_VERSION = 1

    def __init__(self, handle_file: str, logger):
        self.handle_file = handle_file
        self.logger = logger

    def save(self, handle: ContainerHandle, extra: Optional[Dict[str, Any]] = None):
        directory = os.path.dirname(self.handle_file) or "."
        os.makedirs(directory, exist_ok=True)
        payload = {
            "schema_version": self.SCHEMA_VERSION,
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "handle": handle.to_dict(),
            "data": extra or {},
        }

        fd, temp_path = tempfile.mkstemp(prefix="handle-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                json.dump(payload, file_obj, indent=2, sort_keys=True)
                file_obj.write("\n")
            os.replace(temp_path, self.handle_file)
        except OSError as exc:
            raise OrchestratorError(
                f"Could not write handle file '{self.handle_file}': {exc}"
            ) from exc
        finally:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    pass

        self.logger.debug("Saved container handle to %s", self.handle_file)

    def load(self) -> Optional[ContainerHandle]:
        if not os.path.exists(self.handle_file):
            return None

        try:
            with open(self.handle_file, "r", encoding="utf-8") as file_obj:
                data = json.load(file_obj)
        except (OSError, json.JSONDecodeError) as exc:
            raise OrchestratorError(
                f"Could not read handle file '{self.handle_file}': {exc}"
            ) from exc

        if not isinstance(data, dict) or not isinstance(data.get("handle"), dict):
            raise OrchestratorError(f"Handle file '{self.handle_file}' has invalid format.")

        try:
            return ContainerHandle.from_dict(data["handle"])
        except (KeyError, TypeError, ValueError) as exc:
            raise OrchestratorError(
                f"Handle file '{self.handle_file}' has invalid format: {exc}"
            ) from exc

    def clear(self):
        try:
            os.remove(self.handle_file)
        except FileNotFoundError:
            return
        except OSError as exc:
            self.logger.warning("Could not remove handle file %s: %s", self.handle_file, exc)
