"""Lifecycle report generation service."""

import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class LifecycleReport:
    """Collects phase timings and readiness attempts; optionally writes them as JSON."""

    def __init__(self, report_file: Optional[str], logger):
        self.report_file = report_file
        self.logger = logger
        self.report: Dict[str, Any] = {
            "run_id": None,
            "status": "running",
            "failed_phase": None,
            "started_at": None,
            "finished_at": None,
            "duration_seconds": None,
            "container": None,
            "phases": [],
            "readiness_attempts": [],
            "teardown_error": None,
            "error": None,
        }

    def start_run(self, run_id: str):
        self.report["run_id"] = run_id
        self.report["status"] = "running"
        self.report["started_at"] = self._now()
        self.write()

    def set_container(self, container: Dict[str, Any]):
        self.report["container"] = container
        self.write()

    def phase_started(self, phase: str):
        self.report["phases"].append(
            {
                "name": phase,
                "status": "running",
                "started_at": self._now(),
                "finished_at": None,
                "duration_seconds": None,
                "error": None,
            }
        )
        self.write()

    def phase_finished(self, phase: str, status: str, error: Optional[str] = None):
        for entry in reversed(self.report["phases"]):
            if entry["name"] == phase and entry["status"] == "running":
                entry["status"] = status
                entry["finished_at"] = self._now()
                entry["error"] = error
                started_at = datetime.fromisoformat(entry["started_at"])
                finished_at = datetime.fromisoformat(entry["finished_at"])
                entry["duration_seconds"] = (finished_at - started_at).total_seconds()
                break
        self.write()

    def record_attempt(self, attempt: int, ok: bool, reason: str):
        self.report["readiness_attempts"].append(
            {"attempt": attempt, "ok": ok, "reason": reason or None, "at": self._now()}
        )
        self.write()

    def record_teardown_error(self, error: str):
        self.report["teardown_error"] = error
        self.write()

    def finalize(self, status: str, failed_phase: Optional[str] = None, error: Optional[str] = None):
        self.report["status"] = status
        self.report["failed_phase"] = failed_phase
        self.report["finished_at"] = self._now()
        if self.report.get("started_at"):
            started_at = datetime.fromisoformat(self.report["started_at"])
            finished_at = datetime.fromisoformat(self.report["finished_at"])
            self.report["duration_seconds"] = (finished_at - started_at).total_seconds()
        self.report["error"] = error
        self.write()

    def write(self):
        if not self.report_file:
            return

        directory = os.path.dirname(self.report_file) or "."
        os.makedirs(directory, exist_ok=True)

        fd, temp_path = tempfile.mkstemp(prefix="lifecycle-report-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                json.dump(self.report, file_obj, indent=2, sort_keys=True)
                file_obj.write("\n")
            os.replace(temp_path, self.report_file)
        except OSError as exc:
            self.logger.warning("Could not write report file '%s': %s", self.report_file, exc)
            try:
                os.remove(temp_path)
            except OSError:
                pass

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()
