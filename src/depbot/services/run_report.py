"""Run report generation service."""

import json
import os
import tempfile
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from depbot.models import JobDefinition, JobOutcome


class RunReportService:
    """Collects job outcomes and durations and writes the run report JSON."""

    def __init__(self, report_file: Optional[str], logger):
        self.report_file = report_file
        self.logger = logger
        self._lock = threading.Lock()
        self.report: Dict[str, Any] = {
            "run_id": None,
            "status": "running",
            "started_at": None,
            "finished_at": None,
            "duration_seconds": None,
            "metadata": {},
            "schedules": [],
            "jobs": [],
            "affected_pr_ids": [],
            "error": None,
        }

    def start_run(self, run_id: str, metadata: Dict[str, Any]):
        with self._lock:
            self.report["run_id"] = run_id
            self.report["status"] = "running"
            self.report["started_at"] = self._now()
            self.report["metadata"] = metadata
        self.write()

    def set_schedules(self, schedules: List[Dict[str, Any]]):
        with self._lock:
            self.report["schedules"] = schedules
        self.write()

    def job_finished(self, job: JobDefinition, outcome: JobOutcome):
        with self._lock:
            self.report["jobs"].append(
                {
                    "id": job.id,
                    "kind": job.kind.value,
                    "ecosystem": job.ecosystem.value,
                    "directory_key": job.directory_key,
                    "pull_request_id": job.pull_request_id,
                    "success": outcome.success,
                    "message": outcome.message,
                    "affected_pr_ids": list(outcome.affected_pr_ids),
                    "duration_seconds": outcome.duration_seconds,
                    "finished_at": self._now(),
                }
            )
        self.write()

    def finalize(self, status: str, affected_pr_ids: Optional[List[int]] = None, error: Optional[str] = None):
        with self._lock:
            self.report["status"] = status
            self.report["finished_at"] = self._now()
            if self.report.get("started_at"):
                started_at = datetime.fromisoformat(self.report["started_at"])
                finished_at = datetime.fromisoformat(self.report["finished_at"])
                self.report["duration_seconds"] = (finished_at - started_at).total_seconds()
            self.report["affected_pr_ids"] = list(affected_pr_ids or [])
            self.report["error"] = error
        self.write()

    def write(self):
        if not self.report_file:
            return

        directory = os.path.dirname(self.report_file) or "."
        os.makedirs(directory, exist_ok=True)

        with self._lock:
            snapshot = json.dumps(self.report, indent=2, sort_keys=True, default=str)

        fd, temp_path = tempfile.mkstemp(prefix="run-report-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                file_obj.write(snapshot)
                file_obj.write("\n")
            os.replace(temp_path, self.report_file)
        except OSError as exc:
            self.logger.warning("Could not write run report '%s': %s", self.report_file, exc)
            try:
                os.remove(temp_path)
            except OSError:
                pass

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()
