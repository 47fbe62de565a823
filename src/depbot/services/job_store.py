"""Per-run store of the jobs the local job API is serving."""

import hmac
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from depbot.models import JobDefinition, JobTokens, OutputRecord
from depbot.services.credentials import credentials_metadata

JOB_TOKEN = "job"
CREDENTIALS_TOKEN = "credentials"


@dataclass
class JobEntry:
    job: JobDefinition
    tokens: JobTokens
    resolve_credentials: Callable[[], List[Dict[str, Any]]]
    records: List[OutputRecord] = field(default_factory=list)
    terminal: bool = False
    provisioning_error: Optional[str] = None


def _presented_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    value = authorization.strip()
    if value.lower().startswith("bearer "):
        value = value[7:].strip()
    return value or None


class JobStore:
    """Keeps job entries keyed by id; entries of different jobs never mix."""

    def __init__(self):
        self._entries: Dict[int, JobEntry] = {}
        self._lock = threading.Lock()

    def add(
        self,
        job: JobDefinition,
        tokens: JobTokens,
        resolve_credentials: Callable[[], List[Dict[str, Any]]],
    ) -> JobEntry:
        entry = JobEntry(job=job, tokens=tokens, resolve_credentials=resolve_credentials)
        with self._lock:
            if job.id in self._entries:
                raise ValueError(f"Job {job.id} is already registered.")
            self._entries[job.id] = entry
        return entry

    def get(self, job_id: int) -> Optional[JobEntry]:
        with self._lock:
            return self._entries.get(job_id)

    def remove(self, job_id: int) -> Optional[JobEntry]:
        with self._lock:
            return self._entries.pop(job_id, None)

    def authenticate(self, job_id: int, authorization: Optional[str], token_kind: str = JOB_TOKEN) -> Optional[JobEntry]:
        presented = _presented_token(authorization)
        entry = self.get(job_id)
        if entry is None or presented is None:
            return None
        expected = entry.tokens.credentials_token if token_kind == CREDENTIALS_TOKEN else entry.tokens.job_token
        if not hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8")):
            return None
        return entry

    def append_record(self, job_id: int, record: OutputRecord) -> bool:
        with self._lock:
            entry = self._entries.get(job_id)
            if entry is None:
                return False
            entry.records.append(record)
            if record.is_terminal:
                entry.terminal = True
            return True

    def records(self, job_id: int) -> List[OutputRecord]:
        with self._lock:
            entry = self._entries.get(job_id)
            return list(entry.records) if entry else []

    def is_terminal(self, job_id: int) -> bool:
        with self._lock:
            entry = self._entries.get(job_id)
            return bool(entry and entry.terminal)

    def details(self, job_id: int) -> Optional[Dict[str, Any]]:
        entry = self.get(job_id)
        if entry is None:
            return None
        payload = dict(entry.job.payload)
        payload["credentials-metadata"] = credentials_metadata(entry.job.credentials)
        return payload
