"""Turns the record stream of one job into pull request actions and an outcome."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from depbot.models import FileChange, JobDefinition, JobKind, OutputRecord, PullRequestProperties
from depbot.services.pull_requests import changed_files, close_reason, properties_from_output

ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_CLOSE = "close"
ACTION_WARN = "warn"

NON_ACTION_TYPES = (
    "update_dependency_list",
    "create_dependency_submission",
    "record_ecosystem_versions",
    "record_ecosystem_meta",
    "record_cooldown_meta",
    "increment_metric",
    "record_metrics",
)


class ProcessorState(str, Enum):
    RUNNING = "running"
    PROCESSING = "processing"
    PROCESSED = "processed"
    ERRORED = "errored"


@dataclass(frozen=True)
class PendingAction:
    """A pull request change buffered until the job finishes."""

    kind: str
    dependency_names: Tuple[str, ...] = ()
    properties: Optional[PullRequestProperties] = None
    title: Optional[str] = None
    body: Optional[str] = None
    commit_message: Optional[str] = None
    changes: Tuple[FileChange, ...] = ()
    base_commit: Optional[str] = None
    pull_request_id: Optional[int] = None
    reason: Optional[str] = None
    dependencies: Tuple[Dict[str, Any], ...] = ()


@dataclass(frozen=True)
class ProcessingResult:
    state: ProcessorState
    success: bool
    terminal: bool
    actions: Tuple[PendingAction, ...] = ()
    errors: Tuple[Dict[str, Any], ...] = ()
    dependencies: Tuple[Dict[str, Any], ...] = ()


@dataclass
class _JobState:
    state: ProcessorState = ProcessorState.RUNNING
    actions: List[PendingAction] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    dependencies: List[Dict[str, Any]] = field(default_factory=list)


class OutputProcessor:
    """State machine over the ordered records of exactly one job."""

    def __init__(self, job: JobDefinition, logger):
        self.job = job
        self.logger = logger
        self._state = _JobState()

    @property
    def state(self) -> ProcessorState:
        return self._state.state

    @property
    def terminal(self) -> bool:
        return self._state.state in (ProcessorState.PROCESSED, ProcessorState.ERRORED)

    def process_all(self, records) -> ProcessingResult:
        for record in records:
            self.process(record)
        return self.result()

    def process(self, record: OutputRecord):
        if self.terminal:
            self.logger.warning("Job %s: ignoring '%s' received after the job was processed.", self.job.id, record.type)
            return

        self._state.state = ProcessorState.PROCESSING
        data = record.data if isinstance(record.data, dict) else {}
        handler = self._handlers().get(record.type)

        if handler is not None:
            handler(data)
        elif record.is_error:
            self._record_error(record.type, data)
        elif record.type in NON_ACTION_TYPES:
            self.logger.debug("Job %s: recorded '%s'.", self.job.id, record.type)
        else:
            self.logger.warning("Job %s: unknown record type '%s', ignoring.", self.job.id, record.type)

    def result(self) -> ProcessingResult:
        state = self._state
        return ProcessingResult(
            state=state.state,
            success=self.terminal and not state.errors,
            terminal=self.terminal,
            actions=tuple(state.actions),
            errors=tuple(state.errors),
            dependencies=tuple(state.dependencies),
        )

    def _handlers(self):
        return {
            "create_pull_request": self._on_create_pull_request,
            "update_pull_request": self._on_update_pull_request,
            "close_pull_request": self._on_close_pull_request,
            "record_update_job_warning": self._on_record_update_job_warning,
            "update_dependency_list": self._on_update_dependency_list,
            "mark_as_processed": self._on_mark_as_processed,
        }

    def _on_create_pull_request(self, data: Dict[str, Any]):
        dependencies = tuple(dep for dep in data.get("dependencies") or [] if isinstance(dep, dict))
        self._state.actions.append(
            PendingAction(
                kind=ACTION_CREATE,
                dependency_names=tuple(str(dep.get("name")) for dep in dependencies),
                properties=properties_from_output(self.job.package_manager, data),
                title=data.get("pr-title"),
                body=data.get("pr-body"),
                commit_message=data.get("commit-message"),
                changes=tuple(changed_files(data)),
                base_commit=self._base_commit(data),
                dependencies=dependencies,
            )
        )

    def _on_update_pull_request(self, data: Dict[str, Any]):
        pull_request_id = None
        if self.job.kind == JobKind.UPDATE_PULL_REQUEST:
            pull_request_id = self.job.pull_request_id
        dependencies = tuple(dep for dep in data.get("dependencies") or [] if isinstance(dep, dict))
        self._state.actions.append(
            PendingAction(
                kind=ACTION_UPDATE,
                dependency_names=tuple(str(name) for name in data.get("dependency-names") or []),
                properties=properties_from_output(self.job.package_manager, data) if dependencies else None,
                title=data.get("pr-title"),
                body=data.get("pr-body"),
                commit_message=data.get("commit-message"),
                changes=tuple(changed_files(data)),
                base_commit=self._base_commit(data),
                pull_request_id=pull_request_id,
                dependencies=dependencies,
            )
        )

    def _on_close_pull_request(self, data: Dict[str, Any]):
        names = tuple(str(name) for name in data.get("dependency-names") or [])
        for index, action in enumerate(self._state.actions):
            if action.kind == ACTION_CREATE and set(action.dependency_names) == set(names):
                self.logger.info(
                    "Job %s: close of '%s' cancels the pending pull request creation.",
                    self.job.id,
                    ", ".join(names),
                )
                del self._state.actions[index]
                return

        pull_request_id = None
        if self.job.kind == JobKind.UPDATE_PULL_REQUEST:
            pull_request_id = self.job.pull_request_id
        self._state.actions.append(
            PendingAction(
                kind=ACTION_CLOSE,
                dependency_names=names,
                pull_request_id=pull_request_id,
                reason=close_reason(data),
            )
        )

    def _on_record_update_job_warning(self, data: Dict[str, Any]):
        self.logger.warning("Job %s: %s", self.job.id, data.get("warn-title"))
        self._state.actions.append(
            PendingAction(kind=ACTION_WARN, title=data.get("warn-title"), body=data.get("warn-description"))
        )

    def _on_update_dependency_list(self, data: Dict[str, Any]):
        self._state.dependencies = [dep for dep in data.get("dependencies") or [] if isinstance(dep, dict)]

    def _on_mark_as_processed(self, data: Dict[str, Any]):
        self._state.state = ProcessorState.ERRORED if self._state.errors else ProcessorState.PROCESSED
        self.logger.debug("Job %s: marked as processed (%s).", self.job.id, self._state.state.value)

    def _record_error(self, record_type: str, data: Dict[str, Any]):
        error = {
            "type": record_type,
            "error-type": data.get("error-type"),
            "error-details": data.get("error-details"),
        }
        self._state.errors.append(error)
        self.logger.error(
            "Job %s: update job error: %s %s",
            self.job.id,
            error["error-type"],
            error["error-details"] or "",
        )

    def _base_commit(self, data: Dict[str, Any]) -> Optional[str]:
        source = self.job.payload.get("source") or {}
        return data.get("base-commit-sha") or source.get("commit")
