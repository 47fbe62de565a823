"""Shared domain models for depbot."""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from depbot.ecosystems import Ecosystem, package_manager_for

PROPERTY_PACKAGE_MANAGER = "Dependabot.PackageManager"
PROPERTY_DEPENDENCIES = "Dependabot.Dependencies"


@dataclass(frozen=True)
class ScheduleConfig:
    """When an update directive should be triggered."""

    interval: str = "weekly"
    day: Optional[str] = None
    time: Optional[str] = None
    timezone: Optional[str] = None
    cronjob: Optional[str] = None


@dataclass(frozen=True)
class RegistryCredential:
    """A private registry declared in the configuration."""

    name: str
    type: str
    url: Optional[str] = None
    registry: Optional[str] = None
    host: Optional[str] = None
    index_url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    key: Optional[str] = None
    organization: Optional[str] = None
    replaces_base: bool = False

    SECRET_FIELDS = ("password", "token", "key")

    def to_credential(self) -> Dict[str, Any]:
        credential: Dict[str, Any] = {"type": self.type}
        optional = {
            "url": self.url,
            "registry": self.registry,
            "host": self.host,
            "index-url": self.index_url,
            "username": self.username,
            "password": self.password,
            "token": self.token,
            "key": self.key,
            "organization": self.organization,
        }
        credential.update({name: value for name, value in optional.items() if value})
        if self.replaces_base:
            credential["replaces-base"] = True
        return credential


@dataclass(frozen=True)
class UpdateDirective:
    """One `updates` entry of the configuration."""

    package_ecosystem: Ecosystem
    directory: Optional[str] = None
    directories: Tuple[str, ...] = ()
    target_branch: Optional[str] = None
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    open_pull_requests_limit: int = 5
    registries: Tuple[str, ...] = ()
    ignore: Tuple[Dict[str, Any], ...] = ()
    allow: Optional[Tuple[Dict[str, Any], ...]] = None
    groups: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    labels: Tuple[str, ...] = ()
    assignees: Tuple[str, ...] = ()
    milestone: Optional[str] = None
    commit_message: Optional[Dict[str, Any]] = None
    versioning_strategy: Optional[str] = None
    branch_name_separator: Optional[str] = None
    vendor: bool = False
    insecure_external_code_execution: Optional[str] = None
    cooldown: Optional[Dict[str, Any]] = None
    experiments: Dict[str, Any] = field(default_factory=dict)

    @property
    def package_manager(self) -> str:
        return package_manager_for(self.package_ecosystem)

    @property
    def directory_list(self) -> List[str]:
        if self.directory:
            return [self.directory]
        return list(self.directories)

    @property
    def directory_key(self) -> str:
        location = self.directory or ",".join(self.directories)
        return f"{self.package_ecosystem.value}::{location}"

    def uses_all_registries(self) -> bool:
        return self.registries == ("*",)


@dataclass(frozen=True)
class UpdateConfig:
    """A parsed and validated dependabot configuration."""

    version: int
    updates: Tuple[UpdateDirective, ...]
    registries: Dict[str, RegistryCredential] = field(default_factory=dict)
    enable_beta_ecosystems: bool = False


class JobKind(str, Enum):
    UPDATE_ALL = "update_all"
    UPDATE_SECURITY_ONLY = "update_security_only"
    UPDATE_PULL_REQUEST = "update_pull_request"
    LIST_ALL = "list_all"


@dataclass(frozen=True)
class JobTokens:
    job_token: str
    credentials_token: str


@dataclass(frozen=True)
class JobDefinition:
    """One concrete unit of work handed to an updater container."""

    id: int
    kind: JobKind
    ecosystem: Ecosystem
    package_manager: str
    directory_key: str
    directive_index: int
    target_branch: Optional[str]
    updater_image: str
    payload: Dict[str, Any]
    credentials: Tuple[Dict[str, Any], ...] = ()
    dependency_names: Tuple[str, ...] = ()
    dependency_group_name: Optional[str] = None
    pull_request_id: Optional[int] = None
    experiments: Dict[str, Any] = field(default_factory=dict)
    job_token: Optional[str] = None
    credentials_token: Optional[str] = None


@dataclass(frozen=True)
class PersistedDependency:
    name: str
    version: Optional[str] = None
    directory: Optional[str] = None
    removed: bool = False

    def identity(self) -> Tuple[str, Optional[str], bool]:
        return (self.name, self.version, self.removed)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "dependency-name": self.name,
            "dependency-version": self.version,
        }
        if self.directory:
            data["directory"] = self.directory
        if self.removed:
            data["removed"] = True
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PersistedDependency":
        return cls(
            name=str(data.get("dependency-name")),
            version=data.get("dependency-version"),
            directory=data.get("directory"),
            removed=bool(data.get("removed", False)),
        )


@dataclass(frozen=True)
class PullRequestProperties:
    """Dependabot metadata stored as properties on a pull request."""

    package_manager: str
    dependencies: Tuple[PersistedDependency, ...]
    dependency_group_name: Optional[str] = None

    @property
    def dependency_names(self) -> List[str]:
        return [dependency.name for dependency in self.dependencies]

    @property
    def directories(self) -> List[str]:
        return [dep.directory for dep in self.dependencies if dep.directory]

    def has_same_dependencies(self, other: "PullRequestProperties") -> bool:
        return (
            self.package_manager == other.package_manager
            and self.dependency_group_name == other.dependency_group_name
            and {dep.identity() for dep in self.dependencies}
            == {dep.identity() for dep in other.dependencies}
        )

    def has_dependency_names(self, names: List[str]) -> bool:
        return set(self.dependency_names) == set(names)

    def dependencies_value(self) -> Any:
        dependencies = [dependency.to_dict() for dependency in self.dependencies]
        if self.dependency_group_name:
            return {
                "dependency-group-name": self.dependency_group_name,
                "dependencies": dependencies,
            }
        return dependencies

    def to_properties(self) -> Dict[str, str]:
        return {
            PROPERTY_PACKAGE_MANAGER: self.package_manager,
            PROPERTY_DEPENDENCIES: json.dumps(self.dependencies_value()),
        }

    @classmethod
    def from_properties(cls, properties: Dict[str, str]) -> Optional["PullRequestProperties"]:
        package_manager = properties.get(PROPERTY_PACKAGE_MANAGER)
        raw_dependencies = properties.get(PROPERTY_DEPENDENCIES)
        if not package_manager or not raw_dependencies:
            return None

        try:
            parsed = json.loads(raw_dependencies)
        except ValueError:
            return None

        group_name = None
        if isinstance(parsed, dict):
            group_name = parsed.get("dependency-group-name")
            parsed = parsed.get("dependencies") or []
        if not isinstance(parsed, list):
            return None

        return cls(
            package_manager=package_manager,
            dependencies=tuple(
                PersistedDependency.from_dict(item) for item in parsed if isinstance(item, dict)
            ),
            dependency_group_name=group_name,
        )


@dataclass(frozen=True)
class ExistingPullRequest:
    id: int
    properties: PullRequestProperties
    source_branch: Optional[str] = None
    title: Optional[str] = None


@dataclass(frozen=True)
class SecurityVulnerability:
    """A known vulnerable version range of one package."""

    package_name: str
    advisory_ecosystem: str
    identifiers: Tuple[str, ...] = ()
    vulnerable_version_range: Optional[str] = None
    first_patched_version: Optional[str] = None


@dataclass(frozen=True)
class FileChange:
    change_type: str
    path: str
    content: Optional[str] = None
    encoding: Optional[str] = None


@dataclass(frozen=True)
class OutputRecord:
    """One structured record reported by an updater."""

    type: str
    data: Dict[str, Any] = field(default_factory=dict)

    TERMINAL_TYPES = ("mark_as_processed",)
    ERROR_TYPES = ("record_update_job_error", "record_update_job_unknown_error")

    @property
    def is_terminal(self) -> bool:
        return self.type in self.TERMINAL_TYPES

    @property
    def is_error(self) -> bool:
        return self.type in self.ERROR_TYPES


@dataclass(frozen=True)
class JobOutcome:
    job_id: int
    success: bool
    message: Optional[str] = None
    affected_pr_ids: Tuple[int, ...] = ()
    duration_seconds: Optional[float] = None
    discovered_dependencies: Tuple[Dict[str, Any], ...] = ()


class RunStatus(str, Enum):
    SUCCEEDED = "Succeeded"
    SUCCEEDED_WITH_ISSUES = "SucceededWithIssues"
    FAILED = "Failed"
    SKIPPED = "Skipped"


EXIT_CODES = {
    RunStatus.SUCCEEDED: 0,
    RunStatus.SKIPPED: 0,
    RunStatus.FAILED: 1,
    RunStatus.SUCCEEDED_WITH_ISSUES: 2,
}


@dataclass
class RunResult:
    outcomes: List[JobOutcome] = field(default_factory=list)

    @property
    def status(self) -> RunStatus:
        if not self.outcomes:
            return RunStatus.SKIPPED
        succeeded = [outcome for outcome in self.outcomes if outcome.success]
        if len(succeeded) == len(self.outcomes):
            return RunStatus.SUCCEEDED
        if not succeeded:
            return RunStatus.FAILED
        return RunStatus.SUCCEEDED_WITH_ISSUES

    @property
    def affected_pr_ids(self) -> List[int]:
        seen: List[int] = []
        for outcome in self.outcomes:
            for pr_id in outcome.affected_pr_ids:
                if pr_id not in seen:
                    seen.append(pr_id)
        return seen

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]
