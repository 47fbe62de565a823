"""Builds update job definitions from a configuration and open pull requests."""

import secrets
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from depbot.ecosystems import DEFAULT_UPDATER_IMAGE, spec_for, updater_image_for
from depbot.errors import ConfigurationError
from depbot.errors_catalog import actionable_error
from depbot.models import (
    ExistingPullRequest,
    JobDefinition,
    JobKind,
    SecurityVulnerability,
    UpdateConfig,
    UpdateDirective,
)

MAX_UPDATER_RUN_TIME = 2700

# Flags the hosted Dependabot service enables for its updaters.
DEFAULT_EXPERIMENTS: Dict[str, Any] = {
    "record-ecosystem-versions": True,
    "record-update-job-unknown-error": True,
    "proxy-cached": True,
    "move-job-token": True,
    "dependency-change-validation": True,
    "enable-file-parser-python-local": True,
    "npm-fallback-version-above-v6": True,
    "lead-security-dependency": True,
    "enable-record-ecosystem-meta": True,
    "enable-corepack-for-npm-and-yarn": True,
    "enable-shared-helpers-command-timeout": True,
    "enable-dependabot-setting-up-cronjob": True,
    "enable-engine-version-detection": True,
    "avoid-duplicate-updates-package-json": True,
    "allow-refresh-for-existing-pr-dependencies": True,
    "allow-refresh-group-with-all-dependencies": True,
    "exclude-local-composer-packages": True,
    "enable-enhanced-error-details-for-updater": True,
    "enable-cooldown-metrics-collection": True,
    "gradle-lockfile-updater": True,
}

VERSIONING_STRATEGY_MAP = {
    "auto": None,
    "increase": "bump_versions",
    "increase-if-necessary": "bump_versions_if_necessary",
    "lockfile-only": "lockfile_only",
    "widen": "widen_ranges",
}


@dataclass(frozen=True)
class SourceInfo:
    """Where the updater should clone the repository from."""

    hostname: str
    api_endpoint: str
    repository_slug: str
    provider: str = "azure"


@dataclass
class JobPlan:
    jobs: List[JobDefinition] = field(default_factory=list)
    orphaned_pull_requests: List[ExistingPullRequest] = field(default_factory=list)
    notices: List[str] = field(default_factory=list)


def make_random_job_id() -> int:
    return secrets.randbelow(10_000_000_000 - 1) + 1


def parse_experiments(raw: Optional[str]) -> Dict[str, Any]:
    experiments: Dict[str, Any] = {}
    for entry in (raw or "").split(","):
        if not entry.strip():
            continue
        key, _, value = entry.partition("=")
        experiments[key.strip()] = value.strip() if value else True
    return experiments


def map_experiments(experiments: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    mapped: Dict[str, Any] = {}
    for key, value in (experiments or {}).items():
        if isinstance(value, str) and value.lower() == "true":
            mapped[key] = True
        elif isinstance(value, str) and value.lower() == "false":
            mapped[key] = False
        elif isinstance(value, (str, bool)):
            mapped[key] = value
    return mapped


def map_versioning_strategy(strategy: Optional[str]) -> Optional[str]:
    if not strategy:
        return None
    if strategy not in VERSIONING_STRATEGY_MAP:
        raise ConfigurationError(
            actionable_error("config_invalid", detail=f"invalid versioning strategy '{strategy}'")
        )
    return VERSIONING_STRATEGY_MAP[strategy]


def map_groups(groups: Optional[Dict[str, Dict[str, Any]]]) -> List[Dict[str, Any]]:
    mapped = []
    for name, group in (groups or {}).items():
        if not group:
            continue
        mapped.append(
            {
                "name": name,
                "applies-to": group.get("applies-to"),
                "rules": {
                    "patterns": group.get("patterns") or ["*"],
                    "exclude-patterns": group.get("exclude-patterns"),
                    "dependency-type": group.get("dependency-type"),
                    "update-types": group.get("update-types"),
                },
            }
        )
    return mapped


def map_allowed_updates(
    allow: Optional[Sequence[Dict[str, Any]]],
    security_only: bool = False,
) -> List[Dict[str, Any]]:
    # Direct dependencies only unless the configuration says otherwise.
    if allow is None:
        return [{"dependency-type": "direct", "update-type": "security" if security_only else "all"}]
    return [
        {
            "dependency-name": item.get("dependency-name"),
            "dependency-type": item.get("dependency-type"),
            "update-type": item.get("update-type"),
        }
        for item in allow
    ]


def map_ignore_conditions(ignore: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    conditions = []
    for item in ignore:
        versions = item.get("versions")
        if isinstance(versions, list):
            versions = ", ".join(str(version) for version in versions)
        conditions.append(
            {
                "source": item.get("source"),
                "updated-at": item.get("updated-at"),
                "dependency-name": item.get("dependency-name") or "*",
                "update-types": item.get("update-types"),
                "version-requirement": versions,
            }
        )
    return conditions


def map_security_advisories(vulnerabilities: Iterable[SecurityVulnerability]) -> List[Dict[str, Any]]:
    grouped: Dict[str, List[SecurityVulnerability]] = {}
    for vulnerability in vulnerabilities:
        key = "/".join((vulnerability.package_name,) + tuple(vulnerability.identifiers))
        grouped.setdefault(key, []).append(vulnerability)

    return [
        {
            "dependency-name": items[0].package_name,
            "affected-versions": [v.vulnerable_version_range for v in items if v.vulnerable_version_range],
            "patched-versions": [v.first_patched_version for v in items if v.first_patched_version],
            "unaffected-versions": [],
        }
        for items in grouped.values()
    ]


def parse_security_vulnerabilities(items: Iterable[Dict[str, Any]]) -> List[SecurityVulnerability]:
    vulnerabilities = []
    for item in items:
        package = item.get("package") or {}
        advisory = item.get("advisory") or {}
        patched = item.get("firstPatchedVersion") or {}
        identifiers = tuple(
            f"{identifier.get('type')}:{identifier.get('value')}"
            for identifier in advisory.get("identifiers") or []
        )
        if not package.get("name") or advisory.get("withdrawnAt"):
            continue
        vulnerabilities.append(
            SecurityVulnerability(
                package_name=str(package["name"]),
                advisory_ecosystem=str(package.get("ecosystem") or "").upper(),
                identifiers=identifiers,
                vulnerable_version_range=item.get("vulnerableVersionRange"),
                first_patched_version=patched.get("identifier"),
            )
        )
    return vulnerabilities


def pull_request_matches_directive(pull_request: ExistingPullRequest, directive: UpdateDirective) -> bool:
    properties = pull_request.properties
    if properties.package_manager != directive.package_manager:
        return False
    recorded = properties.directories
    if not recorded:
        return True
    return bool(set(recorded) & set(directive.directory_list))


def owning_directive_index(
    pull_request: ExistingPullRequest, directives: Sequence[UpdateDirective]
) -> Optional[int]:
    """Index of the single directive a pull request belongs to, or None when it is orphaned.

    The first matching directive in declaration order wins. A pull request that records no
    directory prefers a directive covering the repository root.
    """
    candidates = [
        index
        for index, directive in enumerate(directives)
        if pull_request_matches_directive(pull_request, directive)
    ]
    if not candidates:
        return None
    if not pull_request.properties.directories:
        for index in candidates:
            if "/" in directives[index].directory_list:
                return index
    return candidates[0]


def assign_pull_requests(
    directives: Sequence[UpdateDirective], pull_requests: Iterable[ExistingPullRequest]
) -> Dict[int, List[ExistingPullRequest]]:
    assigned: Dict[int, List[ExistingPullRequest]] = {}
    for pull_request in pull_requests:
        index = owning_directive_index(pull_request, directives)
        if index is not None:
            assigned.setdefault(index, []).append(pull_request)
    return assigned


class JobBuilder:
    """Turns update directives into job definitions without side effects."""

    def __init__(
        self,
        source: SourceInfo,
        git_token: Optional[str] = None,
        github_token: Optional[str] = None,
        git_username: Optional[str] = None,
        experiments: Optional[Dict[str, Any]] = None,
        updater_image_template: str = DEFAULT_UPDATER_IMAGE,
        debug: bool = False,
        job_id_factory: Callable[[], int] = make_random_job_id,
    ):
        self.source = source
        self.git_token = git_token
        self.github_token = github_token
        self.git_username = git_username
        self.experiments = dict(DEFAULT_EXPERIMENTS if experiments is None else experiments)
        self.updater_image_template = updater_image_template
        self.debug = debug
        self.job_id_factory = job_id_factory

    def build(
        self,
        config: UpdateConfig,
        existing_pull_requests: Sequence[ExistingPullRequest] = (),
        vulnerabilities: Sequence[SecurityVulnerability] = (),
        target_update_ids: Optional[Sequence[int]] = None,
        dry_run: bool = False,
        discover_vulnerabilities: bool = False,
    ) -> JobPlan:
        plan = JobPlan()

        selected = list(enumerate(config.updates))
        if target_update_ids:
            selected = []
            for update_id in target_update_ids:
                if 0 <= update_id < len(config.updates):
                    selected.append((update_id, config.updates[update_id]))
                else:
                    plan.notices.append(
                        f"Unable to find target update id '{update_id}'. "
                        f"Expected a zero based index in the range 0-{len(config.updates) - 1}."
                    )

        owned = assign_pull_requests(config.updates, existing_pull_requests)
        for index, directive in selected:
            matching = owned.get(index, [])

            if dry_run and matching:
                plan.notices.append(
                    f"Skipping update of {len(matching)} existing {directive.package_ecosystem.value} "
                    "pull request(s) in dry-run mode."
                )
            elif matching:
                for pull_request in matching:
                    plan.jobs.append(
                        self.build_update_pull_request_job(
                            config, index, directive, pull_request, matching, vulnerabilities
                        )
                    )

            limit = directive.open_pull_requests_limit
            if limit == 0:
                advisories = self._vulnerabilities_for(directive, vulnerabilities)
                if advisories and not discover_vulnerabilities:
                    plan.jobs.append(
                        self.build_update_all_job(
                            config, index, directive, matching, security_only=True, vulnerabilities=advisories
                        )
                    )
                else:
                    plan.jobs.append(self.build_list_all_job(config, index, directive))
            elif len(matching) < limit:
                plan.jobs.append(self.build_update_all_job(config, index, directive, matching))
            else:
                plan.notices.append(
                    f"Skipping update for {directive.directory_key} as the open pull requests "
                    f"limit ({limit}) has already been reached."
                )

        plan.orphaned_pull_requests = [
            pr for pr in existing_pull_requests if owning_directive_index(pr, config.updates) is None
        ]
        return plan

    def build_update_all_job(
        self,
        config: UpdateConfig,
        index: int,
        directive: UpdateDirective,
        existing: Sequence[ExistingPullRequest] = (),
        security_only: bool = False,
        vulnerabilities: Sequence[SecurityVulnerability] = (),
    ) -> JobDefinition:
        names = sorted({v.package_name for v in vulnerabilities}) if security_only else []
        payload = self._update_payload(
            config,
            directive,
            existing,
            dependency_names=names or None,
            security_only=security_only,
            vulnerabilities=vulnerabilities,
        )
        kind = JobKind.UPDATE_SECURITY_ONLY if security_only else JobKind.UPDATE_ALL
        return self._job(config, kind, index, directive, payload, dependency_names=names)

    def build_update_pull_request_job(
        self,
        config: UpdateConfig,
        index: int,
        directive: UpdateDirective,
        pull_request: ExistingPullRequest,
        existing: Sequence[ExistingPullRequest] = (),
        vulnerabilities: Sequence[SecurityVulnerability] = (),
    ) -> JobDefinition:
        names = pull_request.properties.dependency_names
        group_name = pull_request.properties.dependency_group_name
        relevant = [v for v in vulnerabilities if v.package_name in names]
        payload = self._update_payload(
            config,
            directive,
            existing,
            dependency_names=names,
            security_only=directive.open_pull_requests_limit == 0,
            vulnerabilities=relevant,
            updating_pull_request=True,
            group_to_refresh=group_name,
        )
        return self._job(
            config,
            JobKind.UPDATE_PULL_REQUEST,
            index,
            directive,
            payload,
            dependency_names=names,
            dependency_group_name=group_name,
            pull_request_id=pull_request.id,
        )

    def build_list_all_job(self, config: UpdateConfig, index: int, directive: UpdateDirective) -> JobDefinition:
        payload = {
            "package-manager": directive.package_manager,
            "updating-a-pull-request": False,
            "dependencies": None,
            "allowed-updates": [{"dependency-type": "direct", "update-type": "all"}],
            "ignore-conditions": [{"dependency-name": "*"}],
            "security-updates-only": False,
            "security-advisories": [],
            "source": self._source(directive),
            "update-subdependencies": False,
            "existing-pull-requests": [],
            "existing-group-pull-requests": [],
            "experiments": map_experiments(self._experiments(directive)),
            "requirements-update-strategy": None,
            "lockfile-only": False,
            "debug": self.debug,
        }
        return self._job(config, JobKind.LIST_ALL, index, directive, payload)

    def credentials_for(self, config: UpdateConfig, directive: UpdateDirective) -> List[Dict[str, Any]]:
        credentials: List[Dict[str, Any]] = []
        if self.git_token:
            credentials.append(
                {
                    "type": "git_source",
                    "host": self.source.hostname,
                    "username": (self.git_username or "").strip() or "x-access-token",
                    "password": self.git_token,
                }
            )
        if self.github_token:
            credentials.append(
                {
                    "type": "git_source",
                    "host": "github.com",
                    "username": "x-access-token",
                    "password": self.github_token,
                }
            )

        names = list(config.registries) if directive.uses_all_registries() else directive.registries
        for name in names:
            credentials.append(config.registries[name].to_credential())
        return credentials

    def _job(
        self,
        config: UpdateConfig,
        kind: JobKind,
        index: int,
        directive: UpdateDirective,
        payload: Dict[str, Any],
        dependency_names: Sequence[str] = (),
        dependency_group_name: Optional[str] = None,
        pull_request_id: Optional[int] = None,
    ) -> JobDefinition:
        job_id = self.job_id_factory()
        payload = dict(payload, id=job_id)
        return JobDefinition(
            id=job_id,
            kind=kind,
            ecosystem=directive.package_ecosystem,
            package_manager=directive.package_manager,
            directory_key=directive.directory_key,
            directive_index=index,
            target_branch=directive.target_branch,
            updater_image=updater_image_for(directive.package_ecosystem, self.updater_image_template),
            payload=payload,
            credentials=tuple(self.credentials_for(config, directive)),
            dependency_names=tuple(dependency_names),
            dependency_group_name=dependency_group_name,
            pull_request_id=pull_request_id,
            experiments=payload.get("experiments") or {},
        )

    def _experiments(self, directive: UpdateDirective) -> Dict[str, Any]:
        experiments = dict(self.experiments)
        experiments.update(directive.experiments)
        return experiments

    def _source(self, directive: UpdateDirective) -> Dict[str, Any]:
        return {
            "provider": self.source.provider,
            "api-endpoint": self.source.api_endpoint,
            "hostname": self.source.hostname,
            "repo": self.source.repository_slug,
            "branch": directive.target_branch,
            "commit": None,
            "directory": directive.directory,
            "directories": list(directive.directories) or None,
        }

    @staticmethod
    def _vulnerabilities_for(
        directive: UpdateDirective,
        vulnerabilities: Sequence[SecurityVulnerability],
    ) -> List[SecurityVulnerability]:
        advisory_ecosystem = spec_for(directive.package_ecosystem).advisory_ecosystem
        if not advisory_ecosystem:
            return []
        return [v for v in vulnerabilities if v.advisory_ecosystem == advisory_ecosystem]

    def _update_payload(
        self,
        config: UpdateConfig,
        directive: UpdateDirective,
        existing: Sequence[ExistingPullRequest],
        dependency_names: Optional[Sequence[str]] = None,
        security_only: bool = False,
        vulnerabilities: Sequence[SecurityVulnerability] = (),
        updating_pull_request: bool = False,
        group_to_refresh: Optional[str] = None,
    ) -> Dict[str, Any]:
        commit_message = directive.commit_message
        commit_message_options = None
        if commit_message:
            include = str(commit_message.get("include") or "").strip().lower()
            commit_message_options = {
                "prefix": commit_message.get("prefix"),
                "prefix-development": commit_message.get("prefix-development"),
                "include-scope": True if include == "scope" else None,
            }

        existing_values = [pr.properties.dependencies_value() for pr in existing]
        return {
            "package-manager": directive.package_manager,
            "updating-a-pull-request": updating_pull_request,
            "dependency-group-to-refresh": group_to_refresh,
            "dependency-groups": map_groups(directive.groups),
            "dependencies": list(dependency_names) if dependency_names else None,
            "allowed-updates": map_allowed_updates(directive.allow, security_only),
            "ignore-conditions": map_ignore_conditions(directive.ignore),
            "security-updates-only": security_only,
            "security-advisories": map_security_advisories(vulnerabilities),
            "source": self._source(directive),
            "update-subdependencies": False,
            "existing-pull-requests": [value for value in existing_values if isinstance(value, list)],
            "existing-group-pull-requests": [
                value for value in existing_values if isinstance(value, dict)
            ],
            "commit-message-options": commit_message_options,
            "cooldown": directive.cooldown,
            "experiments": map_experiments(self._experiments(directive)),
            "reject-external-code": str(directive.insecure_external_code_execution or "").strip().lower()
            == "allow",
            "requirements-update-strategy": map_versioning_strategy(directive.versioning_strategy),
            "lockfile-only": directive.versioning_strategy == "lockfile-only",
            "vendor-dependencies": directive.vendor,
            "debug": self.debug,
            "proxy-log-response-body-on-auth-failure": True,
            "max-updater-run-time": MAX_UPDATER_RUN_TIME,
            "enable-beta-ecosystems": config.enable_beta_ecosystems,
            "multi-ecosystem-update": False,
        }
