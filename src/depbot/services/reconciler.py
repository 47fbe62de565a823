"""Applies buffered pull request actions against the source-control provider."""

import threading
from dataclasses import dataclass, field, replace
from typing import List, Optional, Sequence, Tuple

from depbot.errors import DepbotError
from depbot.models import ExistingPullRequest, JobDefinition, UpdateDirective
from depbot.services.job_builder import owning_directive_index, pull_request_matches_directive
from depbot.services.output_processor import (
    ACTION_CLOSE,
    ACTION_CREATE,
    ACTION_UPDATE,
    ACTION_WARN,
    PendingAction,
)
from depbot.services.providers import Author, AutoCompleteOptions, CreatePullRequest, UpdatePullRequest
from depbot.services.pull_requests import branch_name_for_update, pull_request_description

DELETED_BRANCH_COMMENT = (
    "It might be a good idea to add an "
    "[`ignore` condition](https://docs.github.com/en/code-security/dependabot/working-with-dependabot/"
    "dependabot-options-reference#ignore--) with the desired `update-types` to your config file."
)
ORPHANED_COMMENT = (
    "Looks like the update configuration for these dependencies was removed, so this is no longer needed."
)


@dataclass(frozen=True)
class ReconcilerOptions:
    author: Author = field(default_factory=Author)
    auto_approve: bool = False
    set_auto_complete: bool = False
    merge_strategy: str = "squash"
    auto_complete_ignore_config_ids: Tuple[int, ...] = ()
    dry_run: bool = False


@dataclass(frozen=True)
class ReconcileResult:
    affected_pr_ids: Tuple[int, ...] = ()
    failures: Tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        return not self.failures


class _ActionFailed(DepbotError):
    """Raised internally when an action cannot be applied."""


class _ApprovalFailed(DepbotError):
    """Raised when a pull request was written but could not be approved."""

    def __init__(self, pull_request_id: int, message: str):
        super().__init__(message)
        self.pull_request_id = pull_request_id


class PullRequestReconciler:
    """Keeps a run-wide view of open pull requests and branches while applying actions."""

    def __init__(
        self,
        provider,
        logger,
        existing_pull_requests: Sequence[ExistingPullRequest] = (),
        branch_names: Sequence[str] = (),
        options: Optional[ReconcilerOptions] = None,
        approver=None,
        directives: Sequence[UpdateDirective] = (),
    ):
        self.provider = provider
        self.logger = logger
        self.options = options or ReconcilerOptions()
        self.approver = approver or provider
        self.directives = list(directives)
        self._open: List[ExistingPullRequest] = list(existing_pull_requests)
        self._branches: List[str] = list(branch_names)
        self._default_branch: Optional[str] = None
        self._lock = threading.RLock()

    @property
    def open_pull_requests(self) -> List[ExistingPullRequest]:
        with self._lock:
            return list(self._open)

    def apply(self, job: JobDefinition, directive: UpdateDirective, actions: Sequence[PendingAction]) -> ReconcileResult:
        affected: List[int] = []
        failures: List[str] = []
        job_prs: List[int] = []

        for action in actions:
            try:
                with self._lock:
                    pull_request_id = self._apply_one(job, directive, action, job_prs)
            except _ApprovalFailed as exc:
                self.logger.error("Job %s: %s", job.id, exc)
                failures.append(str(exc))
                pull_request_id = exc.pull_request_id
            except DepbotError as exc:
                self.logger.error("Job %s: %s action failed: %s", job.id, action.kind, exc)
                failures.append(f"{action.kind} failed: {exc}")
                continue
            if pull_request_id is not None:
                job_prs.append(pull_request_id)
                if pull_request_id not in affected:
                    affected.append(pull_request_id)

        return ReconcileResult(affected_pr_ids=tuple(affected), failures=tuple(failures))

    def _apply_one(
        self,
        job: JobDefinition,
        directive: UpdateDirective,
        action: PendingAction,
        job_prs: Sequence[int],
    ) -> Optional[int]:
        if action.kind == ACTION_CREATE:
            return self._create(job, directive, action)
        if action.kind == ACTION_UPDATE:
            return self._update(job, action)
        if action.kind == ACTION_CLOSE:
            return self._close(job, action)
        if action.kind == ACTION_WARN:
            self._warn(action, job_prs)
            return None
        self.logger.warning("Job %s: unsupported action '%s', ignoring.", job.id, action.kind)
        return None

    def _create(self, job: JobDefinition, directive: UpdateDirective, action: PendingAction) -> Optional[int]:
        title = action.title or "Dependency update"
        if self.options.dry_run:
            self.logger.warning("Skipping pull request creation of '%s' in dry-run mode.", title)
            return None

        properties = action.properties
        if properties is None or not properties.dependencies:
            raise _ActionFailed(f"Pull request '{title}' does not list any dependencies.")

        for existing in self._open:
            if existing.properties.has_same_dependencies(properties):
                self.logger.info(
                    "Pull request #%s already covers '%s', nothing to create.", existing.id, title
                )
                return None

        limit = directive.open_pull_requests_limit
        matching = [pr for pr in self._open if self._counts_towards(pr, job, directive)]
        if limit > 0 and len(matching) >= limit:
            self.logger.warning(
                "Skipping pull request creation of '%s' as the open pull requests limit (%s) has been reached.",
                title,
                limit,
            )
            return None

        target_branch = directive.target_branch or self._get_default_branch()
        if not target_branch:
            raise _ActionFailed("Could not determine the target branch.")

        source_branch = branch_name_for_update(
            ecosystem=directive.package_ecosystem.value,
            target_branch=target_branch,
            directory=self._branch_directory(directive, action),
            dependency_group_name=properties.dependency_group_name,
            dependencies=properties.dependencies,
            separator=directive.branch_name_separator,
        )
        if source_branch in self._branches:
            raise _ActionFailed(
                f"Source branch '{source_branch}' already exists; delete the existing branch and try again."
            )
        conflicting = [
            branch
            for branch in self._branches
            if source_branch.startswith(f"{branch}/") or branch.startswith(f"{source_branch}/")
        ]
        if conflicting:
            raise _ActionFailed(
                f"Source branch '{source_branch}' would conflict with existing branch(es) "
                f"'{', '.join(conflicting)}'; delete the conflicting branch(es) and try again."
            )

        auto_complete = None
        if self.options.set_auto_complete:
            auto_complete = AutoCompleteOptions(
                merge_strategy=self.options.merge_strategy,
                ignore_policy_config_ids=tuple(self.options.auto_complete_ignore_config_ids),
            )

        pull_request_id = self.provider.create_pull_request(
            CreatePullRequest(
                source_branch=source_branch,
                target_branch=target_branch,
                base_commit=action.base_commit,
                title=title,
                description=pull_request_description(job.package_manager, action.body, action.dependencies),
                commit_message=action.commit_message or title,
                author=self.options.author,
                changes=action.changes,
                properties=properties.to_properties(),
                labels=tuple(label.strip() for label in directive.labels if label and label.strip()),
                assignees=tuple(directive.assignees),
                work_items=(str(directive.milestone),) if directive.milestone else (),
                auto_complete=auto_complete,
            )
        )
        if not pull_request_id:
            raise _ActionFailed(f"Pull request '{title}' was not created.")

        self._open.append(
            ExistingPullRequest(id=pull_request_id, properties=properties, source_branch=source_branch, title=title)
        )
        self._branches.append(source_branch)
        self._approve(pull_request_id)
        return pull_request_id

    def _update(self, job: JobDefinition, action: PendingAction) -> Optional[int]:
        if self.options.dry_run:
            self.logger.warning("Skipping pull request update in dry-run mode.")
            return None

        existing = self._find(job, action)
        updated = self.provider.update_pull_request(
            UpdatePullRequest(
                pull_request_id=existing.id,
                base_commit=action.base_commit,
                author=self.options.author,
                changes=action.changes,
                commit_message=action.commit_message,
                properties=action.properties.to_properties() if action.properties else {},
            )
        )
        if not updated:
            raise _ActionFailed(f"Pull request #{existing.id} was not updated.")

        if action.properties:
            index = self._open.index(existing)
            self._open[index] = replace(existing, properties=action.properties)
        self._approve(existing.id)
        return existing.id

    def _close(self, job: JobDefinition, action: PendingAction) -> Optional[int]:
        if self.options.dry_run:
            self.logger.warning("Skipping pull request closure in dry-run mode.")
            return None

        existing = self._find(job, action)
        self.provider.abandon_pull_request(existing.id, comment=action.reason, delete_source_branch=True)
        self._forget(existing)
        return existing.id

    def _approve(self, pull_request_id: int):
        if not self.options.auto_approve:
            return
        try:
            self.approver.approve_pull_request(pull_request_id)
        except DepbotError as exc:
            raise _ApprovalFailed(pull_request_id, f"approval of #{pull_request_id} failed: {exc}") from exc

    def _warn(self, action: PendingAction, job_prs: Sequence[int]):
        if self.options.dry_run or not job_prs:
            return
        content = f"### Dependabot Warning: {action.title}\n\n{action.body or ''}"
        for pull_request_id in job_prs:
            self.provider.add_comment_thread(pull_request_id, content)

    def abandon_pull_requests_with_deleted_branches(self) -> List[int]:
        """Drops pull requests whose source branch is gone, abandoning them unless in dry-run."""
        abandoned: List[int] = []
        with self._lock:
            for pull_request in list(self._open):
                branch = pull_request.source_branch
                if not branch or branch in self._branches:
                    continue
                if not self.options.dry_run:
                    self.logger.warning(
                        "Detected source branch for PR #%s has been deleted; the pull request will be abandoned.",
                        pull_request.id,
                    )
                    self.provider.abandon_pull_request(pull_request.id, comment=DELETED_BRANCH_COMMENT)
                    abandoned.append(pull_request.id)
                self._forget(pull_request)
        return abandoned

    def close_orphaned_pull_requests(self, pull_requests: Sequence[ExistingPullRequest]) -> ReconcileResult:
        affected: List[int] = []
        failures: List[str] = []
        for pull_request in pull_requests:
            if self.options.dry_run:
                self.logger.warning("Skipping closure of orphaned pull request #%s in dry-run mode.", pull_request.id)
                continue
            try:
                with self._lock:
                    self.provider.abandon_pull_request(
                        pull_request.id, comment=ORPHANED_COMMENT, delete_source_branch=True
                    )
                    self._forget(pull_request)
            except DepbotError as exc:
                self.logger.error("Failed to close orphaned pull request #%s: %s", pull_request.id, exc)
                failures.append(f"close of #{pull_request.id} failed: {exc}")
                continue
            affected.append(pull_request.id)
        return ReconcileResult(affected_pr_ids=tuple(affected), failures=tuple(failures))

    def _find(self, job: JobDefinition, action: PendingAction) -> ExistingPullRequest:
        if action.pull_request_id is not None:
            for pull_request in self._open:
                if pull_request.id == action.pull_request_id:
                    return pull_request
            raise _ActionFailed(f"Pull request #{action.pull_request_id} is no longer open.")

        names = list(action.dependency_names)
        for pull_request in self._open:
            properties = pull_request.properties
            if properties.package_manager == job.package_manager and properties.has_dependency_names(names):
                return pull_request
        raise _ActionFailed(
            f"Could not find pull request for package manager '{job.package_manager}' "
            f"with dependencies '{', '.join(action.dependency_names)}'."
        )

    def _counts_towards(
        self, pull_request: ExistingPullRequest, job: JobDefinition, directive: UpdateDirective
    ) -> bool:
        if self.directives:
            return owning_directive_index(pull_request, self.directives) == job.directive_index
        return pull_request_matches_directive(pull_request, directive)

    def _forget(self, pull_request: ExistingPullRequest):
        self._open = [pr for pr in self._open if pr.id != pull_request.id]

    def _get_default_branch(self) -> Optional[str]:
        if self._default_branch is None:
            self._default_branch = self.provider.get_default_branch()
        return self._default_branch

    @staticmethod
    def _branch_directory(directive: UpdateDirective, action: PendingAction) -> Optional[str]:
        if directive.directory:
            return directive.directory
        first_path = action.changes[0].path if action.changes else ""
        for directory in directive.directories:
            if first_path.startswith(directory):
                return directory
        return None
