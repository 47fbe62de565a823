"""Capability surfaces consumed from the source-control provider and secret store."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Tuple

from depbot.models import ExistingPullRequest, FileChange

MERGE_STRATEGIES = ("noFastForward", "squash", "rebase", "rebaseMerge")


@dataclass(frozen=True)
class Author:
    name: str = "dependabot[bot]"
    email: str = "noreply@github.com"


@dataclass(frozen=True)
class AutoCompleteOptions:
    merge_strategy: str = "squash"
    ignore_policy_config_ids: Tuple[int, ...] = ()


@dataclass(frozen=True)
class CreatePullRequest:
    source_branch: str
    target_branch: str
    base_commit: Optional[str]
    title: str
    description: str
    commit_message: str
    author: Author
    changes: Tuple[FileChange, ...]
    properties: Dict[str, str]
    labels: Tuple[str, ...] = ()
    assignees: Tuple[str, ...] = ()
    work_items: Tuple[str, ...] = ()
    auto_complete: Optional[AutoCompleteOptions] = None


@dataclass(frozen=True)
class UpdatePullRequest:
    pull_request_id: int
    base_commit: Optional[str]
    author: Author
    changes: Tuple[FileChange, ...]
    commit_message: Optional[str] = None
    properties: Dict[str, str] = field(default_factory=dict)


class SecretLookup(Protocol):
    def get_secret_value(self, name: str) -> Optional[str]:
        ...


class PullRequestProvider(Protocol):
    def get_user_id(self) -> str:
        ...

    def get_default_branch(self) -> Optional[str]:
        ...

    def get_branch_names(self) -> List[str]:
        ...

    def get_active_pull_requests(self, creator_id: str) -> List[ExistingPullRequest]:
        ...

    def create_pull_request(self, request: CreatePullRequest) -> Optional[int]:
        ...

    def update_pull_request(self, request: UpdatePullRequest) -> bool:
        ...

    def abandon_pull_request(
        self,
        pull_request_id: int,
        comment: Optional[str] = None,
        delete_source_branch: bool = False,
    ) -> bool:
        ...

    def approve_pull_request(self, pull_request_id: int) -> bool:
        ...

    def add_comment_thread(self, pull_request_id: int, content: str) -> Optional[int]:
        ...

    def get_file_contents(self, path: str) -> Optional[str]:
        ...
