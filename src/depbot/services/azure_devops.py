"""Azure DevOps REST client implementing the pull request provider surface."""

import base64
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlparse

import requests

from depbot.errors import ConfigurationError, ProviderError
from depbot.errors_catalog import actionable_error
from depbot.models import ExistingPullRequest, FileChange, PullRequestProperties
from depbot.services.providers import CreatePullRequest, UpdatePullRequest
from depbot.services.pull_requests import normalize_branch_name

API_VERSION = "5.0"
REVIEWERS_API_VERSION = "7.1"
EMPTY_OBJECT_ID = "0" * 40
GUID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


@dataclass(frozen=True)
class AzureDevOpsUrl:
    """Parsed organisation URL plus the project and repository it targets."""

    url: str
    hostname: str
    api_endpoint: str
    organisation: str
    virtual_directory: Optional[str] = None
    project: Optional[str] = None
    repository: Optional[str] = None

    @property
    def repository_slug(self) -> str:
        prefix = f"{self.virtual_directory}/" if self.virtual_directory else ""
        return f"{prefix}{self.organisation}/{self.project}/_git/{self.repository}"


def parse_organisation_url(
    organisation_url: str,
    project: Optional[str] = None,
    repository: Optional[str] = None,
) -> AzureDevOpsUrl:
    parsed = urlparse(organisation_url or "")
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ConfigurationError(actionable_error("invalid_organisation_url", url=str(organisation_url)))

    segments = [segment for segment in parsed.path.split("/") if segment]
    hostname = parsed.hostname
    virtual_directory = None

    if hostname.lower().endswith(".visualstudio.com") and not segments:
        organisation = hostname.split(".")[0]
        hostname = "dev.azure.com"
    elif len(segments) == 1:
        organisation = segments[0]
    elif len(segments) == 2:
        virtual_directory, organisation = segments
    else:
        raise ConfigurationError(actionable_error("invalid_organisation_url", url=organisation_url))

    port = f":{parsed.port}" if parsed.port else ""
    api_endpoint = f"{parsed.scheme}://{hostname}{port}/"
    if virtual_directory:
        api_endpoint = f"{api_endpoint}{virtual_directory}/"

    url = organisation_url if organisation_url.endswith("/") else f"{organisation_url}/"
    return AzureDevOpsUrl(
        url=url,
        hostname=hostname,
        api_endpoint=api_endpoint,
        organisation=organisation,
        virtual_directory=virtual_directory,
        project=quote(project, safe="") if project else None,
        repository=quote(repository, safe="") if repository else None,
    )


class AzureDevOpsClient:
    """Talks to one Azure DevOps repository on behalf of one identity."""

    def __init__(self, url: AzureDevOpsUrl, token: str, logger, requests_module=requests, timeout: float = 30.0):
        self.url = url
        self.logger = logger
        self.requests = requests_module
        self.timeout = timeout
        self.session = requests_module.Session()
        self.session.auth = ("", token)
        self.session.headers.update({"Accept": "application/json"})
        self._user_id: Optional[str] = None

    def _repository_url(self, suffix: str = "") -> str:
        return f"{self.url.url}{self.url.project}/_apis/git/repositories/{self.url.repository}{suffix}"

    def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None,
        api_version: str = API_VERSION,
        content_type: Optional[str] = None,
        allow_not_found: bool = False,
    ) -> Any:
        query = {"api-version": api_version}
        query.update({key: value for key, value in (params or {}).items() if value is not None})
        headers = {"Content-Type": content_type} if content_type else None

        try:
            response = self.session.request(
                method,
                url,
                params=query,
                json=json_body,
                headers=headers,
                timeout=self.timeout,
            )
        except self.requests.RequestException as exc:
            raise ProviderError(f"Azure DevOps request failed: {method} {url}. {exc}") from exc

        if allow_not_found and response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise ProviderError(
                actionable_error("provider_request_failed", status=str(response.status_code), url=url)
            )
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(f"Azure DevOps returned a non-JSON response for {url}") from exc

    def get_user_id(self) -> str:
        if self._user_id is None:
            data = self._request("GET", f"{self.url.url}_apis/connectiondata") or {}
            user_id = (data.get("authenticatedUser") or {}).get("id")
            if not user_id:
                raise ProviderError("Could not resolve the authenticated Azure DevOps user.")
            self._user_id = user_id
        return self._user_id

    def resolve_identity_id(self, identifier: str) -> Optional[str]:
        if GUID_PATTERN.match(identifier):
            return identifier
        identity_url = f"{self.url.api_endpoint.replace('://', '://vssps.', 1)}{self.url.organisation}/_apis/identities"
        if self.url.virtual_directory or "dev.azure.com" not in self.url.api_endpoint:
            identity_url = f"{self.url.url}_apis/identities"
        data = self._request(
            "GET",
            identity_url,
            params={"searchFilter": "General", "filterValue": identifier, "queryMembership": "None"},
        ) or {}
        values = data.get("value") or []
        return values[0].get("id") if values else None

    def get_default_branch(self) -> Optional[str]:
        data = self._request("GET", self._repository_url(), allow_not_found=True) or {}
        return normalize_branch_name(data.get("defaultBranch"))

    def get_branch_names(self) -> List[str]:
        data = self._request("GET", self._repository_url("/refs"), params={"filter": "heads/"}) or {}
        return [normalize_branch_name(ref.get("name")) for ref in data.get("value") or [] if ref.get("name")]

    def get_active_pull_requests(self, creator_id: str) -> List[ExistingPullRequest]:
        data = self._request(
            "GET",
            self._repository_url("/pullrequests"),
            params={"searchCriteria.creatorId": creator_id, "searchCriteria.status": "active"},
        ) or {}

        pull_requests = []
        for item in data.get("value") or []:
            pull_request_id = item.get("pullRequestId")
            properties = self.get_pull_request_properties(pull_request_id)
            parsed = PullRequestProperties.from_properties(properties)
            if parsed is None:
                continue
            pull_requests.append(
                ExistingPullRequest(
                    id=pull_request_id,
                    properties=parsed,
                    source_branch=normalize_branch_name(item.get("sourceRefName")),
                    title=item.get("title"),
                )
            )
        return pull_requests

    def get_pull_request_properties(self, pull_request_id: int) -> Dict[str, str]:
        data = self._request("GET", self._repository_url(f"/pullrequests/{pull_request_id}/properties")) or {}
        return {
            name: value.get("$value")
            for name, value in (data.get("value") or {}).items()
            if isinstance(value, dict) and value.get("$value")
        }

    def set_pull_request_properties(self, pull_request_id: int, properties: Dict[str, str]):
        self._request(
            "PATCH",
            self._repository_url(f"/pullrequests/{pull_request_id}/properties"),
            json_body=[{"op": "add", "path": f"/{name}", "value": value} for name, value in properties.items()],
            content_type="application/json-patch+json",
        )

    def _push(self, branch_ref: str, old_object_id: Optional[str], comment: str, author, changes) -> Dict[str, Any]:
        body = {
            "refUpdates": [{"name": branch_ref, "oldObjectId": old_object_id or EMPTY_OBJECT_ID}],
            "commits": [
                {
                    "comment": comment,
                    "author": {"name": author.name, "email": author.email},
                    "changes": [self._change_body(change) for change in changes],
                }
            ],
        }
        push = self._request("POST", self._repository_url("/pushes"), json_body=body) or {}
        if not push.get("commits"):
            raise ProviderError(f"Failed to push changes to '{branch_ref}', no commits were created.")
        return push

    @staticmethod
    def _change_body(change: FileChange) -> Dict[str, Any]:
        body: Dict[str, Any] = {"changeType": change.change_type, "item": {"path": change.path}}
        if change.change_type != "delete":
            raw = change.content or ""
            if change.encoding == "base64":
                content = raw
            else:
                content = base64.b64encode(raw.encode("utf-8")).decode("ascii")
            body["newContent"] = {"content": content, "contentType": "base64encoded"}
        return body

    def create_pull_request(self, request: CreatePullRequest) -> Optional[int]:
        self.logger.info("Creating pull request '%s'...", request.title)
        user_id = self.get_user_id()

        reviewers = []
        for assignee in request.assignees:
            identity_id = self.resolve_identity_id(assignee)
            if identity_id and {"id": identity_id} not in reviewers:
                reviewers.append({"id": identity_id})
            elif not identity_id:
                self.logger.warning("Unable to resolve assignee identity '%s'", assignee)

        source_ref = f"refs/heads/{request.source_branch}"
        self._push(source_ref, request.base_commit, request.commit_message, request.author, request.changes)

        pull_request = self._request(
            "POST",
            self._repository_url("/pullrequests"),
            json_body={
                "sourceRefName": source_ref,
                "targetRefName": f"refs/heads/{request.target_branch}",
                "title": request.title,
                "description": request.description,
                "reviewers": reviewers,
                "workItemRefs": [{"id": item} for item in request.work_items],
                "labels": [{"name": label} for label in request.labels],
            },
        ) or {}
        pull_request_id = pull_request.get("pullRequestId")
        if not pull_request_id:
            raise ProviderError("Failed to create pull request, no pull request id was returned.")

        if request.properties:
            self.set_pull_request_properties(pull_request_id, request.properties)

        if request.auto_complete:
            self._request(
                "PATCH",
                self._repository_url(f"/pullrequests/{pull_request_id}"),
                json_body={
                    "autoCompleteSetBy": {"id": user_id},
                    "completionOptions": {
                        "autoCompleteIgnoreConfigIds": list(request.auto_complete.ignore_policy_config_ids),
                        "deleteSourceBranch": True,
                        "mergeCommitMessage": f"Merged PR {pull_request_id}: {request.title}",
                        "mergeStrategy": request.auto_complete.merge_strategy,
                        "transitionWorkItems": False,
                    },
                },
            )

        self.logger.info("Created pull request #%s.", pull_request_id)
        return pull_request_id

    def update_pull_request(self, request: UpdatePullRequest) -> bool:
        self.logger.info("Updating pull request #%s...", request.pull_request_id)
        pull_request = self._request("GET", self._repository_url(f"/pullrequests/{request.pull_request_id}"))
        if not pull_request:
            raise ProviderError(f"Pull request #{request.pull_request_id} not found.")

        commits = self._request(
            "GET", self._repository_url(f"/pullrequests/{request.pull_request_id}/commits")
        ) or {}
        if any(
            (commit.get("author") or {}).get("email") != request.author.email
            for commit in commits.get("value") or []
        ):
            self.logger.info("Skipping update as pull request has been modified by another user.")
            return True

        source_ref = pull_request.get("sourceRefName")
        source_branch = normalize_branch_name(source_ref)
        target_branch = normalize_branch_name(pull_request.get("targetRefName"))
        stats = self._request(
            "GET",
            self._repository_url("/stats/branches"),
            params={"name": source_branch, "baseVersionDescriptor.version": target_branch},
        ) or {}
        if stats.get("behindCount") == 0:
            self.logger.info("Skipping update as source branch is not behind target branch.")
            return True

        last_commit = (pull_request.get("lastMergeSourceCommit") or {}).get("commitId")
        ref_update = self._request(
            "POST",
            self._repository_url("/refs"),
            json_body=[{"name": source_ref, "oldObjectId": last_commit, "newObjectId": request.base_commit}],
        ) or {}
        if not all(item.get("success") for item in ref_update.get("value") or [{}]):
            raise ProviderError(f"Failed to rebase '{source_branch}' onto '{target_branch}'.")

        comment = request.commit_message or (
            "Resolve merge conflicts"
            if pull_request.get("mergeStatus") == "conflicts"
            else f"Rebase '{source_branch}' onto '{target_branch}'"
        )
        self._push(source_ref, request.base_commit, comment, request.author, request.changes)
        if request.properties:
            self.set_pull_request_properties(request.pull_request_id, request.properties)
        return True

    def add_comment_thread(self, pull_request_id: int, content: str) -> Optional[int]:
        thread = self._request(
            "POST",
            self._repository_url(f"/pullrequests/{pull_request_id}/threads"),
            json_body={
                "status": "closed",
                "comments": [{"content": content, "commentType": "text"}],
            },
        ) or {}
        return thread.get("id")

    def abandon_pull_request(
        self,
        pull_request_id: int,
        comment: Optional[str] = None,
        delete_source_branch: bool = False,
    ) -> bool:
        self.logger.info("Abandoning pull request #%s...", pull_request_id)
        user_id = self.get_user_id()
        if comment:
            self.add_comment_thread(pull_request_id, comment)

        abandoned = self._request(
            "PATCH",
            self._repository_url(f"/pullrequests/{pull_request_id}"),
            json_body={"status": "abandoned", "closedBy": {"id": user_id}},
        ) or {}
        if abandoned.get("status") != "abandoned":
            raise ProviderError(f"Failed to abandon pull request #{pull_request_id}.")

        if delete_source_branch:
            self._request(
                "POST",
                self._repository_url("/refs"),
                json_body=[
                    {
                        "name": abandoned.get("sourceRefName"),
                        "oldObjectId": (abandoned.get("lastMergeSourceCommit") or {}).get("commitId"),
                        "newObjectId": EMPTY_OBJECT_ID,
                        "isLocked": False,
                    }
                ],
            )
        return True

    def approve_pull_request(self, pull_request_id: int) -> bool:
        self.logger.info("Approving pull request #%s...", pull_request_id)
        user_id = self.get_user_id()
        vote = self._request(
            "PUT",
            self._repository_url(f"/pullrequests/{pull_request_id}/reviewers/{user_id}"),
            json_body={"vote": 10, "isReapprove": True},
            api_version=REVIEWERS_API_VERSION,
        ) or {}
        if vote.get("vote") != 10:
            raise ProviderError(f"Failed to approve pull request #{pull_request_id}, vote was not recorded.")
        return True

    def get_file_contents(self, path: str) -> Optional[str]:
        response_url = self._repository_url("/items")
        try:
            response = self.session.request(
                "GET",
                response_url,
                params={"path": f"/{path.lstrip('/')}", "includeContent": "true", "api-version": API_VERSION},
                headers={"Accept": "text/plain"},
                timeout=self.timeout,
            )
        except self.requests.RequestException as exc:
            raise ProviderError(f"Could not fetch '{path}' from Azure DevOps. {exc}") from exc

        if response.status_code == 404:
            return None
        if response.status_code in (401, 403):
            raise ProviderError(
                actionable_error("provider_request_failed", status=str(response.status_code), url=response_url)
            )
        if response.status_code >= 400:
            return None
        return response.text
