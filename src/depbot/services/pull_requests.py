"""Pull request naming, metadata and description helpers."""

import hashlib
import posixpath
import re
from typing import Any, Dict, List, Optional, Sequence

from depbot.models import FileChange, PersistedDependency, PullRequestProperties

BRANCH_PREFIX = "dependabot"
MAX_DESCRIPTION_LENGTH = 4000

CLOSE_REASONS = {
    "dependencies_changed": "Looks like the dependencies have changed",
    "dependency_group_empty": "Looks like the dependencies in this group are now empty",
    "dependency_removed": "Looks like {lead} is no longer a dependency",
    "up_to_date": "Looks like {lead} is up-to-date now",
    "update_no_longer_possible": "Looks like {lead} can no longer be updated",
}


def normalize_branch_name(name: Optional[str]) -> Optional[str]:
    if not name:
        return name
    return re.sub(r"^refs/heads/", "", name, flags=re.IGNORECASE)


def _sanitize_ref(parts: Sequence[Optional[str]], separator: str) -> str:
    cleaned = []
    for part in parts:
        part = (part or "").strip().strip("/")
        if part:
            cleaned.append(part)
    ref = "/".join(cleaned)
    ref = re.sub(r"[\[\]]", "", ref)
    ref = re.sub(r"\s+", "-", ref)
    ref = re.sub(r"/+", "/", ref)
    return ref.replace("/", separator)


def branch_name_for_update(
    ecosystem: str,
    target_branch: Optional[str],
    directory: Optional[str],
    dependency_group_name: Optional[str],
    dependencies: Sequence[PersistedDependency],
    separator: Optional[str] = None,
) -> str:
    if len(dependencies) > 1 or dependency_group_name:
        digest_source = ",".join(f"{dep.name}-{dep.version}" for dep in dependencies)
        digest = hashlib.md5(digest_source.encode("utf-8")).hexdigest()[:10]
        leaf = f"{dependency_group_name or 'multi'}-{digest}"
    else:
        lead = dependencies[0]
        leaf = f"{lead.name}-{'removed' if lead.removed else lead.version}"

    return _sanitize_ref(
        [BRANCH_PREFIX, ecosystem, normalize_branch_name(target_branch), directory, leaf],
        separator or "/",
    )


def close_reason(data: Dict[str, Any]) -> Optional[str]:
    names = data.get("dependency-names") or []
    template = CLOSE_REASONS.get(data.get("reason") or "")
    if not template:
        return None
    lead = names[0] if names else "the dependency"
    return template.format(lead=lead) + ", so this is no longer needed."


def changed_files(data: Dict[str, Any]) -> List[FileChange]:
    changes = []
    for item in data.get("updated-dependency-files") or []:
        if item.get("type", "file") != "file":
            continue
        if item.get("deleted") is True:
            change_type = "delete"
        elif item.get("operation") == "update":
            change_type = "edit"
        else:
            change_type = "add"
        path = posixpath.join("/", item.get("directory") or "/", item.get("name") or "")
        changes.append(
            FileChange(
                change_type=change_type,
                path=posixpath.normpath(path),
                content=item.get("content"),
                encoding=item.get("content_encoding"),
            )
        )
    return changes


def properties_from_output(package_manager: str, data: Dict[str, Any]) -> PullRequestProperties:
    dependencies = tuple(
        PersistedDependency(
            name=str(dep.get("name")),
            version=dep.get("version"),
            directory=dep.get("directory"),
            removed=bool(dep.get("removed", False)),
        )
        for dep in data.get("dependencies") or []
        if isinstance(dep, dict)
    )
    group = data.get("dependency-group")
    if not isinstance(group, dict):
        group = {}
    return PullRequestProperties(
        package_manager=package_manager,
        dependencies=dependencies,
        dependency_group_name=group.get("name"),
    )


def pull_request_description(package_manager: str, body: Optional[str], dependencies: Sequence[Dict[str, Any]]) -> str:
    header = ""
    # Replacement characters left by zero-width spaces in GitHub mentions.
    description = (body or "").replace("\ufffd", "")

    if len(dependencies) == 1:
        dep = dependencies[0]
        header = (
            "![Dependabot compatibility score]"
            "(https://dependabot-badges.githubapp.com/badges/compatibility_score"
            f"?dependency-name={dep.get('name')}&package-manager={package_manager}"
            f"&previous-version={dep.get('previous-version')}&new-version={dep.get('version')})\n\n"
        )

    return header + description[: MAX_DESCRIPTION_LENGTH - len(header)]
