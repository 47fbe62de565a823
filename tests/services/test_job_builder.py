import itertools

import pytest

from depbot.ecosystems import Ecosystem
from depbot.models import (
    ExistingPullRequest,
    JobKind,
    PersistedDependency,
    PullRequestProperties,
    RegistryCredential,
    SecurityVulnerability,
    UpdateConfig,
    UpdateDirective,
)
from depbot.services.job_builder import (
    JobBuilder,
    SourceInfo,
    map_experiments,
    parse_experiments,
    parse_security_vulnerabilities,
)

SOURCE = SourceInfo(
    hostname="dev.azure.com",
    api_endpoint="https://dev.azure.com/",
    repository_slug="contoso/web/_git/app",
)


def make_builder(**kwargs):
    counter = itertools.count(1)
    return JobBuilder(source=SOURCE, git_token="pat", job_id_factory=lambda: next(counter), **kwargs)


def make_config(*directives, registries=None):
    return UpdateConfig(version=2, updates=tuple(directives), registries=registries or {})


def npm_pull_request(pr_id=11, names=("lodash",), directory="/"):
    return ExistingPullRequest(
        id=pr_id,
        properties=PullRequestProperties(
            package_manager="npm_and_yarn",
            dependencies=tuple(PersistedDependency(name, "1.0.0", directory) for name in names),
        ),
        source_branch=f"dependabot/npm_and_yarn/{names[0]}-1.0.0",
    )


def test_single_directive_without_pull_requests_builds_one_update_all_job():
    config = make_config(UpdateDirective(package_ecosystem=Ecosystem.NPM, directory="/"))

    plan = make_builder().build(config)

    assert [job.kind for job in plan.jobs] == [JobKind.UPDATE_ALL]
    job = plan.jobs[0]
    assert job.directory_key == "npm::/"
    assert job.package_manager == "npm_and_yarn"
    assert job.payload["id"] == job.id
    assert job.payload["source"]["repo"] == "contoso/web/_git/app"
    assert job.updater_image == "ghcr.io/dependabot/dependabot-updater-npm:latest"


def test_limit_reached_skips_update_all_job():
    config = make_config(
        UpdateDirective(package_ecosystem=Ecosystem.NPM, directory="/", open_pull_requests_limit=1)
    )

    plan = make_builder().build(config, existing_pull_requests=[npm_pull_request()])

    assert [job.kind for job in plan.jobs] == [JobKind.UPDATE_PULL_REQUEST]
    assert any("limit (1) has already been reached" in notice for notice in plan.notices)


@pytest.mark.parametrize("limit, existing, expects_update_all", [(1, 0, True), (2, 1, True), (2, 2, False)])
def test_update_all_job_is_built_only_below_limit(limit, existing, expects_update_all):
    config = make_config(
        UpdateDirective(package_ecosystem=Ecosystem.NPM, directory="/", open_pull_requests_limit=limit)
    )
    pull_requests = [npm_pull_request(pr_id=index + 1, names=(f"dep-{index}",)) for index in range(existing)]

    plan = make_builder().build(config, existing_pull_requests=pull_requests)

    kinds = [job.kind for job in plan.jobs]
    assert (JobKind.UPDATE_ALL in kinds) is expects_update_all
    assert kinds.count(JobKind.UPDATE_PULL_REQUEST) == existing


def test_zero_limit_without_vulnerabilities_builds_list_all_job():
    config = make_config(
        UpdateDirective(package_ecosystem=Ecosystem.NPM, directory="/", open_pull_requests_limit=0)
    )

    plan = make_builder().build(config)

    assert [job.kind for job in plan.jobs] == [JobKind.LIST_ALL]
    assert plan.jobs[0].payload["ignore-conditions"] == [{"dependency-name": "*"}]


def test_zero_limit_with_vulnerabilities_builds_security_only_job():
    config = make_config(
        UpdateDirective(package_ecosystem=Ecosystem.NPM, directory="/", open_pull_requests_limit=0)
    )
    vulnerabilities = [
        SecurityVulnerability("lodash", "NPM", ("GHSA:GHSA-1",), "< 4.17.21", "4.17.21"),
        SecurityVulnerability("requests", "PIP", (), "< 2.31.0", "2.31.0"),
    ]

    plan = make_builder().build(config, vulnerabilities=vulnerabilities)

    assert [job.kind for job in plan.jobs] == [JobKind.UPDATE_SECURITY_ONLY]
    payload = plan.jobs[0].payload
    assert payload["security-updates-only"] is True
    assert payload["dependencies"] == ["lodash"]
    assert payload["security-advisories"] == [
        {
            "dependency-name": "lodash",
            "affected-versions": ["< 4.17.21"],
            "patched-versions": ["4.17.21"],
            "unaffected-versions": [],
        }
    ]


def test_zero_limit_with_advisory_lookup_discovers_dependencies_first():
    config = make_config(
        UpdateDirective(package_ecosystem=Ecosystem.NPM, directory="/", open_pull_requests_limit=0)
    )
    vulnerabilities = [SecurityVulnerability("lodash", "NPM", (), "< 4.17.21", "4.17.21")]

    plan = make_builder().build(config, vulnerabilities=vulnerabilities, discover_vulnerabilities=True)

    assert [job.kind for job in plan.jobs] == [JobKind.LIST_ALL]


def test_update_pull_request_jobs_are_ordered_before_update_all():
    config = make_config(
        UpdateDirective(package_ecosystem=Ecosystem.NPM, directory="/", open_pull_requests_limit=5)
    )

    plan = make_builder().build(config, existing_pull_requests=[npm_pull_request(pr_id=7)])

    assert [job.kind for job in plan.jobs] == [JobKind.UPDATE_PULL_REQUEST, JobKind.UPDATE_ALL]
    refresh = plan.jobs[0]
    assert refresh.pull_request_id == 7
    assert refresh.payload["updating-a-pull-request"] is True
    assert refresh.payload["dependencies"] == ["lodash"]
    assert plan.jobs[1].payload["existing-pull-requests"] == [
        [{"dependency-name": "lodash", "dependency-version": "1.0.0", "directory": "/"}]
    ]


def test_dry_run_skips_pull_request_refresh_jobs():
    config = make_config(UpdateDirective(package_ecosystem=Ecosystem.NPM, directory="/"))

    plan = make_builder().build(config, existing_pull_requests=[npm_pull_request()], dry_run=True)

    assert [job.kind for job in plan.jobs] == [JobKind.UPDATE_ALL]
    assert any("dry-run" in notice for notice in plan.notices)


def test_target_update_ids_select_directives_and_report_unknown_ids():
    config = make_config(
        UpdateDirective(package_ecosystem=Ecosystem.NPM, directory="/"),
        UpdateDirective(package_ecosystem=Ecosystem.NUGET, directory="/src"),
    )

    plan = make_builder().build(config, target_update_ids=[1, 5])

    assert [job.directory_key for job in plan.jobs] == ["nuget::/src"]
    assert any("'5'" in notice for notice in plan.notices)


def test_pull_requests_without_matching_directive_are_orphaned():
    config = make_config(UpdateDirective(package_ecosystem=Ecosystem.NUGET, directory="/"))
    orphan = npm_pull_request(pr_id=3)

    plan = make_builder().build(config, existing_pull_requests=[orphan])

    assert plan.orphaned_pull_requests == [orphan]


def test_pull_requests_for_other_directories_do_not_count_towards_limit():
    config = make_config(
        UpdateDirective(package_ecosystem=Ecosystem.NPM, directory="/web", open_pull_requests_limit=1)
    )

    plan = make_builder().build(config, existing_pull_requests=[npm_pull_request(directory="/api")])

    assert [job.kind for job in plan.jobs] == [JobKind.UPDATE_ALL]


def test_pull_request_without_directory_is_refreshed_by_one_directive_only():
    config = make_config(
        UpdateDirective(package_ecosystem=Ecosystem.NPM, directory="/web", open_pull_requests_limit=1),
        UpdateDirective(package_ecosystem=Ecosystem.NPM, directory="/api", open_pull_requests_limit=1),
    )

    plan = make_builder().build(config, existing_pull_requests=[npm_pull_request(pr_id=9, directory=None)])

    refresh = [
        (job.directory_key, job.pull_request_id) for job in plan.jobs if job.kind == JobKind.UPDATE_PULL_REQUEST
    ]
    assert refresh == [("npm::/web", 9)]
    assert [job.directory_key for job in plan.jobs if job.kind == JobKind.UPDATE_ALL] == ["npm::/api"]
    assert plan.orphaned_pull_requests == []


def test_pull_request_without_directory_prefers_root_directive():
    config = make_config(
        UpdateDirective(package_ecosystem=Ecosystem.NPM, directory="/web"),
        UpdateDirective(package_ecosystem=Ecosystem.NPM, directory="/"),
    )

    plan = make_builder().build(config, existing_pull_requests=[npm_pull_request(pr_id=9, directory=None)])

    refresh = [
        (job.directory_key, job.pull_request_id) for job in plan.jobs if job.kind == JobKind.UPDATE_PULL_REQUEST
    ]
    assert refresh == [("npm::/", 9)]


def test_credentials_include_git_sources_and_referenced_registries():
    registries = {
        "feed": RegistryCredential(name="feed", type="nuget_feed", url="https://feed", token="${{ PAT }}"),
        "other": RegistryCredential(name="other", type="npm_registry", registry="npm.local"),
    }
    directive = UpdateDirective(package_ecosystem=Ecosystem.NUGET, directory="/", registries=("feed",))
    config = make_config(directive, registries=registries)

    credentials = make_builder(github_token="gh").credentials_for(config, directive)

    assert credentials == [
        {"type": "git_source", "host": "dev.azure.com", "username": "x-access-token", "password": "pat"},
        {"type": "git_source", "host": "github.com", "username": "x-access-token", "password": "gh"},
        {"type": "nuget_feed", "url": "https://feed", "token": "${{ PAT }}"},
    ]


def test_directive_experiments_override_defaults():
    config = make_config(
        UpdateDirective(package_ecosystem=Ecosystem.NPM, directory="/", experiments={"proxy-cached": "false"})
    )

    plan = make_builder(experiments={"proxy-cached": True, "custom": "value"}).build(config)

    assert plan.jobs[0].payload["experiments"] == {"proxy-cached": False, "custom": "value"}


def test_parse_and_map_experiments():
    parsed = parse_experiments("a=true, b=false ,c=text,d")

    assert parsed == {"a": "true", "b": "false", "c": "text", "d": True}
    assert map_experiments(parsed) == {"a": True, "b": False, "c": "text", "d": True}


def test_parse_security_vulnerabilities_from_advisory_json():
    vulnerabilities = parse_security_vulnerabilities(
        [
            {
                "advisory": {"identifiers": [{"type": "GHSA", "value": "GHSA-xxxx"}]},
                "package": {"name": "lodash", "ecosystem": "npm"},
                "vulnerableVersionRange": "< 4.17.21",
                "firstPatchedVersion": {"identifier": "4.17.21"},
            },
            {"package": {}},
        ]
    )

    assert vulnerabilities == [
        SecurityVulnerability("lodash", "NPM", ("GHSA:GHSA-xxxx",), "< 4.17.21", "4.17.21")
    ]
