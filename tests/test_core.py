import itertools
import json
import threading
import time

import pytest
from fastapi.testclient import TestClient

from depbot.core import UpdateOrchestrator
from depbot.errors import ConfigurationError, ContainerRuntimeError, ImagePullError
from depbot.models import (
    ExistingPullRequest,
    OutputRecord,
    PersistedDependency,
    PullRequestProperties,
    SecurityVulnerability,
)
from depbot.services.api_server import create_app
from depbot.services.job_store import JobStore

NPM_CONFIG = "version: 2\nupdates:\n  - package-ecosystem: npm\n    directory: /\n"
TWO_DIRECTORIES = (
    "version: 2\nupdates:\n"
    "  - package-ecosystem: npm\n    directory: /web\n"
    "  - package-ecosystem: nuget\n    directory: /api\n"
)


class FakeProvider:
    def __init__(self, config_text=None, pull_requests=None, branches=None):
        self.config_text = config_text
        self.pull_requests = pull_requests or []
        self.branches = branches or ["main"]
        self.created = []
        self.abandoned = []

    def get_user_id(self):
        return "user-1"

    def get_default_branch(self):
        return "main"

    def get_branch_names(self):
        return list(self.branches)

    def get_active_pull_requests(self, creator_id):
        return list(self.pull_requests)

    def get_file_contents(self, path):
        return self.config_text if path == ".github/dependabot.yml" else None

    def create_pull_request(self, request):
        self.created.append(request)
        return 500 + len(self.created)

    def update_pull_request(self, request):
        return True

    def abandon_pull_request(self, pull_request_id, comment=None, delete_source_branch=False):
        self.abandoned.append(pull_request_id)
        return True

    def approve_pull_request(self, pull_request_id):
        return True

    def add_comment_thread(self, pull_request_id, content):
        return 1


class FakeDocker:
    def __init__(self, pull_error=None):
        self.pull_error = pull_error
        self.pulled = []

    def validate_environment(self):
        return None

    def ensure_image(self, image):
        self.pulled.append(image)
        if self.pull_error:
            raise ImagePullError(self.pull_error)


class FakeApiServer:
    instances = []

    def __init__(self, store, port=0):
        self.store = store
        self.started = False
        self.stopped = False
        FakeApiServer.instances.append(self)

    @property
    def container_api_url(self):
        return "http://host.docker.internal:1234/update_jobs"

    def start(self):
        self.started = True
        return self

    def stop(self):
        self.stopped = True


class FakeContainerRunner:
    """Plays the updater: posts scripted records into the job store."""

    def __init__(self, store, scripts):
        self.store = store
        self.scripts = scripts
        self.jobs = []

    def run(self, job, tokens, api_url):
        self.jobs.append(job)
        script = self.scripts.get(job.directory_key, [OutputRecord("mark_as_processed")])
        if callable(script):
            script = script(job, tokens)
        for item in script:
            if isinstance(item, Exception):
                raise item
            self.store.append_record(job.id, item)


class SecretLookup:
    def __init__(self, values):
        self.values = values

    def get_secret_value(self, name):
        return self.values.get(name)


def create_record(name="lodash"):
    return OutputRecord(
        "create_pull_request",
        {
            "dependencies": [{"name": name, "version": "2.0.0", "previous-version": "1.0.0", "directory": "/"}],
            "pr-title": f"Bump {name} from 1.0.0 to 2.0.0",
            "pr-body": "body",
            "updated-dependency-files": [{"name": "package.json", "directory": "/", "content": "{}"}],
        },
    )


def build(tmp_path, config_text=NPM_CONFIG, scripts=None, provider=None, docker=None, **kwargs):
    store = JobStore()
    secret_lookup = kwargs.pop("secret_lookup", SecretLookup({}))
    if config_text is not None:
        config_file = tmp_path / "dependabot.yml"
        config_file.write_text(config_text, encoding="utf-8")
        kwargs.setdefault("config_file", str(config_file))
    runner = FakeContainerRunner(store, scripts or {})
    counter = itertools.count(1)
    orchestrator = UpdateOrchestrator(
        organisation_url="https://dev.azure.com/contoso/",
        project="web",
        repository="app",
        provider=provider or FakeProvider(),
        docker_runtime=docker or FakeDocker(),
        container_runner=runner,
        api_server_factory=FakeApiServer,
        job_store=store,
        job_id_factory=lambda: next(counter),
        secret_lookup=secret_lookup,
        report_file=str(tmp_path / "report.json"),
        **kwargs,
    )
    return orchestrator, runner


def read_report(tmp_path):
    return json.loads((tmp_path / "report.json").read_text(encoding="utf-8"))


def test_single_job_marked_as_processed_succeeds(tmp_path):
    orchestrator, runner = build(tmp_path)

    assert orchestrator.run() == 0

    assert [job.kind.value for job in runner.jobs] == ["update_all"]
    report = read_report(tmp_path)
    assert report["status"] == "Succeeded"
    assert report["jobs"][0]["success"] is True
    assert report["schedules"][0]["directory_key"] == "npm::/"
    assert report["schedules"][0]["cron"] == "0 2 * * 1"
    assert FakeApiServer.instances[-1].stopped


def test_jobs_receive_fresh_tokens_and_are_removed_from_store(tmp_path):
    orchestrator, runner = build(tmp_path)

    orchestrator.run()

    job = runner.jobs[0]
    assert job.job_token and job.credentials_token
    assert job.job_token != job.credentials_token
    assert orchestrator.store.get(job.id) is None


def test_no_jobs_is_skipped(tmp_path):
    orchestrator, runner = build(tmp_path, target_update_ids=[3])

    assert orchestrator.run() == 0

    assert runner.jobs == []
    assert read_report(tmp_path)["status"] == "Skipped"


def test_mixed_outcomes_succeed_with_issues(tmp_path):
    orchestrator, _runner = build(
        tmp_path,
        config_text=TWO_DIRECTORIES,
        scripts={"nuget::/api": [ContainerRuntimeError("exited with code 1")]},
    )

    assert orchestrator.run() == 2

    report = read_report(tmp_path)
    assert report["status"] == "SucceededWithIssues"
    assert [job["success"] for job in report["jobs"]] == [True, False]
    assert report["jobs"][1]["message"] == "Error running updater: exited with code 1"


def test_all_jobs_failing_is_failed(tmp_path):
    orchestrator, _runner = build(tmp_path, docker=FakeDocker(pull_error="denied"))

    assert orchestrator.run() == 1

    report = read_report(tmp_path)
    assert report["status"] == "Failed"
    assert report["jobs"][0]["message"] == "Error fetching updater images: denied"


def test_image_pull_failures_are_remembered_between_jobs(tmp_path):
    docker = FakeDocker(pull_error="denied")
    config = (
        "version: 2\nupdates:\n"
        "  - package-ecosystem: npm\n    directory: /a\n"
        "  - package-ecosystem: npm\n    directory: /b\n"
    )
    orchestrator, runner = build(tmp_path, config_text=config, docker=docker)

    assert orchestrator.run() == 1

    assert docker.pulled == ["ghcr.io/dependabot/dependabot-updater-npm:latest"]
    assert runner.jobs == []


def test_job_without_terminal_record_fails(tmp_path):
    orchestrator, _runner = build(tmp_path, scripts={"npm::/": [create_record()]})

    assert orchestrator.run() == 1

    report = read_report(tmp_path)
    assert report["jobs"][0]["message"].startswith("Unknown error: updater exited without marking")
    assert orchestrator.provider.created == []


def test_created_pull_requests_are_reported(tmp_path):
    orchestrator, _runner = build(
        tmp_path,
        scripts={"npm::/": [create_record(), OutputRecord("mark_as_processed")]},
    )

    assert orchestrator.run() == 0

    (request,) = orchestrator.provider.created
    assert request.source_branch == "dependabot/npm/main/lodash-2.0.0"
    assert read_report(tmp_path)["affected_pr_ids"] == [501]


def test_update_job_errors_fail_the_job(tmp_path):
    orchestrator, _runner = build(
        tmp_path,
        scripts={
            "npm::/": [
                OutputRecord("record_update_job_error", {"error-type": "dependency_file_not_found"}),
                OutputRecord("mark_as_processed"),
            ]
        },
    )

    assert orchestrator.run() == 1

    assert read_report(tmp_path)["jobs"][0]["message"] == "Update job error: dependency_file_not_found"


def test_dry_run_does_not_touch_pull_requests(tmp_path):
    orchestrator, _runner = build(
        tmp_path,
        scripts={"npm::/": [create_record(), OutputRecord("mark_as_processed")]},
        dry_run=True,
    )

    assert orchestrator.run() == 0

    assert orchestrator.provider.created == []


def test_orphaned_pull_requests_are_closed(tmp_path):
    orphan = ExistingPullRequest(
        41,
        PullRequestProperties("nuget", (PersistedDependency("Newtonsoft.Json", "13.0.3", "/"),)),
        source_branch="dependabot/nuget/Newtonsoft.Json-13.0.3",
    )
    provider = FakeProvider(pull_requests=[orphan], branches=["main", "dependabot/nuget/Newtonsoft.Json-13.0.3"])
    orchestrator, _runner = build(tmp_path, provider=provider)

    assert orchestrator.run() == 0

    assert provider.abandoned == [41]
    assert read_report(tmp_path)["affected_pr_ids"] == [41]


def test_config_is_read_from_repository_when_no_file_is_given(tmp_path):
    provider = FakeProvider(config_text=NPM_CONFIG)
    orchestrator, runner = build(tmp_path, config_text=None, provider=provider)

    assert orchestrator.run() == 0

    assert len(runner.jobs) == 1


def test_missing_config_fails_the_run(tmp_path):
    orchestrator, runner = build(tmp_path, config_text=None)

    assert orchestrator.run() == 1

    report = read_report(tmp_path)
    assert report["status"] == "Failed"
    assert "No dependabot configuration file was found" in report["error"]
    assert runner.jobs == []


def test_unresolved_registry_secrets_fail_the_run(tmp_path):
    config = (
        "version: 2\n"
        "registries:\n  feed:\n    type: nuget-feed\n    url: https://nuget.local/v3/index.json\n"
        "    token: \"${{ FEED_PAT }}\"\n"
        "updates:\n  - package-ecosystem: nuget\n    directory: /\n    registries: [feed]\n"
    )
    orchestrator, runner = build(tmp_path, config_text=config)

    assert orchestrator.run() == 1

    assert "FEED_PAT" in read_report(tmp_path)["error"]
    assert runner.jobs == []


def test_credential_failures_are_reported_on_the_job(tmp_path):
    config = (
        "version: 2\n"
        "registries:\n  feed:\n    type: nuget-feed\n    url: https://nuget.local/v3/index.json\n"
        "    token: \"${{ FEED_PAT }}\"\n"
        "updates:\n  - package-ecosystem: nuget\n    directory: /\n    registries: [feed]\n"
    )
    secrets = SecretLookup({"FEED_PAT": "value"})

    def updater(job, tokens):
        secrets.values.clear()
        client = TestClient(create_app(orchestrator.store))
        response = client.get(
            f"/update_jobs/{job.id}/credentials",
            headers={"Authorization": tokens.credentials_token},
        )
        assert response.status_code == 500
        return [ContainerRuntimeError("exited with code 1")]

    orchestrator, _runner = build(
        tmp_path,
        config_text=config,
        scripts={"nuget::/": updater},
        secret_lookup=secrets,
    )

    assert orchestrator.run() == 1

    message = read_report(tmp_path)["jobs"][0]["message"]
    assert message.startswith("Dependabot was unable to retrieve job credentials")
    assert "FEED_PAT" in message


def test_invalid_merge_strategy_is_rejected(tmp_path):
    with pytest.raises(ConfigurationError, match="Invalid merge strategy"):
        build(tmp_path, merge_strategy="octopus")


def test_updater_image_requires_ecosystem_placeholder(tmp_path):
    with pytest.raises(ConfigurationError, match="does not contain"):
        build(tmp_path, updater_image="my/updater:latest")


def test_git_token_is_required_without_provider():
    with pytest.raises(ConfigurationError, match="git token"):
        UpdateOrchestrator(organisation_url="https://dev.azure.com/contoso/", project="web", repository="app")


class FakeAdvisoryClient:
    def __init__(self, vulnerabilities):
        self.vulnerabilities = vulnerabilities
        self.calls = []

    def get_vulnerabilities(self, advisory_ecosystem, package_names):
        self.calls.append((advisory_ecosystem, list(package_names)))
        return [v for v in self.vulnerabilities if v.package_name in package_names]


def discovery_updater(dependencies):
    def updater(job, tokens):
        if job.kind.value == "list_all":
            return [
                OutputRecord("update_dependency_list", {"dependencies": dependencies}),
                OutputRecord("mark_as_processed"),
            ]
        return [create_record(), OutputRecord("mark_as_processed")]

    return updater


SECURITY_ONLY_CONFIG = (
    "version: 2\nupdates:\n  - package-ecosystem: npm\n    directory: /\n    open-pull-requests-limit: 0\n"
)


def test_discovered_vulnerable_dependencies_get_a_security_update(tmp_path):
    advisories_file = tmp_path / "advisories.json"
    advisories_file.write_text(
        json.dumps(
            [
                {
                    "package": {"name": "react", "ecosystem": "npm"},
                    "vulnerableVersionRange": "< 18.2.0",
                    "firstPatchedVersion": {"identifier": "18.2.0"},
                }
            ]
        ),
        encoding="utf-8",
    )
    advisories = FakeAdvisoryClient(
        [
            SecurityVulnerability("lodash", "NPM", ("GHSA:GHSA-1",), "< 4.17.21", "4.17.21"),
            SecurityVulnerability("express", "NPM", ("GHSA:GHSA-2",), "< 4.0.0", "4.0.0"),
        ]
    )
    dependencies = [
        {"name": "lodash", "version": "4.17.20"},
        {"name": "react", "version": "18.0.0"},
        {"name": "express", "version": "4.18.2"},
    ]
    orchestrator, runner = build(
        tmp_path,
        config_text=SECURITY_ONLY_CONFIG,
        scripts={"npm::/": discovery_updater(dependencies)},
        advisory_client=advisories,
        security_advisories_file=str(advisories_file),
    )

    assert orchestrator.run() == 0

    assert [job.kind.value for job in runner.jobs] == ["list_all", "update_security_only"]
    assert advisories.calls == [("NPM", ["express", "lodash", "react"])]
    payload = runner.jobs[1].payload
    assert payload["security-updates-only"] is True
    assert payload["dependencies"] == ["lodash", "react"]
    assert [advisory["dependency-name"] for advisory in payload["security-advisories"]] == ["react", "lodash"]
    report = read_report(tmp_path)
    assert [job["success"] for job in report["jobs"]] == [True, True]
    assert report["affected_pr_ids"] == [501]


def test_discovery_without_vulnerable_dependencies_stops_after_listing(tmp_path):
    advisories = FakeAdvisoryClient([SecurityVulnerability("lodash", "NPM", (), "< 4.17.21", "4.17.21")])
    orchestrator, runner = build(
        tmp_path,
        config_text=SECURITY_ONLY_CONFIG,
        scripts={"npm::/": discovery_updater([{"name": "lodash", "version": "4.17.21"}])},
        advisory_client=advisories,
    )

    assert orchestrator.run() == 0

    assert [job.kind.value for job in runner.jobs] == ["list_all"]
    assert orchestrator.provider.created == []


def existing_pull_request(pr_id, package_manager, name, directory):
    branch = f"dependabot/{package_manager}/{name}-1.0.0"
    pull_request = ExistingPullRequest(
        pr_id,
        PullRequestProperties(package_manager, (PersistedDependency(name, "1.0.0", directory),)),
        source_branch=branch,
    )
    return pull_request, branch


def test_directory_groups_run_in_parallel_but_jobs_within_a_group_do_not(tmp_path, monkeypatch):
    web, web_branch = existing_pull_request(11, "npm_and_yarn", "lodash", "/web")
    api, api_branch = existing_pull_request(12, "nuget", "Newtonsoft.Json", "/api")
    provider = FakeProvider(pull_requests=[web, api], branches=["main", web_branch, api_branch])
    both_groups_started = threading.Barrier(2)
    events = []

    def updater(job, tokens):
        events.append((job.directory_key, job.kind.value, "start"))
        if job.kind.value == "update_pull_request":
            both_groups_started.wait(timeout=5)
        time.sleep(0.05)
        events.append((job.directory_key, job.kind.value, "end"))
        return [OutputRecord("mark_as_processed")]

    orchestrator, _runner = build(
        tmp_path,
        config_text=TWO_DIRECTORIES,
        scripts={"npm::/web": updater, "nuget::/api": updater},
        provider=provider,
        max_workers=2,
    )
    executed = []
    execute = orchestrator.execute

    def recording_execute(config, plan, reconciler):
        result = execute(config, plan, reconciler)
        executed.append((plan, result))
        return result

    monkeypatch.setattr(orchestrator, "execute", recording_execute)

    assert orchestrator.run() == 0

    for key in ("npm::/web", "nuget::/api"):
        assert [(kind, phase) for event_key, kind, phase in events if event_key == key] == [
            ("update_pull_request", "start"),
            ("update_pull_request", "end"),
            ("update_all", "start"),
            ("update_all", "end"),
        ]
    ((plan, result),) = executed
    assert [job.directory_key for job in plan.jobs] == ["npm::/web", "npm::/web", "nuget::/api", "nuget::/api"]
    assert [outcome.job_id for outcome in result.outcomes] == [job.id for job in plan.jobs]
