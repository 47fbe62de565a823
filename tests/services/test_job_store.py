import pytest

from depbot.ecosystems import Ecosystem
from depbot.models import JobDefinition, JobKind, JobTokens, OutputRecord
from depbot.services.job_store import CREDENTIALS_TOKEN, JobStore


def make_job(job_id=1):
    return JobDefinition(
        id=job_id,
        kind=JobKind.UPDATE_ALL,
        ecosystem=Ecosystem.NPM,
        package_manager="npm_and_yarn",
        directory_key="npm::/",
        directive_index=0,
        target_branch=None,
        updater_image="updater-npm",
        payload={"id": job_id, "package-manager": "npm_and_yarn"},
        credentials=({"type": "git_source", "host": "dev.azure.com", "password": "pat"},),
    )


def test_authenticate_accepts_bearer_and_raw_tokens():
    store = JobStore()
    store.add(make_job(), JobTokens("job-token", "cred-token"), lambda: [])

    assert store.authenticate(1, "job-token") is not None
    assert store.authenticate(1, "Bearer job-token") is not None
    assert store.authenticate(1, "cred-token", CREDENTIALS_TOKEN) is not None


def test_authenticate_rejects_wrong_kind_and_other_jobs():
    store = JobStore()
    store.add(make_job(1), JobTokens("job-a", "cred-a"), lambda: [])
    store.add(make_job(2), JobTokens("job-b", "cred-b"), lambda: [])

    assert store.authenticate(1, "cred-a") is None
    assert store.authenticate(2, "job-a") is None
    assert store.authenticate(1, None) is None
    assert store.authenticate(99, "job-a") is None


def test_records_are_kept_per_job_in_order():
    store = JobStore()
    store.add(make_job(1), JobTokens("job-a", "cred-a"), lambda: [])
    store.add(make_job(2), JobTokens("job-b", "cred-b"), lambda: [])

    store.append_record(1, OutputRecord("update_dependency_list", {"dependencies": []}))
    store.append_record(2, OutputRecord("create_pull_request", {}))
    store.append_record(1, OutputRecord("mark_as_processed", {}))

    assert [record.type for record in store.records(1)] == ["update_dependency_list", "mark_as_processed"]
    assert [record.type for record in store.records(2)] == ["create_pull_request"]
    assert store.is_terminal(1) is True
    assert store.is_terminal(2) is False


def test_append_record_for_unknown_job_is_ignored():
    assert JobStore().append_record(5, OutputRecord("mark_as_processed")) is False


def test_duplicate_job_ids_are_rejected():
    store = JobStore()
    store.add(make_job(), JobTokens("a", "b"), lambda: [])

    with pytest.raises(ValueError):
        store.add(make_job(), JobTokens("c", "d"), lambda: [])


def test_details_strip_credential_secrets():
    store = JobStore()
    store.add(make_job(), JobTokens("a", "b"), lambda: [])

    details = store.details(1)

    assert details["package-manager"] == "npm_and_yarn"
    assert details["credentials-metadata"] == [{"type": "git_source", "host": "dev.azure.com"}]
    assert store.details(2) is None


def test_remove_drops_entry():
    store = JobStore()
    store.add(make_job(), JobTokens("a", "b"), lambda: [])

    store.remove(1)

    assert store.get(1) is None
    assert store.records(1) == []
