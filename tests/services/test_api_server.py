import pytest
import requests
from fastapi.testclient import TestClient

from depbot.ecosystems import Ecosystem
from depbot.errors import ProvisioningError
from depbot.models import JobDefinition, JobKind, JobTokens
from depbot.services.api_server import ApiServer, create_app
from depbot.services.job_store import JobStore


def make_job(job_id):
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
        credentials=({"type": "npm_registry", "registry": "npm.local", "token": "t0ken"},),
    )


@pytest.fixture
def store():
    job_store = JobStore()
    job_store.add(make_job(1), JobTokens("job-a", "cred-a"), lambda: [{"type": "npm_registry", "token": "t0ken"}])
    job_store.add(make_job(2), JobTokens("job-b", "cred-b"), lambda: [])
    return job_store


@pytest.fixture
def client(store):
    return TestClient(create_app(store))


def test_details_require_job_token(client):
    response = client.get("/update_jobs/1/details", headers={"Authorization": "job-a"})

    assert response.status_code == 200
    body = response.json()
    assert body["package-manager"] == "npm_and_yarn"
    assert body["credentials-metadata"] == [{"type": "npm_registry", "registry": "npm.local"}]


def test_credentials_require_credentials_token(client):
    assert client.get("/update_jobs/1/credentials", headers={"Authorization": "job-a"}).status_code == 401

    response = client.get("/update_jobs/1/credentials", headers={"Authorization": "cred-a"})

    assert response.status_code == 200
    assert response.json() == [{"type": "npm_registry", "token": "t0ken"}]


@pytest.mark.parametrize(
    "method, path, token",
    [
        ("get", "/update_jobs/2/details", "job-a"),
        ("get", "/update_jobs/2/credentials", "cred-a"),
        ("post", "/update_jobs/2/create_pull_request", "job-a"),
        ("patch", "/update_jobs/2/mark_as_processed", "job-a"),
        ("post", "/update_jobs/1/create_pull_request", None),
        ("get", "/update_jobs/404/details", "job-a"),
    ],
)
def test_tokens_are_scoped_to_their_job(client, store, method, path, token):
    headers = {"Authorization": token} if token else {}
    kwargs = {"json": {"data": {}}} if method in ("post", "patch") else {}

    response = getattr(client, method)(path, headers=headers, **kwargs)

    assert response.status_code == 401
    assert store.records(2) == []


def test_records_are_appended_in_receipt_order(client, store):
    headers = {"Authorization": "Bearer job-a"}
    client.post("/update_jobs/1/update_dependency_list", json={"data": {"dependencies": []}}, headers=headers)
    client.post("/update_jobs/1/create_pull_request", json={"data": {"pr-title": "Bump"}}, headers=headers)
    response = client.patch("/update_jobs/1/mark_as_processed", json={"data": {}}, headers=headers)

    assert response.status_code == 204
    records = store.records(1)
    assert [record.type for record in records] == [
        "update_dependency_list",
        "create_pull_request",
        "mark_as_processed",
    ]
    assert records[1].data == {"pr-title": "Bump"}
    assert store.is_terminal(1)


def test_record_without_body_is_accepted(client, store):
    response = client.post("/update_jobs/1/increment_metric", headers={"Authorization": "job-a"})

    assert response.status_code == 204
    assert store.records(1)[0].data == {}


def test_invalid_record_type_is_not_found(client, store):
    response = client.post("/update_jobs/1/Not-A-Type", json={"data": {}}, headers={"Authorization": "job-a"})

    assert response.status_code == 404
    assert store.records(1) == []


def test_credential_failure_is_recorded_on_the_entry():
    store = JobStore()

    def fail():
        raise ProvisioningError("Secret 'PAT' could not be found.")

    entry = store.add(make_job(3), JobTokens("job-c", "cred-c"), fail)
    client = TestClient(create_app(store))

    response = client.get("/update_jobs/3/credentials", headers={"Authorization": "cred-c"})

    assert response.status_code == 500
    assert "PAT" in entry.provisioning_error


def test_api_server_serves_on_a_free_port(store):
    with ApiServer(store, host="127.0.0.1") as server:
        assert server.port > 0
        assert server.container_api_url == f"http://host.docker.internal:{server.port}/update_jobs"
        response = requests.get(f"{server.local_api_url}/1/details", headers={"Authorization": "job-a"}, timeout=5)

    assert response.status_code == 200
    assert response.json()["id"] == 1
