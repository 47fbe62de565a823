import logging

import pytest

from depbot.errors import ProvisioningError
from depbot.models import RegistryCredential, UpdateConfig
from depbot.services.credentials import (
    CredentialProvisioner,
    EnvironmentSecretLookup,
    SecretMasker,
    credentials_metadata,
    find_missing_secrets,
)


def test_make_tokens_are_random_and_distinct():
    provisioner = CredentialProvisioner(EnvironmentSecretLookup({}))

    first = provisioner.make_tokens()
    second = provisioner.make_tokens()

    assert first.job_token != first.credentials_token
    assert first.job_token != second.job_token


def test_make_tokens_honours_overrides():
    provisioner = CredentialProvisioner(
        EnvironmentSecretLookup({}),
        job_token_override="job-token",
        credentials_token_override="cred-token",
    )

    tokens = provisioner.make_tokens()

    assert tokens.job_token == "job-token"
    assert tokens.credentials_token == "cred-token"


def test_resolve_substitutes_secrets_and_registers_them_for_masking():
    masker = SecretMasker()
    provisioner = CredentialProvisioner(EnvironmentSecretLookup({"FEED_PAT": "s3cr3t-value"}), masker=masker)

    resolved = provisioner.resolve([{"type": "nuget_feed", "url": "https://feed", "token": "PAT:${{ FEED_PAT }}"}])

    assert resolved == [{"type": "nuget_feed", "url": "https://feed", "token": "PAT:s3cr3t-value"}]
    assert masker.mask("token=PAT:s3cr3t-value") == "token=***"


def test_resolve_raises_for_missing_secret():
    provisioner = CredentialProvisioner(EnvironmentSecretLookup({}))

    with pytest.raises(ProvisioningError, match="Secret 'FEED_PAT' could not be found"):
        provisioner.resolve([{"type": "nuget_feed", "token": "${{ FEED_PAT }}"}])


def test_credentials_metadata_strips_secret_fields():
    metadata = credentials_metadata(
        [{"type": "git_source", "host": "dev.azure.com", "username": "x-access-token", "password": "pat"}]
    )

    assert metadata == [{"type": "git_source", "host": "dev.azure.com", "username": "x-access-token"}]


def test_find_missing_secrets_checks_registries():
    config = UpdateConfig(
        version=2,
        updates=(),
        registries={
            "feed": RegistryCredential(name="feed", type="nuget_feed", url="https://feed", token="${{ FEED_PAT }}"),
            "npm": RegistryCredential(name="npm", type="npm_registry", registry="npm.local", token="${{ NPM }}"),
        },
    )

    missing = find_missing_secrets(config, EnvironmentSecretLookup({"NPM": "value"}))

    assert missing == ["FEED_PAT"]


def test_secret_masker_filters_log_records():
    masker = SecretMasker()
    masker.add("super-secret")
    masker.add("abc")
    record = logging.LogRecord("depbot", logging.INFO, __file__, 1, "token %s and %s", ("super-secret", "abc"), None)

    assert masker.filter(record) is True
    assert record.getMessage() == "token *** and abc"
