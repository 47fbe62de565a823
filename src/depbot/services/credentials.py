"""Job tokens, credential resolution and secret masking."""

import logging
import os
import secrets
import threading
from typing import Any, Dict, Iterable, List, Optional, Sequence

from depbot.errors import ProvisioningError
from depbot.errors_catalog import actionable_error
from depbot.models import JobTokens
from depbot.services.config_loader import PLACEHOLDER_PATTERN, find_placeholders

SECRET_CREDENTIAL_FIELDS = ("password", "token", "key")


class EnvironmentSecretLookup:
    """Looks secrets up by name in the process environment."""

    def __init__(self, environ: Optional[Dict[str, str]] = None):
        self.environ = os.environ if environ is None else environ

    def get_secret_value(self, name: str) -> Optional[str]:
        return self.environ.get(name)


class SecretMasker(logging.Filter):
    """Replaces registered secret values in log records."""

    def __init__(self):
        super().__init__()
        self._secrets: List[str] = []
        self._lock = threading.Lock()

    def add(self, value: Optional[str]):
        if not value or len(value) < 4:
            return
        with self._lock:
            if value not in self._secrets:
                self._secrets.append(value)

    def mask(self, text: str) -> str:
        for value in list(self._secrets):
            text = text.replace(value, "***")
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if self._secrets:
            record.msg = self.mask(record.getMessage())
            record.args = None
        return True


class CredentialProvisioner:
    """Issues per-job tokens and resolves credentials on demand."""

    def __init__(
        self,
        secret_lookup,
        masker: Optional[SecretMasker] = None,
        job_token_override: Optional[str] = None,
        credentials_token_override: Optional[str] = None,
    ):
        self.secret_lookup = secret_lookup
        self.masker = masker
        self.job_token_override = job_token_override
        self.credentials_token_override = credentials_token_override

    def make_tokens(self) -> JobTokens:
        tokens = JobTokens(
            job_token=self.job_token_override or secrets.token_urlsafe(30),
            credentials_token=self.credentials_token_override or secrets.token_urlsafe(30),
        )
        if self.masker:
            self.masker.add(tokens.job_token)
            self.masker.add(tokens.credentials_token)
        return tokens

    def resolve(self, credentials: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        resolved = []
        for credential in credentials:
            item = dict(credential)
            for name, value in credential.items():
                if isinstance(value, str):
                    item[name] = self._resolve_value(value)
            for name in SECRET_CREDENTIAL_FIELDS:
                if self.masker and item.get(name):
                    self.masker.add(item[name])
            resolved.append(item)
        return resolved

    def missing_secrets(self, credentials: Iterable[Dict[str, Any]]) -> List[str]:
        missing: List[str] = []
        for credential in credentials:
            for value in credential.values():
                if not isinstance(value, str):
                    continue
                for name in find_placeholders(value):
                    if self.secret_lookup.get_secret_value(name) is None and name not in missing:
                        missing.append(name)
        return missing

    def _resolve_value(self, value: str) -> str:
        def replace(match):
            name = match.group(1)
            secret = self.secret_lookup.get_secret_value(name)
            if secret is None:
                raise ProvisioningError(actionable_error("missing_secret", name=name))
            return secret

        return PLACEHOLDER_PATTERN.sub(replace, value)


def credentials_metadata(credentials: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Credential entries with secret fields removed, safe to hand to an updater."""
    return [
        {name: value for name, value in credential.items() if name not in SECRET_CREDENTIAL_FIELDS}
        for credential in credentials
    ]


def find_missing_secrets(config, secret_lookup) -> List[str]:
    """Names of placeholders in configured registries that the secret lookup cannot resolve."""
    provisioner = CredentialProvisioner(secret_lookup)
    return provisioner.missing_secrets(registry.to_credential() for registry in config.registries.values())
