"""Dependabot configuration loading and validation."""

import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import yaml

from depbot.ecosystems import parse_ecosystem, spec_for
from depbot.errors import ConfigurationError
from depbot.errors_catalog import actionable_error
from depbot.models import RegistryCredential, ScheduleConfig, UpdateConfig, UpdateDirective

CONFIG_FILE_PATHS = (
    ".azuredevops/dependabot.yml",
    ".azuredevops/dependabot.yaml",
    ".github/dependabot.yaml",
    ".github/dependabot.yml",
)

PLACEHOLDER_PATTERN = re.compile(r"\$\{\{\s{0,10}([a-zA-Z_][a-zA-Z0-9._-]{0,99})\s{0,10}\}\}")

SCHEDULE_INTERVALS = ("daily", "weekly", "monthly", "quarterly", "semiannually", "yearly", "cron")
VERSIONING_STRATEGIES = ("auto", "increase", "increase-if-necessary", "lockfile-only", "widen")
REGISTRY_TYPES = (
    "cargo_registry",
    "composer_repository",
    "docker_registry",
    "git",
    "goproxy_server",
    "helm_registry",
    "hex_organization",
    "hex_repository",
    "maven_repository",
    "npm_registry",
    "nuget_feed",
    "pub_repository",
    "python_index",
    "rubygems_server",
    "terraform_registry",
)


def find_placeholders(text: str) -> List[str]:
    names: List[str] = []
    for match in PLACEHOLDER_PATTERN.finditer(text or ""):
        if match.group(1) not in names:
            names.append(match.group(1))
    return names


def substitute_placeholders(text: str, lookup) -> str:
    """Replaces `${{ NAME }}` with looked-up values, leaving unknown names untouched."""

    def replace(match):
        value = lookup(match.group(1))
        return match.group(0) if value is None else value

    return PLACEHOLDER_PATTERN.sub(replace, text)


class ConfigLoader:
    """Parses dependabot.yml files into an UpdateConfig."""

    def __init__(self, secret_lookup=None):
        self.secret_lookup = secret_lookup

    def load(self, config_path: str) -> Tuple[UpdateConfig, str]:
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(f"Could not read config file '{config_path}': {exc}") from exc
        return self.parse(text, source=config_path), text

    def unresolved_placeholders(self, text: str) -> List[str]:
        names = find_placeholders(text)
        if self.secret_lookup is None:
            return names
        return [name for name in names if self.secret_lookup.get_secret_value(name) is None]

    def parse(self, text: str, source: str = "dependabot.yml") -> UpdateConfig:
        try:
            parsed = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ConfigurationError(self._invalid(f"'{source}' is not valid YAML: {exc}")) from exc

        if not isinstance(parsed, dict):
            raise ConfigurationError(self._invalid("the file must contain a YAML mapping at the root"))

        version = parsed.get("version")
        if str(version) != "2":
            raise ConfigurationError(
                self._invalid(f"only version 2 is supported, found '{version}'")
            )

        registries = self._parse_registries(parsed.get("registries") or {})
        enable_beta = bool(parsed.get("enable-beta-ecosystems", False))

        raw_updates = parsed.get("updates")
        if not isinstance(raw_updates, list) or not raw_updates:
            raise ConfigurationError(self._invalid("'updates' must be a non-empty list"))

        updates = [
            self._parse_update(raw, index, source, enable_beta) for index, raw in enumerate(raw_updates)
        ]

        seen_keys = set()
        for update in updates:
            if update.directory_key in seen_keys:
                raise ConfigurationError(
                    self._invalid(f"duplicate update for '{update.directory_key}'")
                )
            seen_keys.add(update.directory_key)

        self._check_registry_references(updates, registries)

        return UpdateConfig(
            version=2,
            updates=tuple(updates),
            registries=registries,
            enable_beta_ecosystems=enable_beta,
        )

    @staticmethod
    def _invalid(detail: str) -> str:
        return actionable_error("config_invalid", detail=detail)

    def _substitute(self, value):
        if self.secret_lookup is None or not isinstance(value, str):
            return value
        return substitute_placeholders(value, self.secret_lookup.get_secret_value)

    def _parse_update(self, raw: Any, index: int, source: str, enable_beta: bool) -> UpdateDirective:
        if not isinstance(raw, dict):
            raise ConfigurationError(self._invalid(f"update #{index} must be a mapping"))

        if not raw.get("package-ecosystem"):
            raise ConfigurationError(
                self._invalid(f"update #{index} is missing 'package-ecosystem'")
            )
        ecosystem = parse_ecosystem(raw["package-ecosystem"])
        if spec_for(ecosystem).beta and not enable_beta:
            raise ConfigurationError(actionable_error("beta_ecosystem", ecosystem=ecosystem.value))

        directory = raw.get("directory")
        directories = raw.get("directories") or []
        if not isinstance(directories, list):
            raise ConfigurationError(self._invalid(f"update #{index} 'directories' must be a list"))
        if not directory and not directories:
            raise ConfigurationError(
                self._invalid(f"update #{index} needs either 'directory' or 'directories'")
            )

        limit = raw.get("open-pull-requests-limit", 5)
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
            raise ConfigurationError(
                self._invalid(f"update #{index} 'open-pull-requests-limit' must be zero or a positive integer")
            )

        strategy = raw.get("versioning-strategy")
        if strategy is not None and strategy not in VERSIONING_STRATEGIES:
            raise ConfigurationError(
                self._invalid(f"update #{index} has invalid versioning strategy '{strategy}'")
            )

        registries = raw.get("registries") or []
        if isinstance(registries, str):
            registries = [registries]

        groups = {
            name: dict(group)
            for name, group in (raw.get("groups") or {}).items()
            if isinstance(group, dict)
        }

        ignore = []
        for condition in raw.get("ignore") or []:
            condition = dict(condition)
            condition.setdefault("source", source)
            ignore.append(condition)

        allow = raw.get("allow")
        branch_name = raw.get("pull-request-branch-name") or {}

        return UpdateDirective(
            package_ecosystem=ecosystem,
            directory=self._substitute(directory) if directory else None,
            directories=tuple(self._substitute(item) for item in directories),
            target_branch=self._substitute(raw.get("target-branch")),
            schedule=self._parse_schedule(raw.get("schedule"), index),
            open_pull_requests_limit=limit,
            registries=tuple(str(name) for name in registries),
            ignore=tuple(ignore),
            allow=tuple(dict(item) for item in allow) if allow is not None else None,
            groups=groups,
            labels=tuple(str(label).strip() for label in raw.get("labels") or []),
            assignees=tuple(str(assignee) for assignee in raw.get("assignees") or []),
            milestone=str(raw["milestone"]) if raw.get("milestone") is not None else None,
            commit_message=raw.get("commit-message"),
            versioning_strategy=strategy,
            branch_name_separator=branch_name.get("separator"),
            vendor=bool(raw.get("vendor", False)),
            insecure_external_code_execution=raw.get("insecure-external-code-execution"),
            cooldown=raw.get("cooldown"),
            experiments=dict(raw.get("experiments") or {}),
        )

    def _parse_schedule(self, raw: Any, index: int) -> ScheduleConfig:
        if raw is None:
            return ScheduleConfig()
        if not isinstance(raw, dict):
            raise ConfigurationError(self._invalid(f"update #{index} 'schedule' must be a mapping"))

        interval = raw.get("interval", "weekly")
        if interval not in SCHEDULE_INTERVALS:
            raise ConfigurationError(
                self._invalid(f"update #{index} has invalid schedule interval '{interval}'")
            )
        if interval == "cron" and not raw.get("cronjob"):
            raise ConfigurationError(
                self._invalid(f"update #{index} uses a cron interval without 'cronjob'")
            )
        return ScheduleConfig(
            interval=interval,
            day=raw.get("day"),
            time=str(raw["time"]) if raw.get("time") is not None else None,
            timezone=raw.get("timezone"),
            cronjob=raw.get("cronjob"),
        )

    def _parse_registries(self, raw: Any) -> Dict[str, RegistryCredential]:
        if not isinstance(raw, dict):
            raise ConfigurationError(self._invalid("'registries' must be a mapping"))

        registries: Dict[str, RegistryCredential] = {}
        for name, entry in raw.items():
            if not isinstance(entry, dict):
                raise ConfigurationError(self._invalid(f"registry '{name}' must be a mapping"))

            registry_type = str(entry.get("type") or "").replace("-", "_")
            if registry_type not in REGISTRY_TYPES:
                raise ConfigurationError(
                    self._invalid(f"registry '{name}' has unsupported type '{entry.get('type')}'")
                )

            url = self._substitute(entry.get("url"))
            if not url and registry_type != "hex_organization":
                raise ConfigurationError(self._invalid(f"registry '{name}' is missing 'url'"))

            registry = host = index_url = None
            if registry_type in ("docker_registry", "npm_registry"):
                registry = re.sub(r"^https?://", "", url)
                url = None
            elif registry_type in ("terraform_registry", "composer_repository"):
                host = urlparse(url).hostname
            elif registry_type == "python_index":
                index_url = url
                url = None

            registries[name] = RegistryCredential(
                name=name,
                type=registry_type,
                url=url,
                registry=registry,
                host=host,
                index_url=index_url,
                username=self._substitute(entry.get("username")),
                password=entry.get("password"),
                token=entry.get("token"),
                key=entry.get("key"),
                organization=entry.get("organization"),
                replaces_base=bool(entry.get("replaces-base", False)),
            )
        return registries

    def _check_registry_references(
        self,
        updates: List[UpdateDirective],
        registries: Dict[str, RegistryCredential],
    ):
        referenced = set()
        uses_all = False
        for update in updates:
            if update.uses_all_registries():
                uses_all = True
                continue
            for name in update.registries:
                if name not in registries:
                    raise ConfigurationError(
                        self._invalid(
                            f"'{update.directory_key}' references registry '{name}' which is not configured"
                        )
                    )
                referenced.add(name)

        if uses_all:
            return
        unused = sorted(set(registries) - referenced)
        if unused:
            raise ConfigurationError(
                self._invalid(f"registries are configured but never referenced: {', '.join(unused)}")
            )


def config_file_paths(custom_path: Optional[str] = None) -> Tuple[str, ...]:
    if custom_path:
        return (custom_path,)
    return CONFIG_FILE_PATHS
