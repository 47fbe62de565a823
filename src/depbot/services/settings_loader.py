"""CLI settings loader for depbot."""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from depbot.errors import ConfigurationError


class SettingsLoader:
    """Loads YAML settings files used as CLI defaults."""

    SUPPORTED_KEYS = {
        "organisation_url",
        "project",
        "repository",
        "git_token",
        "github_token",
        "auto_approve",
        "auto_approve_token",
        "set_auto_complete",
        "merge_strategy",
        "auto_complete_ignore_config_ids",
        "author_name",
        "author_email",
        "target_update_ids",
        "experiments",
        "updater_image",
        "proxy_image",
        "port",
        "debug",
        "dry_run",
        "config_file",
        "security_advisories_file",
        "max_workers",
        "job_timeout_minutes",
        "job_token_override",
        "credentials_token_override",
        "report_file",
        "log_file",
    }

    def load(self, settings_path: Optional[str]) -> Dict[str, Any]:
        if not settings_path:
            return {}

        path = Path(settings_path)
        if not path.exists():
            raise ConfigurationError(f"Settings file not found: {settings_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise ConfigurationError(f"Invalid settings file '{settings_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise ConfigurationError("Settings file must contain a YAML mapping at the root.")

        normalized = {str(key).replace("-", "_"): value for key, value in parsed.items()}
        unknown = sorted(set(normalized) - self.SUPPORTED_KEYS)
        if unknown:
            raise ConfigurationError(f"Unknown settings keys: {', '.join(unknown)}")

        return normalized
