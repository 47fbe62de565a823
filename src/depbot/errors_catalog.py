"""Actionable error catalog for depbot."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "config_not_found": {
        "what": "No dependabot configuration file was found in the repository.",
        "next": "Add `.azuredevops/dependabot.yml` or `.github/dependabot.yml`, or pass `--config-file`.",
    },
    "config_invalid": {
        "what": "Invalid dependabot configuration: {detail}",
        "next": "Fix the configuration file and run `depbot validate` before retrying.",
    },
    "unresolved_placeholders": {
        "what": "Configuration references unresolved variables: {names}",
        "next": "Export the listed variables in the environment running depbot.",
    },
    "unknown_ecosystem": {
        "what": "Unsupported package ecosystem '{ecosystem}'.",
        "next": "Use one of the supported `package-ecosystem` values.",
    },
    "beta_ecosystem": {
        "what": "Package ecosystem '{ecosystem}' is in beta.",
        "next": "Set `enable-beta-ecosystems: true` at the top level of the configuration.",
    },
    "invalid_updater_image": {
        "what": "Updater image template '{template}' does not contain the `{{ecosystem}}` placeholder.",
        "next": "Use a template such as `ghcr.io/dependabot/dependabot-updater-{{ecosystem}}:latest`.",
    },
    "docker_unavailable": {
        "what": "The Docker runtime is not available.",
        "next": "Install Docker, make sure the daemon is running and that the current user can reach it.",
    },
    "image_pull_failed": {
        "what": "Could not pull image '{image}'.",
        "next": "Check registry connectivity and credentials, then run `depbot fetch-images`.",
    },
    "job_timeout": {
        "what": "Job {job_id} exceeded the timeout of {minutes} minute(s).",
        "next": "Raise `--job-timeout-minutes` or narrow the update with `--target-update-ids`.",
    },
    "missing_secret": {
        "what": "Secret '{name}' could not be found.",
        "next": "Export '{name}' in the environment or remove the reference from the registry.",
    },
    "provider_request_failed": {
        "what": "Azure DevOps request failed ({status}): {url}",
        "next": "Verify the token scopes (Code read/write, Pull requests) and the organisation URL.",
    },
    "invalid_organisation_url": {
        "what": "Invalid organisation URL '{url}'.",
        "next": "Use `https://dev.azure.com/<org>/` or `https://<org>.visualstudio.com/`.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
