import pytest

from depbot.ecosystems import (
    DEFAULT_UPDATER_IMAGE,
    Ecosystem,
    ensure_image_template,
    package_manager_for,
    parse_ecosystem,
    updater_image_for,
)
from depbot.errors import ConfigurationError


def test_parse_ecosystem_is_case_insensitive():
    assert parse_ecosystem(" NPM ") is Ecosystem.NPM
    assert parse_ecosystem("github-actions") is Ecosystem.GITHUB_ACTIONS


def test_parse_ecosystem_rejects_unknown_values():
    with pytest.raises(ConfigurationError, match="Unsupported package ecosystem 'leiningen'"):
        parse_ecosystem("leiningen")


def test_package_manager_mapping_for_aliases():
    assert package_manager_for(Ecosystem.YARN) == "npm_and_yarn"
    assert package_manager_for(Ecosystem.PNPM) == "npm_and_yarn"
    assert package_manager_for(Ecosystem.GOMOD) == "go_modules"
    assert package_manager_for(Ecosystem.GITHUB_ACTIONS) == "github_actions"


def test_updater_image_substitutes_image_slug():
    assert updater_image_for(Ecosystem.YARN) == DEFAULT_UPDATER_IMAGE.replace("{ecosystem}", "npm")
    assert updater_image_for(Ecosystem.NUGET, "registry.local/updater-{ecosystem}:1.0") == (
        "registry.local/updater-nuget:1.0"
    )


def test_image_template_without_placeholder_is_rejected():
    with pytest.raises(ConfigurationError, match="does not contain"):
        ensure_image_template("ghcr.io/dependabot/dependabot-updater:latest")
