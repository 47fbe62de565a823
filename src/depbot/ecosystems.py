"""Known package ecosystems and their updater metadata."""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from depbot.errors import ConfigurationError
from depbot.errors_catalog import actionable_error

DEFAULT_UPDATER_IMAGE = "ghcr.io/dependabot/dependabot-updater-{ecosystem}:latest"
DEFAULT_PROXY_IMAGE = "ghcr.io/dependabot/proxy:latest"
ECOSYSTEM_PLACEHOLDER = "{ecosystem}"


class Ecosystem(str, Enum):
    BUN = "bun"
    BUNDLER = "bundler"
    CARGO = "cargo"
    COMPOSER = "composer"
    DEVCONTAINERS = "devcontainers"
    DOCKER = "docker"
    DOCKER_COMPOSE = "docker-compose"
    DOTNET_SDK = "dotnet-sdk"
    ELM = "elm"
    GITHUB_ACTIONS = "github-actions"
    GITSUBMODULE = "gitsubmodule"
    GOMOD = "gomod"
    GRADLE = "gradle"
    HELM = "helm"
    MAVEN = "maven"
    MIX = "mix"
    NPM = "npm"
    NUGET = "nuget"
    PIP = "pip"
    PIP_COMPILE = "pip-compile"
    PIPENV = "pipenv"
    PNPM = "pnpm"
    POETRY = "poetry"
    PUB = "pub"
    RUST_TOOLCHAIN = "rust-toolchain"
    SWIFT = "swift"
    TERRAFORM = "terraform"
    UV = "uv"
    VCPKG = "vcpkg"
    YARN = "yarn"


@dataclass(frozen=True)
class EcosystemSpec:
    """Updater metadata for one package ecosystem."""

    package_manager: str
    image_slug: str
    advisory_ecosystem: Optional[str] = None
    beta: bool = False


ECOSYSTEMS: Dict[Ecosystem, EcosystemSpec] = {
    Ecosystem.BUN: EcosystemSpec("bun", "bun", "NPM", beta=True),
    Ecosystem.BUNDLER: EcosystemSpec("bundler", "bundler", "RUBYGEMS"),
    Ecosystem.CARGO: EcosystemSpec("cargo", "cargo", "RUST"),
    Ecosystem.COMPOSER: EcosystemSpec("composer", "composer", "COMPOSER"),
    Ecosystem.DEVCONTAINERS: EcosystemSpec("devcontainers", "devcontainers"),
    Ecosystem.DOCKER: EcosystemSpec("docker", "docker"),
    Ecosystem.DOCKER_COMPOSE: EcosystemSpec("docker_compose", "docker-compose"),
    Ecosystem.DOTNET_SDK: EcosystemSpec("dotnet_sdk", "dotnet-sdk"),
    Ecosystem.ELM: EcosystemSpec("elm", "elm"),
    Ecosystem.GITHUB_ACTIONS: EcosystemSpec("github_actions", "github-actions", "ACTIONS"),
    Ecosystem.GITSUBMODULE: EcosystemSpec("submodules", "gitsubmodule"),
    Ecosystem.GOMOD: EcosystemSpec("go_modules", "gomod", "GO"),
    Ecosystem.GRADLE: EcosystemSpec("gradle", "gradle", "MAVEN"),
    Ecosystem.HELM: EcosystemSpec("helm", "helm"),
    Ecosystem.MAVEN: EcosystemSpec("maven", "maven", "MAVEN"),
    Ecosystem.MIX: EcosystemSpec("hex", "mix", "ERLANG"),
    Ecosystem.NPM: EcosystemSpec("npm_and_yarn", "npm", "NPM"),
    Ecosystem.NUGET: EcosystemSpec("nuget", "nuget", "NUGET"),
    Ecosystem.PIP: EcosystemSpec("pip", "pip", "PIP"),
    Ecosystem.PIP_COMPILE: EcosystemSpec("pip", "pip", "PIP"),
    Ecosystem.PIPENV: EcosystemSpec("pip", "pip", "PIP"),
    Ecosystem.PNPM: EcosystemSpec("npm_and_yarn", "npm", "NPM"),
    Ecosystem.POETRY: EcosystemSpec("pip", "pip", "PIP"),
    Ecosystem.PUB: EcosystemSpec("pub", "pub", "PUB"),
    Ecosystem.RUST_TOOLCHAIN: EcosystemSpec("rust_toolchain", "rust-toolchain", beta=True),
    Ecosystem.SWIFT: EcosystemSpec("swift", "swift", "SWIFT"),
    Ecosystem.TERRAFORM: EcosystemSpec("terraform", "terraform"),
    Ecosystem.UV: EcosystemSpec("uv", "uv", "PIP"),
    Ecosystem.VCPKG: EcosystemSpec("vcpkg", "vcpkg", beta=True),
    Ecosystem.YARN: EcosystemSpec("npm_and_yarn", "npm", "NPM"),
}


def parse_ecosystem(value: str) -> Ecosystem:
    try:
        return Ecosystem(str(value).strip().lower())
    except ValueError as exc:
        raise ConfigurationError(actionable_error("unknown_ecosystem", ecosystem=str(value))) from exc


def spec_for(ecosystem: Ecosystem) -> EcosystemSpec:
    return ECOSYSTEMS[ecosystem]


def package_manager_for(ecosystem: Ecosystem) -> str:
    return ECOSYSTEMS[ecosystem].package_manager


def ensure_image_template(template: str) -> str:
    if ECOSYSTEM_PLACEHOLDER not in template:
        raise ConfigurationError(actionable_error("invalid_updater_image", template=template))
    return template


def updater_image_for(ecosystem: Ecosystem, template: str = DEFAULT_UPDATER_IMAGE) -> str:
    ensure_image_template(template)
    return template.replace(ECOSYSTEM_PLACEHOLDER, ECOSYSTEMS[ecosystem].image_slug)
