"""GitHub security advisory lookups for dependencies discovered by list-all jobs."""

from typing import Any, Dict, Iterable, List, Mapping, Optional

import requests
from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version

from depbot.errors import ProviderError
from depbot.models import SecurityVulnerability
from depbot.services.job_builder import parse_security_vulnerabilities

GITHUB_GRAPHQL_URL = "https://api.github.com/graphql"

SECURITY_VULNERABILITIES_QUERY = """
query($ecosystem: SecurityAdvisoryEcosystem, $package: String) {
  securityVulnerabilities(first: 100, ecosystem: $ecosystem, package: $package) {
    nodes {
      advisory {
        identifiers { type, value }
        withdrawnAt
      }
      vulnerableVersionRange
      firstPatchedVersion { identifier }
    }
  }
}
"""


def version_in_range(version: Optional[str], vulnerable_range: Optional[str]) -> bool:
    """Checks a version against a GHSA range such as `>= 4.3.0, < 4.3.5` or `= 0.2.0`."""
    if not version or not vulnerable_range:
        return False
    requirements = []
    for requirement in vulnerable_range.split(","):
        requirement = requirement.strip()
        if requirement.startswith("=") and not requirement.startswith("=="):
            requirement = "=" + requirement
        requirements.append(requirement)
    try:
        specifiers = SpecifierSet(",".join(requirements), prereleases=True)
        return specifiers.contains(Version(version.lstrip("v")), prereleases=True)
    except (InvalidSpecifier, InvalidVersion):
        return False


def affected_vulnerabilities(
    vulnerabilities: Iterable[SecurityVulnerability],
    packages: Mapping[str, Optional[str]],
) -> List[SecurityVulnerability]:
    """Keeps vulnerabilities whose range covers the discovered version of their package."""
    affected = []
    for vulnerability in vulnerabilities:
        if vulnerability.package_name not in packages:
            continue
        if version_in_range(packages[vulnerability.package_name], vulnerability.vulnerable_version_range):
            affected.append(vulnerability)
    return affected


class GitHubAdvisoryClient:
    """Queries the GitHub GraphQL API for advisories, one package at a time."""

    def __init__(
        self,
        token: str,
        logger,
        requests_module=requests,
        timeout: float = 30.0,
        endpoint: str = GITHUB_GRAPHQL_URL,
    ):
        self.logger = logger
        self.requests = requests_module
        self.timeout = timeout
        self.endpoint = endpoint
        self.session = requests_module.Session()
        self.session.headers.update({"Authorization": f"bearer {token}", "Accept": "application/json"})

    def get_vulnerabilities(
        self,
        advisory_ecosystem: str,
        package_names: Iterable[str],
    ) -> List[SecurityVulnerability]:
        vulnerabilities: List[SecurityVulnerability] = []
        for name in package_names:
            try:
                nodes = self._query(advisory_ecosystem, name)
            except ProviderError as exc:
                self.logger.warning("%s Continuing with other packages.", exc)
                continue
            items = [
                {**node, "package": {"name": name, "ecosystem": advisory_ecosystem}}
                for node in nodes
                if isinstance(node, dict) and isinstance(node.get("advisory"), dict)
            ]
            vulnerabilities.extend(parse_security_vulnerabilities(items))
        return vulnerabilities

    def _query(self, advisory_ecosystem: str, package_name: str) -> List[Dict[str, Any]]:
        body = {
            "query": SECURITY_VULNERABILITIES_QUERY,
            "variables": {"ecosystem": advisory_ecosystem, "package": package_name},
        }
        try:
            response = self.session.post(self.endpoint, json=body, timeout=self.timeout)
        except self.requests.RequestException as exc:
            raise ProviderError(f"GitHub advisory request for {package_name} failed. {exc}") from exc

        if response.status_code >= 400:
            raise ProviderError(f"GitHub advisory request for {package_name} failed ({response.status_code}).")
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(f"GitHub returned a non-JSON advisory response for {package_name}.") from exc

        errors = payload.get("errors")
        if errors:
            first = errors[0] if isinstance(errors[0], dict) else {}
            raise ProviderError(f"GitHub advisory request for {package_name} failed: {first.get('message')}")
        data = payload.get("data") or {}
        return (data.get("securityVulnerabilities") or {}).get("nodes") or []
