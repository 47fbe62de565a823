import json
import logging
import os
import threading
import time
import uuid
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence

from rich.console import Console

from .ecosystems import DEFAULT_PROXY_IMAGE, DEFAULT_UPDATER_IMAGE, ensure_image_template, spec_for
from .errors import (
    ConfigurationError,
    ContainerRuntimeError,
    DepbotError,
    ImagePullError,
    ProvisioningError,
)
from .errors_catalog import actionable_error
from .models import JobDefinition, JobKind, JobOutcome, RunResult, RunStatus, SecurityVulnerability, UpdateConfig
from .services.api_server import ApiServer
from .services.azure_devops import AzureDevOpsClient, parse_organisation_url
from .services.command_runner import CommandRunner
from .services.config_loader import CONFIG_FILE_PATHS, ConfigLoader
from .services.container_runner import ContainerRunner
from .services.credentials import CredentialProvisioner, EnvironmentSecretLookup, find_missing_secrets
from .services.docker_runtime import DockerRuntimeService
from .services.github_advisories import GitHubAdvisoryClient, affected_vulnerabilities
from .services.job_builder import (
    DEFAULT_EXPERIMENTS,
    JobBuilder,
    JobPlan,
    SourceInfo,
    assign_pull_requests,
    parse_security_vulnerabilities,
)
from .services.job_store import JobStore
from .services.output_processor import OutputProcessor
from .services.providers import MERGE_STRATEGIES, Author
from .services.reconciler import PullRequestReconciler, ReconcilerOptions
from .services.run_report import RunReportService
from .services.schedule import generate_cron, next_run

console = Console()
logger = logging.getLogger("depbot")


class UpdateOrchestrator:
    """Runs every update job of one repository and aggregates the outcome."""

    def __init__(
        self,
        organisation_url: str,
        project: str,
        repository: str,
        git_token: Optional[str] = None,
        github_token: Optional[str] = None,
        auto_approve: bool = False,
        auto_approve_token: Optional[str] = None,
        set_auto_complete: bool = False,
        merge_strategy: str = "squash",
        auto_complete_ignore_config_ids: Sequence[int] = (),
        author_name: Optional[str] = None,
        author_email: Optional[str] = None,
        target_update_ids: Optional[Sequence[int]] = None,
        experiments: Optional[Dict[str, Any]] = None,
        updater_image: str = DEFAULT_UPDATER_IMAGE,
        proxy_image: str = DEFAULT_PROXY_IMAGE,
        port: int = 0,
        debug: bool = False,
        dry_run: bool = False,
        config_file: Optional[str] = None,
        security_advisories_file: Optional[str] = None,
        max_workers: int = 1,
        job_timeout_minutes: float = 60,
        job_token_override: Optional[str] = None,
        credentials_token_override: Optional[str] = None,
        report_file: Optional[str] = None,
        secret_lookup=None,
        masker=None,
        provider=None,
        approver=None,
        advisory_client=None,
        container_runner=None,
        docker_runtime=None,
        api_server_factory=None,
        job_store: Optional[JobStore] = None,
        job_id_factory=None,
    ):
        if merge_strategy not in MERGE_STRATEGIES:
            raise ConfigurationError(
                f"Invalid merge strategy '{merge_strategy}'. Use one of: {', '.join(MERGE_STRATEGIES)}."
            )
        if max_workers < 1:
            raise ConfigurationError("--max-workers must be at least 1.")
        if job_timeout_minutes <= 0:
            raise ConfigurationError("--job-timeout-minutes must be greater than zero.")

        self.url = parse_organisation_url(organisation_url, project, repository)
        self.updater_image = ensure_image_template(updater_image)
        self.proxy_image = proxy_image
        self.target_update_ids = list(target_update_ids or [])
        self.port = port
        self.debug = debug
        self.dry_run = dry_run
        self.config_file = config_file
        self.security_advisories_file = security_advisories_file
        self.max_workers = max_workers
        self.job_timeout_minutes = job_timeout_minutes

        self.secret_lookup = secret_lookup or EnvironmentSecretLookup()
        self.masker = masker
        if masker is not None:
            for secret in (git_token, github_token, auto_approve_token):
                masker.add(secret)

        if provider is None:
            if not git_token:
                raise ConfigurationError("A git token is required to talk to Azure DevOps (--git-token).")
            provider = AzureDevOpsClient(self.url, git_token, logger)
        self.provider = provider
        if auto_approve and approver is None:
            approver = (
                AzureDevOpsClient(self.url, auto_approve_token, logger) if auto_approve_token else provider
            )
        self.approver = approver
        if advisory_client is None and github_token:
            advisory_client = GitHubAdvisoryClient(github_token, logger)
        self.advisory_client = advisory_client
        self.vulnerabilities: List[SecurityVulnerability] = []

        self.reconciler_options = ReconcilerOptions(
            author=Author(
                name=author_name or Author().name,
                email=author_email or Author().email,
            ),
            auto_approve=auto_approve,
            set_auto_complete=set_auto_complete,
            merge_strategy=merge_strategy,
            auto_complete_ignore_config_ids=tuple(auto_complete_ignore_config_ids),
            dry_run=dry_run,
        )

        builder_kwargs: Dict[str, Any] = {}
        if job_id_factory is not None:
            builder_kwargs["job_id_factory"] = job_id_factory
        self.job_builder = JobBuilder(
            source=SourceInfo(
                hostname=self.url.hostname,
                api_endpoint=self.url.api_endpoint,
                repository_slug=self.url.repository_slug,
            ),
            git_token=git_token,
            github_token=github_token,
            experiments=DEFAULT_EXPERIMENTS if experiments is None else {**DEFAULT_EXPERIMENTS, **experiments},
            updater_image_template=self.updater_image,
            debug=debug,
            **builder_kwargs,
        )

        self.config_loader = ConfigLoader(secret_lookup=self.secret_lookup)
        self.provisioner = CredentialProvisioner(
            self.secret_lookup,
            masker=masker,
            job_token_override=job_token_override,
            credentials_token_override=credentials_token_override,
        )
        self.store = job_store or JobStore()
        self.report_service = RunReportService(report_file=report_file, logger=logger)

        self.command_runner = CommandRunner(logger=logger)
        self.docker_runtime = docker_runtime or DockerRuntimeService(
            logger=logger,
            console=console,
            command_runner=self.command_runner,
        )
        self.container_runner = container_runner or ContainerRunner(
            docker=self.docker_runtime,
            logger=logger,
            proxy_image=proxy_image,
            timeout_seconds=job_timeout_minutes * 60,
            debug=debug,
        )
        self.api_server_factory = api_server_factory or ApiServer

        self._prepared: Dict[str, Optional[ContainerRuntimeError]] = {}
        self._prepare_lock = threading.Lock()

    def load_config(self) -> UpdateConfig:
        if self.config_file:
            logger.info("Using configuration file %s", self.config_file)
            config, _ = self.config_loader.load(self.config_file)
        else:
            config = None
            for path in CONFIG_FILE_PATHS:
                text = self.provider.get_file_contents(path)
                if text:
                    logger.info("Using configuration file %s from the repository", path)
                    config = self.config_loader.parse(text, source=path)
                    break
            if config is None:
                raise ConfigurationError(actionable_error("config_not_found"))

        missing = find_missing_secrets(config, self.secret_lookup)
        if missing:
            raise ConfigurationError(actionable_error("unresolved_placeholders", names=", ".join(missing)))
        return config

    def load_security_advisories(self) -> List[SecurityVulnerability]:
        path = self.security_advisories_file
        if not path:
            return []
        if not os.path.exists(path):
            logger.info("Security advisories file '%s' does not exist", path)
            return []
        try:
            with open(path, "r", encoding="utf-8") as file_obj:
                items = json.load(file_obj)
        except (OSError, ValueError) as exc:
            raise ConfigurationError(f"Invalid security advisories file '{path}': {exc}") from exc
        if not isinstance(items, list):
            raise ConfigurationError(f"Security advisories file '{path}' must contain a JSON list.")
        vulnerabilities = parse_security_vulnerabilities(item for item in items if isinstance(item, dict))
        logger.info("Loaded %s security advisories from %s", len(vulnerabilities), path)
        return vulnerabilities

    @staticmethod
    def describe_schedules(config: UpdateConfig) -> List[Dict[str, Any]]:
        schedules = []
        for directive in config.updates:
            schedules.append(
                {
                    "directory_key": directive.directory_key,
                    "cron": generate_cron(directive.schedule),
                    "timezone": directive.schedule.timezone or "Etc/UTC",
                    "next_update_job_at": next_run(directive.schedule).isoformat(),
                }
            )
        return schedules

    def _build_metadata(self) -> Dict[str, Any]:
        return {
            "organisation": self.url.organisation,
            "project": self.url.project,
            "repository": self.url.repository,
            "dry_run": self.dry_run,
            "max_workers": self.max_workers,
            "job_timeout_minutes": self.job_timeout_minutes,
            "target_update_ids": self.target_update_ids,
            "updater_image": self.updater_image,
            "proxy_image": self.proxy_image,
        }

    def plan(self, config: UpdateConfig, reconciler: PullRequestReconciler) -> JobPlan:
        self.vulnerabilities = self.load_security_advisories()
        plan = self.job_builder.build(
            config,
            existing_pull_requests=reconciler.open_pull_requests,
            vulnerabilities=self.vulnerabilities,
            target_update_ids=self.target_update_ids,
            dry_run=self.dry_run,
            discover_vulnerabilities=self.advisory_client is not None,
        )
        for notice in plan.notices:
            logger.warning(notice)
        return plan

    def _prepare(self, key: str, callback) -> None:
        """Runs a one-off preparation step, remembering its failure for later jobs."""
        with self._prepare_lock:
            if key not in self._prepared:
                try:
                    callback()
                    self._prepared[key] = None
                except ContainerRuntimeError as exc:
                    self._prepared[key] = exc
            failure = self._prepared[key]
        if failure is not None:
            raise type(failure)(str(failure))

    def _outcome(
        self,
        job: JobDefinition,
        success: bool,
        message: Optional[str],
        started: float,
        affected_pr_ids: Sequence[int] = (),
        discovered_dependencies: Sequence[Dict[str, Any]] = (),
    ) -> JobOutcome:
        return JobOutcome(
            job_id=job.id,
            success=success,
            message=message,
            affected_pr_ids=tuple(affected_pr_ids),
            duration_seconds=round(time.monotonic() - started, 3),
            discovered_dependencies=tuple(discovered_dependencies),
        )

    def run_job(
        self,
        config: UpdateConfig,
        job: JobDefinition,
        reconciler: PullRequestReconciler,
        api_url: str,
    ) -> JobOutcome:
        started = time.monotonic()
        directive = config.updates[job.directive_index]
        console.print(f"[blue]Running {job.kind.value} job {job.id} for {job.directory_key}...[/blue]")

        tokens = self.provisioner.make_tokens()
        job = replace(job, job_token=tokens.job_token, credentials_token=tokens.credentials_token)
        credentials = list(job.credentials)
        entry = self.store.add(job, tokens, lambda: self.provisioner.resolve(credentials))

        try:
            try:
                self._prepare("docker", self.docker_runtime.validate_environment)
                self._prepare(job.updater_image, lambda: self.docker_runtime.ensure_image(job.updater_image))
                self._prepare(self.proxy_image, lambda: self.docker_runtime.ensure_image(self.proxy_image))
                self.container_runner.run(job, tokens, api_url)
            except ImagePullError as exc:
                return self._outcome(job, False, f"Error fetching updater images: {exc}", started)
            except ContainerRuntimeError as exc:
                if entry.provisioning_error:
                    raise ProvisioningError(entry.provisioning_error) from exc
                return self._outcome(job, False, f"Error running updater: {exc}", started)

            if entry.provisioning_error:
                raise ProvisioningError(entry.provisioning_error)

            processed = OutputProcessor(job, logger).process_all(self.store.records(job.id))
            if not processed.terminal:
                return self._outcome(
                    job,
                    False,
                    "Unknown error: updater exited without marking the job as processed",
                    started,
                )

            reconciled = reconciler.apply(job, directive, processed.actions)
            messages = []
            for error in processed.errors:
                messages.append(f"Update job error: {error.get('error-type') or 'unknown'}")
            messages.extend(reconciled.failures)
            success = processed.success and reconciled.success
            return self._outcome(
                job,
                success,
                "; ".join(messages) or None,
                started,
                affected_pr_ids=reconciled.affected_pr_ids,
                discovered_dependencies=processed.dependencies,
            )
        except ProvisioningError as exc:
            return self._outcome(job, False, f"Dependabot was unable to retrieve job credentials: {exc}", started)
        except DepbotError as exc:
            logger.error("Job %s failed: %s", job.id, exc)
            return self._outcome(job, False, f"Unknown error: {exc}", started)
        finally:
            self.store.remove(job.id)

    def security_follow_up(
        self,
        config: UpdateConfig,
        job: JobDefinition,
        dependencies: Sequence[Dict[str, Any]],
        reconciler: PullRequestReconciler,
    ) -> Optional[JobDefinition]:
        """Builds a security-only job for the vulnerable dependencies a list-all job discovered."""
        directive = config.updates[job.directive_index]
        advisory_ecosystem = spec_for(directive.package_ecosystem).advisory_ecosystem
        packages = {str(dep["name"]): dep.get("version") for dep in dependencies if dep.get("name")}
        if not advisory_ecosystem or not packages:
            logger.info("No dependencies to check for vulnerabilities in %s", job.directory_key)
            return None

        console.print(
            f"Detected {len(packages)} dependencies in {job.directory_key}; checking for vulnerabilities..."
        )
        vulnerabilities = [v for v in self.vulnerabilities if v.advisory_ecosystem == advisory_ecosystem]
        if self.advisory_client is not None:
            vulnerabilities += self.advisory_client.get_vulnerabilities(advisory_ecosystem, sorted(packages))
        else:
            logger.info("GitHub token is not provided; only the security advisories file is checked.")

        affected = affected_vulnerabilities(vulnerabilities, packages)
        if not affected:
            logger.info("No vulnerabilities detected for %s", job.directory_key)
            return None
        names = {v.package_name for v in affected}
        console.print(
            f"[yellow]Detected {len(affected)} vulnerabilities affecting {len(names)} "
            f"dependencies in {job.directory_key}[/yellow]"
        )
        matching = assign_pull_requests(config.updates, reconciler.open_pull_requests).get(job.directive_index, [])
        return self.job_builder.build_update_all_job(
            config,
            job.directive_index,
            directive,
            matching,
            security_only=True,
            vulnerabilities=affected,
        )

    def _run_and_report(
        self,
        config: UpdateConfig,
        job: JobDefinition,
        reconciler: PullRequestReconciler,
        api_url: str,
    ) -> JobOutcome:
        outcome = self.run_job(config, job, reconciler, api_url)
        self.report_service.job_finished(job, outcome)
        if outcome.success:
            console.print(f"[green]Job {job.id} ({job.directory_key}) succeeded.[/green]")
        else:
            console.print(f"[red]Job {job.id} ({job.directory_key}) failed: {outcome.message}[/red]")
        return outcome

    def _run_group(
        self,
        config: UpdateConfig,
        jobs: List[JobDefinition],
        reconciler: PullRequestReconciler,
        api_url: str,
    ) -> Dict[int, List[JobOutcome]]:
        """Runs the jobs of one directory key in order.

        Outcomes are keyed by planned job id. A security follow-up is listed
        after the list-all job whose discovered dependencies triggered it.
        """
        outcomes: Dict[int, List[JobOutcome]] = {}
        for job in jobs:
            outcome = self._run_and_report(config, job, reconciler, api_url)
            outcomes[job.id] = [outcome]
            if job.kind != JobKind.LIST_ALL or not outcome.success:
                continue
            follow_up = self.security_follow_up(config, job, outcome.discovered_dependencies, reconciler)
            if follow_up is not None:
                outcomes[job.id].append(self._run_and_report(config, follow_up, reconciler, api_url))
        return outcomes

    def execute(self, config: UpdateConfig, plan: JobPlan, reconciler: PullRequestReconciler) -> RunResult:
        groups: "OrderedDict[str, List[JobDefinition]]" = OrderedDict()
        for job in plan.jobs:
            groups.setdefault(job.directory_key, []).append(job)

        server = self.api_server_factory(self.store, port=self.port)
        server.start()
        try:
            outcomes: Dict[int, List[JobOutcome]] = {}
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                futures = [
                    executor.submit(self._run_group, config, jobs, reconciler, server.container_api_url)
                    for jobs in groups.values()
                ]
                for future in futures:
                    outcomes.update(future.result())
        finally:
            server.stop()

        return RunResult(outcomes=[outcome for job in plan.jobs for outcome in outcomes[job.id]])

    def _print_summary(self, result: RunResult):
        colour = {
            RunStatus.SUCCEEDED: "green",
            RunStatus.SKIPPED: "yellow",
            RunStatus.SUCCEEDED_WITH_ISSUES: "yellow",
            RunStatus.FAILED: "red",
        }[result.status]
        console.print(f"[bold {colour}]Run {result.status.value}[/bold {colour}] ({len(result.outcomes)} job(s))")
        if result.affected_pr_ids:
            console.print(f"Affected pull requests: {', '.join(str(pr) for pr in result.affected_pr_ids)}")

    def run(self) -> int:
        run_id = uuid.uuid4().hex[:10]
        self.report_service.start_run(run_id, self._build_metadata())
        report_status = RunStatus.FAILED.value
        report_error = None
        affected: List[int] = []

        try:
            config = self.load_config()
            self.report_service.set_schedules(self.describe_schedules(config))

            user_id = self.provider.get_user_id()
            branch_names = self.provider.get_branch_names()
            existing = self.provider.get_active_pull_requests(user_id)
            logger.info("Found %s active pull request(s) created by depbot.", len(existing))

            reconciler = PullRequestReconciler(
                provider=self.provider,
                logger=logger,
                existing_pull_requests=existing,
                branch_names=branch_names,
                options=self.reconciler_options,
                approver=self.approver,
                directives=config.updates,
            )
            reconciler.abandon_pull_requests_with_deleted_branches()

            plan = self.plan(config, reconciler)
            if plan.jobs:
                console.print(f"[bold blue]Running {len(plan.jobs)} update job(s)...[/bold blue]")
                result = self.execute(config, plan, reconciler)
            else:
                console.print("[yellow]No update jobs to run.[/yellow]")
                result = RunResult()

            affected = result.affected_pr_ids
            if plan.orphaned_pull_requests:
                closed = reconciler.close_orphaned_pull_requests(plan.orphaned_pull_requests)
                for failure in closed.failures:
                    logger.warning(failure)
                affected += [pr for pr in closed.affected_pr_ids if pr not in affected]

            self._print_summary(result)
            report_status = result.status.value
            return result.exit_code

        except KeyboardInterrupt:
            console.print("[bold red]Operation cancelled by user.[/bold red]")
            logger.info("Operation cancelled by user")
            report_error = "Operation cancelled by user."
            return 1
        except DepbotError as exc:
            console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error(str(exc))
            report_error = str(exc)
            return 1
        except Exception as exc:
            console.print(f"[bold red]Unexpected error:[/bold red] {exc}")
            logger.exception("Unexpected error")
            report_error = str(exc)
            return 1
        finally:
            self.report_service.finalize(report_status, affected_pr_ids=affected, error=report_error)
