import logging
import os

import click
from rich.console import Console
from rich.logging import RichHandler

from .core import UpdateOrchestrator
from .ecosystems import DEFAULT_PROXY_IMAGE, DEFAULT_UPDATER_IMAGE, Ecosystem, parse_ecosystem, updater_image_for
from .errors import DepbotError
from .services.azure_devops import AzureDevOpsClient, parse_organisation_url
from .services.command_runner import CommandRunner
from .services.config_loader import CONFIG_FILE_PATHS, ConfigLoader
from .services.credentials import EnvironmentSecretLookup, SecretMasker
from .services.docker_runtime import DockerRuntimeService
from .services.job_builder import parse_experiments
from .services.schedule import generate_cron, next_run
from .services.settings_loader import SettingsLoader

DEFAULT_SETTINGS_FILE = ".depbot.yml"

console = Console()
logger = logging.getLogger("depbot")


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None and cli_value != ():
        return cli_value
    if key in config:
        return config[key]
    return default


def _as_list(value):
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [item.strip() for item in str(value).split(",") if item.strip()]


def _load_settings(settings):
    resolved = settings
    if resolved is None:
        default_path = os.path.join(os.getcwd(), DEFAULT_SETTINGS_FILE)
        if os.path.exists(default_path):
            resolved = default_path
    try:
        return SettingsLoader().load(resolved)
    except DepbotError as exc:
        raise click.ClickException(str(exc)) from exc


def _configure_logging(debug, log_file, masker):
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if debug else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)

    for handler in logging.getLogger().handlers + logger.handlers:
        if masker not in handler.filters:
            handler.addFilter(masker)


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


@click.group()
def cli():
    """Run dependabot update jobs against Azure DevOps repositories."""


@cli.command()
@click.option("--organisation-url", required=False, help="Azure DevOps organisation URL.")
@click.option("--project", required=False, help="Azure DevOps project name.")
@click.option("--repository", required=False, help="Repository name.")
@click.option("--git-token", required=False, envvar="DEPBOT_GIT_TOKEN", help="Azure DevOps personal access token.")
@click.option(
    "--github-token",
    required=False,
    envvar="DEPBOT_GITHUB_TOKEN",
    help="GitHub token used by updaters for changelogs and rate limits.",
)
@click.option("--auto-approve", is_flag=True, default=None, help="Approve pull requests after creating them.")
@click.option("--auto-approve-token", required=False, help="Token of the identity approving pull requests.")
@click.option("--set-auto-complete", is_flag=True, default=None, help="Set auto-complete on created pull requests.")
@click.option(
    "--merge-strategy",
    required=False,
    type=click.Choice(["noFastForward", "squash", "rebase", "rebaseMerge"]),
    help="Merge strategy used for auto-complete (default: squash).",
)
@click.option(
    "--auto-complete-ignore-config-ids",
    multiple=True,
    type=int,
    help="Policy configuration ids to bypass when auto-completing. Repeatable.",
)
@click.option("--author-name", required=False, help="Commit author name (default: dependabot[bot]).")
@click.option("--author-email", required=False, help="Commit author email (default: noreply@github.com).")
@click.option(
    "--target-update-ids",
    multiple=True,
    type=int,
    help="Zero based indexes of the update directives to run. Repeatable.",
)
@click.option("--experiments", required=False, help="Updater experiments as 'name=value,other=value'.")
@click.option(
    "--updater-image",
    required=False,
    help=f"Updater image template, must contain '{{ecosystem}}' (default: {DEFAULT_UPDATER_IMAGE}).",
)
@click.option("--proxy-image", required=False, help=f"Proxy image (default: {DEFAULT_PROXY_IMAGE}).")
@click.option("--port", required=False, type=int, default=None, help="Job API port (default: random free port).")
@click.option("--debug", is_flag=True, default=None, help="Enable debug logging for depbot and updaters.")
@click.option("--dry-run", is_flag=True, default=None, help="Run updaters without changing pull requests.")
@click.option(
    "--config-file",
    required=False,
    type=click.Path(),
    help="Local dependabot.yml to use instead of the one in the repository.",
)
@click.option(
    "--security-advisories-file",
    required=False,
    type=click.Path(),
    help="JSON file with security advisories for security-only updates.",
)
@click.option("--max-workers", required=False, type=int, default=None, help="Directories updated concurrently.")
@click.option(
    "--job-timeout-minutes",
    required=False,
    type=float,
    default=None,
    help="Timeout for each update job in minutes (default: 60).",
)
@click.option("--job-token-override", required=False, help="Fixed job token instead of a random one.")
@click.option("--credentials-token-override", required=False, help="Fixed credentials token instead of a random one.")
@click.option("--report-file", required=False, type=click.Path(), help="Path of the JSON run report.")
@click.option("--log-file", required=False, type=click.Path(), help="Path to log file")
@click.option(
    "--settings",
    required=False,
    type=click.Path(),
    help=f"YAML file with defaults for these options. Defaults to {DEFAULT_SETTINGS_FILE} if present.",
)
def run(
    organisation_url,
    project,
    repository,
    git_token,
    github_token,
    auto_approve,
    auto_approve_token,
    set_auto_complete,
    merge_strategy,
    auto_complete_ignore_config_ids,
    author_name,
    author_email,
    target_update_ids,
    experiments,
    updater_image,
    proxy_image,
    port,
    debug,
    dry_run,
    config_file,
    security_advisories_file,
    max_workers,
    job_timeout_minutes,
    job_token_override,
    credentials_token_override,
    report_file,
    log_file,
    settings,
):
    """Run the update jobs of one repository."""
    values = _load_settings(settings)

    organisation_url = _resolve_option(organisation_url, values, "organisation_url")
    project = _resolve_option(project, values, "project")
    repository = _resolve_option(repository, values, "repository")
    git_token = _resolve_option(git_token, values, "git_token")
    github_token = _resolve_option(github_token, values, "github_token")
    auto_approve = bool(_resolve_option(auto_approve, values, "auto_approve", default=False))
    auto_approve_token = _resolve_option(auto_approve_token, values, "auto_approve_token")
    set_auto_complete = bool(_resolve_option(set_auto_complete, values, "set_auto_complete", default=False))
    merge_strategy = _resolve_option(merge_strategy, values, "merge_strategy", default="squash")
    ignore_config_ids = [
        int(item)
        for item in _as_list(
            _resolve_option(auto_complete_ignore_config_ids, values, "auto_complete_ignore_config_ids")
        )
    ]
    author_name = _resolve_option(author_name, values, "author_name")
    author_email = _resolve_option(author_email, values, "author_email")
    update_ids = [int(item) for item in _as_list(_resolve_option(target_update_ids, values, "target_update_ids"))]
    experiments = _resolve_option(experiments, values, "experiments")
    updater_image = _resolve_option(updater_image, values, "updater_image", default=DEFAULT_UPDATER_IMAGE)
    proxy_image = _resolve_option(proxy_image, values, "proxy_image", default=DEFAULT_PROXY_IMAGE)
    port = int(_resolve_option(port, values, "port", default=0))
    debug = bool(_resolve_option(debug, values, "debug", default=False))
    dry_run = bool(_resolve_option(dry_run, values, "dry_run", default=False))
    config_file = _resolve_option(config_file, values, "config_file")
    security_advisories_file = _resolve_option(security_advisories_file, values, "security_advisories_file")
    max_workers = int(_resolve_option(max_workers, values, "max_workers", default=1))
    job_timeout_minutes = float(_resolve_option(job_timeout_minutes, values, "job_timeout_minutes", default=60))
    job_token_override = _resolve_option(job_token_override, values, "job_token_override")
    credentials_token_override = _resolve_option(credentials_token_override, values, "credentials_token_override")
    report_file = _resolve_option(report_file, values, "report_file")
    log_file = _resolve_option(log_file, values, "log_file")

    for name, value in (
        ("--organisation-url", organisation_url),
        ("--project", project),
        ("--repository", repository),
    ):
        if not value:
            raise click.ClickException(f"Missing required option '{name}' (or provide it in settings).")

    masker = SecretMasker()
    for secret in (job_token_override, credentials_token_override):
        masker.add(secret)
    _configure_logging(debug, log_file, masker)

    try:
        if isinstance(experiments, dict):
            experiment_values = experiments
        else:
            experiment_values = parse_experiments(experiments)
        orchestrator = UpdateOrchestrator(
            organisation_url=organisation_url,
            project=project,
            repository=repository,
            git_token=git_token,
            github_token=github_token,
            auto_approve=auto_approve,
            auto_approve_token=auto_approve_token,
            set_auto_complete=set_auto_complete,
            merge_strategy=merge_strategy,
            auto_complete_ignore_config_ids=ignore_config_ids,
            author_name=author_name,
            author_email=author_email,
            target_update_ids=update_ids,
            experiments=experiment_values,
            updater_image=updater_image,
            proxy_image=proxy_image,
            port=port,
            debug=debug,
            dry_run=dry_run,
            config_file=config_file,
            security_advisories_file=security_advisories_file,
            max_workers=max_workers,
            job_timeout_minutes=job_timeout_minutes,
            job_token_override=job_token_override,
            credentials_token_override=credentials_token_override,
            report_file=report_file,
            masker=masker,
        )
    except DepbotError as exc:
        raise click.ClickException(str(exc)) from exc

    raise SystemExit(orchestrator.run())


@cli.command()
@click.option("--config-file", required=False, type=click.Path(), help="Local dependabot.yml to validate.")
@click.option("--organisation-url", required=False, help="Azure DevOps organisation URL.")
@click.option("--project", required=False, help="Azure DevOps project name.")
@click.option("--repository", required=False, help="Repository name.")
@click.option("--git-token", required=False, envvar="DEPBOT_GIT_TOKEN", help="Azure DevOps personal access token.")
@click.option("--settings", required=False, type=click.Path(), help="YAML file with defaults for these options.")
def validate(config_file, organisation_url, project, repository, git_token, settings):
    """Validate a dependabot.yml and show when each update runs."""
    values = _load_settings(settings)
    config_file = _resolve_option(config_file, values, "config_file")
    loader = ConfigLoader(secret_lookup=EnvironmentSecretLookup())

    try:
        if config_file:
            config, text = loader.load(config_file)
        else:
            organisation_url = _resolve_option(organisation_url, values, "organisation_url")
            project = _resolve_option(project, values, "project")
            repository = _resolve_option(repository, values, "repository")
            git_token = _resolve_option(git_token, values, "git_token")
            if not (organisation_url and project and repository and git_token):
                raise click.ClickException(
                    "Provide --config-file, or --organisation-url, --project, --repository and --git-token."
                )
            client = AzureDevOpsClient(parse_organisation_url(organisation_url, project, repository), git_token, logger)
            text, source = None, None
            for path in CONFIG_FILE_PATHS:
                text = client.get_file_contents(path)
                if text:
                    source = path
                    break
            if not text:
                raise click.ClickException(f"No configuration file found at {', '.join(CONFIG_FILE_PATHS)}.")
            config = loader.parse(text, source=source)

        for index, directive in enumerate(config.updates):
            console.print(
                f"[bold]#{index}[/bold] {directive.directory_key} ({directive.package_manager}) "
                f"cron='{generate_cron(directive.schedule)}' next={next_run(directive.schedule).isoformat()}"
            )
        unresolved = loader.unresolved_placeholders(text)
    except DepbotError as exc:
        console.print(f"[bold red]Invalid configuration:[/bold red] {exc}")
        raise SystemExit(1)

    if unresolved:
        console.print(f"[bold red]Unresolved placeholders:[/bold red] {', '.join(unresolved)}")
        raise SystemExit(1)
    console.print(f"[green]Configuration is valid ({len(config.updates)} update(s)).[/green]")


@cli.command()
@click.option("--cutoff", default="24h", show_default=True, help="Remove resources older than this (s/m/h/d/w).")
def cleanup(cutoff):
    """Remove leftover depbot containers, networks and images."""
    runtime = DockerRuntimeService(logger=logger, console=console, command_runner=CommandRunner(logger=logger))
    try:
        runtime.validate_environment()
        runtime.cleanup(cutoff)
    except DepbotError as exc:
        raise click.ClickException(str(exc)) from exc
    console.print("[green]Cleanup finished.[/green]")


@cli.command(name="fetch-images")
@click.option(
    "--ecosystem",
    "ecosystems",
    multiple=True,
    type=click.Choice([ecosystem.value for ecosystem in Ecosystem]),
    help="Ecosystem whose updater image to pull. Repeatable; defaults to all.",
)
@click.option("--updater-image", default=DEFAULT_UPDATER_IMAGE, show_default=True, help="Updater image template.")
@click.option("--proxy-image", default=DEFAULT_PROXY_IMAGE, show_default=True, help="Proxy image.")
def fetch_images(ecosystems, updater_image, proxy_image):
    """Pull the updater and proxy images ahead of a run."""
    runtime = DockerRuntimeService(logger=logger, console=console, command_runner=CommandRunner(logger=logger))
    selected = [parse_ecosystem(value) for value in ecosystems] or list(Ecosystem)
    try:
        runtime.validate_environment()
        images = [updater_image_for(ecosystem, updater_image) for ecosystem in selected] + [proxy_image]
        images = list(dict.fromkeys(images))
        for image in images:
            runtime.ensure_image(image, force_pull=True)
    except DepbotError as exc:
        raise click.ClickException(str(exc)) from exc
    console.print(f"[green]Fetched {len(images)} image(s).[/green]")


if __name__ == "__main__":
    cli()
