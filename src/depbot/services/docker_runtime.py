"""Docker runtime services for depbot."""

import re
from typing import Dict, List, Optional, Sequence, Tuple

from depbot.errors import ConfigurationError, ContainerRuntimeError, ImagePullError
from depbot.errors_catalog import actionable_error

MANAGED_LABEL = "depbot.managed"
JOB_ID_LABEL = "depbot.job-id"
CUTOFF_PATTERN = re.compile(r"^\s*(\d+)\s*([smhdw])\s*$")
CUTOFF_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}


def parse_cutoff(value: str) -> int:
    """Converts a duration such as `24h` or `7d` into seconds."""
    match = CUTOFF_PATTERN.match(str(value or "").lower())
    if not match:
        raise ConfigurationError(
            f"Invalid cutoff '{value}'. Use a number followed by one of s, m, h, d or w (e.g. 24h, 7d)."
        )
    return int(match.group(1)) * CUTOFF_UNITS[match.group(2)]


def managed_labels(job_id: Optional[int] = None) -> Dict[str, str]:
    labels = {MANAGED_LABEL: "true"}
    if job_id is not None:
        labels[JOB_ID_LABEL] = str(job_id)
    return labels


class DockerRuntimeService:
    """Wraps the docker CLI calls needed to run updater and proxy containers."""

    def __init__(self, logger, console, command_runner):
        self.logger = logger
        self.console = console
        self.runner = command_runner

    def validate_environment(self):
        self.console.print("[blue]Validating Docker environment...[/blue]")
        try:
            self.runner.run(["docker", "version", "--format", "{{.Server.Version}}"], capture_output=True)
        except ContainerRuntimeError as exc:
            raise ContainerRuntimeError(actionable_error("docker_unavailable")) from exc
        self.console.print("[green]Docker is available.[/green]")

    def image_exists(self, image: str) -> bool:
        result = self.runner.run(["docker", "image", "inspect", image], check=False, capture_output=True)
        return result.returncode == 0

    def ensure_image(
        self,
        image: str,
        force_pull: bool = False,
        retry_count: int = 2,
        retry_backoff_seconds: float = 5.0,
    ):
        if not force_pull and self.image_exists(image):
            self.logger.debug("Image %s is available locally.", image)
            return

        self.console.print(f"[blue]Pulling image {image}...[/blue]")
        try:
            self.runner.run(
                ["docker", "pull", image],
                capture_output=True,
                retry_count=retry_count,
                retry_backoff_seconds=retry_backoff_seconds,
                error_class=ImagePullError,
            )
        except ImagePullError as exc:
            raise ImagePullError(f"{actionable_error('image_pull_failed', image=image)} ({exc})") from exc
        self.logger.info("Pulled image %s", image)

    def create_network(self, name: str, labels: Dict[str, str], internal: bool = True):
        cmd = ["docker", "network", "create"]
        if internal:
            cmd.append("--internal")
        cmd += self._label_args(labels)
        cmd.append(name)
        self.runner.run(cmd, capture_output=True)

    def remove_network(self, name: str):
        self.runner.run(["docker", "network", "rm", name], check=False, capture_output=True)

    def create_container(
        self,
        name: str,
        image: str,
        network: str,
        env: Dict[str, str],
        labels: Dict[str, str],
        command: Optional[Sequence[str]] = None,
        extra_args: Optional[Sequence[str]] = None,
    ):
        cmd = ["docker", "create", "--name", name, "--network", network]
        cmd += self._label_args(labels)
        for key, value in env.items():
            cmd += ["--env", f"{key}={value}"]
        cmd += list(extra_args or [])
        cmd.append(image)
        cmd += list(command or [])
        self.runner.run(cmd, capture_output=True)

    def connect_network(self, network: str, container: str):
        self.runner.run(["docker", "network", "connect", network, container], capture_output=True)

    def copy_to_container(self, source: str, container: str, destination: str):
        self.runner.run(["docker", "cp", source, f"{container}:{destination}"], capture_output=True)

    def start_container(self, name: str):
        self.runner.run(["docker", "start", name], capture_output=True)

    def attach_command(self, name: str) -> List[str]:
        return ["docker", "start", "--attach", name]

    def inspect_state(self, name: str) -> Tuple[int, bool]:
        """Returns the exit code and OOM flag of a stopped container."""
        result = self.runner.run(
            ["docker", "inspect", "--format", "{{.State.ExitCode}} {{.State.OOMKilled}}", name],
            check=False,
            capture_output=True,
        )
        if result.returncode != 0:
            raise ContainerRuntimeError(f"Could not inspect container {name}.")

        parts = (result.stdout or "").split()
        try:
            exit_code = int(parts[0]) if parts else 1
        except ValueError as exc:
            raise ContainerRuntimeError(f"Invalid exit code from inspect: {result.stdout}") from exc
        oom_killed = len(parts) > 1 and parts[1].lower() == "true"
        return exit_code, oom_killed

    def remove_container(self, name: str):
        self.runner.run(["docker", "rm", "--force", name], check=False, capture_output=True)

    def cleanup(self, cutoff: str = "24h"):
        seconds = parse_cutoff(cutoff)
        self.console.print(f"[dim]Removing depbot containers and networks older than {cutoff}...[/dim]")
        self.logger.info("Cleaning up Docker resources older than %s", cutoff)

        label_filter = ["--filter", f"label={MANAGED_LABEL}=true"]
        until_filter = ["--filter", f"until={seconds}s"]
        self.runner.run(
            ["docker", "container", "prune", "--force"] + label_filter + until_filter,
            check=False,
            capture_output=True,
        )
        self.runner.run(
            ["docker", "network", "prune", "--force"] + label_filter + until_filter,
            check=False,
            capture_output=True,
        )
        self.runner.run(
            ["docker", "image", "prune", "--force"] + until_filter,
            check=False,
            capture_output=True,
        )

    @staticmethod
    def _label_args(labels: Dict[str, str]) -> List[str]:
        args: List[str] = []
        for key, value in labels.items():
            args += ["--label", f"{key}={value}"]
        return args
