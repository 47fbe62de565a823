"""Runs one job as an updater container behind a proxy sidecar."""

import json
import logging
import os
import subprocess
import tempfile
import threading
from collections import deque
from typing import Deque, Dict, Optional

from depbot.ecosystems import DEFAULT_PROXY_IMAGE
from depbot.errors import ContainerRuntimeError, DepbotError, JobTimeoutError
from depbot.errors_catalog import actionable_error
from depbot.models import JobDefinition, JobTokens
from depbot.services.credentials import credentials_metadata
from depbot.services.docker_runtime import managed_labels

UPDATER_HOME = "/home/dependabot/dependabot-updater"
JOB_PATH = f"{UPDATER_HOME}/job.json"
OUTPUT_PATH = f"{UPDATER_HOME}/output.json"
REPO_CONTENTS_PATH = f"{UPDATER_HOME}/repo"
PROXY_PORT = 1080
UPDATER_COMMAND = [
    "/bin/sh",
    "-c",
    "$DEPENDABOT_HOME/dependabot-updater/bin/run fetch_files"
    " && $DEPENDABOT_HOME/dependabot-updater/bin/run update_files",
]


class JobLogAdapter(logging.LoggerAdapter):
    """Prefixes every message with the job id."""

    def process(self, msg, kwargs):
        return f"[job {self.extra['job_id']}] {msg}", kwargs


class ContainerRunner:
    """Creates, streams and tears down the container pair of one job."""

    def __init__(
        self,
        docker,
        logger,
        proxy_image: str = DEFAULT_PROXY_IMAGE,
        timeout_seconds: Optional[float] = 3600,
        debug: bool = False,
        subprocess_module=subprocess,
    ):
        self.docker = docker
        self.logger = logger
        self.proxy_image = proxy_image
        self.timeout_seconds = timeout_seconds
        self.debug = debug
        self.subprocess = subprocess_module

    def run(self, job: JobDefinition, tokens: JobTokens, api_url: str):
        prefix = f"depbot-job-{job.id}"
        network = f"{prefix}-network"
        proxy = f"{prefix}-proxy"
        updater = f"{prefix}-updater"
        labels = managed_labels(job.id)
        job_logger = JobLogAdapter(self.logger, {"job_id": job.id})

        try:
            self.docker.create_network(network, labels, internal=True)
            self.docker.create_container(
                proxy,
                self.proxy_image,
                "bridge",
                env=self._proxy_env(job, tokens, api_url),
                labels=labels,
                extra_args=["--add-host", "host.docker.internal:host-gateway"],
            )
            self.docker.connect_network(network, proxy)
            self.docker.start_container(proxy)

            self.docker.create_container(
                updater,
                job.updater_image,
                network,
                env=self._updater_env(job, tokens, api_url, proxy),
                labels=labels,
                command=UPDATER_COMMAND,
            )
            self._copy_job_file(job, updater)

            job_logger.info("Running %s", job.updater_image)
            self._stream(job, updater, proxy, job_logger)

            exit_code, oom_killed = self.docker.inspect_state(updater)
            if oom_killed:
                raise ContainerRuntimeError(f"Updater container for job {job.id} was killed (out of memory).")
            if exit_code != 0:
                raise ContainerRuntimeError(f"Updater container for job {job.id} exited with code {exit_code}.")
            job_logger.info("Updater container finished.")
        finally:
            self._teardown(network, (updater, proxy), job_logger)

    def _stream(self, job: JobDefinition, updater: str, proxy: str, job_logger):
        expired = threading.Event()

        def expire():
            expired.set()
            job_logger.error("Job exceeded timeout of %.0f seconds, stopping containers.", self.timeout_seconds)
            self.docker.remove_container(updater)
            self.docker.remove_container(proxy)

        watchdog = None
        if self.timeout_seconds:
            watchdog = threading.Timer(self.timeout_seconds, expire)
            watchdog.daemon = True
            watchdog.start()

        last_lines: Deque[str] = deque(maxlen=40)
        try:
            try:
                process = self.subprocess.Popen(
                    self.docker.attach_command(updater),
                    stdout=self.subprocess.PIPE,
                    stderr=self.subprocess.STDOUT,
                    text=True,
                    bufsize=1,
                )
            except OSError as exc:
                raise ContainerRuntimeError(f"Failed to start updater container: {exc}") from exc

            if not process.stdout:
                raise ContainerRuntimeError("Updater process did not expose logs. Aborting.")

            for line in process.stdout:
                cleaned = line.rstrip()
                if not cleaned:
                    continue
                last_lines.append(cleaned)
                job_logger.info(cleaned)
            process.wait()
        finally:
            if watchdog is not None:
                watchdog.cancel()

        if expired.is_set():
            minutes = f"{self.timeout_seconds / 60:g}"
            raise JobTimeoutError(actionable_error("job_timeout", job_id=str(job.id), minutes=minutes))

        if process.returncode != 0 and last_lines:
            job_logger.debug("Recent updater logs:\n%s", "\n".join(last_lines))

    def _copy_job_file(self, job: JobDefinition, updater: str):
        details = dict(job.payload)
        details["credentials-metadata"] = credentials_metadata(job.credentials)
        fd, tmp_path = tempfile.mkstemp(prefix=f"depbot-job-{job.id}-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                json.dump({"job": details}, file_obj)
            self.docker.copy_to_container(tmp_path, updater, JOB_PATH)
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)

    def _updater_env(self, job: JobDefinition, tokens: JobTokens, api_url: str, proxy: str) -> Dict[str, str]:
        proxy_url = f"http://{proxy}:{PROXY_PORT}"
        env = {
            "DEPENDABOT_JOB_ID": str(job.id),
            "DEPENDABOT_JOB_TOKEN": tokens.job_token,
            "DEPENDABOT_API_URL": api_url,
            "DEPENDABOT_JOB_PATH": JOB_PATH,
            "DEPENDABOT_OUTPUT_PATH": OUTPUT_PATH,
            "DEPENDABOT_REPO_CONTENTS_PATH": REPO_CONTENTS_PATH,
            "UPDATER_DETERMINISTIC": "true",
            "http_proxy": proxy_url,
            "HTTP_PROXY": proxy_url,
            "https_proxy": proxy_url,
            "HTTPS_PROXY": proxy_url,
        }
        if self.debug:
            env["DEPENDABOT_DEBUG"] = "true"
        return env

    @staticmethod
    def _proxy_env(job: JobDefinition, tokens: JobTokens, api_url: str) -> Dict[str, str]:
        return {
            "JOB_ID": str(job.id),
            "JOB_TOKEN": tokens.credentials_token,
            "DEPENDABOT_API_URL": api_url,
        }

    def _teardown(self, network: str, containers, job_logger):
        for name in containers:
            try:
                self.docker.remove_container(name)
            except DepbotError as exc:
                job_logger.warning("Failed to remove container %s: %s", name, exc)
        try:
            self.docker.remove_network(network)
        except DepbotError as exc:
            job_logger.warning("Failed to remove network %s: %s", network, exc)
