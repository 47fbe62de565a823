"""Docker CLI invocation for depbot."""

import subprocess
import time
from typing import List, Optional

from depbot.errors import ContainerRuntimeError


def render_command(cmd: List[str]) -> str:
    """Renders a command for logs without the values of `--env NAME=VALUE` pairs."""
    rendered: List[str] = []
    hide_next = False
    for part in cmd:
        if hide_next and "=" in part:
            name = part.split("=", 1)[0]
            rendered.append(f"{name}=***")
        else:
            rendered.append(part)
        hide_next = part in ("-e", "--env")
    return " ".join(rendered)


class CommandRunner:
    """Runs docker CLI commands, translating failures into depbot errors."""

    def __init__(self, logger, default_timeout: Optional[float] = None, subprocess_module=subprocess):
        self.logger = logger
        self.default_timeout = default_timeout
        self.subprocess = subprocess_module

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = False,
        timeout: Optional[float] = None,
        retry_count: int = 0,
        retry_backoff_seconds: float = 0.0,
        error_class=ContainerRuntimeError,
    ) -> subprocess.CompletedProcess:
        """Runs `cmd`, retrying non-zero exits up to `retry_count` times. Timeouts are not retried."""
        cmd_str = render_command(cmd)
        attempts = max(1, retry_count + 1)

        for attempt in range(1, attempts + 1):
            result = self._attempt(cmd, cmd_str, capture_output, timeout, error_class)
            if result.returncode == 0:
                return result

            message = f"Command failed ({result.returncode}): {cmd_str}"
            stderr = (result.stderr or "").strip() if capture_output else ""
            if stderr:
                message += f"\n{stderr}"

            if attempt < attempts:
                self.logger.warning(
                    "Attempt %s/%s failed, retrying in %.1fs.\n%s",
                    attempt,
                    attempts,
                    retry_backoff_seconds,
                    message,
                )
                time.sleep(retry_backoff_seconds)
                continue

            if check:
                raise error_class(message)
            self.logger.debug(message)
            return result

    def _attempt(self, cmd: List[str], cmd_str: str, capture_output: bool, timeout, error_class):
        self.logger.debug("Executing: %s", cmd_str)
        limit = self.default_timeout if timeout is None else timeout
        try:
            result = self.subprocess.run(cmd, text=True, capture_output=capture_output, timeout=limit)
        except FileNotFoundError as exc:
            raise error_class(f"Required command not found: {cmd[0]}. Please install it and try again.") from exc
        except subprocess.TimeoutExpired as exc:
            raise error_class(f"Command timed out after {limit}s: {cmd_str}") from exc
        except OSError as exc:
            raise error_class(f"Failed to execute command: {cmd_str}. {exc}") from exc

        if capture_output and result.stdout:
            self.logger.debug("Command output: %s", result.stdout.strip())
        return result
