"""Thin wrapper around the Docker Compose command line.

Every call returns a :class:`CommandResult` so exit codes never leak past
this module.
"""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

logger = logging.getLogger(__name__)

COMMAND_FAILED = "command_failed"
COMMAND_NOT_FOUND = "command_not_found"
COMMAND_TIMEOUT = "timeout"

PULL_TIMEOUT = 1800
COMMAND_TIMEOUT_SECONDS = 300


class ComposeError(Exception):
    """A compose project could not be used (missing file, no services, no CLI)."""

    def __init__(self, code: str, message: str, path: Optional[str] = None):
        self.code = code
        self.message = message
        self.path = path
        super().__init__(message)


@dataclass
class CommandResult:
    """Typed outcome of one CLI invocation."""
    args: List[str]
    returncode: Optional[int] = 0
    stdout: str = ""
    stderr: str = ""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def run_command(args: Sequence[str], cwd: Optional[Union[str, Path]] = None,
                timeout: int = COMMAND_TIMEOUT_SECONDS) -> CommandResult:
    """Run a command and translate its exit status into a CommandResult."""
    args = list(args)
    logger.debug(f"Running: {' '.join(args)}")
    try:
        completed = subprocess.run(
            args,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=True
        )
        return CommandResult(args, completed.returncode, completed.stdout, completed.stderr)
    except subprocess.CalledProcessError as e:
        return CommandResult(args, e.returncode, e.stdout or "", e.stderr or "", COMMAND_FAILED)
    except subprocess.TimeoutExpired as e:
        return CommandResult(args, None, "", str(e), COMMAND_TIMEOUT)
    except FileNotFoundError as e:
        return CommandResult(args, None, "", str(e), COMMAND_NOT_FOUND)


def detect_compose_command() -> List[str]:
    """Return the compose command prefix, preferring ``docker compose`` (v2).

    Raises:
        ComposeError: neither ``docker compose`` nor ``docker-compose`` works
    """
    for candidate in (["docker", "compose"], ["docker-compose"]):
        if run_command(candidate + ["version"], timeout=30).ok:
            return candidate
    raise ComposeError("compose_not_found",
                       "Docker Compose not found. Install docker-compose or Docker Desktop.")


class ComposeCLI:
    """Runs compose commands for one project directory."""

    def __init__(self, project_dir: Union[str, Path], compose_file: Optional[Union[str, Path]] = None,
                 command: Optional[List[str]] = None):
        self.project_dir = Path(project_dir)
        self.compose_file = Path(compose_file) if compose_file else None
        self._command = command

    @property
    def command(self) -> List[str]:
        if self._command is None:
            self._command = detect_compose_command()
        return self._command

    def _compose(self, *args: str, timeout: int = COMMAND_TIMEOUT_SECONDS) -> CommandResult:
        base = list(self.command)
        if self.compose_file:
            base += ["-f", str(self.compose_file)]
        result = run_command(base + list(args), cwd=self.project_dir, timeout=timeout)
        if not result.ok:
            logger.debug(f"{' '.join(result.args)} failed ({result.error}): {result.stderr.strip()}")
        return result

    def describe(self, *args: str) -> str:
        """Human-readable command line, used for dry-run output."""
        return " ".join(self.command + list(args))

    def pull(self, services: Sequence[str]) -> CommandResult:
        return self._compose("pull", *services, timeout=PULL_TIMEOUT)

    def stop(self, services: Sequence[str]) -> CommandResult:
        return self._compose("stop", *services)

    def up(self, services: Sequence[str]) -> CommandResult:
        return self._compose("up", "-d", "--remove-orphans", *services)

    def ps(self) -> CommandResult:
        return self._compose("ps")

    def prune_images(self) -> CommandResult:
        """Remove dangling images left behind by the upgrade."""
        return run_command(["docker", "image", "prune", "-f"], cwd=self.project_dir)
