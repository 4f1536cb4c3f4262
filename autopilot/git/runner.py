"""Subprocess wrapper every git helper goes through."""

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
NETWORK_TIMEOUT = 120

# Never block on a credential prompt: the run is unattended
_GIT_ENV = {"GIT_TERMINAL_PROMPT": "0"}


@dataclass
class GitResult:
    """Outcome of one git invocation. Failure is data, not an exception."""
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def output(self) -> str:
        """Combined stdout/stderr, for log lines and error messages."""
        return (self.stdout + self.stderr).strip()

    @property
    def lines(self) -> list[str]:
        """Non-blank stdout lines, stripped."""
        return [line.strip() for line in self.stdout.splitlines() if line.strip()]


def run_git(
    args: list[str],
    cwd: Path,
    timeout: int = DEFAULT_TIMEOUT,
) -> GitResult:
    """Run ``git -C cwd <args>``. The caller checks ``.success``."""
    cmd = ["git", "-C", str(cwd)] + args
    logger.debug(f"git {' '.join(args)}")
    try:
        completed = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env={**os.environ, **_GIT_ENV},
        )
    except subprocess.TimeoutExpired:
        logger.warning(f"git {args[0]} timed out after {timeout}s")
        return GitResult(returncode=-1, stdout="", stderr=f"Command timed out after {timeout}s", timed_out=True)
    except FileNotFoundError:
        return GitResult(returncode=127, stdout="", stderr="git not found on PATH")

    if completed.returncode != 0:
        logger.debug(f"git {args[0]} exited {completed.returncode}: {completed.stderr.strip()}")
    return GitResult(
        returncode=completed.returncode,
        stdout=completed.stdout,
        stderr=completed.stderr,
    )
