"""
Project test/lint command execution.

Commands come from project.env and may chain with && or pipes, so they
run through the shell in the project's work dir.
"""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 1800
OUTPUT_TAIL_LINES = 80


@dataclass
class CommandResult:
    ok: bool
    returncode: int
    output: str
    skipped: bool = False

    @property
    def tail(self) -> str:
        return "\n".join(self.output.splitlines()[-OUTPUT_TAIL_LINES:])


def run_project_command(cmd: str, cwd: Path, timeout: int = DEFAULT_COMMAND_TIMEOUT) -> CommandResult:
    """Run a configured project command. An empty command is a skipped success."""
    if not cmd.strip():
        return CommandResult(ok=True, returncode=0, output="", skipped=True)

    logger.info(f"Running: {cmd}")
    try:
        result = subprocess.run(
            cmd,
            shell=True,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return CommandResult(ok=False, returncode=-1, output=f"Command timed out after {timeout}s: {cmd}")

    return CommandResult(
        ok=result.returncode == 0,
        returncode=result.returncode,
        output=result.stdout + result.stderr,
    )
