"""
Claude CLI worker (production Worker).

One invocation per phase: the instruction payload goes to a temp file
(never a giant argv entry), the CLI is asked for stream-json on stdout,
and every line is fed to the EventStreamProcessor as it arrives.
"""

import logging
import os
import re
import subprocess
import tempfile
from collections import deque
from pathlib import Path

from autopilot.lib.constants import RATE_LIMIT_EXIT_CODE
from autopilot.lib.types import InvocationRequest, InvocationResult
from autopilot.runner.stream import EventStreamProcessor, PhaseAccumulator

logger = logging.getLogger(__name__)

PROMPT_FILE_PREFIX = "autopilot-prompt-"
OUTPUT_TAIL_LINES = 20

# Env vars that would make the child think it is nested or bill the wrong account
_STRIPPED_ENV = ("CLAUDECODE", "ANTHROPIC_API_KEY")

_RATE_LIMIT_RE = re.compile(r'rate.limit|usage limit|429|too many requests|overloaded', re.IGNORECASE)


def build_command(binary: str, prompt_file: Path, model: str, tools: str) -> list[str]:
    return [
        binary,
        "-p", f"Read the file {prompt_file} and follow ALL instructions within it exactly.",
        "--model", model,
        "--allowedTools", tools,
        "--output-format", "stream-json",
        "--verbose",
        "--dangerously-skip-permissions",
    ]


class ClaudeWorker:
    def __init__(self, cwd: Path, binary: str = "claude", dry_run: bool = False):
        self.cwd = cwd
        self.binary = binary
        self.dry_run = dry_run
        self.prompt_files: set[Path] = set()

    def _write_prompt(self, prompt: str) -> Path:
        fd, name = tempfile.mkstemp(prefix=PROMPT_FILE_PREFIX, suffix=".md")
        with os.fdopen(fd, "w") as f:
            f.write(prompt)
        path = Path(name)
        self.prompt_files.add(path)
        return path

    def _remove_prompt(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to remove prompt file {path}: {e}")
        self.prompt_files.discard(path)

    def cleanup(self) -> None:
        """Remove any prompt files still on disk (interrupt path)."""
        for path in list(self.prompt_files):
            self._remove_prompt(path)

    def invoke(
        self,
        request: InvocationRequest,
        processor: EventStreamProcessor,
        acc: PhaseAccumulator,
    ) -> InvocationResult:
        if self.dry_run:
            logger.info(
                f"[dry-run] {request.epic_id}/{request.phase}: {self.binary} --model {request.model} "
                f"--allowedTools {request.tools} ({len(request.prompt)} chars of instructions)"
            )
            return InvocationResult(exit_code=0, accumulator=acc, dry_run=True)

        prompt_file = self._write_prompt(request.prompt)
        cmd = build_command(self.binary, prompt_file, request.model, request.tools)
        env = {k: v for k, v in os.environ.items() if k not in _STRIPPED_ENV}
        tail: deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)

        try:
            try:
                proc = subprocess.Popen(
                    cmd,
                    cwd=str(self.cwd),
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    env=env,
                )
            except FileNotFoundError:
                logger.error(f"Worker binary not found: {self.binary}")
                return InvocationResult(exit_code=127, accumulator=acc, output_tail=[f"{self.binary} not found"])

            processor.pid = proc.pid
            try:
                for line in proc.stdout:
                    if not line.lstrip().startswith("{"):
                        tail.append(line.rstrip())
                    acc = processor.process_line(line, acc)
                exit_code = proc.wait()
            except BaseException:
                # Event log failures and interrupts must not leave the worker running
                proc.kill()
                proc.wait()
                raise
        finally:
            self._remove_prompt(prompt_file)

        if exit_code != 0 and exit_code != RATE_LIMIT_EXIT_CODE:
            evidence = " ".join(tail) + " " + acc.result_text
            if _RATE_LIMIT_RE.search(evidence):
                exit_code = RATE_LIMIT_EXIT_CODE

        if exit_code != 0:
            logger.warning(f"{request.epic_id}/{request.phase}: worker exited {exit_code}")
        return InvocationResult(exit_code=exit_code, accumulator=acc, output_tail=list(tail))
