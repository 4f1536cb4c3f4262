"""
CodeRabbit CLI pre-submission reviewer (production CodeReviewer).

Runs `coderabbit review --prompt-only --base <base>` on the working tree
and turns its output into a ReviewReport. A failing or rate-limited run
is reported as skipped, never as an error: the review is optional.
"""

import logging
import re
import shutil
import subprocess
from pathlib import Path

from .types import ReviewReport

logger = logging.getLogger(__name__)

CODERABBIT_TIMEOUT_SECONDS = 600

_RATE_LIMIT_RE = re.compile(r'rate.limit|429|too many requests', re.IGNORECASE)
_CLEAN_RE = re.compile(r'no issues|no problems|looks good|no suggestions|no findings', re.IGNORECASE)
_ISSUE_LINE_RE = re.compile(r'^\s*(?:[-*•]|\d+[.)])\s+\S')

# Output this short carries no actionable findings
MIN_FINDINGS_OUTPUT = 50


def count_issues(output: str) -> int:
    """Bulleted or numbered lines in the review output; at least 1 for non-clean output."""
    count = sum(1 for line in output.splitlines() if _ISSUE_LINE_RE.match(line))
    return max(count, 1)


def parse_review_output(returncode: int, output: str) -> ReviewReport:
    text = output.strip()
    if _RATE_LIMIT_RE.search(text):
        return ReviewReport(ran=False, output=text, reason="rate limited")
    if returncode != 0:
        return ReviewReport(ran=False, output=text, reason=f"exit {returncode}")
    if not text or len(text) < MIN_FINDINGS_OUTPUT or _CLEAN_RE.search(text):
        return ReviewReport(ran=True, clean=True, output=text)
    return ReviewReport(ran=True, clean=False, issue_count=count_issues(text), output=text)


class CodeRabbitCLI:
    def __init__(self, repo_path: Path, binary: str = "coderabbit"):
        self.repo_path = repo_path
        self.binary = binary

    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    def review(self, base: str) -> ReviewReport:
        cmd = [self.binary, "review", "--prompt-only", "--base", base]
        try:
            result = subprocess.run(
                cmd,
                cwd=str(self.repo_path),
                capture_output=True,
                text=True,
                timeout=CODERABBIT_TIMEOUT_SECONDS,
            )
        except FileNotFoundError:
            return ReviewReport(ran=False, reason="coderabbit not found")
        except subprocess.TimeoutExpired:
            return ReviewReport(ran=False, reason=f"timed out after {CODERABBIT_TIMEOUT_SECONDS}s")

        report = parse_review_output(result.returncode, result.stdout + result.stderr)
        if not report.ran:
            logger.info(f"CodeRabbit review skipped: {report.reason}")
        return report
