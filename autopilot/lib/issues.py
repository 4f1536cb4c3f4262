"""
Issue-tracker sync (best-effort side channel).

Mirrors epic progress to a GitHub issue: opened with the epic, a comment
per phase transition, closed when the epic is done. Nothing here may
block or fail the run; every error is logged and dropped.
"""

import json
import logging
import subprocess
from pathlib import Path

from .epics import Epic
from .github import GH_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

ISSUE_LABEL = "epic"


class NullIssueTracker:
    """Used with --no-github or when gh is unavailable."""

    def open_epic(self, epic: Epic) -> None:
        pass

    def sync_phase(self, epic: Epic, phase: str) -> None:
        pass

    def close_epic(self, epic: Epic) -> None:
        pass


class GitHubIssueTracker:
    def __init__(self, repo_path: Path):
        self.repo_path = repo_path
        self._issues: dict[str, int] = {}

    def _gh(self, args: list[str]) -> str | None:
        try:
            result = subprocess.run(
                ["gh"] + args,
                capture_output=True,
                text=True,
                cwd=str(self.repo_path),
                timeout=GH_TIMEOUT_SECONDS,
            )
        except (FileNotFoundError, subprocess.SubprocessError) as e:
            logger.warning(f"Issue sync failed: {e}")
            return None
        if result.returncode != 0:
            logger.warning(f"Issue sync failed: gh {args[0]} {args[1] if len(args) > 1 else ''}: {result.stderr.strip()}")
            return None
        return result.stdout

    def _title(self, epic: Epic) -> str:
        return f"Epic {epic.id}: {epic.title}"

    def _find_issue(self, epic: Epic) -> int | None:
        if epic.id in self._issues:
            return self._issues[epic.id]
        out = self._gh(["issue", "list", "--state", "all", "--search", f"in:title \"Epic {epic.id}:\"",
                        "--json", "number,title"])
        if not out:
            return None
        try:
            for issue in json.loads(out):
                if issue.get("title", "").startswith(f"Epic {epic.id}:"):
                    self._issues[epic.id] = issue["number"]
                    return issue["number"]
        except (json.JSONDecodeError, KeyError, TypeError):
            logger.warning("Issue sync: invalid JSON from gh issue list")
        return None

    def open_epic(self, epic: Epic) -> None:
        if self._find_issue(epic) is not None:
            return
        out = self._gh(["issue", "create", "--title", self._title(epic),
                        "--body", f"Tracking issue for `{epic.source_file.name}`."])
        if out:
            number = out.strip().rstrip("/").split("/")[-1]
            if number.isdigit():
                self._issues[epic.id] = int(number)
                logger.info(f"Opened issue #{number} for epic {epic.id}")

    def sync_phase(self, epic: Epic, phase: str) -> None:
        number = self._find_issue(epic)
        if number is None:
            return
        self._gh(["issue", "comment", str(number), "--body", f"Phase: **{phase}**"])

    def close_epic(self, epic: Epic) -> None:
        number = self._find_issue(epic)
        if number is None:
            return
        self._gh(["issue", "close", str(number), "--comment", "Merged."])
