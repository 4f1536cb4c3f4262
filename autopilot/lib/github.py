"""
GitHub integration via the gh CLI.

GitHubRemote is the production RemoteRepository: pull requests,
mergeability, and the review bot's verdicts. Every call is bounded by
GH_TIMEOUT_SECONDS and reports failure through its return value.
"""

import json
import logging
import re
import subprocess
from pathlib import Path

from .interfaces import APPROVED, CHANGES_REQUESTED, CONFLICTING, MERGEABLE, PENDING, UNKNOWN
from .types import FeedbackItem

logger = logging.getLogger(__name__)

# Timeout for GitHub CLI operations (seconds)
GH_TIMEOUT_SECONDS = 30

_PR_URL_RE = re.compile(r'/pull/(\d+)')


def check_gh_available() -> tuple[bool, str]:
    """Check gh CLI is installed and authenticated.

    Returns: (ok, error_message)
    """
    try:
        result = subprocess.run(
            ["gh", "--version"],
            capture_output=True,
            timeout=5,
        )
        if result.returncode != 0:
            return False, "GitHub CLI (gh) not installed"

        result = subprocess.run(
            ["gh", "auth", "status"],
            capture_output=True,
            text=True,
            timeout=10,
        )
        if result.returncode != 0:
            return False, "GitHub CLI not authenticated (run: gh auth login)"

        return True, ""

    except FileNotFoundError:
        return False, "GitHub CLI (gh) not found"
    except subprocess.TimeoutExpired:
        return False, "GitHub CLI timed out"


def parse_pr_number(url: str) -> int | None:
    """Extract the PR number from a gh pr create URL."""
    match = _PR_URL_RE.search(url or "")
    if match:
        return int(match.group(1))
    tail = (url or "").rstrip("/").split("/")[-1]
    return int(tail) if tail.isdigit() else None


class GitHubRemote:
    """Production RemoteRepository backed by gh."""

    def __init__(self, repo_path: Path):
        self.repo_path = repo_path
        self._available: bool | None = None

    def _gh(self, args: list[str]) -> tuple[bool, str]:
        """Run gh; returns (ok, stdout_or_error)."""
        try:
            result = subprocess.run(
                ["gh"] + args,
                capture_output=True,
                text=True,
                cwd=str(self.repo_path),
                timeout=GH_TIMEOUT_SECONDS,
            )
        except FileNotFoundError:
            return False, "gh not found"
        except subprocess.TimeoutExpired:
            return False, "GitHub operation timed out"
        except subprocess.SubprocessError as e:
            return False, f"GitHub operation failed: {e}"

        if result.returncode != 0:
            return False, result.stderr.strip()
        return True, result.stdout

    def _gh_json(self, args: list[str]):
        ok, out = self._gh(args)
        if not ok:
            logger.warning(f"gh {' '.join(args[:3])} failed: {out}")
            return None
        try:
            return json.loads(out) if out.strip() else None
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON from gh {' '.join(args[:3])}")
            return None

    def available(self) -> bool:
        if self._available is None:
            self._available, reason = check_gh_available()
            if not self._available:
                logger.info(f"Remote integration unavailable: {reason}")
        return self._available

    def find_or_create_pr(self, head: str, base: str, title: str, body: str) -> tuple[bool, int | None, str]:
        """Reuse an open PR for head->base, or create one.

        Returns: (success, pr_number, url_or_message)
        """
        existing = self._gh_json(["pr", "list", "--head", head, "--base", base, "--json", "number,url"])
        if existing:
            pr = existing[0]
            return True, pr.get("number"), pr.get("url", "existing")

        ok, out = self._gh(["pr", "create", "--base", base, "--head", head, "--title", title, "--body", body])
        if not ok:
            return False, None, f"Failed to create PR: {out}"
        url = out.strip().splitlines()[-1] if out.strip() else ""
        number = parse_pr_number(url)
        if number is None:
            return False, None, f"Could not parse PR number from: {url}"
        return True, number, url

    def pr_mergeable(self, pr_number: int) -> str:
        data = self._gh_json(["pr", "view", str(pr_number), "--json", "mergeable"])
        if not data:
            return UNKNOWN
        value = data.get("mergeable") or UNKNOWN
        return value if value in (MERGEABLE, CONFLICTING) else UNKNOWN

    def merge_pr(self, pr_number: int, subject: str) -> tuple[bool, str]:
        ok, out = self._gh(["pr", "merge", str(pr_number), "--merge", "--subject", subject])
        if not ok:
            return False, f"Failed to merge PR: {out}"
        return True, out.strip()

    def _head_sha(self, pr_number: int) -> str | None:
        data = self._gh_json(["pr", "view", str(pr_number), "--json", "headRefOid"])
        return data.get("headRefOid") if data else None

    def _bot_reviews(self, pr_number: int, reviewer: str) -> list[dict]:
        data = self._gh_json(["api", f"repos/{{owner}}/{{repo}}/pulls/{pr_number}/reviews"])
        if not isinstance(data, list):
            return []
        return [r for r in data if (r.get("user") or {}).get("login") == reviewer]

    def review_state(self, pr_number: int, reviewer: str) -> str:
        """Latest verdict from reviewer on the PR's current head commit."""
        head = self._head_sha(pr_number)
        reviews = self._bot_reviews(pr_number, reviewer)
        if head:
            reviews = [r for r in reviews if r.get("commit_id") == head]
        for review in reversed(reviews):
            state = review.get("state", "")
            if state in (APPROVED, CHANGES_REQUESTED):
                return state
        return PENDING

    def review_feedback(self, pr_number: int, reviewer: str) -> list[FeedbackItem]:
        """Review bodies plus inline comments left by reviewer."""
        items = []
        for review in self._bot_reviews(pr_number, reviewer):
            body = (review.get("body") or "").strip()
            if body and review.get("state") in (CHANGES_REQUESTED, "COMMENTED"):
                items.append(FeedbackItem(type="review", body=body, author=reviewer, state=review.get("state")))

        comments = self._gh_json(["api", f"repos/{{owner}}/{{repo}}/pulls/{pr_number}/comments"])
        for comment in comments or []:
            if (comment.get("user") or {}).get("login") != reviewer:
                continue
            items.append(FeedbackItem(
                type="line_comment",
                body=comment.get("body", ""),
                author=reviewer,
                path=comment.get("path"),
                line=comment.get("line"),
            ))
        return items
