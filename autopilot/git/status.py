"""Git status and diff operations."""

from pathlib import Path

from autopilot.git.runner import run_git


def has_uncommitted_changes(repo: Path) -> bool:
    """Check if repo has any uncommitted changes (staged, unstaged, or untracked)."""
    result = run_git(["status", "--porcelain"], repo)
    return bool(result.stdout.strip())


def get_conflicted_files(repo: Path) -> list[str]:
    """Get list of files with unresolved conflicts."""
    result = run_git(["diff", "--name-only", "--diff-filter=U"], repo)
    return [f.strip() for f in result.stdout.splitlines() if f.strip()]
