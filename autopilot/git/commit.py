"""Git commit and merge operations."""

from pathlib import Path

from autopilot.git.runner import run_git, GitResult


def stage_files(repo: Path, files: list[str]) -> GitResult:
    """Stage specific files."""
    return run_git(["add", "--"] + files, repo)


def stage_all(repo: Path) -> GitResult:
    """Stage all changes (new, modified, deleted)."""
    return run_git(["add", "-A"], repo)


def commit(repo: Path, message: str) -> GitResult:
    """Create a commit with the given message."""
    return run_git(["commit", "-m", message], repo)


def merge_no_ff(repo: Path, branch: str, message: str) -> GitResult:
    """Three-way merge of branch into the current branch, always creating a merge commit."""
    return run_git(["merge", "--no-ff", branch, "-m", message], repo, timeout=120)


def merge_abort(repo: Path) -> GitResult:
    """Abort an in-progress merge."""
    return run_git(["merge", "--abort"], repo)
