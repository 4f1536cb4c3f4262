"""Git rebase operations."""

from pathlib import Path

from autopilot.git.runner import run_git, GitResult


def rebase(repo: Path, onto: str) -> GitResult:
    """Rebase the current branch onto a ref."""
    return run_git(["rebase", onto], repo, timeout=120)


def rebase_continue(repo: Path) -> GitResult:
    """Continue an in-progress rebase after conflicts were resolved and staged."""
    # core.editor=true keeps git from opening an editor for the commit message
    return run_git(["-c", "core.editor=true", "rebase", "--continue"], repo, timeout=120)


def rebase_abort(repo: Path) -> GitResult:
    """Abort an in-progress rebase, restoring the pre-rebase branch."""
    return run_git(["rebase", "--abort"], repo)
