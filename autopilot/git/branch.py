"""Git branch operations."""

from pathlib import Path

from autopilot.git.runner import run_git, GitResult


def get_current_branch(repo: Path) -> str | None:
    """Get the current branch name, or None if detached HEAD."""
    result = run_git(["branch", "--show-current"], repo)
    if result.success:
        return result.stdout.strip() or None
    return None


def branch_exists(repo: Path, branch: str) -> bool:
    """Check if a local branch exists."""
    result = run_git(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], repo)
    return result.success


def remote_branch_exists(repo: Path, branch: str, remote: str = "origin") -> bool:
    """Check if a remote-tracking branch exists."""
    result = run_git(["show-ref", "--verify", "--quiet", f"refs/remotes/{remote}/{branch}"], repo)
    return result.success


def checkout_branch(repo: Path, branch: str, create: bool = False) -> GitResult:
    """Checkout a branch, optionally creating it from HEAD."""
    args = ["checkout", "-b", branch] if create else ["checkout", branch]
    return run_git(args, repo)


def is_ancestor(repo: Path, ancestor: str, descendant: str) -> bool:
    """Check if ancestor is an ancestor of descendant."""
    result = run_git(["merge-base", "--is-ancestor", ancestor, descendant], repo)
    return result.success


def log_mentions(repo: Path, ref: str, pattern: str) -> bool:
    """Check whether any commit message reachable from ref matches pattern (case-insensitive regex)."""
    result = run_git(["log", ref, "--oneline", "-i", "-E", f"--grep={pattern}", "-n", "1"], repo, timeout=10)
    return result.success and bool(result.stdout.strip())
