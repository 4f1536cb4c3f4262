"""Git remote operations."""

from pathlib import Path

from autopilot.git.runner import run_git, GitResult, NETWORK_TIMEOUT


def has_remote(repo: Path, remote: str = "origin") -> bool:
    """Check if the named remote is configured."""
    result = run_git(["remote"], repo)
    return remote in result.stdout.split()


def fetch(repo: Path, remote: str = "origin", branch: str | None = None) -> GitResult:
    """Fetch from remote."""
    args = ["fetch", remote]
    if branch:
        args.append(branch)
    return run_git(args, repo, timeout=NETWORK_TIMEOUT)


def push_with_lease(repo: Path, branch: str, remote: str = "origin") -> GitResult:
    """Push branch with upstream tracking, refusing to clobber unseen remote work."""
    return run_git(["push", "-u", remote, branch, "--force-with-lease"], repo, timeout=NETWORK_TIMEOUT)


def pull(repo: Path) -> GitResult:
    """Pull the current branch."""
    return run_git(["pull"], repo, timeout=NETWORK_TIMEOUT)
