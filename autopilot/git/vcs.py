"""VersionControl adapter over the git helper functions, bound to one repository."""

from importlib import import_module
from pathlib import Path

from autopilot.git.runner import GitResult
from autopilot.git import branch, remote, status

# The package re-exports functions named commit/rebase, which shadow the
# submodules as package attributes, so load the modules directly.
commit_ops = import_module("autopilot.git.commit")
rebase_ops = import_module("autopilot.git.rebase")


class GitVersionControl:
    """Production VersionControl: every call is a git subprocess in repo."""

    def __init__(self, repo: Path, remote_name: str = "origin"):
        self.repo = repo
        self.remote_name = remote_name

    def current_branch(self) -> str | None:
        return branch.get_current_branch(self.repo)

    def branch_exists(self, name: str) -> bool:
        return branch.branch_exists(self.repo, name)

    def remote_branch_exists(self, name: str) -> bool:
        return branch.remote_branch_exists(self.repo, name, self.remote_name)

    def has_remote(self) -> bool:
        return remote.has_remote(self.repo, self.remote_name)

    def checkout(self, name: str, create: bool = False) -> GitResult:
        return branch.checkout_branch(self.repo, name, create=create)

    def has_uncommitted_changes(self) -> bool:
        return status.has_uncommitted_changes(self.repo)

    def commit_files(self, files: list[str], message: str) -> GitResult:
        staged = commit_ops.stage_files(self.repo, files)
        if not staged.success:
            return staged
        return commit_ops.commit(self.repo, message)

    def commit_all(self, message: str) -> GitResult:
        staged = commit_ops.stage_all(self.repo)
        if not staged.success:
            return staged
        return commit_ops.commit(self.repo, message)

    def stage_all(self) -> GitResult:
        return commit_ops.stage_all(self.repo)

    def fetch(self, name: str) -> GitResult:
        return remote.fetch(self.repo, self.remote_name, name)

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        return branch.is_ancestor(self.repo, ancestor, descendant)

    def rebase(self, onto: str) -> GitResult:
        return rebase_ops.rebase(self.repo, onto)

    def rebase_continue(self) -> GitResult:
        return rebase_ops.rebase_continue(self.repo)

    def rebase_abort(self) -> GitResult:
        return rebase_ops.rebase_abort(self.repo)

    def conflicted_files(self) -> list[str]:
        return status.get_conflicted_files(self.repo)

    def push_with_lease(self, name: str) -> GitResult:
        return remote.push_with_lease(self.repo, name, self.remote_name)

    def merge_no_ff(self, name: str, message: str) -> GitResult:
        return commit_ops.merge_no_ff(self.repo, name, message)

    def merge_abort(self) -> GitResult:
        return commit_ops.merge_abort(self.repo)

    def pull(self) -> GitResult:
        return remote.pull(self.repo)

    def log_mentions(self, ref: str, pattern: str) -> bool:
        return branch.log_mentions(self.repo, ref, pattern)
