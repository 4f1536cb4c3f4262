"""
Capability interfaces the engine depends on.

Every external side effect (version control, the remote host, the
pre-submission reviewer, the issue tracker, the worker) goes through one
of these. Production adapters shell out; tests pass in-memory fakes.
"""

from typing import Protocol, TYPE_CHECKING

from .types import FeedbackItem, InvocationRequest, InvocationResult, ReviewReport

if TYPE_CHECKING:
    from autopilot.git.runner import GitResult
    from autopilot.lib.epics import Epic
    from autopilot.runner.stream import EventStreamProcessor, PhaseAccumulator


# Tri-state mergeability and review states, as reported by the remote
MERGEABLE = "MERGEABLE"
CONFLICTING = "CONFLICTING"
UNKNOWN = "UNKNOWN"

APPROVED = "APPROVED"
CHANGES_REQUESTED = "CHANGES_REQUESTED"
PENDING = "PENDING"


class VersionControl(Protocol):
    def current_branch(self) -> str | None: ...

    def branch_exists(self, branch: str) -> bool: ...

    def remote_branch_exists(self, branch: str) -> bool: ...

    def has_remote(self) -> bool: ...

    def checkout(self, branch: str, create: bool = False) -> "GitResult": ...

    def has_uncommitted_changes(self) -> bool: ...

    def commit_files(self, files: list[str], message: str) -> "GitResult": ...

    def commit_all(self, message: str) -> "GitResult": ...

    def stage_all(self) -> "GitResult": ...

    def fetch(self, branch: str) -> "GitResult": ...

    def is_ancestor(self, ancestor: str, descendant: str) -> bool: ...

    def rebase(self, onto: str) -> "GitResult": ...

    def rebase_continue(self) -> "GitResult": ...

    def rebase_abort(self) -> "GitResult": ...

    def conflicted_files(self) -> list[str]: ...

    def push_with_lease(self, branch: str) -> "GitResult": ...

    def merge_no_ff(self, branch: str, message: str) -> "GitResult": ...

    def merge_abort(self) -> "GitResult": ...

    def pull(self) -> "GitResult": ...

    def log_mentions(self, ref: str, pattern: str) -> bool: ...


class RemoteRepository(Protocol):
    def available(self) -> bool: ...

    def find_or_create_pr(self, head: str, base: str, title: str, body: str) -> tuple[bool, int | None, str]: ...

    def pr_mergeable(self, pr_number: int) -> str: ...

    def merge_pr(self, pr_number: int, subject: str) -> tuple[bool, str]: ...

    def review_state(self, pr_number: int, reviewer: str) -> str: ...

    def review_feedback(self, pr_number: int, reviewer: str) -> list[FeedbackItem]: ...


class CodeReviewer(Protocol):
    def available(self) -> bool: ...

    def review(self, base: str) -> ReviewReport: ...


class IssueTracker(Protocol):
    def open_epic(self, epic: "Epic") -> None: ...

    def sync_phase(self, epic: "Epic", phase: str) -> None: ...

    def close_epic(self, epic: "Epic") -> None: ...


class Worker(Protocol):
    def invoke(
        self,
        request: InvocationRequest,
        processor: "EventStreamProcessor",
        acc: "PhaseAccumulator",
    ) -> InvocationResult: ...

    def cleanup(self) -> None: ...
