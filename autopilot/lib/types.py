"""
Shared data types for the autopilot.

Dataclasses passed across the capability interfaces, kept here to
avoid circular imports between the engine and its adapters.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .constants import RATE_LIMIT_EXIT_CODE

if TYPE_CHECKING:
    from autopilot.runner.stream import PhaseAccumulator


@dataclass
class FeedbackItem:
    """A single piece of review feedback from the remote reviewer."""
    type: str  # "review", "line_comment"
    body: str
    path: str | None = None
    line: int | None = None
    author: str | None = None
    state: str | None = None  # For reviews: "APPROVED", "CHANGES_REQUESTED", "COMMENTED"

    def render(self) -> str:
        where = f"{self.path}:{self.line}: " if self.path else ""
        return f"- {where}{self.body.strip()}"


@dataclass
class ReviewReport:
    """Outcome of one pre-submission review run."""
    ran: bool  # False when the reviewer was skipped (failure, rate limit)
    clean: bool = False
    issue_count: int = 0
    output: str = ""
    reason: str = ""


@dataclass
class InvocationRequest:
    """One worker invocation for one phase of one epic."""
    epic_id: str
    phase: str
    model: str
    tools: str  # Comma-separated allow-list
    prompt: str


@dataclass
class InvocationResult:
    exit_code: int
    accumulator: "PhaseAccumulator"
    dry_run: bool = False
    output_tail: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.accumulator.is_error

    @property
    def rate_limited(self) -> bool:
        return self.exit_code == RATE_LIMIT_EXIT_CODE
