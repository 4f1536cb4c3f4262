"""Convergence tracking for iterative phases.

An iterative phase reports a count of open findings after every round.
The series has converged when the latest count is zero and has stalled
when the last ``window`` counts are equal and non-zero. What to do about
a stall is the caller's decision.
"""

from typing import Sequence


def is_stalled(counts: Sequence[int], window: int) -> bool:
    """Return True if the last ``window`` counts are equal and non-zero."""
    if window < 1:
        raise ValueError(f"window must be >= 1, got {window}")
    if len(counts) < window:
        return False
    if counts[-1] == 0:
        return False
    tail = counts[-window:]
    return all(c == tail[0] for c in tail)


class ConvergenceSeries:
    """Issue counts collected across rounds of one phase, held for one retry loop."""

    def __init__(self, window: int):
        self.window = window
        self.counts: list[int] = []

    def record(self, count: int) -> bool:
        """Append a round's count and return whether the series is now stalled."""
        if count < 0:
            raise ValueError(f"issue count must be non-negative, got {count}")
        self.counts.append(count)
        return self.stalled

    @property
    def stalled(self) -> bool:
        return is_stalled(self.counts, self.window)

    @property
    def converged(self) -> bool:
        return bool(self.counts) and self.counts[-1] == 0

    def __len__(self) -> int:
        return len(self.counts)

    def __repr__(self) -> str:
        return f"ConvergenceSeries({self.counts}, window={self.window})"
