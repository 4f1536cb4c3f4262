"""
tasks.md / spec.md parsing for the autopilot.

Counts checkbox task lines, groups them into implementation phases
("## Phase N" headings), and counts open findings used as the
convergence observation for iterative phases.
"""

import re
from dataclasses import dataclass
from pathlib import Path

from .constants import CHECKED_RE, UNCHECKED_RE

PHASE_HEADING_RE = re.compile(r'^###?\s*Phase\s+(\d+)', re.IGNORECASE)
NEEDS_CLARIFICATION_RE = re.compile(r'\[NEEDS CLARIFICATION', re.IGNORECASE)
FINDING_TASK_RE = re.compile(r'^- \[ \].*\[FINDING\]', re.MULTILINE)
FINDING_MARKER_RE = re.compile(r'<!--\s*FINDING', re.IGNORECASE)


@dataclass
class TaskCounts:
    checked: int
    unchecked: int

    @property
    def total(self) -> int:
        return self.checked + self.unchecked


@dataclass
class ImplementProgress:
    current_phase: int
    total_phases: int
    tasks_complete: int
    tasks_remaining: int

    def as_dict(self) -> dict:
        return {
            "current_phase": self.current_phase,
            "total_phases": self.total_phases,
            "tasks_complete": self.tasks_complete,
            "tasks_remaining": self.tasks_remaining,
        }


def count_tasks(text: str) -> TaskCounts:
    return TaskCounts(
        checked=len(CHECKED_RE.findall(text)),
        unchecked=len(UNCHECKED_RE.findall(text)),
    )


def implement_progress(tasks_path: Path) -> ImplementProgress | None:
    """Progress through tasks.md, or None if it doesn't exist.

    The current phase is the first "Phase N" section that still has
    unchecked items. Tasks before the first heading count toward the
    totals but not toward the phase count.
    """
    if not tasks_path.exists():
        return None

    # [phase number, checked, unchecked]; index 0 is the preamble
    sections = [[0, 0, 0]]
    for line in tasks_path.read_text().splitlines():
        heading = PHASE_HEADING_RE.match(line)
        if heading:
            sections.append([int(heading.group(1)), 0, 0])
        elif UNCHECKED_RE.match(line):
            sections[-1][2] += 1
        elif CHECKED_RE.match(line):
            sections[-1][1] += 1

    checked = sum(s[1] for s in sections)
    unchecked = sum(s[2] for s in sections)
    numbered = sections[1:]
    total_phases = len(numbered) if numbered else (1 if checked + unchecked else 0)

    current_phase = next((s[0] for s in numbered if s[2]), None)
    if current_phase is None:
        current_phase = numbered[-1][0] if numbered else total_phases

    return ImplementProgress(
        current_phase=current_phase,
        total_phases=total_phases,
        tasks_complete=checked,
        tasks_remaining=unchecked,
    )


def count_clarify_findings(spec_text: str) -> int:
    """Open [NEEDS CLARIFICATION ...] items in spec.md."""
    return len(NEEDS_CLARIFICATION_RE.findall(spec_text))


def count_analyze_findings(tasks_text: str) -> int:
    """Open analysis findings in tasks.md.

    Prefers unchecked "- [ ] ... [FINDING]" lines; falls back to
    <!-- FINDING ... --> markers when none are tagged that way.
    """
    tagged = len(FINDING_TASK_RE.findall(tasks_text))
    if tagged:
        return tagged
    return len(FINDING_MARKER_RE.findall(tasks_text))
