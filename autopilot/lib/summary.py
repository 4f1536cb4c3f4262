"""
Human-readable run summaries.

Costs, durations and tokens are reconstructed from phase_end events, so
a summary's total is always the sum of the invocations the durable log
recorded, including those from earlier (interrupted) runs.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from .constants import PROJECT_SUMMARY_FILE
from .epics import Epic

logger = logging.getLogger(__name__)


@dataclass
class PhaseCost:
    phase: str
    invocations: int = 0
    duration_ms: int = 0
    cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class CostBreakdown:
    phases: list[PhaseCost] = field(default_factory=list)

    @property
    def total_cost(self) -> float:
        return sum(p.cost_usd for p in self.phases)

    @property
    def total_duration_ms(self) -> int:
        return sum(p.duration_ms for p in self.phases)

    @property
    def total_invocations(self) -> int:
        return sum(p.invocations for p in self.phases)


def format_duration(seconds: float) -> str:
    """Format seconds as human-readable duration."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    secs = seconds % 60
    if minutes < 60:
        return f"{minutes}m {secs:.0f}s"
    hours = minutes // 60
    mins = minutes % 60
    return f"{hours}h {mins}m"


def aggregate_phase_costs(events: list[dict]) -> CostBreakdown:
    """Group phase_end events by phase, in order of first appearance."""
    by_phase: dict[str, PhaseCost] = {}
    for event in events:
        if event.get("event") != "phase_end":
            continue
        phase = event.get("phase", "unknown")
        entry = by_phase.setdefault(phase, PhaseCost(phase=phase))
        tokens = event.get("tokens") or {}
        entry.invocations += 1
        entry.duration_ms += int(event.get("duration_ms") or 0)
        entry.cost_usd += float(event.get("cost_usd") or 0.0)
        entry.input_tokens += int(tokens.get("input") or 0)
        entry.output_tokens += int(tokens.get("output") or 0)
    return CostBreakdown(phases=list(by_phase.values()))


def render_epic_summary(epic: Epic, events: list[dict], details: dict[str, str] | None = None) -> str:
    costs = aggregate_phase_costs(events)
    lines = [
        f"# Epic {epic.id}: {epic.title}",
        "",
        f"- Status: {epic.status or 'in progress'}",
        f"- Branch: {epic.short_name or '-'}",
    ]
    for key, value in (details or {}).items():
        lines.append(f"- {key}: {value}")

    lines += [
        "",
        "## Phases",
        "",
        "| Phase | Runs | Duration | Cost | Tokens (in/out) |",
        "|---|---|---|---|---|",
    ]
    for p in costs.phases:
        lines.append(
            f"| {p.phase} | {p.invocations} | {format_duration(p.duration_ms / 1000)} "
            f"| ${p.cost_usd:.2f} | {p.input_tokens}/{p.output_tokens} |"
        )
    lines += [
        "",
        f"**Total:** ${costs.total_cost:.2f} over {costs.total_invocations} invocation(s), "
        f"{format_duration(costs.total_duration_ms / 1000)} of worker time",
        "",
    ]
    return "\n".join(lines)


def write_epic_summary(logs_dir: Path, epic: Epic, events: list[dict],
                       details: dict[str, str] | None = None) -> Path | None:
    """Write {NNN}-summary.md. Best effort: returns None if it can't be written."""
    path = logs_dir / f"{epic.id}-summary.md"
    try:
        path.write_text(render_epic_summary(epic, events, details))
    except OSError as e:
        logger.warning(f"Failed to write epic summary {path}: {e}")
        return None
    return path


def render_project_summary(epics: list[Epic], events: list[dict],
                           details: dict[str, str] | None = None) -> str:
    lines = [
        "# Project Summary",
        "",
        "| Epic | Title | Status | Cost |",
        "|---|---|---|---|",
    ]
    grand_total = 0.0
    for epic in epics:
        cost = aggregate_phase_costs([e for e in events if e.get("epic") == epic.id]).total_cost
        grand_total += cost
        lines.append(f"| {epic.id} | {epic.title} | {epic.status or '-'} | ${cost:.2f} |")

    # Project-level invocations (finalize) are logged under "project"
    project_cost = aggregate_phase_costs([e for e in events if e.get("epic") == "project"]).total_cost
    if project_cost:
        grand_total += project_cost
        lines.append(f"| - | finalize | - | ${project_cost:.2f} |")

    lines += ["", f"**Grand total:** ${grand_total:.2f}", ""]
    if details:
        lines += ["## Finalize", ""]
        lines += [f"- {key}: {value}" for key, value in details.items()]
        lines.append("")
    return "\n".join(lines)


def write_project_summary(logs_dir: Path, epics: list[Epic], events: list[dict],
                          details: dict[str, str] | None = None) -> Path | None:
    path = logs_dir / PROJECT_SUMMARY_FILE
    try:
        path.write_text(render_project_summary(epics, events, details))
    except OSError as e:
        logger.warning(f"Failed to write project summary {path}: {e}")
        return None
    return path
