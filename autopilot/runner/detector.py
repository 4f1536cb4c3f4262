"""
Phase state detector.

Derives an epic's current phase purely from files on disk: which
artifacts exist under specs/<short_name>/ and which marker tokens they
contain. Nothing about the phase is cached anywhere, so a run killed at
any point resumes at the right place by calling detect() again.

Decision order (first match wins):

    no spec dir / spec.md           -> specify
    spec.md lacks CLARIFY_COMPLETE  -> clarify
    spec.md lacks CLARIFY_VERIFIED  -> clarify-verify
    no plan.md                      -> plan
    no tasks.md                     -> design-read if a newer design source exists, else tasks
    tasks.md lacks ANALYZED         -> analyze
    unchecked tasks                 -> implement
    all checked, not merged         -> review
    all checked, merged             -> done
    no checkboxes at all            -> tasks
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from autopilot.lib.constants import (
    DESIGN_CONTEXT_FILE,
    MARKER_ANALYZED,
    MARKER_CLARIFY_COMPLETE,
    MARKER_CLARIFY_VERIFIED,
    PLAN_FILE,
    SPEC_FILE,
    SPECS_DIR,
    TASKS_FILE,
)
from autopilot.lib.epics import Epic, find_design_source
from autopilot.lib.markers import retract_markers
from autopilot.lib.tasks_md import count_tasks

logger = logging.getLogger(__name__)


@dataclass
class ArtifactPaths:
    root: Path

    @property
    def spec(self) -> Path:
        return self.root / SPEC_FILE

    @property
    def plan(self) -> Path:
        return self.root / PLAN_FILE

    @property
    def tasks(self) -> Path:
        return self.root / TASKS_FILE

    @property
    def design_context(self) -> Path:
        return self.root / DESIGN_CONTEXT_FILE


def artifact_paths(repo_root: Path, epic: Epic) -> ArtifactPaths | None:
    if not epic.short_name:
        return None
    return ArtifactPaths(repo_root / SPECS_DIR / epic.short_name)


class StateDetector:
    """detect(epic) -> phase, with no side effects.

    vcs and merge_refs only feed the merged check's fallback: a merge
    commit mentioning the short name on one of those refs counts as
    merged even if the epic document was never updated.
    """

    def __init__(self, repo_root: Path, vcs=None, merge_refs: tuple[str, ...] = ()):
        self.repo_root = repo_root
        self.vcs = vcs
        self.merge_refs = merge_refs

    def is_merged(self, epic: Epic) -> bool:
        if epic.merged:
            return True
        if self.vcs is None or not epic.short_name:
            return False
        pattern = f"merge.*{re.escape(epic.short_name)}"
        return any(self.vcs.log_mentions(ref, pattern) for ref in self.merge_refs)

    def _needs_design_read(self, epic: Epic, paths: ArtifactPaths) -> bool:
        source = find_design_source(self.repo_root, epic)
        if source is None:
            return False
        if not paths.design_context.exists():
            return True
        return source.stat().st_mtime > paths.design_context.stat().st_mtime

    def detect(self, epic: Epic) -> str:
        paths = artifact_paths(self.repo_root, epic)
        if paths is None or not paths.spec.exists():
            return "specify"

        spec_text = paths.spec.read_text()
        if MARKER_CLARIFY_COMPLETE not in spec_text:
            return "clarify"
        if MARKER_CLARIFY_VERIFIED not in spec_text:
            return "clarify-verify"

        if not paths.plan.exists():
            return "plan"

        if not paths.tasks.exists():
            if self._needs_design_read(epic, paths):
                return "design-read"
            return "tasks"

        tasks_text = paths.tasks.read_text()
        if MARKER_ANALYZED not in tasks_text:
            return "analyze"

        counts = count_tasks(tasks_text)
        if counts.unchecked > 0:
            return "implement"
        if counts.checked > 0:
            return "done" if self.is_merged(epic) else "review"
        return "tasks"


# Marker a verify phase guards, keyed by verify phase: (file attribute, markers to retract)
VERIFY_GUARDS = {
    "clarify-verify": ("spec", [MARKER_CLARIFY_VERIFIED, MARKER_CLARIFY_COMPLETE]),
    "analyze-verify": ("tasks", [MARKER_ANALYZED]),
}


def retract_on_rejection(repo_root: Path, epic: Epic, verify_phase: str) -> list[str]:
    """A verify phase rejected the work: retract its marker and the completion marker it guards.

    analyze-verify guards ANALYZED directly (there is no separate verified
    marker for analyze), so both cases send the epic back to the
    iterative phase.
    """
    paths = artifact_paths(repo_root, epic)
    if paths is None or verify_phase not in VERIFY_GUARDS:
        return []
    attr, markers = VERIFY_GUARDS[verify_phase]
    return retract_markers(getattr(paths, attr), markers)
