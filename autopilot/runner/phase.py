"""
Phase execution engine.

run_phase(epic, phase) launches worker invocations for one detected
phase under that phase's RetryPolicy until the detector reports a
different phase, then returns the outcome. Per attempt:

    invoke -> rate limited?  back off 30s x attempt, retry
           -> failed?        retry
           -> succeeded      re-detect; changed -> advanced
                                        unchanged -> record findings, retry

Exhausting an iterative phase (or clarify-verify or design-read) is a
logged force-advance: the completion marker is written and committed.
Exhausting any other phase returns FAILED and the caller halts.
"""

import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path

from autopilot.lib.constants import (
    CONVERGENCE_WINDOW,
    ITERATIVE_PHASES,
    MARKER_ANALYZED,
    MARKER_CLARIFY_COMPLETE,
    MARKER_CLARIFY_VERIFIED,
    RATE_LIMIT_BACKOFF_SECONDS,
    SPEC_FILE,
    SPECS_DIR,
    VERIFY_PHASES,
)
from autopilot.lib.convergence import ConvergenceSeries
from autopilot.lib.epics import Epic, find_design_source, record_short_name
from autopilot.lib.errors import PROJECT_SCOPE
from autopilot.lib.interfaces import IssueTracker, VersionControl, Worker
from autopilot.lib.issues import NullIssueTracker
from autopilot.lib.markers import append_marker
from autopilot.lib.prompts import PromptContext, build_phase_prompt
from autopilot.lib.retry import (
    AttemptStatus,
    Exhaustion,
    RetriesExhausted,
    RetryPolicy,
    linear_backoff,
    run_attempts,
)
from autopilot.lib.tasks_md import (
    count_analyze_findings,
    count_clarify_findings,
    implement_progress,
)
from autopilot.lib.types import InvocationRequest, InvocationResult
from autopilot.runner.context import RunContext
from autopilot.runner.detector import StateDetector, artifact_paths, retract_on_rejection
from autopilot.runner.stream import EventStreamProcessor, PhaseAccumulator

logger = logging.getLogger(__name__)

# Exhausting any other detected phase halts the epic
FORCE_ADVANCE_PHASES = {"clarify", "clarify-verify", "design-read", "analyze"}

# phase -> (artifact attribute, marker) written on force-advance
FORCE_ADVANCE_MARKERS = {
    "clarify": ("spec", MARKER_CLARIFY_COMPLETE),
    "clarify-verify": ("spec", MARKER_CLARIFY_VERIFIED),
    "analyze": ("tasks", MARKER_ANALYZED),
}

# verify phase -> iterative phase it guards
GUARDED_PHASE = {
    "clarify-verify": "clarify",
    "analyze-verify": "analyze",
}

VERIFY_FINDINGS_TOKEN = "VERIFY_FINDINGS"


class PhaseOutcome(Enum):
    ADVANCED = "advanced"
    RETRYING = "retrying"
    FORCE_ADVANCED = "forceAdvanced"
    FAILED = "failed"


@dataclass
class PhaseResult:
    phase: str
    outcome: PhaseOutcome
    attempts: int
    next_phase: str
    rejected: bool = False
    message: str = ""


class PhaseEngine:
    def __init__(
        self,
        ctx: RunContext,
        worker: Worker,
        vcs: VersionControl,
        detector: StateDetector,
        issues: IssueTracker | None = None,
        sleep=time.sleep,
    ):
        self.ctx = ctx
        self.worker = worker
        self.vcs = vcs
        self.detector = detector
        self.issues = issues or NullIssueTracker()
        self.sleep = sleep

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    def policy_for(self, phase: str) -> RetryPolicy:
        settings = self.ctx.settings.phase(phase)
        return RetryPolicy(
            max_attempts=settings.max_attempts,
            backoff=linear_backoff(RATE_LIMIT_BACKOFF_SECONDS),
            on_exhaustion=Exhaustion.FORCE_ADVANCE if phase in FORCE_ADVANCE_PHASES else Exhaustion.FATAL,
        )

    def _progress(self, epic: Epic | None) -> dict | None:
        paths = artifact_paths(self.ctx.repo_root, epic) if epic else None
        if paths is None:
            return None
        progress = implement_progress(paths.tasks)
        return progress.as_dict() if progress else None

    def _prompt_context(self, epic: Epic | None) -> PromptContext:
        if epic is not None:
            return self.ctx.prompt_context(epic)
        return PromptContext(
            epic_id=PROJECT_SCOPE,
            epic_title="all epics",
            epic_file="",
            short_name="",
            spec_dir=SPECS_DIR,
            base_branch=self.ctx.project.base_branch,
            merge_target=self.ctx.merge_target,
            test_cmd=self.ctx.project.test_cmd or "(none configured)",
            lint_cmd=self.ctx.project.lint_cmd or "(none configured)",
            work_dir=self.ctx.project.work_dir,
        )

    def invoke(self, epic: Epic | None, phase: str, **prompt_extra) -> InvocationResult:
        """One worker invocation for phase; epic None means a project-level invocation."""
        settings = self.ctx.settings.phase(phase)
        epic_id = epic.id if epic else PROJECT_SCOPE
        prompt = build_phase_prompt(phase, self._prompt_context(epic), **prompt_extra)

        self.ctx.events.emit("phase_start", epic=epic_id, phase=phase, model=settings.model)
        processor = EventStreamProcessor(
            self.ctx.events,
            self.ctx.status,
            self.ctx.logs_dir,
            epic_id,
            phase,
            progress=lambda: self._progress(epic),
        )
        request = InvocationRequest(
            epic_id=epic_id,
            phase=phase,
            model=settings.model,
            tools=settings.allowed_tools,
            prompt=prompt,
        )
        acc = PhaseAccumulator()
        processor.refresh_status(acc)
        return self.worker.invoke(request, processor, acc)

    # ------------------------------------------------------------------
    # Phase loop
    # ------------------------------------------------------------------

    def observe_findings(self, epic: Epic, phase: str) -> int:
        """Open findings after a round of an iterative phase."""
        paths = artifact_paths(self.ctx.repo_root, epic)
        if paths is None:
            return 0
        if phase == "clarify" and paths.spec.exists():
            return count_clarify_findings(paths.spec.read_text())
        if phase == "analyze" and paths.tasks.exists():
            return count_analyze_findings(paths.tasks.read_text())
        return 0

    def _verify_findings(self, epic: Epic, phase: str) -> int:
        paths = artifact_paths(self.ctx.repo_root, epic)
        if paths is None:
            return 0
        if phase == "clarify-verify":
            return paths.spec.read_text().count(VERIFY_FINDINGS_TOKEN) if paths.spec.exists() else 0
        if phase == "analyze-verify":
            return count_analyze_findings(paths.tasks.read_text()) if paths.tasks.exists() else 0
        return 0

    def _reject(self, epic: Epic, phase: str) -> None:
        retracted = retract_on_rejection(self.ctx.repo_root, epic, phase)
        self.ctx.events.emit("verify_rejected", epic=epic.id, phase=phase, retracted=retracted)
        self.ctx.log(f"{epic.id}: {phase} rejected the work, back to {GUARDED_PHASE[phase]}")

    def _prompt_extra(self, epic: Epic, phase: str, attempt: int, max_attempts: int) -> dict:
        extra = {"round": attempt, "max_rounds": max_attempts}
        if phase == "design-read":
            source = find_design_source(self.ctx.repo_root, epic)
            extra["design_source"] = str(source.relative_to(self.ctx.repo_root)) if source else ""
        return extra

    def run_phase(self, epic: Epic, phase: str) -> PhaseResult:
        """Run one detected phase to advance, force-advance, or failure."""
        self.ctx.log(f"=== {epic.id}: {phase} ===")
        self.issues.sync_phase(epic, phase)

        policy = self.policy_for(phase)
        series = ConvergenceSeries(CONVERGENCE_WINDOW) if phase in ITERATIVE_PHASES else None
        state = {"next": phase, "rejected": False}

        def attempt(n: int) -> AttemptStatus:
            findings_before = self._verify_findings(epic, phase) if phase in VERIFY_PHASES else 0
            result = self.invoke(epic, phase, **self._prompt_extra(epic, phase, n, policy.max_attempts))

            if result.rate_limited:
                self.ctx.log(f"{epic.id}/{phase}: rate limited (attempt {n}/{policy.max_attempts})")
                self.ctx.events.emit("phase_retry", epic=epic.id, phase=phase, attempt=n,
                                     reason="rate_limited", outcome=PhaseOutcome.RETRYING.value)
                return AttemptStatus.BACKOFF
            if not result.success:
                self.ctx.log(f"{epic.id}/{phase}: worker failed with exit {result.exit_code} "
                             f"(attempt {n}/{policy.max_attempts})")
                self.ctx.events.emit("phase_retry", epic=epic.id, phase=phase, attempt=n,
                                     reason=f"exit {result.exit_code}", outcome=PhaseOutcome.RETRYING.value)
                return AttemptStatus.RETRY

            if phase == "specify":
                self.reconcile_short_name(epic)

            after = self.detector.detect(epic)
            if phase in VERIFY_PHASES and (
                after == GUARDED_PHASE[phase] or self._verify_findings(epic, phase) > findings_before
            ):
                self._reject(epic, phase)
                state["rejected"] = True
                after = self.detector.detect(epic)

            if after != phase:
                self.ctx.events.emit("phase_advance", epic=epic.id, phase=phase, to_phase=after, attempt=n)
                self.ctx.log(f"{epic.id}: {phase} -> {after}")
                state["next"] = after
                return AttemptStatus.SUCCEEDED

            if series is not None:
                count = self.observe_findings(epic, phase)
                if series.record(count):
                    self.ctx.log(f"{epic.id}/{phase}: findings stalled at {count} over {series.window} rounds")
                    self.ctx.events.emit("convergence_stall", epic=epic.id, phase=phase, counts=series.counts)
            self.ctx.events.emit("phase_retry", epic=epic.id, phase=phase, attempt=n,
                                 reason="no progress", outcome=PhaseOutcome.RETRYING.value)
            return AttemptStatus.RETRY

        try:
            outcome = run_attempts(policy, attempt, label=f"{epic.id}/{phase}", sleep=self.sleep)
        except RetriesExhausted as e:
            self.ctx.events.emit("phase_failed", epic=epic.id, phase=phase, attempts=e.attempts)
            self.ctx.log(f"ERROR: {e}")
            return PhaseResult(phase, PhaseOutcome.FAILED, e.attempts, phase, message=str(e))

        if outcome.force_advanced:
            self.force_advance(epic, phase, outcome.attempts)
            return PhaseResult(phase, PhaseOutcome.FORCE_ADVANCED, outcome.attempts, self.detector.detect(epic))

        result = PhaseResult(phase, PhaseOutcome.ADVANCED, outcome.attempts, state["next"],
                             rejected=state["rejected"])
        if phase == "analyze" and result.next_phase != "analyze":
            if self.verify_analysis(epic):
                result.rejected = True
                result.next_phase = self.detector.detect(epic)
        return result

    def run_review(self, epic: Epic) -> PhaseResult:
        """The review phase: the detector stays at review until the merge, so success is a clean invocation."""
        phase = "review"
        self.ctx.log(f"=== {epic.id}: {phase} ===")
        self.issues.sync_phase(epic, phase)
        policy = self.policy_for(phase)

        def attempt(n: int) -> AttemptStatus:
            result = self.invoke(epic, phase, round=n, max_rounds=policy.max_attempts)
            if result.rate_limited:
                return AttemptStatus.BACKOFF
            if not result.success:
                self.ctx.events.emit("phase_retry", epic=epic.id, phase=phase, attempt=n,
                                     reason=f"exit {result.exit_code}", outcome=PhaseOutcome.RETRYING.value)
                return AttemptStatus.RETRY
            return AttemptStatus.SUCCEEDED

        try:
            outcome = run_attempts(policy, attempt, label=f"{epic.id}/{phase}", sleep=self.sleep)
        except RetriesExhausted as e:
            self.ctx.events.emit("phase_failed", epic=epic.id, phase=phase, attempts=e.attempts)
            return PhaseResult(phase, PhaseOutcome.FAILED, e.attempts, phase, message=str(e))
        return PhaseResult(phase, PhaseOutcome.ADVANCED, outcome.attempts, phase)

    def verify_analysis(self, epic: Epic) -> bool:
        """Independent check right after analyze converges. Returns True if it rejected.

        The detector never reports analyze-verify, so running out of
        attempts skips the check instead of halting: ANALYZED stays.
        """
        phase = "analyze-verify"
        self.ctx.log(f"=== {epic.id}: {phase} ===")
        policy = replace(self.policy_for(phase), on_exhaustion=Exhaustion.FORCE_ADVANCE)
        verdict = {"rejected": False}

        def attempt(n: int) -> AttemptStatus:
            findings_before = self._verify_findings(epic, phase)
            result = self.invoke(epic, phase, round=n, max_rounds=policy.max_attempts)
            if result.rate_limited:
                return AttemptStatus.BACKOFF
            if not result.success:
                return AttemptStatus.RETRY
            after = self.detector.detect(epic)
            if after == GUARDED_PHASE[phase] or self._verify_findings(epic, phase) > findings_before:
                self._reject(epic, phase)
                verdict["rejected"] = True
            return AttemptStatus.SUCCEEDED

        outcome = run_attempts(policy, attempt, label=f"{epic.id}/{phase}", sleep=self.sleep)
        if outcome.force_advanced:
            self.force_advance(epic, phase, outcome.attempts)
        return verdict["rejected"]

    # ------------------------------------------------------------------
    # Recorded mutations
    # ------------------------------------------------------------------

    def _commit(self, paths: list[Path], message: str) -> None:
        rel = [str(p.relative_to(self.ctx.repo_root)) for p in paths]
        result = self.vcs.commit_files(rel, message)
        if not result.success:
            logger.warning(f"Commit '{message}' failed: {result.output}")

    def force_advance(self, epic: Epic, phase: str, rounds: int) -> None:
        """Write the phase's completion marker (once) and commit it."""
        paths = artifact_paths(self.ctx.repo_root, epic)
        written: Path | None = None

        if paths is not None and phase == "design-read":
            paths.design_context.write_text(
                f"# Design Context: Skipped (extraction failed after {rounds} attempts)\n"
            )
            written = paths.design_context
        elif paths is not None and phase in FORCE_ADVANCE_MARKERS:
            attr, marker = FORCE_ADVANCE_MARKERS[phase]
            target = getattr(paths, attr)
            if append_marker(target, marker):
                written = target

        self.ctx.events.emit("force_advance", epic=epic.id, phase=phase, rounds=rounds)
        self.ctx.log(f"WARNING: {epic.id}: force-advancing {phase} after {rounds} rounds")

        if written is not None:
            self._commit([written], f"chore({epic.id}): force-advance {phase} after {rounds} rounds")

    def reconcile_short_name(self, epic: Epic) -> None:
        """Adopt the branch/spec dir the specify run actually created.

        The worker may pick a different numeric prefix or summary than the
        recorded short name. The spec dir that exists on disk wins: the
        current branch if it has one, else the newest specs/<epic id>-* dir.
        """
        specs_dir = self.ctx.repo_root / SPECS_DIR
        if epic.short_name and (specs_dir / epic.short_name / SPEC_FILE).exists():
            actual = epic.short_name
        else:
            actual = None
            branch = self.vcs.current_branch()
            protected = {self.ctx.project.base_branch, self.ctx.merge_target}
            if branch and branch not in protected and (specs_dir / branch / SPEC_FILE).exists():
                actual = branch
            elif specs_dir.is_dir():
                candidates = [d for d in specs_dir.glob(f"{epic.id}-*") if (d / SPEC_FILE).exists()]
                if candidates:
                    actual = max(candidates, key=lambda d: d.stat().st_mtime).name

        if actual is None:
            logger.warning(f"{epic.id}: specify finished but no specs/{epic.id}-*/{SPEC_FILE} exists")
            return

        if actual != epic.short_name:
            self.ctx.events.emit("short_name_reconciled", epic=epic.id, phase="specify",
                                 previous=epic.short_name, current=actual)
            self.ctx.log(f"{epic.id}: recording short name '{actual}' (was '{epic.short_name or '-'}')")
            record_short_name(epic, actual)
            self._commit([epic.source_file], f"chore({epic.id}): record branch {actual}")

        if self.vcs.current_branch() != actual:
            result = self.vcs.checkout(actual, create=not self.vcs.branch_exists(actual))
            if not result.success:
                logger.warning(f"{epic.id}: could not check out {actual}: {result.output}")
