"""Epic scheduler.

Picks the lowest-numbered unmerged epic (or the one targeted), drives
it through the phase engine until the detector reports review, runs the
review phase and the integration pipeline, then moves on. When no epic
is left the finalize stage runs. Wrapped in a Prefect @flow for
observability; retry semantics stay in the engine's RetryPolicy.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable

from prefect import flow

from autopilot.lib.constants import EXIT_OK
from autopilot.lib.epics import Epic, find_next_epic, list_epics, mark_epic_merged
from autopilot.lib.errors import PhaseHalt
from autopilot.lib.interfaces import CodeReviewer, IssueTracker, RemoteRepository, VersionControl, Worker
from autopilot.lib.summary import write_epic_summary
from autopilot.runner.context import RunContext
from autopilot.runner.detector import StateDetector
from autopilot.runner.phase import PhaseEngine, PhaseOutcome
from autopilot.workflow.finalize import Finalizer
from autopilot.workflow.integration import IntegrationPipeline, IntegrationResult, ask_on_tty

logger = logging.getLogger(__name__)

# Bounds clarify <-> clarify-verify rejection cycles
MAX_PHASE_RUNS = 60


@dataclass
class Services:
    """The external capabilities a run talks to."""
    worker: Worker
    vcs: VersionControl
    remote: RemoteRepository
    reviewer: CodeReviewer
    issues: IssueTracker


def confirm_on_tty(epic: Epic) -> bool:
    """Ask before starting the next epic. Non-interactive runs always continue."""
    return ask_on_tty(f"Continue with epic {epic.id} ({epic.title})?")


class EpicScheduler:
    def __init__(
        self,
        ctx: RunContext,
        services: Services,
        target: str | None = None,
        auto_continue: bool = True,
        confirm: Callable[[Epic], bool] = confirm_on_tty,
        sleep: Callable[[float], None] = time.sleep,
        ask: Callable[[str], bool] = ask_on_tty,
    ):
        self.ctx = ctx
        self.services = services
        self.target = target
        self.auto_continue = auto_continue
        self.confirm = confirm
        self.current: Epic | None = None

        merge_refs = tuple(dict.fromkeys([ctx.merge_target, ctx.project.base_branch]))
        self.detector = StateDetector(ctx.repo_root, services.vcs, merge_refs=merge_refs)
        self.engine = PhaseEngine(ctx, services.worker, services.vcs, self.detector, services.issues, sleep=sleep)
        self.pipeline = IntegrationPipeline(ctx, self.engine, services.vcs, services.remote,
                                            services.reviewer, sleep=sleep, confirm=ask)
        self.finalizer = Finalizer(ctx, self.engine, services.vcs)

    # ------------------------------------------------------------------

    def run(self) -> int:
        """Process epics until none is left (or the targeted one is merged).

        Raises:
            PhaseHalt: when an epic or finalize can't proceed
        """
        if self.ctx.dry_run:
            return self.dry_run()

        seen: set[str] = set()
        while True:
            epic = find_next_epic(self.ctx.repo_root, self.target)
            if epic is None:
                break
            if epic.id in seen:
                raise PhaseHalt(epic.id, self.detector.detect(epic), "epic still unmerged after its integration")
            if seen and not self.auto_continue and not self.confirm(epic):
                self.ctx.log(f"Stopping before epic {epic.id}")
                return EXIT_OK
            seen.add(epic.id)
            self.run_epic(epic)

        if self.target is not None:
            if not seen:
                self.ctx.log(f"Epic {self.target} is already merged (or doesn't exist)")
            return EXIT_OK

        self.finalizer.run()
        self.ctx.log("All epics merged and finalized")
        return EXIT_OK

    def dry_run(self) -> int:
        """One simulated invocation per pending epic; nothing on disk changes."""
        epics = [e for e in list_epics(self.ctx.repo_root)
                 if not e.merged and (self.target is None or e.id == self.target)]
        for epic in epics:
            phase = self.detector.detect(epic)
            self.ctx.log(f"[dry-run] {epic.id} ({epic.title}): next phase {phase}")
            if phase != "done":
                self.engine.invoke(epic, phase)
        if not epics:
            self.ctx.log("[dry-run] no pending epics, finalize would run next")
        return EXIT_OK

    def run_epic(self, epic: Epic) -> None:
        self.current = epic
        self.ctx.log(f"##### Epic {epic.id}: {epic.title} #####")
        self.services.issues.open_epic(epic)
        self.ensure_feature_branch(epic)

        phase = self.detector.detect(epic)
        for _ in range(MAX_PHASE_RUNS):
            phase = self.detector.detect(epic)
            if phase in ("review", "done"):
                break
            result = self.engine.run_phase(epic, phase)
            if result.outcome == PhaseOutcome.FAILED:
                raise PhaseHalt(epic.id, phase, result.message or f"{phase} failed")
        else:
            raise PhaseHalt(epic.id, phase, f"no review after {MAX_PHASE_RUNS} phase runs")

        if phase == "done":
            # Merged per git history but never recorded
            if not epic.merged:
                mark_epic_merged(epic)
                rel = str(epic.source_file.relative_to(self.ctx.repo_root))
                self.services.vcs.commit_files([rel], f"fix({epic.id}): mark epic YAML as merged")
            self.services.issues.close_epic(epic)
            return

        self.review_and_integrate(epic)

    def ensure_feature_branch(self, epic: Epic) -> None:
        """Switch to the epic's recorded branch when it exists; specify creates it otherwise.

        Raises:
            PhaseHalt: if the checkout fails
        """
        vcs = self.services.vcs
        branch = epic.short_name
        if not branch or vcs.current_branch() == branch or not vcs.branch_exists(branch):
            return
        result = vcs.checkout(branch)
        if not result.success:
            raise PhaseHalt(epic.id, "checkout", f"could not switch to {branch}: {result.output}")
        self.ctx.log(f"{epic.id}: switched to branch {branch}")

    def review_and_integrate(self, epic: Epic) -> IntegrationResult:
        review = self.engine.run_review(epic)
        if review.outcome == PhaseOutcome.FAILED:
            raise PhaseHalt(epic.id, "review", review.message)

        integration = self.pipeline.run(epic)
        self.ctx.events.emit("phase_advance", epic=epic.id, phase="review", to_phase="done")
        self.crystallize(epic)

        details = {
            "Integration": integration.mode,
            "PR": f"#{integration.pr_number}" if integration.pr_number else "-",
            "CodeRabbit CLI": integration.coderabbit,
            "CodeRabbit PR review": integration.remote_review,
            "Tests after rebase": integration.tests_after_rebase,
        }
        write_epic_summary(self.ctx.logs_dir, epic, self.ctx.events.for_epic(epic.id), details)
        self.services.issues.close_epic(epic)
        self.ctx.log(f"Epic {epic.id} done")
        return integration

    def crystallize(self, epic: Epic) -> None:
        """Distill learnings into project docs. Failure is logged, never fatal."""
        result = self.engine.invoke(epic, "crystallize")
        if not result.success:
            self.ctx.log(f"WARNING: {epic.id}: crystallize exited with {result.exit_code}, continuing")
        vcs = self.services.vcs
        if vcs.has_uncommitted_changes():
            committed = vcs.commit_all(f"docs({epic.id}): crystallize learnings")
            if not committed.success:
                logger.warning(f"Crystallize commit failed: {committed.output}")


@flow(name="autopilot_run")
def run_autopilot(scheduler: EpicScheduler) -> int:
    """Top-level flow: the whole run, epics then finalize."""
    return scheduler.run()
