"""Integration pipeline: pre-review -> rebase -> push -> PR -> review -> merge.

Entered once an epic's review phase has succeeded. Every step that can
fail transiently runs under a RetryPolicy through run_attempts, the same
runner the phase engine uses. The step sequence is tracked by an
IntegrationFSM so an unexpected jump (say, merging before publishing)
raises instead of silently happening.

    pending --start_remote--> pre_review --pre_review_done--> rebasing
    rebasing --pushed--> publishing --published--> remote_review
    remote_review --review_done--> merging --merged_remote--> recording
    merging --conflict--> rebasing --repushed--> merging
    pending --start_local--> local_merge --local_merged--> recording
    recording --recorded--> merged
    * --fail--> failed

With no remote or no gh the pipeline always takes the local merge path.
The epic is recorded as merged before any best-effort cleanup runs.
"""

import logging
import sys
import time
from dataclasses import dataclass
from typing import Callable

from transitions import Machine

from autopilot.lib.constants import CODERABBIT_BOT, CONVERGENCE_WINDOW
from autopilot.lib.convergence import ConvergenceSeries
from autopilot.lib.epics import Epic, EpicError, load_epic, mark_epic_merged
from autopilot.lib.errors import PhaseHalt
from autopilot.lib.interfaces import (
    APPROVED,
    CHANGES_REQUESTED,
    CONFLICTING,
    PENDING,
    UNKNOWN,
    CodeReviewer,
    RemoteRepository,
    VersionControl,
)
from autopilot.lib.retry import (
    AttemptStatus,
    Exhaustion,
    RetriesExhausted,
    RetryPolicy,
    exponential_backoff,
    run_attempts,
)
from autopilot.lib.verify import run_project_command
from autopilot.runner.context import RunContext
from autopilot.runner.phase import PhaseEngine

logger = logging.getLogger(__name__)


STATES = [
    "pending",
    "pre_review",
    "rebasing",
    "publishing",
    "remote_review",
    "merging",
    "recording",
    "merged",
    "local_merge",
    "failed",
]

TRANSITIONS = [
    # Routing
    {"trigger": "start_remote", "source": "pending", "dest": "pre_review"},
    {"trigger": "start_local", "source": "pending", "dest": "local_merge"},

    # Remote path
    {"trigger": "pre_review_done", "source": "pre_review", "dest": "rebasing"},
    {"trigger": "pushed", "source": "rebasing", "dest": "publishing"},
    {"trigger": "published", "source": "publishing", "dest": "remote_review"},
    {"trigger": "review_done", "source": "remote_review", "dest": "merging"},
    {"trigger": "merged_remote", "source": "merging", "dest": "recording"},

    # Merge conflict loops back through rebase
    {"trigger": "conflict", "source": "merging", "dest": "rebasing"},
    {"trigger": "repushed", "source": "rebasing", "dest": "merging"},

    # Local fallback
    {"trigger": "local_merged", "source": "local_merge", "dest": "recording"},

    {"trigger": "recorded", "source": "recording", "dest": "merged"},
    {"trigger": "fail", "source": "*", "dest": "failed"},
]


class IntegrationFSM:
    """Step tracker for one epic's integration. Not persisted: a resumed
    run re-enters the pipeline from the top and every step is idempotent."""

    def __init__(self, epic_id: str, on_transition: Callable[[str, str, str], None] | None = None):
        self.epic_id = epic_id
        self.on_transition = on_transition
        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial="pending",
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    def on_state_change(self, event) -> None:
        from_state = event.transition.source
        to_state = event.transition.dest
        trigger = event.event.name

        logger.info(f"[FSM] {self.epic_id}: {from_state} -> {to_state} ({trigger})")

        if self.on_transition:
            self.on_transition(from_state, to_state, trigger)

    def can(self, trigger: str) -> bool:
        return trigger in self.machine.get_triggers(self.state)


@dataclass
class IntegrationResult:
    """What happened during integration, for the epic summary."""
    mode: str  # "local" or "remote"
    pr_number: int | None = None
    coderabbit: str = "skipped"  # clean, fixed, skipped, force-advanced
    remote_review: str = "skipped"  # approved, force-advanced, skipped
    tests_after_rebase: str = "not run"  # passed, fixed, failing, not run


def ask_on_tty(question: str) -> bool:
    """Yes/no on an interactive terminal. Without a TTY the answer is always yes."""
    if not sys.stdin.isatty():
        return True
    try:
        answer = input(f"{question} [Y/n] ")
    except EOFError:
        return True
    return not answer.strip().lower().startswith("n")


class IntegrationPipeline:
    def __init__(
        self,
        ctx: RunContext,
        engine: PhaseEngine,
        vcs: VersionControl,
        remote: RemoteRepository,
        reviewer: CodeReviewer,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        confirm: Callable[[str], bool] = ask_on_tty,
    ):
        self.ctx = ctx
        self.engine = engine
        self.vcs = vcs
        self.remote = remote
        self.reviewer = reviewer
        self.sleep = sleep
        self.clock = clock
        self.confirm = confirm
        self.settings = ctx.settings.integration
        self.fsm: IntegrationFSM | None = None

    @property
    def target(self) -> str:
        return self.ctx.merge_target

    @property
    def upstream(self) -> str:
        return f"origin/{self.ctx.merge_target}"

    def run(self, epic: Epic) -> IntegrationResult:
        """Integrate the epic's branch into the merge target.

        Raises:
            PhaseHalt: if a bounded step runs out of attempts or a git step fails
        """
        self.fsm = IntegrationFSM(epic.id)
        self.ctx.events.emit("remote_merge_start", epic=epic.id, phase="review", target=self.target)
        self._commit_leftovers(epic, "commit pending changes before merge")

        if not (self.vcs.has_remote() and self.remote.available()):
            self.ctx.log(f"{epic.id}: no remote integration available, merging locally into {self.target}")
            self.fsm.start_local()
            return self.local_merge(epic)

        if not self.confirm(f"Push {epic.short_name} & create PR to {self.target}?"):
            self.ctx.log(f"{epic.id}: remote merge declined, merging locally into {self.target}")
            self.fsm.start_local()
            return self.local_merge(epic)

        result = IntegrationResult(mode="remote")
        self.fsm.start_remote()
        result.coderabbit = self.pre_review(epic)
        self.fsm.pre_review_done()

        result.tests_after_rebase = self.rebase_and_push(epic)
        self.fsm.pushed()

        result.pr_number = self.publish(epic)
        self.fsm.published()

        result.remote_review = self.remote_review(epic, result.pr_number)
        self.fsm.review_done()

        self.merge(epic, result.pr_number)
        self.fsm.merged_remote()

        self.record_merged(epic)
        self.cleanup(epic)
        self.ctx.events.emit("remote_merge_complete", epic=epic.id, phase="review", pr=result.pr_number)
        self.ctx.log(f"{epic.id}: merged PR #{result.pr_number} into {self.target}")
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _halt(self, epic: Epic, step: str, message: str):
        if self.fsm is not None and self.fsm.state != "failed":
            self.fsm.fail()
        self.ctx.events.emit("integration_failed", epic=epic.id, phase="review", step=step, message=message)
        self.ctx.log(f"ERROR: {epic.id}: {message}")
        raise PhaseHalt(epic.id, "review", message)

    def _commit_leftovers(self, epic: Epic, message: str) -> None:
        if self.vcs.has_uncommitted_changes():
            result = self.vcs.commit_all(f"fix({epic.id}): {message}")
            if not result.success:
                logger.warning(f"Auto-commit failed: {result.output}")

    def _fix(self, epic: Epic, phase: str, **prompt_extra) -> bool:
        """One fix invocation, with anything it left uncommitted committed after it."""
        result = self.engine.invoke(epic, phase, **prompt_extra)
        if not result.success:
            self.ctx.log(f"WARNING: {epic.id}: {phase} exited with {result.exit_code}")
        self._commit_leftovers(epic, f"{phase} changes")
        return result.success

    def _stall_or_halt(self, epic: Epic, step: str, reason: str) -> str:
        if not self.ctx.project.force_advance_on_review_fail:
            self._halt(epic, step, f"{step}: {reason} (set FORCE_ADVANCE_ON_REVIEW_FAIL=true to continue anyway)")
        self.ctx.events.emit("force_advance", epic=epic.id, phase=step, reason=reason)
        self.ctx.log(f"WARNING: {epic.id}: {step} {reason}, continuing")
        return "force-advanced"

    # ------------------------------------------------------------------
    # Local fallback
    # ------------------------------------------------------------------

    def local_merge(self, epic: Epic) -> IntegrationResult:
        branch = epic.short_name
        if not self.confirm(f"Merge {branch} to {self.target}?"):
            self._halt(epic, "local-merge", f"merge of {branch} into {self.target} declined")

        checkout = self.vcs.checkout(self.target)
        if not checkout.success or self.vcs.current_branch() != self.target:
            self._halt(epic, "local-merge", f"could not check out {self.target}: {checkout.output}")

        merged = self.vcs.merge_no_ff(branch, f"merge: {branch} - {epic.title}")
        if not merged.success:
            self.vcs.merge_abort()
            self._halt(epic, "local-merge", f"merging {branch} into {self.target} failed: {merged.output}")

        self.fsm.local_merged()
        self.record_merged(epic)
        self.ctx.events.emit("local_merge_complete", epic=epic.id, phase="review", target=self.target)
        self.ctx.log(f"{epic.id}: merged {branch} into {self.target} locally")
        return IntegrationResult(mode="local")

    # ------------------------------------------------------------------
    # Pre-submission review
    # ------------------------------------------------------------------

    def pre_review(self, epic: Epic) -> str:
        if not self.reviewer.available():
            logger.info("CodeRabbit CLI not available, skipping pre-review")
            return "skipped"

        force = self.ctx.project.force_advance_on_review_fail
        policy = RetryPolicy(
            max_attempts=self.settings.cli_review_rounds,
            on_exhaustion=Exhaustion.FORCE_ADVANCE if force else Exhaustion.FATAL,
        )
        series = ConvergenceSeries(CONVERGENCE_WINDOW)
        state = {"status": "skipped", "stalled": False}

        def attempt(n: int) -> AttemptStatus:
            report = self.reviewer.review(self.target)
            if not report.ran:
                self.ctx.log(f"{epic.id}: CodeRabbit review skipped ({report.reason})")
                return AttemptStatus.SUCCEEDED
            if report.clean:
                self.ctx.events.emit("coderabbit_cli_clean", epic=epic.id, phase="review", round=n)
                state["status"] = "clean" if n == 1 else "fixed"
                return AttemptStatus.SUCCEEDED

            self.ctx.events.emit("coderabbit_cli_issues", epic=epic.id, phase="review",
                                 round=n, issues=report.issue_count)
            self.ctx.log(f"{epic.id}: CodeRabbit found {report.issue_count} issue(s) (round {n})")
            if series.record(report.issue_count):
                self.ctx.events.emit("convergence_stall", epic=epic.id, phase="coderabbit-cli", counts=series.counts)
                state["stalled"] = True
                return AttemptStatus.SUCCEEDED

            self._fix(epic, "coderabbit-fix", review_feedback=report.output,
                      round=n, max_rounds=policy.max_attempts)
            return AttemptStatus.RETRY

        try:
            outcome = run_attempts(policy, attempt, label=f"{epic.id}/coderabbit-cli", sleep=self.sleep)
        except RetriesExhausted as e:
            self._halt(epic, "coderabbit-cli", f"CodeRabbit issues remain after {e.attempts} rounds")

        if state["stalled"]:
            return self._stall_or_halt(epic, "coderabbit-cli", "issue count stalled")
        if outcome.force_advanced:
            return self._stall_or_halt(epic, "coderabbit-cli", f"issues remain after {outcome.attempts} rounds")
        return state["status"]

    # ------------------------------------------------------------------
    # Rebase and push
    # ------------------------------------------------------------------

    def rebase_and_push(self, epic: Epic) -> str:
        """Rebase onto the fetched target and push with lease. Returns the post-rebase test status."""
        policy = RetryPolicy(max_attempts=self.settings.rebase_attempts)
        state = {"rebased": False}

        def attempt(n: int) -> AttemptStatus:
            fetched = self.vcs.fetch(self.target)
            if not fetched.success:
                logger.warning(f"Fetch of {self.target} failed: {fetched.output}")

            if self.vcs.is_ancestor(self.upstream, "HEAD"):
                logger.info(f"{epic.short_name} already contains {self.upstream}, skipping rebase")
                return AttemptStatus.SUCCEEDED

            rebased = self.vcs.rebase(self.upstream)
            if rebased.success:
                state["rebased"] = True
                return AttemptStatus.SUCCEEDED

            conflicted = self.vcs.conflicted_files()
            if not conflicted:
                self.ctx.log(f"WARNING: {epic.id}: rebase failed without conflicts: {rebased.output}")
                self.vcs.rebase_abort()
                return AttemptStatus.RETRY

            self.ctx.events.emit("rebase_conflict", epic=epic.id, phase="review", attempt=n, files=conflicted)
            self.ctx.log(f"{epic.id}: rebase conflicts in {len(conflicted)} file(s), resolving (attempt {n})")
            resolved = self.engine.invoke(
                epic, "conflict-resolve",
                conflicted_files="\n".join(f"- {f}" for f in conflicted),
                round=n, max_rounds=policy.max_attempts,
            )
            if resolved.success and not self.vcs.conflicted_files():
                self.vcs.stage_all()
                if self.vcs.rebase_continue().success:
                    state["rebased"] = True
                    return AttemptStatus.SUCCEEDED

            self.vcs.rebase_abort()
            return AttemptStatus.RETRY

        try:
            run_attempts(policy, attempt, label=f"{epic.id}/rebase", sleep=self.sleep)
        except RetriesExhausted as e:
            self._halt(epic, "rebase", f"rebase onto {self.upstream} still conflicts after {e.attempts} attempts")

        tests = self._test_after_rebase(epic) if state["rebased"] else "not run"

        pushed = self.vcs.push_with_lease(epic.short_name)
        if not pushed.success:
            self._halt(epic, "push", f"push of {epic.short_name} failed: {pushed.output}")
        return tests

    def _test_after_rebase(self, epic: Epic) -> str:
        test_cmd = self.ctx.project.test_cmd
        if not test_cmd:
            return "not run"
        tests = run_project_command(test_cmd, self.ctx.project.work_path)
        if tests.ok:
            return "passed"

        self.ctx.log(f"{epic.id}: tests fail after rebase, delegating one fix")
        self._fix(epic, "rebase-test-fix", test_output=tests.tail)
        if run_project_command(test_cmd, self.ctx.project.work_path).ok:
            return "fixed"
        self.ctx.log(f"WARNING: {epic.id}: tests still failing after rebase fix, continuing to review")
        return "failing"

    # ------------------------------------------------------------------
    # Publish and remote review
    # ------------------------------------------------------------------

    def publish(self, epic: Epic) -> int:
        ok, pr_number, message = self.remote.find_or_create_pr(
            head=epic.short_name,
            base=self.target,
            title=f"Epic {epic.id}: {epic.title}",
            body=f"Automated integration of epic {epic.id} ({epic.short_name}).",
        )
        if not ok or pr_number is None:
            self._halt(epic, "publish", f"could not open PR: {message}")
        self.ctx.events.emit("pr_created", epic=epic.id, phase="review", pr=pr_number)
        self.ctx.log(f"{epic.id}: PR #{pr_number} ({message})")
        return pr_number

    def poll_review(self, pr_number: int) -> str:
        """Wait for the bot's verdict on the current head. PENDING means the poll timed out."""
        deadline = self.clock() + self.settings.review_poll_timeout
        while True:
            state = self.remote.review_state(pr_number, CODERABBIT_BOT)
            if state in (APPROVED, CHANGES_REQUESTED):
                return state
            if self.clock() >= deadline:
                return PENDING
            self.sleep(self.settings.review_poll_interval)

    def remote_review(self, epic: Epic, pr_number: int) -> str:
        policy = RetryPolicy(max_attempts=self.settings.review_rounds, on_exhaustion=Exhaustion.FORCE_ADVANCE)
        series = ConvergenceSeries(CONVERGENCE_WINDOW)
        state = {"status": "approved", "stalled": False}

        def attempt(n: int) -> AttemptStatus:
            verdict = self.poll_review(pr_number)
            if verdict == APPROVED:
                self.ctx.events.emit("coderabbit_pr_approved", epic=epic.id, phase="review", pr=pr_number, round=n)
                return AttemptStatus.SUCCEEDED
            if verdict == PENDING:
                state["status"] = "timeout"
                return AttemptStatus.SUCCEEDED

            feedback = self.remote.review_feedback(pr_number, CODERABBIT_BOT)
            self.ctx.events.emit("coderabbit_pr_changes_requested", epic=epic.id, phase="review",
                                 pr=pr_number, round=n, comments=len(feedback))
            if series.record(len(feedback)):
                self.ctx.events.emit("convergence_stall", epic=epic.id, phase="remote-review", counts=series.counts)
                state["stalled"] = True
                return AttemptStatus.SUCCEEDED

            self._fix(epic, "coderabbit-fix",
                      review_feedback="\n".join(item.render() for item in feedback),
                      round=n, max_rounds=policy.max_attempts)
            pushed = self.vcs.push_with_lease(epic.short_name)
            if not pushed.success:
                self._halt(epic, "push", f"push of review fixes failed: {pushed.output}")
            self.sleep(self.settings.repush_settle)
            return AttemptStatus.RETRY

        outcome = run_attempts(policy, attempt, label=f"{epic.id}/remote-review", sleep=self.sleep)

        if state["stalled"]:
            return self._stall_or_halt(epic, "remote-review", "review comments stalled")
        if state["status"] == "timeout" or outcome.force_advanced:
            reason = "review poll timed out" if state["status"] == "timeout" else "review rounds exhausted"
            self.ctx.events.emit("force_advance", epic=epic.id, phase="remote-review", reason=reason)
            self.ctx.log(f"WARNING: {epic.id}: {reason} on PR #{pr_number}, needs manual attention")
            return "force-advanced"
        return "approved"

    # ------------------------------------------------------------------
    # Merge and bookkeeping
    # ------------------------------------------------------------------

    def merge(self, epic: Epic, pr_number: int) -> None:
        policy = RetryPolicy(
            max_attempts=self.settings.merge_attempts,
            backoff=exponential_backoff(self.settings.mergeable_backoff),
        )

        def attempt(n: int) -> AttemptStatus:
            mergeable = self.remote.pr_mergeable(pr_number)
            if mergeable == UNKNOWN:
                logger.info(f"PR #{pr_number} mergeability not computed yet")
                return AttemptStatus.BACKOFF
            if mergeable == CONFLICTING:
                self.ctx.log(f"{epic.id}: PR #{pr_number} conflicts with {self.target}, rebasing again")
                self.fsm.conflict()
                self.rebase_and_push(epic)
                self.fsm.repushed()
                return AttemptStatus.BACKOFF

            ok, message = self.remote.merge_pr(pr_number, subject=f"merge: {epic.short_name} - {epic.title}")
            if not ok:
                self.ctx.log(f"WARNING: {epic.id}: merge of PR #{pr_number} failed: {message}")
                return AttemptStatus.BACKOFF
            self.ctx.events.emit("pr_merged", epic=epic.id, phase="review", pr=pr_number)
            return AttemptStatus.SUCCEEDED

        try:
            run_attempts(policy, attempt, label=f"{epic.id}/merge", sleep=self.sleep)
        except RetriesExhausted as e:
            self._halt(epic, "merge", f"PR #{pr_number} not merged after {e.attempts} attempts")

    def _mark_and_commit(self, epic: Epic) -> None:
        mark_epic_merged(epic)
        rel = str(epic.source_file.relative_to(self.ctx.repo_root))
        result = self.vcs.commit_files([rel], f"fix({epic.id}): mark epic YAML as merged")
        if not result.success:
            logger.info(f"Merged-status commit skipped: {result.output}")

    def record_merged(self, epic: Epic) -> None:
        """Durably record the merge. Runs before any cleanup."""
        self._mark_and_commit(epic)
        self.fsm.recorded()

    def cleanup(self, epic: Epic) -> None:
        """Best effort: move to the target, pull, and re-assert the merged status there."""
        checkout = self.vcs.checkout(self.target)
        if not checkout.success:
            logger.warning(f"Post-merge checkout of {self.target} failed: {checkout.output}")
            return
        pulled = self.vcs.pull()
        if not pulled.success:
            logger.warning(f"Post-merge pull failed: {pulled.output}")

        if not epic.source_file.exists():
            return
        try:
            on_target = load_epic(epic.source_file)
        except EpicError as e:
            logger.warning(f"Could not re-read epic after merge: {e}")
            return
        if not on_target.merged:
            on_target.short_name = on_target.short_name or epic.short_name
            self._mark_and_commit(on_target)
