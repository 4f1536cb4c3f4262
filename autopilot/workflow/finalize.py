"""
Finalize stage: runs once every epic is merged.

On the merge target: up to N rounds of test + lint, each failing round
followed by one finalize-fix invocation; then one cross-cutting
finalize-review invocation; then the project summary. Failing tests at
the end halt the run. Lint failures only warn.
"""

import logging
from dataclasses import dataclass

from autopilot.lib.epics import list_epics
from autopilot.lib.errors import PROJECT_SCOPE, PhaseHalt
from autopilot.lib.interfaces import VersionControl
from autopilot.lib.retry import AttemptStatus, Exhaustion, RetryPolicy, run_attempts
from autopilot.lib.summary import write_project_summary
from autopilot.lib.verify import CommandResult, run_project_command
from autopilot.runner.context import RunContext
from autopilot.runner.phase import PhaseEngine

logger = logging.getLogger(__name__)


@dataclass
class FinalizeResult:
    tests: str = "not run"
    lint: str = "not run"
    review: str = "not run"

    def as_details(self) -> dict[str, str]:
        return {"Tests": self.tests, "Lint": self.lint, "Integration review": self.review}


def _label(result: CommandResult) -> str:
    if result.skipped:
        return "not configured"
    return "passed" if result.ok else "failing"


class Finalizer:
    def __init__(self, ctx: RunContext, engine: PhaseEngine, vcs: VersionControl):
        self.ctx = ctx
        self.engine = engine
        self.vcs = vcs

    def _run_checks(self) -> tuple[CommandResult, CommandResult]:
        cwd = self.ctx.project.work_path
        return (
            run_project_command(self.ctx.project.test_cmd, cwd),
            run_project_command(self.ctx.project.lint_cmd, cwd),
        )

    def _commit_leftovers(self, message: str) -> None:
        if self.vcs.has_uncommitted_changes():
            result = self.vcs.commit_all(f"fix: {message}")
            if not result.success:
                logger.warning(f"Finalize commit failed: {result.output}")

    def _fix(self, tests: CommandResult, lint: CommandResult, round_num: int, max_rounds: int) -> None:
        output = []
        if not tests.ok:
            output.append(f"## Test output\n\n{tests.tail}")
        if not lint.ok:
            output.append(f"## Lint output\n\n{lint.tail}")
        result = self.engine.invoke(None, "finalize-fix", test_output="\n\n".join(output),
                                    round=round_num, max_rounds=max_rounds)
        if not result.success:
            self.ctx.log(f"WARNING: finalize-fix exited with {result.exit_code}")
        self._commit_leftovers("finalize test/lint fixes")

    def _halt(self, message: str):
        self.ctx.events.emit("finalize_failed", epic=PROJECT_SCOPE, phase="finalize", message=message)
        self.ctx.log(f"ERROR: {message}")
        raise PhaseHalt(PROJECT_SCOPE, "finalize", message)

    def run(self) -> FinalizeResult:
        """
        Raises:
            PhaseHalt: if tests still fail after the fix rounds or after the review refix
        """
        self.ctx.log("=== finalize ===")
        self.ctx.events.emit("finalize_start", epic=PROJECT_SCOPE, phase="finalize", target=self.ctx.merge_target)
        result = FinalizeResult()

        checkout = self.vcs.checkout(self.ctx.merge_target)
        if not checkout.success:
            self._halt(f"could not check out {self.ctx.merge_target}: {checkout.output}")

        rounds = self.ctx.settings.integration.finalize_rounds
        policy = RetryPolicy(max_attempts=rounds, on_exhaustion=Exhaustion.FORCE_ADVANCE)
        last = {}

        def attempt(n: int) -> AttemptStatus:
            tests, lint = self._run_checks()
            last["tests"], last["lint"] = tests, lint
            if tests.ok and lint.ok:
                return AttemptStatus.SUCCEEDED
            self.ctx.log(f"finalize round {n}/{rounds}: tests {_label(tests)}, lint {_label(lint)}")
            self._fix(tests, lint, n, rounds)
            return AttemptStatus.RETRY

        outcome = run_attempts(policy, attempt, label="finalize", sleep=lambda _: None)
        if outcome.force_advanced:
            # The last round's fix hasn't been checked yet
            last["tests"], last["lint"] = self._run_checks()

        if not last["tests"].ok:
            self._halt(f"tests still failing after {rounds} finalize rounds")
        if not last["lint"].ok:
            self.ctx.log("WARNING: lint still failing after finalize, continuing")
        result.tests = _label(last["tests"])
        result.lint = _label(last["lint"])

        review = self.engine.invoke(None, "finalize-review")
        result.review = "completed" if review.success else f"exit {review.exit_code}"
        self._commit_leftovers("finalize review changes")

        tests, _ = self._run_checks()
        if not tests.ok:
            self.ctx.log("finalize-review broke the tests, attempting one fix")
            self._fix(tests, CommandResult(ok=True, returncode=0, output=""), 1, 1)
            tests, _ = self._run_checks()
            if not tests.ok:
                self._halt("tests failing after finalize-review and one fix")
            result.tests = "fixed after review"

        self.ctx.events.emit("finalize_complete", epic=PROJECT_SCOPE, phase="finalize")
        write_project_summary(
            self.ctx.logs_dir,
            list_epics(self.ctx.repo_root),
            self.ctx.events.read(),
            result.as_details(),
        )
        return result
