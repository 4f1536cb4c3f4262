"""Tests for the finalize stage."""

from unittest.mock import patch

import pytest

from autopilot.lib.errors import PhaseHalt
from autopilot.lib.verify import CommandResult
from autopilot.runner.detector import StateDetector
from autopilot.runner.phase import PhaseEngine
from autopilot.workflow.finalize import Finalizer

from fakes import FakeVersionControl, FakeWorker, make_ctx

PASS = CommandResult(ok=True, returncode=0, output="ok")
FAIL = CommandResult(ok=False, returncode=1, output="1 failed")


def build(ctx, worker=None, vcs=None):
    worker = worker or FakeWorker()
    vcs = vcs or FakeVersionControl(branch="001-auth", branches=["master"])
    engine = PhaseEngine(ctx, worker, vcs, StateDetector(ctx.repo_root))
    return Finalizer(ctx, engine, vcs), worker, vcs


@pytest.fixture
def ctx(tmp_path):
    return make_ctx(tmp_path, test_cmd="make test", lint_cmd="make lint")


def commands(tests, lint):
    """side_effect for run_project_command: iterators of results per command."""
    tests, lint = iter(tests), iter(lint)

    def run(cmd, cwd):
        return next(tests) if cmd == "make test" else next(lint)
    return run


class TestFinalize:
    @patch("autopilot.workflow.finalize.run_project_command", return_value=PASS)
    def test_clean_run(self, mock_run, ctx):
        finalizer, worker, vcs = build(ctx)

        result = finalizer.run()

        assert (result.tests, result.lint, result.review) == ("passed", "passed", "completed")
        assert worker.phases == ["finalize-review"]
        assert worker.requests[0].epic_id == "project"
        assert vcs.branch == "master"
        assert (ctx.logs_dir / "project-summary.md").exists()
        names = [e["event"] for e in ctx.events.read()]
        assert names[0] == "finalize_start"
        assert "finalize_complete" in names

    def test_unconfigured_commands_pass(self, tmp_path):
        finalizer, worker, _ = build(make_ctx(tmp_path))
        result = finalizer.run()
        assert result.tests == "not configured"
        assert worker.phases == ["finalize-review"]

    @patch("autopilot.workflow.finalize.run_project_command")
    def test_failing_tests_fixed(self, mock_run, ctx):
        mock_run.side_effect = commands([FAIL, PASS, PASS], [PASS, PASS, PASS])
        finalizer, worker, _ = build(ctx)

        result = finalizer.run()

        assert result.tests == "passed"
        assert worker.phases == ["finalize-fix", "finalize-review"]
        assert "1 failed" in worker.requests[0].prompt

    @patch("autopilot.workflow.finalize.run_project_command")
    def test_tests_still_failing_halts(self, mock_run, ctx):
        mock_run.side_effect = commands([FAIL] * 4, [PASS] * 4)
        finalizer, worker, _ = build(ctx)

        with pytest.raises(PhaseHalt) as exc:
            finalizer.run()

        assert exc.value.resume_command == "autopilot run"
        assert worker.phases == ["finalize-fix"] * 3
        assert "finalize_failed" in [e["event"] for e in ctx.events.read()]

    @patch("autopilot.workflow.finalize.run_project_command")
    def test_lint_failure_only_warns(self, mock_run, ctx):
        mock_run.side_effect = commands([PASS] * 5, [FAIL] * 5)
        finalizer, worker, _ = build(ctx)

        result = finalizer.run()

        assert result.lint == "failing"
        assert worker.phases.count("finalize-fix") == 3

    @patch("autopilot.workflow.finalize.run_project_command")
    def test_review_breaking_tests_gets_one_fix(self, mock_run, ctx):
        mock_run.side_effect = commands([PASS, FAIL, PASS], [PASS, PASS, PASS])
        finalizer, worker, _ = build(ctx)

        result = finalizer.run()

        assert result.tests == "fixed after review"
        assert worker.phases == ["finalize-review", "finalize-fix"]

    @patch("autopilot.workflow.finalize.run_project_command")
    def test_review_breaking_tests_unfixed_halts(self, mock_run, ctx):
        mock_run.side_effect = commands([PASS, FAIL, FAIL], [PASS, PASS, PASS])
        finalizer, _, _ = build(ctx)
        with pytest.raises(PhaseHalt, match="after finalize-review"):
            finalizer.run()

    def test_fix_changes_committed(self, ctx):
        vcs = FakeVersionControl(branch="master")

        def fix(request):
            vcs.dirty = True

        worker = FakeWorker({"finalize-fix": [fix]})
        with patch("autopilot.workflow.finalize.run_project_command",
                   side_effect=commands([FAIL, PASS, PASS], [PASS, PASS, PASS])):
            build(ctx, worker=worker, vcs=vcs)[0].run()

        assert "fix: finalize test/lint fixes" in vcs.commit_messages

    def test_checkout_failure_halts(self, ctx):
        vcs = FakeVersionControl(branch="001-auth")
        vcs.fail.add("checkout")
        finalizer, worker, _ = build(ctx, vcs=vcs)
        with pytest.raises(PhaseHalt, match="could not check out master"):
            finalizer.run()
        assert worker.requests == []
