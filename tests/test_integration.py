"""Tests for the integration pipeline and its step FSM."""

from unittest.mock import patch

import pytest
from transitions import MachineError

from autopilot.lib.epics import load_epic
from autopilot.lib.errors import PhaseHalt
from autopilot.lib.interfaces import APPROVED, CHANGES_REQUESTED, CONFLICTING, MERGEABLE, PENDING, UNKNOWN
from autopilot.lib.types import FeedbackItem, ReviewReport
from autopilot.lib.verify import CommandResult
from autopilot.runner.detector import StateDetector
from autopilot.runner.phase import PhaseEngine
from autopilot.workflow.integration import IntegrationFSM, IntegrationPipeline, ask_on_tty

from fakes import FakeRemote, FakeReviewer, FakeWorker, make_ctx, make_epic_at_phase


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def build(ctx, vcs, remote=None, reviewer=None, worker=None, confirm=None):
    clock = FakeClock()
    worker = worker or FakeWorker()
    engine = PhaseEngine(ctx, worker, vcs, StateDetector(ctx.repo_root), sleep=clock.sleep)
    pipeline = IntegrationPipeline(ctx, engine, vcs, remote or FakeRemote(), reviewer or FakeReviewer(),
                                   sleep=clock.sleep, clock=clock, confirm=confirm or (lambda question: True))
    return pipeline, clock


def event_names(ctx):
    return [e["event"] for e in ctx.events.read()]


@pytest.fixture
def epic(ctx):
    return make_epic_at_phase(ctx.repo_root, phase="review")


class TestIntegrationFSM:
    def test_remote_path_transitions(self):
        seen = []
        fsm = IntegrationFSM("001", on_transition=lambda a, b, t: seen.append((a, b, t)))
        for trigger in ("start_remote", "pre_review_done", "pushed", "published",
                        "review_done", "merged_remote", "recorded"):
            getattr(fsm, trigger)()
        assert fsm.state == "merged"
        assert seen[0] == ("pending", "pre_review", "start_remote")
        assert len(seen) == 7

    def test_conflict_loops_through_rebase(self):
        fsm = IntegrationFSM("001")
        for trigger in ("start_remote", "pre_review_done", "pushed", "published", "review_done"):
            getattr(fsm, trigger)()
        fsm.conflict()
        assert fsm.state == "rebasing"
        fsm.repushed()
        assert fsm.state == "merging"

    def test_out_of_order_step_raises(self):
        fsm = IntegrationFSM("001")
        fsm.start_remote()
        with pytest.raises(MachineError):
            fsm.merged_remote()

    def test_fail_from_any_state(self):
        fsm = IntegrationFSM("001")
        fsm.start_local()
        assert fsm.can("local_merged")
        assert not fsm.can("pushed")
        fsm.fail()
        assert fsm.state == "failed"

    def test_transition_logged(self, caplog):
        caplog.set_level("INFO")
        IntegrationFSM("001").start_local()
        assert "[FSM] 001: pending -> local_merge (start_local)" in caplog.text


class TestLocalMerge:
    def test_no_remote_merges_locally(self, ctx, vcs, epic):
        vcs.remote = False
        pipeline, _ = build(ctx, vcs)

        result = pipeline.run(epic)

        assert result.mode == "local"
        assert vcs.branch == "master"
        assert vcs.commit_messages == ["merge: 001-auth - Auth", "fix(001): mark epic YAML as merged"]
        assert load_epic(epic.source_file).merged
        assert pipeline.fsm.state == "merged"
        assert "local_merge_complete" in event_names(ctx)

    def test_gh_unavailable_merges_locally(self, ctx, vcs, epic):
        pipeline, _ = build(ctx, vcs, remote=FakeRemote(available=False))
        assert pipeline.run(epic).mode == "local"

    def test_leftover_changes_committed_first(self, ctx, vcs, epic):
        vcs.remote = False
        vcs.dirty = True
        pipeline, _ = build(ctx, vcs)

        pipeline.run(epic)

        assert vcs.commit_messages[0] == "fix(001): commit pending changes before merge"

    def test_merge_failure_aborts_and_halts(self, ctx, vcs, epic):
        vcs.remote = False
        vcs.fail.add("merge")
        pipeline, _ = build(ctx, vcs)

        with pytest.raises(PhaseHalt) as exc:
            pipeline.run(epic)

        assert exc.value.epic_id == "001"
        assert "merge_abort" in vcs.calls
        assert pipeline.fsm.state == "failed"
        assert not load_epic(epic.source_file).merged
        assert "integration_failed" in event_names(ctx)

    def test_checkout_failure_halts(self, ctx, vcs, epic):
        vcs.remote = False
        vcs.fail.add("checkout")
        pipeline, _ = build(ctx, vcs)

        with pytest.raises(PhaseHalt):
            pipeline.run(epic)
        assert "merge" not in vcs.calls

    def test_declined_merge_halts_before_checkout(self, ctx, vcs, epic):
        vcs.remote = False
        questions = []
        pipeline, _ = build(ctx, vcs, confirm=lambda q: questions.append(q) or False)

        with pytest.raises(PhaseHalt, match="declined"):
            pipeline.run(epic)

        assert questions == ["Merge 001-auth to master?"]
        assert vcs.calls == []
        assert not load_epic(epic.source_file).merged
        assert pipeline.fsm.state == "failed"


class TestConfirmation:
    @patch("autopilot.workflow.integration.input", create=True)
    @patch("autopilot.workflow.integration.sys.stdin")
    def test_without_tty_proceeds_without_asking(self, mock_stdin, mock_input):
        mock_stdin.isatty.return_value = False
        assert ask_on_tty("Merge?") is True
        mock_input.assert_not_called()

    @pytest.mark.parametrize("answer,expected", [("", True), ("y", True), ("n", False), ("No", False)])
    @patch("autopilot.workflow.integration.input", create=True)
    @patch("autopilot.workflow.integration.sys.stdin")
    def test_tty_answer(self, mock_stdin, mock_input, answer, expected):
        mock_stdin.isatty.return_value = True
        mock_input.return_value = answer
        assert ask_on_tty("Merge?") is expected
        mock_input.assert_called_once_with("Merge? [Y/n] ")

    @patch("autopilot.workflow.integration.sys.stdin")
    def test_pipeline_default_auto_proceeds_without_tty(self, mock_stdin, ctx, vcs, epic):
        mock_stdin.isatty.return_value = False
        vcs.remote = False
        engine = PhaseEngine(ctx, FakeWorker(), vcs, StateDetector(ctx.repo_root), sleep=lambda s: None)
        pipeline = IntegrationPipeline(ctx, engine, vcs, FakeRemote(), FakeReviewer(), sleep=lambda s: None)

        assert pipeline.run(epic).mode == "local"
        assert load_epic(epic.source_file).merged


class TestRemotePath:
    def test_declined_publish_falls_back_to_local_merge(self, ctx, vcs, epic):
        remote = FakeRemote()
        questions = []

        def confirm(question):
            questions.append(question)
            return not question.startswith("Push")

        pipeline, _ = build(ctx, vcs, remote=remote, confirm=confirm)

        result = pipeline.run(epic)

        assert result.mode == "local"
        assert questions == ["Push 001-auth & create PR to master?", "Merge 001-auth to master?"]
        assert remote.prs == {}
        assert "push" not in vcs.calls
        assert load_epic(epic.source_file).merged

    def test_happy_path(self, ctx, vcs, epic):
        remote = FakeRemote()
        pipeline, clock = build(ctx, vcs, remote=remote)

        result = pipeline.run(epic)

        assert result.mode == "remote"
        assert result.pr_number == 101
        assert result.coderabbit == "clean"
        assert result.remote_review == "approved"
        assert result.tests_after_rebase == "not run"
        assert remote.merged == [101]
        assert load_epic(epic.source_file).merged
        assert vcs.branch == "master"
        assert clock.sleeps == []
        names = event_names(ctx)
        assert names.index("pr_created") < names.index("pr_merged") < names.index("remote_merge_complete")

    def test_recorded_merged_even_if_cleanup_fails(self, ctx, vcs, epic):
        vcs.fail.add("checkout")
        pipeline, _ = build(ctx, vcs)

        pipeline.run(epic)

        assert load_epic(epic.source_file).merged
        assert "pull" not in vcs.calls
        assert "fix(001): mark epic YAML as merged" in vcs.commit_messages

    def test_pull_failure_is_not_fatal(self, ctx, vcs, epic):
        vcs.fail.add("pull")
        pipeline, _ = build(ctx, vcs)
        assert pipeline.run(epic).mode == "remote"

    def test_pr_failure_halts(self, ctx, vcs, epic):
        remote = FakeRemote()
        remote.find_or_create_pr = lambda **kw: (False, None, "gh: not authenticated")
        pipeline, _ = build(ctx, vcs, remote=remote)

        with pytest.raises(PhaseHalt, match="not authenticated"):
            pipeline.run(epic)


class TestRebase:
    def test_skips_rebase_when_up_to_date(self, ctx, vcs, epic):
        vcs.ancestor = True
        pipeline, _ = build(ctx, vcs)

        pipeline.run(epic)

        assert "rebase" not in vcs.calls
        assert "push" in vcs.calls

    def test_conflicts_resolved_by_worker(self, ctx, vcs, epic):
        vcs.conflicts = ["src/auth.py"]

        def resolve(request):
            vcs.conflicts = []

        worker = FakeWorker({"conflict-resolve": [resolve]})
        pipeline, _ = build(ctx, vcs, worker=worker)

        pipeline.run(epic)

        assert "conflict-resolve" in worker.phases
        assert "src/auth.py" in worker.requests[0].prompt
        assert "rebase_continue" in vcs.calls
        [conflict] = [e for e in ctx.events.read() if e["event"] == "rebase_conflict"]
        assert conflict["files"] == ["src/auth.py"]

    def test_unresolved_conflicts_halt_after_bounded_attempts(self, ctx, vcs, epic):
        vcs.conflicts = ["src/auth.py"]
        remote = FakeRemote()
        pipeline, _ = build(ctx, vcs, remote=remote)

        with pytest.raises(PhaseHalt, match="still conflicts after 3 attempts"):
            pipeline.run(epic)

        assert vcs.calls.count("rebase_abort") == 3
        assert remote.prs == {}
        assert "push" not in vcs.calls

    def test_push_failure_halts(self, ctx, vcs, epic):
        vcs.fail.add("push")
        pipeline, _ = build(ctx, vcs)
        with pytest.raises(PhaseHalt, match="push"):
            pipeline.run(epic)

    @patch("autopilot.workflow.integration.run_project_command")
    def test_failing_tests_after_rebase_get_one_fix(self, mock_run, tmp_path, vcs):
        ctx = make_ctx(tmp_path, test_cmd="make test")
        epic = make_epic_at_phase(tmp_path, phase="review")
        mock_run.side_effect = [
            CommandResult(ok=False, returncode=1, output="FAILED test_login"),
            CommandResult(ok=True, returncode=0, output=""),
        ]
        worker = FakeWorker()
        pipeline, _ = build(ctx, vcs, worker=worker)

        result = pipeline.run(epic)

        assert result.tests_after_rebase == "fixed"
        assert worker.phases.count("rebase-test-fix") == 1
        assert "FAILED test_login" in worker.requests[worker.phases.index("rebase-test-fix")].prompt

    @patch("autopilot.workflow.integration.run_project_command")
    def test_tests_still_failing_continue_with_warning(self, mock_run, tmp_path, vcs):
        ctx = make_ctx(tmp_path, test_cmd="make test")
        epic = make_epic_at_phase(tmp_path, phase="review")
        mock_run.return_value = CommandResult(ok=False, returncode=1, output="boom")
        pipeline, _ = build(ctx, vcs)

        result = pipeline.run(epic)

        assert result.tests_after_rebase == "failing"
        assert load_epic(epic.source_file).merged


class TestPreReview:
    def test_reviewer_unavailable_skips(self, ctx, vcs, epic):
        pipeline, _ = build(ctx, vcs, reviewer=FakeReviewer(available=False))
        assert pipeline.run(epic).coderabbit == "skipped"

    def test_issues_fixed_then_clean(self, ctx, vcs, epic):
        reviewer = FakeReviewer([ReviewReport(ran=True, issue_count=3, output="3 issues"),
                                 ReviewReport(ran=True, clean=True)])
        worker = FakeWorker()
        pipeline, _ = build(ctx, vcs, reviewer=reviewer, worker=worker)

        result = pipeline.run(epic)

        assert result.coderabbit == "fixed"
        assert worker.phases.count("coderabbit-fix") == 1

    def test_stalled_issue_count_halts_by_default(self, ctx, vcs, epic):
        reviewer = FakeReviewer([ReviewReport(ran=True, issue_count=2)])
        worker = FakeWorker()
        pipeline, _ = build(ctx, vcs, reviewer=reviewer, worker=worker)

        with pytest.raises(PhaseHalt, match="FORCE_ADVANCE_ON_REVIEW_FAIL"):
            pipeline.run(epic)

        assert worker.phases == ["coderabbit-fix"]
        assert "convergence_stall" in event_names(ctx)

    def test_stall_continues_when_force_advance_enabled(self, tmp_path, vcs):
        ctx = make_ctx(tmp_path, force_advance_on_review_fail=True)
        epic = make_epic_at_phase(tmp_path, phase="review")
        reviewer = FakeReviewer([ReviewReport(ran=True, issue_count=2)])
        pipeline, _ = build(ctx, vcs, reviewer=reviewer)

        result = pipeline.run(epic)

        assert result.coderabbit == "force-advanced"
        assert load_epic(epic.source_file).merged

    def test_review_not_run_is_not_a_failure(self, ctx, vcs, epic):
        reviewer = FakeReviewer([ReviewReport(ran=False, reason="rate limited")])
        pipeline, _ = build(ctx, vcs, reviewer=reviewer)
        assert pipeline.run(epic).coderabbit == "skipped"


class TestRemoteReview:
    def test_changes_requested_then_approved(self, ctx, vcs, epic):
        remote = FakeRemote(
            review_states=[CHANGES_REQUESTED, APPROVED],
            feedback=[FeedbackItem(type="line_comment", body="rename token", path="src/auth.py", line=12)],
        )
        worker = FakeWorker()
        pipeline, clock = build(ctx, vcs, remote=remote, worker=worker)

        result = pipeline.run(epic)

        assert result.remote_review == "approved"
        fix = worker.requests[worker.phases.index("coderabbit-fix")]
        assert "src/auth.py:12: rename token" in fix.prompt
        assert vcs.calls.count("push") == 2
        assert clock.sleeps == [10]

    def test_poll_timeout_force_advances_to_merge(self, ctx, vcs, epic):
        remote = FakeRemote(review_states=[PENDING])
        pipeline, clock = build(ctx, vcs, remote=remote)

        result = pipeline.run(epic)

        assert result.remote_review == "force-advanced"
        assert clock.now >= 600
        assert set(clock.sleeps) == {30}
        assert remote.merged == [101]
        [forced] = [e for e in ctx.events.read() if e["event"] == "force_advance"]
        assert forced["reason"] == "review poll timed out"

    def test_stalled_review_comments_halt(self, ctx, vcs, epic):
        remote = FakeRemote(
            review_states=[CHANGES_REQUESTED],
            feedback=[FeedbackItem(type="review", body="missing tests")],
        )
        pipeline, _ = build(ctx, vcs, remote=remote)

        with pytest.raises(PhaseHalt, match="review comments stalled"):
            pipeline.run(epic)
        assert remote.merged == []


class TestMerge:
    def test_unknown_mergeability_backs_off_exponentially(self, ctx, vcs, epic):
        remote = FakeRemote(mergeable=[UNKNOWN, UNKNOWN, MERGEABLE])
        pipeline, clock = build(ctx, vcs, remote=remote)

        pipeline.run(epic)

        assert clock.sleeps == [5, 10]
        assert remote.merged == [101]

    def test_conflicting_pr_rebases_again(self, ctx, vcs, epic):
        remote = FakeRemote(mergeable=[CONFLICTING, MERGEABLE])
        pipeline, _ = build(ctx, vcs, remote=remote)

        pipeline.run(epic)

        assert vcs.calls.count("push") == 2
        assert pipeline.fsm.state == "merged"

    def test_merge_exhaustion_halts_without_recording(self, ctx, vcs, epic):
        remote = FakeRemote()
        remote.merge_ok = False
        pipeline, clock = build(ctx, vcs, remote=remote)

        with pytest.raises(PhaseHalt, match="not merged after 3 attempts"):
            pipeline.run(epic)

        assert clock.sleeps == [5, 10]
        assert not load_epic(epic.source_file).merged
