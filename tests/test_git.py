"""Tests for autopilot.git module."""

import subprocess
from pathlib import Path
from unittest.mock import patch, MagicMock, call

from autopilot.git.runner import run_git, GitResult
from autopilot.git.status import has_uncommitted_changes, get_conflicted_files
from autopilot.git.branch import get_current_branch, is_ancestor, log_mentions
from autopilot.git.remote import has_remote, push_with_lease
from autopilot.git.vcs import GitVersionControl


def ok(stdout=""):
    return GitResult(returncode=0, stdout=stdout, stderr="")


def fail(stderr="error"):
    return GitResult(returncode=1, stdout="", stderr=stderr)


class TestGitResult:
    """Test GitResult dataclass."""

    def test_success_when_returncode_zero(self):
        assert GitResult(returncode=0, stdout="ok", stderr="").success is True

    def test_failure_when_returncode_nonzero(self):
        assert GitResult(returncode=1, stdout="", stderr="error").success is False

    def test_failure_when_timed_out(self):
        assert GitResult(returncode=0, stdout="ok", stderr="", timed_out=True).success is False

    def test_output_combines_streams(self):
        assert GitResult(returncode=1, stdout="a\n", stderr="b\n").output == "a\nb"


class TestRunGit:
    """Test run_git function."""

    @patch("autopilot.git.runner.subprocess.run")
    def test_returns_result_on_success(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="output", stderr="")
        result = run_git(["status"], Path("/tmp"))
        assert result.success
        assert result.stdout == "output"

    @patch("autopilot.git.runner.subprocess.run")
    def test_handles_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="git", timeout=30)
        result = run_git(["status"], Path("/tmp"))
        assert not result.success
        assert result.timed_out
        assert "timed out" in result.stderr

    @patch("autopilot.git.runner.subprocess.run")
    def test_passes_cwd_with_C_flag(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        run_git(["status", "--porcelain"], Path("/my/repo"))
        assert mock_run.call_args[0][0] == ["git", "-C", "/my/repo", "status", "--porcelain"]


class TestStatus:
    """Test status helpers."""

    @patch("autopilot.git.status.run_git")
    def test_clean_tree(self, mock_run):
        mock_run.return_value = ok()
        assert has_uncommitted_changes(Path("/tmp")) is False

    @patch("autopilot.git.status.run_git")
    def test_dirty_tree(self, mock_run):
        mock_run.return_value = ok(" M file.txt\n")
        assert has_uncommitted_changes(Path("/tmp")) is True

    @patch("autopilot.git.status.run_git")
    def test_conflicted_files(self, mock_run):
        mock_run.return_value = ok("src/a.py\nsrc/b.py\n")
        assert get_conflicted_files(Path("/tmp")) == ["src/a.py", "src/b.py"]
        assert "--diff-filter=U" in mock_run.call_args[0][0]


class TestBranch:
    """Test branch helpers."""

    @patch("autopilot.git.branch.run_git")
    def test_current_branch(self, mock_run):
        mock_run.return_value = ok("003-login\n")
        assert get_current_branch(Path("/tmp")) == "003-login"

    @patch("autopilot.git.branch.run_git")
    def test_detached_head(self, mock_run):
        mock_run.return_value = ok("")
        assert get_current_branch(Path("/tmp")) is None

    @patch("autopilot.git.branch.run_git")
    def test_is_ancestor(self, mock_run):
        mock_run.return_value = fail("")
        assert is_ancestor(Path("/tmp"), "origin/main", "HEAD") is False

    @patch("autopilot.git.branch.run_git")
    def test_log_mentions(self, mock_run):
        mock_run.return_value = ok("abc123 merge: 003-login - Login\n")
        assert log_mentions(Path("/tmp"), "main", "merge.*003-login")
        args = mock_run.call_args[0][0]
        assert "--grep=merge.*003-login" in args
        assert "-i" in args

    @patch("autopilot.git.branch.run_git")
    def test_log_mentions_no_match(self, mock_run):
        mock_run.return_value = ok("")
        assert not log_mentions(Path("/tmp"), "main", "merge.*003-login")


class TestRemote:
    """Test remote helpers."""

    @patch("autopilot.git.remote.run_git")
    def test_has_remote(self, mock_run):
        mock_run.return_value = ok("origin\nupstream\n")
        assert has_remote(Path("/tmp"))
        assert not has_remote(Path("/tmp"), "fork")

    @patch("autopilot.git.remote.run_git")
    def test_push_uses_lease(self, mock_run):
        mock_run.return_value = ok()
        push_with_lease(Path("/tmp"), "003-login")
        assert mock_run.call_args[0][0] == ["push", "-u", "origin", "003-login", "--force-with-lease"]


class TestGitVersionControl:
    """Test the VersionControl adapter."""

    @patch("autopilot.git.commit.run_git")
    def test_commit_files_stages_then_commits(self, mock_run):
        mock_run.return_value = ok()
        vcs = GitVersionControl(Path("/repo"))

        assert vcs.commit_files(["a.md"], "chore(001): record branch 001-auth").success

        assert mock_run.call_args_list == [
            call(["add", "--", "a.md"], Path("/repo")),
            call(["commit", "-m", "chore(001): record branch 001-auth"], Path("/repo")),
        ]

    @patch("autopilot.git.commit.run_git")
    def test_commit_skipped_when_staging_fails(self, mock_run):
        mock_run.return_value = fail("pathspec did not match")
        result = GitVersionControl(Path("/repo")).commit_all("msg")
        assert not result.success
        assert mock_run.call_count == 1

    @patch("autopilot.git.rebase.run_git")
    def test_rebase_continue_never_opens_editor(self, mock_run):
        mock_run.return_value = ok()
        GitVersionControl(Path("/repo")).rebase_continue()
        assert mock_run.call_args[0][0][:2] == ["-c", "core.editor=true"]

    @patch("autopilot.git.remote.run_git")
    def test_fetch_uses_configured_remote(self, mock_run):
        mock_run.return_value = ok()
        GitVersionControl(Path("/repo"), remote_name="upstream").fetch("main")
        assert mock_run.call_args[0][0] == ["fetch", "upstream", "main"]
