"""Tests for the Claude CLI worker."""

import json
from pathlib import Path
from unittest.mock import patch, MagicMock

import pytest

from autopilot.agents.claude import ClaudeWorker, build_command
from autopilot.lib.types import InvocationRequest
from autopilot.runner.stream import EventStreamProcessor, PhaseAccumulator


def request(prompt="Do the plan."):
    return InvocationRequest(epic_id="001", phase="plan", model="opus", tools="Read,Write", prompt=prompt)


def fake_proc(lines, exit_code=0):
    proc = MagicMock()
    proc.pid = 4321
    proc.stdout = iter(lines)
    proc.wait.return_value = exit_code
    return proc


RESULT = json.dumps({"type": "result", "total_cost_usd": 0.1, "duration_ms": 900,
                     "stop_reason": "end_turn", "result": "ok", "is_error": False}) + "\n"


@pytest.fixture
def processor(ctx):
    return EventStreamProcessor(ctx.events, ctx.status, ctx.logs_dir, "001", "plan")


class TestBuildCommand:
    def test_flags(self):
        cmd = build_command("claude", Path("/tmp/p.md"), "sonnet", "Read,Grep")
        assert cmd[0] == "claude"
        assert "/tmp/p.md" in cmd[2]
        assert cmd[cmd.index("--model") + 1] == "sonnet"
        assert cmd[cmd.index("--allowedTools") + 1] == "Read,Grep"
        assert cmd[cmd.index("--output-format") + 1] == "stream-json"


class TestClaudeWorker:
    """Test ClaudeWorker.invoke with a patched subprocess."""

    def test_dry_run_spawns_nothing(self, tmp_path, processor):
        with patch("autopilot.agents.claude.subprocess.Popen") as mock_popen:
            result = ClaudeWorker(tmp_path, dry_run=True).invoke(request(), processor, PhaseAccumulator())
        mock_popen.assert_not_called()
        assert result.success
        assert result.dry_run

    @patch("autopilot.agents.claude.subprocess.Popen")
    def test_streams_lines_into_processor(self, mock_popen, tmp_path, processor, ctx):
        mock_popen.return_value = fake_proc(["not json\n", RESULT])
        worker = ClaudeWorker(tmp_path)

        result = worker.invoke(request(), processor, PhaseAccumulator())

        assert result.success
        assert result.accumulator.cost_usd == pytest.approx(0.1)
        assert result.output_tail == ["not json"]
        assert processor.pid == 4321
        assert [e["event"] for e in ctx.events.read()] == ["phase_end"]

    @patch("autopilot.agents.claude.subprocess.Popen")
    def test_prompt_file_removed_after_run(self, mock_popen, tmp_path, processor):
        mock_popen.return_value = fake_proc([RESULT])
        worker = ClaudeWorker(tmp_path)

        worker.invoke(request("secret instructions"), processor, PhaseAccumulator())

        prompt_arg = mock_popen.call_args[0][0][2]
        prompt_path = Path(prompt_arg.split("Read the file ")[1].split(" and follow")[0])
        assert not prompt_path.exists()
        assert worker.prompt_files == set()

    @patch.dict("os.environ", {"CLAUDECODE": "1", "ANTHROPIC_API_KEY": "sk-test", "HOME": "/home/me"})
    @patch("autopilot.agents.claude.subprocess.Popen")
    def test_strips_nesting_env(self, mock_popen, tmp_path, processor):
        mock_popen.return_value = fake_proc([RESULT])
        ClaudeWorker(tmp_path).invoke(request(), processor, PhaseAccumulator())
        env = mock_popen.call_args[1]["env"]
        assert "CLAUDECODE" not in env
        assert "ANTHROPIC_API_KEY" not in env
        assert env["HOME"] == "/home/me"

    @patch("autopilot.agents.claude.subprocess.Popen")
    def test_rate_limit_detected_from_output(self, mock_popen, tmp_path, processor):
        mock_popen.return_value = fake_proc(["Error: usage limit reached\n"], exit_code=1)
        result = ClaudeWorker(tmp_path).invoke(request(), processor, PhaseAccumulator())
        assert result.rate_limited
        assert not result.success

    @patch("autopilot.agents.claude.subprocess.Popen")
    def test_plain_failure(self, mock_popen, tmp_path, processor):
        mock_popen.return_value = fake_proc(["Traceback: boom\n"], exit_code=1)
        result = ClaudeWorker(tmp_path).invoke(request(), processor, PhaseAccumulator())
        assert result.exit_code == 1
        assert not result.rate_limited

    @patch("autopilot.agents.claude.subprocess.Popen", side_effect=FileNotFoundError())
    def test_missing_binary(self, mock_popen, tmp_path, processor):
        result = ClaudeWorker(tmp_path, binary="no-such-claude").invoke(request(), processor, PhaseAccumulator())
        assert result.exit_code == 127

    @patch("autopilot.agents.claude.subprocess.Popen")
    def test_interrupt_kills_child(self, mock_popen, tmp_path, processor):
        proc = fake_proc([])
        proc.stdout = MagicMock()
        proc.stdout.__iter__.side_effect = KeyboardInterrupt
        mock_popen.return_value = proc
        worker = ClaudeWorker(tmp_path)

        with pytest.raises(KeyboardInterrupt):
            worker.invoke(request(), processor, PhaseAccumulator())

        proc.kill.assert_called_once()
        assert worker.prompt_files == set()
