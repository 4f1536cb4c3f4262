"""Tests for the live status snapshot."""

import os
from datetime import datetime, timedelta, timezone

from autopilot.runner.events import now_ts, parse_ts
from autopilot.runner.status_file import StatusFile, read_status


def snapshot(pid=None, ts=None) -> dict:
    return {
        "epic": "001",
        "phase": "implement",
        "last_activity_at": ts or now_ts(),
        "last_tool": "Read a.py",
        "cost_usd": 0.5,
        "tokens": {"input": 10, "output": 2},
        "pid": pid,
    }


class TestStatusFile:
    def test_write_then_read(self, tmp_path):
        assert StatusFile(tmp_path).write(snapshot(pid=os.getpid())) is True
        view = read_status(tmp_path)
        assert view.snapshot["phase"] == "implement"
        assert view.pid_alive
        assert not view.idle
        assert not (tmp_path / "autopilot-status.json.tmp").exists()

    def test_invalid_snapshot_rejected_without_raising(self, tmp_path, caplog):
        bad = snapshot()
        bad["surprise"] = True
        assert StatusFile(tmp_path).write(bad) is False
        assert read_status(tmp_path) is None

    def test_clear(self, tmp_path):
        status = StatusFile(tmp_path)
        status.write(snapshot())
        status.clear()
        assert read_status(tmp_path) is None


class TestReadStatus:
    def test_missing_file(self, tmp_path):
        assert read_status(tmp_path) is None

    def test_partial_write_is_transient(self, tmp_path):
        (tmp_path / "autopilot-status.json").write_text('{"epic": "00')
        assert read_status(tmp_path) is None

    def test_dead_pid_and_stale_is_idle(self, tmp_path):
        old = (datetime.now(timezone.utc) - timedelta(minutes=10)).strftime("%Y-%m-%dT%H:%M:%SZ")
        StatusFile(tmp_path).write(snapshot(pid=None, ts=old))
        view = read_status(tmp_path)
        assert view.idle
        assert view.age_seconds > 120

    def test_dead_pid_within_grace_is_not_idle(self, tmp_path):
        StatusFile(tmp_path).write(snapshot(pid=None))
        now = parse_ts(now_ts()) + timedelta(seconds=30)
        assert read_status(tmp_path, now=now).idle is False
