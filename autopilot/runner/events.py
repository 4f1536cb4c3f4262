"""
Durable append-only event log (.specify/logs/events.jsonl).

The log is the single source of truth for cost accounting and phase
timing, so unlike the status snapshot an append failure propagates.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from autopilot.lib.constants import EVENTS_FILE
from autopilot.lib.validate import validate_before_write

logger = logging.getLogger(__name__)


def now_ts() -> str:
    """UTC wall-clock timestamp with second precision."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_ts(ts: str) -> datetime | None:
    try:
        return datetime.strptime(ts, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)
    except (TypeError, ValueError):
        return None


class EventLog:
    """Append-only JSONL event log."""

    def __init__(self, logs_dir: Path):
        self.path = logs_dir / EVENTS_FILE

    def emit(self, event: str, **fields) -> dict:
        """Append one event and return the record written.

        Raises:
            OSError: if the append fails
            ValidationError: if the record doesn't match event.schema.json
        """
        record = {"ts": now_ts(), "event": event}
        record.update(fields)
        validate_before_write(record, "event", self.path)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a") as f:
            f.write(json.dumps(record) + "\n")
            f.flush()
        return record

    def read(self) -> list[dict]:
        """Load all events. Skips corrupted lines."""
        if not self.path.exists():
            return []

        events = []
        for line_num, line in enumerate(self.path.read_text().splitlines(), 1):
            if not line.strip():
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError as e:
                logger.warning(f"Skipping corrupted event line {line_num} in {self.path}: {e}")
        return events

    def for_epic(self, epic_id: str, event: str | None = None) -> list[dict]:
        return [
            e for e in self.read()
            if e.get("epic") == epic_id and (event is None or e.get("event") == event)
        ]

    def tail(self, count: int = 10) -> list[dict]:
        return self.read()[-count:]
