"""
Event stream processor for worker invocations.

Translates the worker's line-delimited stream-json output into durable
events, a per-phase transcript, and the live status snapshot. Record
kinds handled:

    system     -> session_init
    assistant  -> tool_use (one per embedded tool call), token usage
    user       -> tool_error (when the tool result is an error)
    result     -> phase_end, transcript

stream_event records repeat what the result record already reports and
are dropped to avoid double counting.

Token and cost counters live in a PhaseAccumulator that the caller
creates per invocation and passes in; the processor keeps no counters
of its own.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

from autopilot.lib.constants import (
    ERROR_EXCERPT_MAX,
    LAST_TOOL_TARGET_MAX,
    TOOL_TARGET_MAX,
)
from autopilot.runner.events import EventLog, now_ts
from autopilot.runner.status_file import StatusFile

logger = logging.getLogger(__name__)

# First present key wins when describing a tool call's target
TARGET_KEYS = ("file_path", "command", "pattern", "description", "skill", "prompt")


@dataclass
class PhaseAccumulator:
    """Per-invocation usage counters and last-seen state."""
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    last_tool: str = ""
    session_id: str = ""
    model: str = ""
    tool_uses: int = 0
    tool_errors: int = 0
    stop_reason: str = ""
    duration_ms: int = 0
    result_text: str = ""
    is_error: bool = False
    finished: bool = False

    @property
    def tokens(self) -> dict:
        return {"input": self.input_tokens, "output": self.output_tokens}


def flatten(text: str, limit: int) -> str:
    """Collapse newlines and bound length."""
    return " ".join(str(text).splitlines()).strip()[:limit]


def tool_target(tool_input: dict) -> str:
    if not isinstance(tool_input, dict):
        return ""
    for key in TARGET_KEYS:
        value = tool_input.get(key)
        if value:
            return flatten(value, TOOL_TARGET_MAX)
    return ""


def _error_excerpt(record: dict, block: dict) -> str:
    raw = record.get("tool_use_result")
    if not raw:
        raw = block.get("content", "")
    if isinstance(raw, list):
        raw = " ".join(
            part.get("text", "") if isinstance(part, dict) else str(part)
            for part in raw
        )
    elif isinstance(raw, dict):
        raw = raw.get("stderr") or raw.get("error") or json.dumps(raw)
    return flatten(raw, ERROR_EXCERPT_MAX)


class EventStreamProcessor:
    """Consumes one invocation's stream for one epic/phase."""

    def __init__(
        self,
        events: EventLog,
        status: StatusFile,
        logs_dir: Path,
        epic_id: str,
        phase: str,
        progress: Callable[[], dict | None] | None = None,
    ):
        self.events = events
        self.status = status
        self.logs_dir = logs_dir
        self.epic_id = epic_id
        self.phase = phase
        self.progress = progress
        self.pid: int | None = None

    @property
    def transcript_path(self) -> Path:
        return self.logs_dir / f"{self.epic_id}-{self.phase}.log"

    def process(self, lines: Iterable[str], acc: PhaseAccumulator) -> PhaseAccumulator:
        for line in lines:
            acc = self.process_line(line, acc)
        return acc

    def process_line(self, line: str, acc: PhaseAccumulator) -> PhaseAccumulator:
        line = line.strip()
        if not line:
            return acc
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            logger.debug(f"Non-JSON worker output: {line[:120]}")
            return acc
        if not isinstance(record, dict):
            return acc

        kind = record.get("type")
        if kind == "system":
            self._on_system(record, acc)
        elif kind == "assistant":
            self._on_assistant(record, acc)
        elif kind == "user":
            self._on_user(record, acc)
        elif kind == "result":
            self._on_result(record, acc)
        elif kind == "stream_event":
            pass
        else:
            logger.debug(f"Ignoring stream record type {kind!r}")
        return acc

    def _emit(self, event: str, **fields) -> dict:
        return self.events.emit(event, epic=self.epic_id, phase=self.phase, **fields)

    def _on_system(self, record: dict, acc: PhaseAccumulator) -> None:
        if record.get("subtype", "init") != "init":
            return
        acc.session_id = record.get("session_id", "") or ""
        acc.model = record.get("model", "") or ""
        self._emit("session_init", model=acc.model, session_id=acc.session_id)
        self.refresh_status(acc)

    def _on_assistant(self, record: dict, acc: PhaseAccumulator) -> None:
        message = record.get("message") or {}
        for block in message.get("content") or []:
            if not isinstance(block, dict) or block.get("type") != "tool_use":
                continue
            name = block.get("name", "unknown")
            target = tool_target(block.get("input") or {})
            self._emit("tool_use", tool=name, target=target)
            acc.tool_uses += 1
            acc.last_tool = f"{name} {target[:LAST_TOOL_TARGET_MAX]}".strip()

        usage = message.get("usage") or {}
        acc.input_tokens += int(usage.get("input_tokens") or 0) + int(usage.get("cache_read_input_tokens") or 0)
        acc.output_tokens += int(usage.get("output_tokens") or 0)
        self.refresh_status(acc)

    def _on_user(self, record: dict, acc: PhaseAccumulator) -> None:
        content = (record.get("message") or {}).get("content") or []
        if not content or not isinstance(content[0], dict):
            return
        block = content[0]
        if not block.get("is_error"):
            return
        acc.tool_errors += 1
        self._emit("tool_error", excerpt=_error_excerpt(record, block))

    def _on_result(self, record: dict, acc: PhaseAccumulator) -> None:
        acc.duration_ms = int(record.get("duration_ms") or 0)
        acc.cost_usd = float(record.get("total_cost_usd") or 0.0)
        acc.stop_reason = record.get("stop_reason") or "unknown"
        acc.result_text = record.get("result") or ""
        acc.is_error = bool(record.get("is_error"))
        acc.finished = True

        self._emit(
            "phase_end",
            duration_ms=acc.duration_ms,
            cost_usd=acc.cost_usd,
            stop_reason=acc.stop_reason,
            tokens=acc.tokens,
        )
        self._write_transcript(acc)
        self.refresh_status(acc)

    def _write_transcript(self, acc: PhaseAccumulator) -> None:
        try:
            self.transcript_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.transcript_path, "w") as f:
                f.write(f"=== {now_ts()} {self.epic_id} {self.phase} ({acc.stop_reason}) ===\n")
                f.write(acc.result_text.rstrip() + "\n\n")
        except OSError as e:
            logger.warning(f"Failed to write transcript {self.transcript_path}: {e}")

    def snapshot(self, acc: PhaseAccumulator) -> dict:
        snap = {
            "epic": self.epic_id,
            "phase": self.phase,
            "last_activity_at": now_ts(),
            "last_tool": acc.last_tool,
            "cost_usd": acc.cost_usd,
            "tokens": acc.tokens,
            "pid": self.pid,
        }
        if self.phase == "implement" and self.progress:
            progress = self.progress()
            if progress:
                snap["implement_progress"] = progress
        return snap

    def refresh_status(self, acc: PhaseAccumulator) -> None:
        try:
            snap = self.snapshot(acc)
        except OSError as e:
            logger.warning(f"Failed to build status snapshot: {e}")
            return
        self.status.write(snap)
