"""
Live status snapshot (.specify/logs/autopilot-status.json).

The only overwritten-in-place state: what the single in-flight
invocation is doing right now. Writes are best-effort (a failed write
never aborts an invocation) and atomic (temp file + rename), so readers
see either the previous or the next snapshot.
"""

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from autopilot.lib.constants import STATUS_FILE, STATUS_IDLE_GRACE_SECONDS
from autopilot.lib.validate import validate_before_write, ValidationError
from autopilot.runner.events import parse_ts

logger = logging.getLogger(__name__)


def is_pid_alive(pid: int | None) -> bool:
    """Check if a process with the given PID is running."""
    if not pid:
        return False
    try:
        os.kill(pid, 0)  # Signal 0 only checks existence
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    except OSError:
        return False


class StatusFile:
    def __init__(self, logs_dir: Path):
        self.path = logs_dir / STATUS_FILE

    def write(self, snapshot: dict) -> bool:
        """Atomically replace the snapshot. Returns False (and logs) on failure."""
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            validate_before_write(snapshot, "status", self.path)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(snapshot, indent=2))
            os.replace(tmp_path, self.path)
            return True
        except (OSError, ValidationError) as e:
            logger.warning(f"Failed to write status snapshot: {e}")
            return False

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to clear status snapshot: {e}")


@dataclass
class StatusView:
    snapshot: dict
    idle: bool
    pid_alive: bool
    age_seconds: float | None


def read_status(
    logs_dir: Path,
    now: datetime | None = None,
    grace_seconds: int = STATUS_IDLE_GRACE_SECONDS,
) -> StatusView | None:
    """Read the snapshot for display.

    Returns None when there is no snapshot or the read caught a partial
    write; callers should simply try again later. A snapshot whose pid is
    gone and whose last activity is older than the grace window is idle,
    not crashed: the run ended and nothing has replaced it yet.
    """
    path = logs_dir / STATUS_FILE
    try:
        snapshot = json.loads(path.read_text())
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        logger.debug(f"Transient status read failure: {e}")
        return None
    if not isinstance(snapshot, dict):
        return None

    now = now or datetime.now(timezone.utc)
    last = parse_ts(snapshot.get("last_activity_at", ""))
    age = (now - last).total_seconds() if last else None
    alive = is_pid_alive(snapshot.get("pid"))
    stale = age is None or age > grace_seconds

    return StatusView(
        snapshot=snapshot,
        idle=not alive and stale,
        pid_alive=alive,
        age_seconds=age,
    )
