"""
autopilot status - Show the live snapshot and recent events.
"""

from pathlib import Path

from autopilot.lib.constants import LOGS_DIR
from autopilot.lib.summary import format_duration
from autopilot.runner.events import EventLog
from autopilot.runner.status_file import read_status

RECENT_EVENTS = 10


def _describe_event(event: dict) -> str:
    skip = {"ts", "event", "epic", "phase"}
    extras = " ".join(f"{k}={v}" for k, v in event.items() if k not in skip)
    return f"{event.get('ts', '?')}  {event.get('epic', '-'):>7}  {event.get('phase', '-'):<15} {event.get('event')}  {extras}".rstrip()


def cmd_status(args, repo_root: Path) -> int:
    logs_dir = repo_root / LOGS_DIR
    view = read_status(logs_dir)

    if view is None:
        print("No active run (no status snapshot)")
    else:
        snap = view.snapshot
        state = "idle" if view.idle else ("running" if view.pid_alive else "stale")
        age = format_duration(view.age_seconds) if view.age_seconds is not None else "?"
        print(f"Epic:      {snap.get('epic')}")
        print(f"Phase:     {snap.get('phase')}")
        print(f"State:     {state} (last activity {age} ago)")
        print(f"Last tool: {snap.get('last_tool') or '-'}")
        tokens = snap.get("tokens") or {}
        print(f"Cost:      ${float(snap.get('cost_usd') or 0):.2f} "
              f"(tokens in {tokens.get('input', 0)} / out {tokens.get('output', 0)})")
        progress = snap.get("implement_progress")
        if progress:
            print(f"Progress:  phase {progress['current_phase']}/{progress['total_phases']}, "
                  f"{progress['tasks_complete']} done, {progress['tasks_remaining']} remaining")

    events = EventLog(logs_dir).tail(RECENT_EVENTS)
    if events:
        print("\nRecent events:")
        for event in events:
            print(f"  {_describe_event(event)}")
    return 0
