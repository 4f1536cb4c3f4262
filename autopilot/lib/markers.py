"""
Completion-marker tokens embedded in artifact documents.

Markers are the lifecycle state: the detector reads them, force-advance
appends them, and a verify rejection retracts them. Appending is
idempotent so a re-check never duplicates a marker.
"""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def has_marker(path: Path, marker: str) -> bool:
    return path.exists() and marker in path.read_text()


def append_marker(path: Path, marker: str) -> bool:
    """Append marker on its own line unless already present. Returns True if written."""
    text = path.read_text() if path.exists() else ""
    if marker in text:
        return False
    if text and not text.endswith("\n"):
        text += "\n"
    path.write_text(f"{text}\n{marker}\n")
    return True


def retract_markers(path: Path, markers: list[str]) -> list[str]:
    """Remove every occurrence of the given markers. Returns those that were present."""
    if not path.exists():
        return []
    text = path.read_text()
    removed = [m for m in markers if m in text]
    if not removed:
        return []

    lines = []
    for line in text.splitlines():
        cleaned = line
        for marker in removed:
            cleaned = cleaned.replace(marker, "")
        if cleaned == line:
            lines.append(line)
        elif cleaned.strip():
            lines.append(cleaned.rstrip())
        # else: the line held only markers
    path.write_text("\n".join(lines) + ("\n" if text.endswith("\n") else ""))
    logger.info(f"Retracted {', '.join(removed)} from {path.name}")
    return removed
