"""
Epic discovery and front-matter bookkeeping.

Epics are human-authored documents at docs/specs/epics/epic-NNN-*.md
with YAML front matter:

    ---
    epic_id: epic-003
    status: draft
    branch: 003-user-auth
    ---
    # Epic: User authentication

The engine only ever rewrites two fields (status, branch) and never
deletes an epic.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path

import yaml

from .constants import EPICS_DIR
from .validate import validate, ValidationError

logger = logging.getLogger(__name__)

STATUS_MERGED = "merged"

_FILENAME_RE = re.compile(r'^epic-(\d{3})')
_FRONT_MATTER_RE = re.compile(r'\A---[ \t]*\n(.*?)\n---[ \t]*(?:\n|\Z)', re.DOTALL)
_TITLE_RE = re.compile(r'^#\s+Epic:\s*(.+?)\s*$', re.MULTILINE)
_H1_RE = re.compile(r'^#\s+(.+?)\s*$', re.MULTILINE)


@dataclass
class Epic:
    """One unit of work, as recorded in its source document."""
    id: str  # Three-digit number, e.g. "003"
    title: str
    status: str
    short_name: str  # Branch name and specs/<short_name>/ directory
    source_file: Path

    @property
    def number(self) -> int:
        return int(self.id)

    @property
    def merged(self) -> bool:
        return self.status == STATUS_MERGED

    @property
    def label(self) -> str:
        return f"{self.id} {self.title}"


class EpicError(Exception):
    """Epic document could not be parsed."""
    pass


def split_front_matter(text: str) -> tuple[dict, str]:
    """Return (front_matter_dict, body). Missing front matter yields {}."""
    match = _FRONT_MATTER_RE.match(text)
    if not match:
        return {}, text
    try:
        data = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as e:
        raise EpicError(f"Invalid front matter: {e}") from None
    if not isinstance(data, dict):
        raise EpicError("Front matter is not a mapping")
    return data, text[match.end():]


def load_epic(path: Path) -> Epic:
    """Parse one epic document.

    Raises:
        EpicError: if the front matter is malformed or the id can't be determined
    """
    text = path.read_text()
    data, body = split_front_matter(text)

    if "epic_id" not in data:
        name_match = _FILENAME_RE.match(path.name)
        if not name_match:
            raise EpicError(f"{path.name}: no epic_id and filename is not epic-NNN-*")
        data["epic_id"] = f"epic-{name_match.group(1)}"

    try:
        validate(data, "epic")
    except ValidationError as e:
        raise EpicError(f"{path.name}: {e}") from None

    title_match = _TITLE_RE.search(body) or _H1_RE.search(body)
    title = title_match.group(1) if title_match else path.stem

    return Epic(
        id=data["epic_id"].split("-", 1)[1],
        title=title,
        status=str(data.get("status") or ""),
        short_name=str(data.get("branch") or ""),
        source_file=path,
    )


def list_epics(repo_root: Path) -> list[Epic]:
    """All parseable epics, sorted by number. Unparseable documents are skipped with a warning."""
    epics_dir = repo_root / EPICS_DIR
    if not epics_dir.is_dir():
        return []

    epics = []
    for path in sorted(epics_dir.glob("epic-*.md")):
        try:
            epics.append(load_epic(path))
        except EpicError as e:
            logger.warning(f"Skipping epic document: {e}")
    epics.sort(key=lambda e: e.number)
    return epics


def find_epic(repo_root: Path, epic_id: str) -> Epic | None:
    for epic in list_epics(repo_root):
        if epic.id == epic_id:
            return epic
    return None


def find_next_epic(repo_root: Path, target: str | None = None) -> Epic | None:
    """Lowest-numbered epic not yet merged, optionally restricted to one id."""
    for epic in list_epics(repo_root):
        if target is not None and epic.id != target:
            continue
        if epic.merged:
            continue
        return epic
    return None


def set_front_matter_field(path: Path, key: str, value: str) -> None:
    """Rewrite one front-matter field in place, inserting it (or the block) if absent."""
    text = path.read_text()
    line = f"{key}: {value}"
    match = _FRONT_MATTER_RE.match(text)

    if not match:
        path.write_text(f"---\n{line}\n---\n{text}")
        return

    block = match.group(1)
    field_re = re.compile(rf'^{re.escape(key)}:.*$', re.MULTILINE)
    if field_re.search(block):
        new_block = field_re.sub(lambda _: line, block, count=1)
    else:
        new_block = f"{block}\n{line}"

    start, end = match.span(1)
    path.write_text(text[:start] + new_block + text[end:])


def record_short_name(epic: Epic, short_name: str) -> None:
    """Persist a new branch/short name for the epic."""
    set_front_matter_field(epic.source_file, "branch", short_name)
    epic.short_name = short_name


def mark_epic_merged(epic: Epic) -> None:
    """Durably record the epic as merged."""
    set_front_matter_field(epic.source_file, "status", STATUS_MERGED)
    if epic.short_name:
        set_front_matter_field(epic.source_file, "branch", epic.short_name)
    epic.status = STATUS_MERGED


def find_design_source(repo_root: Path, epic: Epic) -> Path | None:
    """Optional design source (docs/specs/epics/epic-NNN-*.pen)."""
    epics_dir = repo_root / EPICS_DIR
    if not epics_dir.is_dir():
        return None
    matches = sorted(epics_dir.glob(f"epic-{epic.id}-*.pen"))
    return matches[0] if matches else None
