"""
Prompt loader for the autopilot.

Loads per-phase instruction templates from autopilot/prompts/ and
interpolates variables. Templates use Python str.format() syntax:
{variable_name}. Use {{ and }} for literal braces.

HTML comments are stripped before rendering EXCEPT marker tokens the
worker must write verbatim (<!-- CLARIFY_COMPLETE --> and friends),
which templates reference through variables instead of literally.
"""

import logging
import re
import string
from dataclasses import dataclass, asdict
from functools import lru_cache
from pathlib import Path

from .constants import (
    MARKER_ANALYZED,
    MARKER_CLARIFY_COMPLETE,
    MARKER_CLARIFY_VERIFIED,
)

logger = logging.getLogger(__name__)

__all__ = ["PromptError", "PromptContext", "load_prompt", "render_prompt", "build_phase_prompt", "clear_cache", "template_fields", "PROMPTS_DIR"]

_HTML_COMMENT_PATTERN = re.compile(r'<!--.*?-->\s*', re.DOTALL)

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"

# Keys every template may use even when a phase has nothing to put there
_EXTRA_DEFAULTS = {
    "design_source": "",
    "findings": "",
    "conflicted_files": "",
    "test_output": "",
    "review_feedback": "",
    "round": 1,
    "max_rounds": 1,
}


class PromptError(Exception):
    """A phase template is missing or can't be filled in."""


@dataclass
class PromptContext:
    """Epic facts available to every phase template."""
    epic_id: str
    epic_title: str
    epic_file: str
    short_name: str
    spec_dir: str
    base_branch: str
    merge_target: str
    test_cmd: str
    lint_cmd: str
    work_dir: str


@lru_cache(maxsize=None)
def load_prompt(name: str) -> str:
    """Template text for a phase, with authoring comments removed.

    Raises:
        PromptError: no autopilot/prompts/<name>.md
    """
    path = PROMPTS_DIR / f"{name}.md"
    try:
        raw = path.read_text()
    except FileNotFoundError:
        raise PromptError(f"Prompt template '{name}' not found at {path}") from None
    logger.debug(f"Loaded prompt template {name} ({len(raw)} chars)")
    return _HTML_COMMENT_PATTERN.sub('', raw).lstrip()


def template_fields(name: str) -> set[str]:
    """Variable names a template refers to."""
    return {field for _, field, _, _ in string.Formatter().parse(load_prompt(name)) if field}


def render_prompt(name: str, **variables) -> str:
    """
    Fill a template. Every missing variable is reported, not just the first.

    Raises:
        PromptError: template not found or variables missing
    """
    missing = sorted(template_fields(name) - variables.keys())
    if missing:
        raise PromptError(f"Missing required variable(s) {', '.join(missing)} in prompt '{name}'")
    return load_prompt(name).format(**variables)


def build_phase_prompt(phase: str, context: PromptContext, **extra) -> str:
    """Instruction text for one phase invocation."""
    variables = dict(_EXTRA_DEFAULTS)
    variables.update(asdict(context))
    variables.update(
        marker_clarify_complete=MARKER_CLARIFY_COMPLETE,
        marker_clarify_verified=MARKER_CLARIFY_VERIFIED,
        marker_analyzed=MARKER_ANALYZED,
        verify_findings_example="<!-- VERIFY_FINDINGS: <one-line summary per finding> -->",
        finding_marker_example="<!-- FINDING: <description> -->",
    )
    variables.update(extra)
    return render_prompt(phase, **variables)


def clear_cache():
    load_prompt.cache_clear()
