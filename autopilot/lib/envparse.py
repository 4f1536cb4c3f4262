"""
Parser for .specify/project.env.

The file is read as data, never sourced: each non-comment line is
KEY=value (an optional leading ``export`` is tolerated). Values hold
project commands, so && and pipes pass through untouched, but anything
the shell would expand while sourcing the file (backticks, $( ), ${ })
is rejected so the file means the same thing to us as to a human.
"""

import logging
import re
from pathlib import Path

logger = logging.getLogger(__name__)

# Keys the autopilot reads; anything else is kept but flagged as a likely typo
KNOWN_KEYS = {
    "BASE_BRANCH",
    "PROJECT_TEST_CMD",
    "PROJECT_LINT_CMD",
    "PROJECT_BUILD_CMD",
    "PROJECT_FORMAT_CMD",
    "PROJECT_WORK_DIR",
    "PROJECT_PREFLIGHT_TOOLS",
    "FORCE_ADVANCE_ON_REVIEW_FAIL",
}

_EXPANSION_RE = re.compile(r'`|\$\(|\$\{')
_KEY_RE = re.compile(r'^[A-Z][A-Z0-9_]*$')
_TRAILING_COMMENT_RE = re.compile(r'\s+#.*$')


def _unquote(raw: str) -> tuple[str, bool]:
    """Strip one pair of matching quotes. Returns (value, was_quoted)."""
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ("'", '"'):
        return raw[1:-1], True
    return raw, False


def parse_env_text(text: str, source: str = "<env>") -> dict[str, str]:
    """Parse env-file content.

    Raises:
        ValueError: on a malformed line or a value that would expand in a shell
    """
    values: dict[str, str] = {}
    for lineno, line in enumerate(text.splitlines(), 1):
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        if line.startswith('export '):
            line = line[len('export '):].lstrip()

        key, sep, raw = line.partition('=')
        if not sep:
            raise ValueError(f"{source}:{lineno}: expected KEY=value")
        key = key.strip()
        if not _KEY_RE.match(key):
            raise ValueError(f"{source}:{lineno}: invalid key '{key}'")

        value, quoted = _unquote(raw.strip())
        if not quoted:
            value = _TRAILING_COMMENT_RE.sub('', value)
        if _EXPANSION_RE.search(value):
            raise ValueError(f"{source}:{lineno}: shell expansion is not allowed in {key}")

        if key in values:
            logger.warning(f"{source}:{lineno}: {key} set more than once, last value wins")
        if key not in KNOWN_KEYS:
            logger.warning(f"{source}:{lineno}: unknown key {key}")
        values[key] = value
    return values


def load_env(filepath: str) -> dict[str, str]:
    """
    Parse an env file.

    Raises:
        FileNotFoundError: if the file doesn't exist
        ValueError: if a line is malformed or a value would expand
    """
    path = Path(filepath)
    if not path.exists():
        raise FileNotFoundError(f"Env file not found: {filepath}")
    return parse_env_text(path.read_text(), source=path.name)
