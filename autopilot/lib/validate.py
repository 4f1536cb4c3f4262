"""
JSON Schema checks for everything the autopilot persists or trusts.

Schemas live in autopilot/schemas/<name>.schema.json:

    event        one line of events.jsonl
    status       the live status snapshot
    epic         epic front matter
    phase_config .specify/autopilot.yaml

All violations of a record are reported together, ordered by path, so
a broken config file is fixed in one pass.
"""

import json
from functools import lru_cache
from pathlib import Path

import jsonschema

SCHEMAS_DIR = Path(__file__).resolve().parent.parent / "schemas"


class ValidationError(Exception):
    """A record did not match its schema."""

    def __init__(self, schema_name: str, message: str, path: str = None):
        self.schema_name = schema_name
        self.path = path
        where = f" at {path}" if path else ""
        super().__init__(f"[{schema_name}] {message}{where}")


@lru_cache(maxsize=None)
def _validator(schema_name: str) -> jsonschema.Draft7Validator:
    schema_path = SCHEMAS_DIR / f"{schema_name}.schema.json"
    if not schema_path.exists():
        raise ValidationError(schema_name, f"Schema file not found: {schema_path}")
    schema = json.loads(schema_path.read_text())
    jsonschema.Draft7Validator.check_schema(schema)
    return jsonschema.Draft7Validator(schema)


def _location(error: jsonschema.ValidationError) -> str:
    return ".".join(str(p) for p in error.absolute_path) or "(root)"


def validate(data: dict, schema_name: str) -> None:
    """
    Raises:
        ValidationError: listing every violation, first path first
    """
    errors = sorted(_validator(schema_name).iter_errors(data), key=lambda e: list(map(str, e.absolute_path)))
    if not errors:
        return
    first = errors[0]
    message = "; ".join(f"{_location(e)}: {e.message}" for e in errors)
    raise ValidationError(schema_name, message, _location(first))


def validate_before_write(data: dict, schema_name: str, filepath: Path) -> None:
    """Refuse to persist a record that doesn't match its schema.

    Raises:
        ValidationError: naming the file that would have been written
    """
    try:
        validate(data, schema_name)
    except ValidationError as e:
        raise ValidationError(schema_name, f"not writing {filepath.name}: {e}", e.path) from None
