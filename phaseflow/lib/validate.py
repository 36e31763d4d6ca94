"""
JSON Schema checks for data that crosses a process boundary.

Two documents are checked: the state file (read by other tools, written by
concurrent pipelines) and phase marker payloads (parsed out of tracker
comments anyone can write). Schemas ship in phaseflow/schemas/.
"""

import json
from functools import lru_cache
from pathlib import Path

import jsonschema
from jsonschema.exceptions import best_match

SCHEMAS_DIR = Path(__file__).resolve().parent.parent / "schemas"


class ValidationError(Exception):
    """Data does not match its schema."""

    def __init__(self, schema_name: str, message: str, path: str | None = None):
        self.schema_name = schema_name
        self.path = path
        where = f" at {path}" if path else ""
        super().__init__(f"[{schema_name}] {message}{where}")


@lru_cache(maxsize=None)
def _validator(schema_name: str):
    schema_path = SCHEMAS_DIR / f"{schema_name}.schema.json"
    if not schema_path.is_file():
        raise ValidationError(schema_name, f"Schema file not found: {schema_path}")
    schema = json.loads(schema_path.read_text())
    cls = jsonschema.validators.validator_for(schema)
    cls.check_schema(schema)
    return cls(schema)


def validate(data: dict, schema_name: str) -> None:
    """Raise ValidationError with the most relevant failure, if any."""
    error = best_match(_validator(schema_name).iter_errors(data))
    if error is None:
        return
    path = ".".join(str(p) for p in error.absolute_path) or "(root)"
    raise ValidationError(schema_name, error.message, path)


def is_valid(data: dict, schema_name: str) -> bool:
    """For untrusted input that is skipped rather than reported."""
    return best_match(_validator(schema_name).iter_errors(data)) is None


def validate_before_write(data: dict, schema_name: str, filepath: Path) -> None:
    """Never let an invalid document reach disk."""
    try:
        validate(data, schema_name)
    except ValidationError as e:
        raise ValidationError(schema_name, f"Refusing to write invalid data to {filepath}: {e}") from None
