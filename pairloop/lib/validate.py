"""
Schema validation for pairloop documents.

Every PRD read from or written to disk is checked against a JSON Schema
shipped in pairloop/schemas/<name>.schema.json. The most relevant error is
reported with its dotted location in the document.
"""

import json
from pathlib import Path

import jsonschema
from jsonschema.exceptions import best_match

SCHEMAS_DIR = Path(__file__).parent.parent / "schemas"


class ValidationError(Exception):
    """Document does not match its schema."""

    def __init__(self, schema_name: str, message: str, path: str = None, error_count: int = 1):
        self.schema_name = schema_name
        self.message = message
        self.path = path
        self.error_count = error_count
        super().__init__(f"[{schema_name}] {message}" + (f" at {path}" if path else ""))


# One checked validator per schema name
_validators: dict[str, object] = {}


def _validator_for(schema_name: str):
    if schema_name not in _validators:
        schema_path = SCHEMAS_DIR / f"{schema_name}.schema.json"
        if not schema_path.exists():
            raise ValidationError(schema_name, f"Schema file not found: {schema_path}")
        schema = json.loads(schema_path.read_text())
        validator_cls = jsonschema.validators.validator_for(schema)
        validator_cls.check_schema(schema)
        _validators[schema_name] = validator_cls(schema)
    return _validators[schema_name]


def _location(error) -> str:
    return ".".join(str(p) for p in error.absolute_path) or "(root)"


def validate(data: dict, schema_name: str) -> None:
    """
    Validate data against a named schema.

    Args:
        data: Parsed JSON document
        schema_name: Schema name (e.g., "prd")

    Raises:
        ValidationError: Carrying the most relevant error and how many were found
    """
    errors = list(_validator_for(schema_name).iter_errors(data))
    if not errors:
        return

    error = best_match(errors)
    message = error.message
    if len(errors) > 1:
        message += f" (and {len(errors) - 1} more)"
    raise ValidationError(schema_name, message, _location(error), error_count=len(errors))


def validate_before_write(data: dict, schema_name: str, filepath: Path) -> None:
    """Refuse to persist a document that would not load back."""
    try:
        validate(data, schema_name)
    except ValidationError as e:
        raise ValidationError(
            schema_name,
            f"Refusing to write invalid data to {filepath}: {e.message}",
            e.path,
            error_count=e.error_count,
        ) from None
