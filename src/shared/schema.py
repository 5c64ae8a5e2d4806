"""JSON Schema helpers for tool input schemas."""

from typing import Any

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError


def normalize_input_schema(schema: dict[str, Any] | None) -> dict[str, Any]:
    """
    Coerce an advertised input schema into an object schema.

    Providers reject function declarations whose parameters are not an
    object with a `properties` mapping, so empty or partial schemas are
    filled in.
    """
    normalized = dict(schema or {})
    normalized.setdefault("type", "object")
    normalized.setdefault("properties", {})
    return normalized


def validate_arguments(arguments: Any, schema: dict[str, Any]) -> list[str]:
    """
    Validate tool arguments against a JSON Schema.

    Args:
        arguments: Arguments produced by the model
        schema: JSON Schema advertised for the tool

    Returns:
        List of error messages; empty when the arguments are valid or the
        schema itself is unusable (the server remains the authority then)
    """
    if not schema:
        return []

    try:
        Draft7Validator.check_schema(schema)
    except SchemaError:
        return []

    validator = Draft7Validator(schema)
    return [
        f"{'.'.join(str(p) for p in e.path)}: {e.message}" if e.path else e.message
        for e in sorted(validator.iter_errors(arguments), key=lambda e: list(e.path))
    ]
