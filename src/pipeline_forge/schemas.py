"""Hand-authored function-tool schemas and JSON Schema argument validation."""

from __future__ import annotations

from typing import Any

from jsonschema import Draft202012Validator

from pipeline_forge.models import Diagnostic, ValidationResult

COMPLETE_TYPE = "complete"


def function_tool(name: str, description: str, parameters: dict[str, Any]) -> dict[str, Any]:
    """Build a function-tool definition after checking its parameter schema.

    Raises `jsonschema.SchemaError` for a malformed schema so broken tool
    definitions fail when they are declared rather than mid-run.
    """
    if not name.strip():
        raise ValueError("Tool name must not be empty.")
    Draft202012Validator.check_schema(parameters)
    return {"name": name, "description": description, "parameters": parameters}


def retrieval_variant(kind: str, description: str = "") -> dict[str, Any]:
    """Schema of one `RetrievalRequest` branch: `{"type": kind, "keys": [...]}`."""
    variant: dict[str, Any] = {
        "type": "object",
        "properties": {
            "type": {"const": kind},
            "keys": {"type": "array", "items": {"type": "string", "minLength": 1}, "minItems": 1},
        },
        "required": ["type", "keys"],
        "additionalProperties": False,
    }
    if description:
        variant["description"] = description
    return variant


def completion_variant(payload_schema: dict[str, Any]) -> dict[str, Any]:
    """Schema of the `Completion` branch wrapping the phase's own payload schema."""
    return {
        "type": "object",
        "properties": {
            "type": {"const": COMPLETE_TYPE},
            "payload": payload_schema,
        },
        "required": ["type", "payload"],
        "additionalProperties": False,
    }


def request_tool(name: str, description: str, variants: list[dict[str, Any]]) -> dict[str, Any]:
    """Function tool whose single `request` argument is one of the given variants."""
    if not variants:
        raise ValueError("A request tool needs at least one variant.")
    request_schema = variants[0] if len(variants) == 1 else {"oneOf": variants}
    return function_tool(
        name,
        description,
        {
            "type": "object",
            "properties": {
                "thinking": {"type": "string"},
                "request": request_schema,
            },
            "required": ["request"],
            "additionalProperties": False,
        },
    )


def validate_against_schema(instance: Any, schema: dict[str, Any]) -> ValidationResult:
    """Validate an instance and report one diagnostic per schema violation."""
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(instance), key=lambda e: e.json_path)
    if not errors:
        return ValidationResult.success()
    return ValidationResult.failure(
        [Diagnostic(location=e.json_path or "$", message=e.message) for e in errors]
    )
