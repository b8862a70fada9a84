"""Tool schema construction and argument validation tests."""

from __future__ import annotations

import pytest
from jsonschema.exceptions import SchemaError

from pipeline_forge.schemas import (
    completion_variant,
    function_tool,
    request_tool,
    retrieval_variant,
    validate_against_schema,
)


def test_function_tool_rejects_malformed_schema_at_declaration() -> None:
    with pytest.raises(SchemaError):
        function_tool("broken", "bad", {"type": "object", "properties": {"a": {"type": 12}}})


def test_validate_against_schema_reports_each_violation_sorted_by_path() -> None:
    schema = {
        "type": "object",
        "properties": {"name": {"type": "string"}, "count": {"type": "integer", "minimum": 0}},
        "required": ["name", "count"],
    }

    result = validate_against_schema({"name": 3, "count": -1}, schema)

    assert result.kind == "failure"
    assert [item.location for item in result.diagnostics] == ["$.count", "$.name"]
    assert "-1 is less than the minimum of 0" in result.diagnostics[0].message


def test_validate_against_schema_uses_root_location_for_top_level_errors() -> None:
    result = validate_against_schema([], {"type": "object"})

    assert result.diagnostics[0].location == "$"


def test_request_tool_accepts_exactly_one_variant() -> None:
    tool = request_tool(
        "process",
        "Request context or complete.",
        [retrieval_variant("analysis_files"), completion_variant({"type": "string"})],
    )
    parameters = tool["parameters"]

    assert validate_against_schema({"request": {"type": "analysis_files", "keys": ["a.md"]}}, parameters).ok
    assert validate_against_schema({"request": {"type": "complete", "payload": "done"}}, parameters).ok
    assert not validate_against_schema({"request": {"type": "database_schemas", "keys": ["x"]}}, parameters).ok
    assert not validate_against_schema({"request": {"type": "analysis_files", "keys": []}}, parameters).ok


def test_request_tool_with_single_variant_is_not_wrapped() -> None:
    variant = completion_variant({"type": "object"})

    tool = request_tool("process", "", [variant])

    assert tool["parameters"]["properties"]["request"] == variant
    with pytest.raises(ValueError):
        request_tool("process", "", [])
