from __future__ import annotations

import pytest

from mediator.core.exceptions import ToolArgumentError
from mediator.schemas.agents import AgentEndpoint
from mediator.tools.validation import ToolArgumentValidator

ENDPOINT = AgentEndpoint(
    name="internet_research",
    invocation_target="http://agents.internal/research",
    parameters={
        "type": "object",
        "properties": {"query": {"type": "string"}, "limit": {"type": "integer"}},
        "required": ["query"],
    },
)


def test_accepts_well_formed_arguments() -> None:
    validator = ToolArgumentValidator(max_string_length=50)
    validator.validate(ENDPOINT, {"query": "ping", "limit": 3, "filters": ["news"]})


@pytest.mark.parametrize(
    "arguments, fragment",
    [
        ({}, "missing required fields: query"),
        ({"query": ""}, "empty required fields: query"),
        ({"query": "   "}, "empty required fields: query"),
        ({"query": None}, "empty required fields: query"),
        ("ping", "must be an object"),
    ],
)
def test_rejects_missing_or_empty_query(arguments, fragment: str) -> None:
    validator = ToolArgumentValidator(max_string_length=50)
    with pytest.raises(ToolArgumentError) as excinfo:
        validator.validate(ENDPOINT, arguments)
    assert fragment in excinfo.value.message


def test_rejects_oversized_nested_strings() -> None:
    validator = ToolArgumentValidator(max_string_length=10)
    with pytest.raises(ToolArgumentError) as excinfo:
        validator.validate(ENDPOINT, {"query": "ok", "filters": ["short", "x" * 11]})
    assert "filters[1]" in excinfo.value.message


def test_rejects_non_serializable_values() -> None:
    validator = ToolArgumentValidator(max_string_length=10)
    with pytest.raises(ToolArgumentError):
        validator.validate(ENDPOINT, {"query": "ok", "blob": object()})


def test_required_arguments_merge_with_schema() -> None:
    endpoint = ENDPOINT.model_copy(update={"required_arguments": ("locale",)})
    validator = ToolArgumentValidator(max_string_length=50)
    with pytest.raises(ToolArgumentError) as excinfo:
        validator.validate(endpoint, {"query": "ping"})
    assert "locale" in excinfo.value.message
    assert excinfo.value.status_code == 422
