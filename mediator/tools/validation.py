from __future__ import annotations

import json
from typing import Any, Mapping

from ..core.exceptions import ToolArgumentError
from ..schemas.agents import AgentEndpoint


class ToolArgumentValidator:
    """Local guards applied to worker-supplied arguments before any network call."""

    def __init__(self, *, max_string_length: int) -> None:
        self._max_string_length = max_string_length

    def validate(self, endpoint: AgentEndpoint, arguments: Any) -> None:
        if not isinstance(arguments, Mapping):
            raise ToolArgumentError(f"Arguments for '{endpoint.name}' must be an object")
        self._require_fields(endpoint, arguments)
        self._guard_shape(endpoint.name, arguments)
        self._ensure_serializable(endpoint.name, arguments)

    def _require_fields(self, endpoint: AgentEndpoint, arguments: Mapping[str, Any]) -> None:
        required = list(endpoint.required_arguments)
        schema_required = endpoint.parameters.get("required") if isinstance(endpoint.parameters, Mapping) else None
        if isinstance(schema_required, list):
            required.extend(str(item) for item in schema_required if item not in required)

        missing = [name for name in required if name not in arguments]
        if missing:
            raise ToolArgumentError(
                f"Arguments for '{endpoint.name}' missing required fields: {', '.join(sorted(set(missing)))}"
            )
        empty = [name for name in required if _is_blank(arguments.get(name))]
        if empty:
            raise ToolArgumentError(
                f"Arguments for '{endpoint.name}' have empty required fields: {', '.join(sorted(set(empty)))}"
            )

    def _guard_shape(self, tool: str, value: Any, *, key_path: str = "") -> None:
        if isinstance(value, Mapping):
            for key, item in value.items():
                next_path = f"{key_path}.{key}" if key_path else str(key)
                self._guard_shape(tool, item, key_path=next_path)
            return
        if isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                self._guard_shape(tool, item, key_path=f"{key_path}[{index}]")
            return
        if isinstance(value, str) and len(value) > self._max_string_length:
            raise ToolArgumentError(
                f"Argument '{key_path or '<root>'}' for '{tool}' exceeds {self._max_string_length} characters"
            )

    def _ensure_serializable(self, tool: str, arguments: Mapping[str, Any]) -> None:
        try:
            json.dumps(dict(arguments), sort_keys=True, separators=(",", ":"), ensure_ascii=True)
        except (TypeError, ValueError) as exc:
            raise ToolArgumentError(f"Arguments for '{tool}' are not JSON-serializable") from exc


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict)):
        return not value
    return False


__all__ = ["ToolArgumentValidator"]
