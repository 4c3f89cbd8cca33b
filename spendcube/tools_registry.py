from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from jsonschema import ValidationError, validate

from spendcube import taxonomy
from spendcube.errors import ToolError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    input_schema: dict[str, Any]
    output_schema: dict[str, Any]
    handler: Callable[[dict[str, Any]], dict[str, Any]]
    side_effect_level: str = "read_only"
    owner: str = "pipeline"


_CODE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "code": {"type": "string", "pattern": "^[0-9]{8}$"},
        "title": {"type": "string"},
        "segment": {"type": "string"},
        "family": {"type": "string"},
        "score": {"type": "number", "minimum": 0, "maximum": 1},
    },
    "required": ["code", "title"],
}


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> ToolSpec:
        self._tools[spec.name] = spec
        return spec

    def get(self, name: str) -> ToolSpec:
        if name not in self._tools:
            raise ToolError(f"tool error: unknown tool {name}")
        return self._tools[name]

    def list_specs(self) -> list[dict[str, Any]]:
        return [
            {
                "name": spec.name,
                "description": spec.description,
                "input_schema": spec.input_schema,
                "output_schema": spec.output_schema,
                "side_effect_level": spec.side_effect_level,
                "owner": spec.owner,
            }
            for spec in self._tools.values()
        ]

    def execute(self, name: str, payload: dict[str, Any]) -> dict[str, Any]:
        spec = self.get(name)
        try:
            validate(instance=payload, schema=spec.input_schema)
        except ValidationError as exc:
            raise ToolError(f"tool error: {name} input rejected: {exc.message}") from exc

        try:
            result = spec.handler(payload)
        except ToolError:
            raise
        except Exception as exc:
            logger.warning("tool %s raised %s", name, type(exc).__name__)
            raise ToolError(f"tool execution failed: {name}: {exc}") from exc

        if not isinstance(result, dict):
            raise ToolError(f"tool error: {name} output must be an object")
        try:
            validate(instance=result, schema=spec.output_schema)
        except ValidationError as exc:
            raise ToolError(f"tool error: {name} output rejected: {exc.message}") from exc
        return result


def _taxonomy_search_handler(payload: dict[str, Any]) -> dict[str, Any]:
    query = str(payload["query"])
    results = taxonomy.search(query, int(payload.get("limit", 5)))
    return {"success": bool(results), "query": query, "results": results}


def _get_code_handler(payload: dict[str, Any]) -> dict[str, Any]:
    entry = taxonomy.get_code(payload["code"])
    return {"success": entry is not None, "code": entry.as_dict() if entry else None}


TAXONOMY_SEARCH = ToolSpec(
    name="taxonomy_search",
    description="Search the UNSPSC taxonomy for codes matching an item or service description.",
    input_schema={
        "type": "object",
        "properties": {
            "query": {"type": "string", "minLength": 1},
            "limit": {"type": "integer", "minimum": 1, "maximum": 50},
        },
        "required": ["query"],
        "additionalProperties": False,
    },
    output_schema={
        "type": "object",
        "properties": {
            "success": {"type": "boolean"},
            "query": {"type": "string"},
            "results": {"type": "array", "items": _CODE_SCHEMA},
        },
        "required": ["success", "query", "results"],
    },
    handler=_taxonomy_search_handler,
)

GET_CODE = ToolSpec(
    name="get_unspsc_code",
    description="Return the hierarchy details of a known 8-digit UNSPSC code.",
    input_schema={
        "type": "object",
        "properties": {"code": {"type": "string", "pattern": "^[0-9]{8}$"}},
        "required": ["code"],
        "additionalProperties": False,
    },
    output_schema={
        "type": "object",
        "properties": {
            "success": {"type": "boolean"},
            "code": {"anyOf": [_CODE_SCHEMA, {"type": "null"}]},
        },
        "required": ["success", "code"],
    },
    handler=_get_code_handler,
)


def create_default_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(TAXONOMY_SEARCH)
    registry.register(GET_CODE)
    return registry


def make_taxonomy_search(registry: ToolRegistry) -> Callable[[str, int], list[dict[str, Any]]]:
    """``search(query, limit)`` routed through the registry's validation."""

    def search(query: str, limit: int = 5) -> list[dict[str, Any]]:
        if not (query or "").strip():
            return []
        result = registry.execute("taxonomy_search", {"query": query, "limit": int(limit)})
        return list(result["results"])

    return search
