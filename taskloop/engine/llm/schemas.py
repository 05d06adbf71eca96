"""Convert tool descriptors into each provider's tool-definition payload."""

from __future__ import annotations

import copy
from typing import Any, Iterable

from ..agent.models import ToolDescriptor
from ..agent.validators import primary_type
from .catalog import ProviderKind, resolve_kind

_FLATTEN_HINT = {
    "array": "Pass this value as a JSON-encoded array string, e.g. '[\"a\", \"b\"]'.",
    "object": "Pass this value as a JSON-encoded object string, e.g. '{\"key\": \"value\"}'.",
}


def tool_definitions(descriptors: Iterable[ToolDescriptor], provider: str) -> list[dict[str, Any]]:
    """Pure: never mutates the descriptors' schemas, same input -> equal output."""
    kind, flatten = resolve_kind(provider)
    prepared = [
        (d, flatten_schema(d.parameter_schema) if flatten else _object_schema(d.parameter_schema))
        for d in descriptors
    ]

    if kind == ProviderKind.ANTHROPIC:
        return [
            {"name": d.name, "description": d.description, "input_schema": schema}
            for d, schema in prepared
        ]
    if kind in (ProviderKind.OPENAI, ProviderKind.OLLAMA):
        return [
            {
                "type": "function",
                "function": {
                    "name": d.name,
                    "description": d.description,
                    "parameters": schema,
                },
            }
            for d, schema in prepared
        ]
    if kind == ProviderKind.GEMINI:
        declarations = [
            {
                "name": d.name,
                "description": d.description,
                "parameters": _gemini_schema(schema),
            }
            for d, schema in prepared
        ]
        return [{"functionDeclarations": declarations}] if declarations else []
    raise ValueError(f"No tool definition format for provider kind '{kind}'")


def _object_schema(schema: dict[str, Any] | None) -> dict[str, Any]:
    schema = copy.deepcopy(schema or {})
    return {
        "type": "object",
        "properties": schema.get("properties") or {},
        "required": list(schema.get("required") or []),
    }


def flatten_schema(schema: dict[str, Any] | None) -> dict[str, Any]:
    """Top-level array/object properties become strings carrying JSON.

    Union types collapse to their first non-null member.
    """
    base = _object_schema(schema)
    flat: dict[str, Any] = {}
    for key, prop in base["properties"].items():
        declared = primary_type(prop.get("type"))
        if declared in _FLATTEN_HINT:
            desc = (prop.get("description") or "").rstrip()
            hint = _FLATTEN_HINT[declared]
            flat[key] = {
                "type": "string",
                "description": f"{desc} {hint}".strip(),
            }
        else:
            flat[key] = {
                k: v for k, v in prop.items() if k in ("type", "description", "enum", "default")
            }
            if declared is not None:
                flat[key]["type"] = declared
    base["properties"] = flat
    return base


def _gemini_schema(schema: dict[str, Any]) -> dict[str, Any]:
    props = {}
    for key, prop in schema.get("properties", {}).items():
        entry: dict[str, Any] = {
            "type": str(primary_type(prop.get("type")) or "string").upper(),
            "description": prop.get("description", ""),
        }
        if prop.get("enum"):
            entry["enum"] = [str(v) for v in prop["enum"]]
        props[key] = entry
    return {"type": "OBJECT", "properties": props, "required": list(schema.get("required", []))}
