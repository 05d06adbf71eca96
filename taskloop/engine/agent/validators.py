"""Tool input normalization and validation against declared parameter schemas.

Some providers only receive flattened (string-typed) schemas and send
array/object arguments as JSON text; others wrap the entire argument object
in a string. ``normalize_tool_input`` undoes both in a single pass keyed by
the declared schema type, so executors always see structured values.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from ..errors import ToolInputInvalid

logger = logging.getLogger("taskloop.agent")

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}


def primary_type(declared: Any) -> str | None:
    """The declared type, or the first non-null member of a union like ["array", "null"]."""
    if isinstance(declared, list):
        return next((t for t in declared if t != "null"), None)
    return declared


def normalize_tool_input(schema: dict[str, Any] | None, raw: Any) -> dict[str, Any]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError:
            logger.warning("Tool input is a non-JSON string; treating as empty input")
            return {}
    if not isinstance(raw, dict):
        return {}
    if not schema:
        return dict(raw)
    return _normalize_object(schema, raw)


def _normalize_object(schema: dict[str, Any], value: dict[str, Any]) -> dict[str, Any]:
    props = schema.get("properties") or {}
    normalized = dict(value)
    for key, val in value.items():
        prop = props.get(key)
        if prop:
            normalized[key] = _normalize_value(prop, val)
    return normalized


def _normalize_value(prop: dict[str, Any], val: Any) -> Any:
    declared = primary_type(prop.get("type"))

    if declared in ("array", "object") and isinstance(val, str):
        try:
            parsed = json.loads(val)
        except json.JSONDecodeError:
            return val
        val = parsed

    if declared == "object" and isinstance(val, dict) and prop.get("properties"):
        return _normalize_object(prop, val)
    if declared == "array" and isinstance(val, list) and isinstance(prop.get("items"), dict):
        return [_normalize_value(prop["items"], item) for item in val]

    if isinstance(val, str):
        text = val.strip()
        if declared == "integer":
            try:
                return int(text)
            except ValueError:
                return val
        if declared == "number":
            try:
                num = float(text)
            except ValueError:
                return val
            return int(num) if num.is_integer() and "." not in text else num
        if declared == "boolean" and text.lower() in ("true", "false"):
            return text.lower() == "true"
    return val


def _type_ok(declared: str | list | None, val: Any) -> bool:
    if declared is None:
        return True
    types = declared if isinstance(declared, list) else [declared]
    for t in types:
        if t == "null" and val is None:
            return True
        expected = _JSON_TYPES.get(t)
        if expected is None:
            return True
        # bool is an int subclass; keep them apart
        if isinstance(val, bool) and t in ("integer", "number"):
            continue
        if isinstance(val, expected):
            return True
    return False


def validate_tool_input(tool_name: str, schema: dict[str, Any] | None, arguments: dict[str, Any]) -> None:
    """Raise ToolInputInvalid on the first mismatch with the declared schema."""
    if not schema:
        return
    _validate_object(tool_name, schema, arguments, path="")


def _validate_object(tool_name: str, schema: dict[str, Any], value: dict[str, Any], path: str) -> None:
    props = schema.get("properties") or {}
    for key in schema.get("required") or []:
        if key not in value or value[key] is None:
            raise ToolInputInvalid(tool_name, f"'{path}{key}' is required.")

    for key, val in value.items():
        prop = props.get(key)
        if not prop:
            continue
        where = f"{path}{key}"
        declared = prop.get("type")
        if not _type_ok(declared, val):
            raise ToolInputInvalid(
                tool_name,
                f"'{where}' must be of type {declared}, got {type(val).__name__}.",
            )
        enum = prop.get("enum")
        if enum and val not in enum:
            raise ToolInputInvalid(tool_name, f"'{where}' must be one of {enum}, got {val!r}.")
        structured = primary_type(declared)
        if structured == "object" and isinstance(val, dict) and prop.get("properties"):
            _validate_object(tool_name, prop, val, path=f"{where}.")
        if structured == "array" and isinstance(val, list) and isinstance(prop.get("items"), dict):
            item_type = prop["items"].get("type")
            for i, item in enumerate(val):
                if not _type_ok(item_type, item):
                    raise ToolInputInvalid(
                        tool_name,
                        f"'{where}[{i}]' must be of type {item_type}, got {type(item).__name__}.",
                    )
