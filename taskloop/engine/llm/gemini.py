"""Google Gemini generateContent adapter."""

from __future__ import annotations

import json
from typing import Any

from ..agent.models import (
    Message, ModelResponse, TextBlock, ToolCall, ToolResultBlock, ToolUseBlock,
)
from .base import CallContext, ProviderAdapter, synthetic_call_id
from .transport import post_json


def to_gemini_contents(conversation: list[Message]) -> list[dict[str, Any]]:
    # Gemini matches function responses by name, not id
    names_by_id: dict[str, str] = {}
    result: list[dict[str, Any]] = []
    for msg in conversation:
        role = "model" if msg.role == "assistant" else "user"
        parts: list[dict[str, Any]] = []
        for block in msg.content:
            if isinstance(block, TextBlock):
                if block.text:
                    parts.append({"text": block.text})
            elif isinstance(block, ToolUseBlock):
                names_by_id[block.id] = block.name
                parts.append({"functionCall": {"name": block.name, "args": block.input}})
            elif isinstance(block, ToolResultBlock):
                name = block.name or names_by_id.get(block.tool_use_id, "unknown")
                parts.append({
                    "functionResponse": {
                        "name": name,
                        "response": {"result": block.content or ""},
                    },
                })
        if not parts:
            continue
        if result and result[-1]["role"] == role:
            result[-1]["parts"].extend(parts)
        else:
            result.append({"role": role, "parts": parts})
    return result


def parse_gemini_response(data: dict[str, Any]) -> ModelResponse:
    candidates = data.get("candidates") or [{}]
    candidate = candidates[0]
    parts = (candidate.get("content") or {}).get("parts") or []
    text = "".join(p.get("text", "") for p in parts if "text" in p)
    calls = []
    for p in parts:
        fc = p.get("functionCall")
        if not fc:
            continue
        args = fc.get("args") or {}
        # Occasionally the whole argument object comes back as JSON text
        if isinstance(args, str):
            try:
                args = json.loads(args)
            except json.JSONDecodeError:
                pass
        calls.append(ToolCall(id=synthetic_call_id("gemini"), name=fc.get("name", ""), input=args))
    return ModelResponse(
        text=text, tool_calls=calls, stop_reason=candidate.get("finishReason") or "STOP",
    )


def _url(ctx: CallContext) -> str:
    return ctx.url(f"/v1beta/models/{ctx.model}:generateContent")


def _headers(ctx: CallContext) -> dict[str, str]:
    # Header rather than ?key= so the key never ends up in logged URLs
    return {"x-goog-api-key": ctx.api_key}


def _generation_config(ctx: CallContext) -> dict[str, Any]:
    return {"temperature": ctx.temperature, "maxOutputTokens": ctx.max_tokens}


async def gemini_simple(ctx: CallContext, system_prompt: str, user_text: str) -> str:
    body = {
        "system_instruction": {"parts": [{"text": system_prompt}]},
        "contents": [{"role": "user", "parts": [{"text": user_text}]}],
        "generationConfig": _generation_config(ctx),
    }
    data = await post_json(
        ctx.http, ctx.spec.id, _url(ctx), body,
        headers=_headers(ctx), timeout=ctx.timeout, max_retries=ctx.max_retries,
    )
    return parse_gemini_response(data).text


async def gemini_with_tools(
    ctx: CallContext,
    system_prompt: str,
    conversation: list[Message],
    tools: list[dict[str, Any]],
) -> ModelResponse:
    body: dict[str, Any] = {
        "system_instruction": {"parts": [{"text": system_prompt}]},
        "contents": to_gemini_contents(conversation),
        "generationConfig": _generation_config(ctx),
    }
    if tools:
        body["tools"] = tools
    data = await post_json(
        ctx.http, ctx.spec.id, _url(ctx), body,
        headers=_headers(ctx), timeout=ctx.timeout, max_retries=ctx.max_retries,
    )
    response = parse_gemini_response(data)
    ctx.emit_token(response.text)
    return response


ADAPTER = ProviderAdapter(simple=gemini_simple, with_tools=gemini_with_tools)
