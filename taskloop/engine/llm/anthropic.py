"""Anthropic Messages API adapter (also used by Anthropic-compatible vendors)."""

from __future__ import annotations

from typing import Any

from ..agent.models import (
    Message, ModelResponse, TextBlock, ToolCall, ToolResultBlock, ToolUseBlock,
)
from .base import CallContext, ProviderAdapter
from .transport import post_json

ANTHROPIC_VERSION = "2023-06-01"


def to_anthropic_messages(conversation: list[Message]) -> list[dict[str, Any]]:
    result: list[dict[str, Any]] = []
    for msg in conversation:
        role = "assistant" if msg.role == "assistant" else "user"
        blocks: list[dict[str, Any]] = []
        for block in msg.content:
            if isinstance(block, TextBlock):
                if block.text:
                    blocks.append({"type": "text", "text": block.text})
            elif isinstance(block, ToolUseBlock):
                blocks.append({
                    "type": "tool_use", "id": block.id, "name": block.name, "input": block.input,
                })
            elif isinstance(block, ToolResultBlock):
                blocks.append({
                    "type": "tool_result",
                    "tool_use_id": block.tool_use_id,
                    "content": block.content or "",
                    "is_error": block.is_error,
                })
        if not blocks:
            continue
        # Consecutive same-role turns are merged; the API expects alternation
        if result and result[-1]["role"] == role:
            result[-1]["content"].extend(blocks)
        else:
            result.append({"role": role, "content": blocks})

    for entry in result:
        content = entry["content"]
        if len(content) == 1 and content[0]["type"] == "text":
            entry["content"] = content[0]["text"]
    return result


def parse_anthropic_response(data: dict[str, Any]) -> ModelResponse:
    content = data.get("content") or []
    text = "".join(b.get("text", "") for b in content if b.get("type") == "text")
    calls = [
        ToolCall(id=b["id"], name=b["name"], input=b.get("input") or {})
        for b in content
        if b.get("type") == "tool_use"
    ]
    return ModelResponse(text=text, tool_calls=calls, stop_reason=data.get("stop_reason"))


def _headers(ctx: CallContext) -> dict[str, str]:
    return {"x-api-key": ctx.api_key, "anthropic-version": ANTHROPIC_VERSION}


async def anthropic_simple(ctx: CallContext, system_prompt: str, user_text: str) -> str:
    body = {
        "model": ctx.model,
        "system": system_prompt,
        "messages": [{"role": "user", "content": user_text}],
        "temperature": ctx.temperature,
        "max_tokens": ctx.max_tokens,
    }
    data = await post_json(
        ctx.http, ctx.spec.id, ctx.url(ctx.spec.messages_path), body,
        headers=_headers(ctx), timeout=ctx.timeout, max_retries=ctx.max_retries,
    )
    return parse_anthropic_response(data).text


async def anthropic_with_tools(
    ctx: CallContext,
    system_prompt: str,
    conversation: list[Message],
    tools: list[dict[str, Any]],
) -> ModelResponse:
    body: dict[str, Any] = {
        "model": ctx.model,
        "system": system_prompt,
        "messages": to_anthropic_messages(conversation),
        "max_tokens": ctx.max_tokens,
        "temperature": ctx.temperature,
    }
    if tools:
        body["tools"] = tools
    data = await post_json(
        ctx.http, ctx.spec.id, ctx.url(ctx.spec.messages_path), body,
        headers=_headers(ctx), timeout=ctx.timeout, max_retries=ctx.max_retries,
    )
    response = parse_anthropic_response(data)
    ctx.emit_token(response.text)
    return response


ADAPTER = ProviderAdapter(simple=anthropic_simple, with_tools=anthropic_with_tools)
