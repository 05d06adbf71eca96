"""OpenAI chat-completions adapter, shared by every OpenAI-compatible vendor."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from ..agent.models import (
    Message, ModelResponse, TextBlock, ToolCall, ToolResultBlock, ToolUseBlock,
)
from .base import CallContext, ProviderAdapter, synthetic_call_id
from .transport import post_json

logger = logging.getLogger("taskloop.llm")

# o1, o3, o4-mini ...: no temperature, no tool_choice, max_completion_tokens
_REASONING_MODEL_RE = re.compile(r"^o[0-9]")


def is_reasoning_model(model: str) -> bool:
    return bool(_REASONING_MODEL_RE.match(model or ""))


def to_openai_messages(conversation: list[Message], stringify_arguments: bool = True) -> list[dict[str, Any]]:
    result: list[dict[str, Any]] = []
    for msg in conversation:
        if msg.role == "assistant":
            text = msg.text
            uses = msg.tool_uses
            if not text and not uses:
                continue
            entry: dict[str, Any] = {"role": "assistant", "content": text or None}
            if uses:
                entry["tool_calls"] = [
                    {
                        "id": u.id,
                        "type": "function",
                        "function": {
                            "name": u.name,
                            "arguments": json.dumps(u.input) if stringify_arguments else u.input,
                        },
                    }
                    for u in uses
                ]
            result.append(entry)
            continue

        for block in msg.content:
            if isinstance(block, ToolResultBlock):
                result.append({
                    "role": "tool",
                    "tool_call_id": block.tool_use_id,
                    "content": block.content or "",
                })
            elif isinstance(block, TextBlock) and block.text:
                result.append({"role": "user", "content": block.text})
            elif isinstance(block, ToolUseBlock):
                logger.warning(f"Dropping tool_use block {block.id} found in a {msg.role} message")
    return result


def parse_arguments(raw: Any) -> dict[str, Any] | str:
    """Arguments arrive as a JSON string; malformed ones are kept as text for the normalizer."""
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError:
            return raw
        return parsed if isinstance(parsed, dict) else raw
    return {}


def parse_openai_response(data: dict[str, Any]) -> ModelResponse:
    choices = data.get("choices") or [{}]
    choice = choices[0]
    message = choice.get("message") or {}
    calls = []
    for tc in message.get("tool_calls") or []:
        fn = tc.get("function") or {}
        calls.append(ToolCall(
            id=tc.get("id") or synthetic_call_id("call"),
            name=fn.get("name", ""),
            input=parse_arguments(fn.get("arguments")),  # type: ignore[arg-type]
        ))
    return ModelResponse(
        text=message.get("content") or "",
        tool_calls=calls,
        stop_reason=choice.get("finish_reason"),
    )


def build_openai_body(
    ctx: CallContext,
    messages: list[dict[str, Any]],
    tools: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {"model": ctx.model, "messages": messages}
    reasoning = is_reasoning_model(ctx.model)
    if reasoning:
        body["max_completion_tokens"] = ctx.max_tokens
    else:
        body["temperature"] = ctx.temperature
        body["max_tokens"] = ctx.max_tokens
    if tools:
        body["tools"] = tools
        if not reasoning:
            body["tool_choice"] = "auto"
    return body


def _headers(ctx: CallContext) -> dict[str, str]:
    return {"Authorization": f"Bearer {ctx.api_key}"}


async def openai_simple(ctx: CallContext, system_prompt: str, user_text: str) -> str:
    body = build_openai_body(ctx, [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_text},
    ])
    data = await post_json(
        ctx.http, ctx.spec.id, ctx.url(ctx.spec.messages_path), body,
        headers=_headers(ctx), timeout=ctx.timeout, max_retries=ctx.max_retries,
    )
    return parse_openai_response(data).text


async def openai_with_tools(
    ctx: CallContext,
    system_prompt: str,
    conversation: list[Message],
    tools: list[dict[str, Any]],
) -> ModelResponse:
    messages = [{"role": "system", "content": system_prompt}, *to_openai_messages(conversation)]
    body = build_openai_body(ctx, messages, tools)
    data = await post_json(
        ctx.http, ctx.spec.id, ctx.url(ctx.spec.messages_path), body,
        headers=_headers(ctx), timeout=ctx.timeout, max_retries=ctx.max_retries,
    )
    response = parse_openai_response(data)
    ctx.emit_token(response.text)
    return response


ADAPTER = ProviderAdapter(simple=openai_simple, with_tools=openai_with_tools)
