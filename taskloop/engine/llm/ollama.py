"""Ollama adapter using the official Python SDK (streams content tokens)."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx
import ollama

from ..agent.models import Message, ModelResponse, ToolCall
from ..errors import ProviderTransportError
from .base import CallContext, ProviderAdapter, synthetic_call_id
from .openai import parse_arguments, to_openai_messages
from .transport import backoff_delay, is_retryable_status

logger = logging.getLogger("taskloop.llm")


def default_ollama_factory(host: str, timeout: float) -> ollama.AsyncClient:
    return ollama.AsyncClient(host=host, timeout=timeout)


def to_ollama_messages(conversation: list[Message]) -> list[dict[str, Any]]:
    # Same layout as OpenAI, but Ollama wants tool arguments as objects
    return to_openai_messages(conversation, stringify_arguments=False)


def _as_dict(obj: Any) -> dict[str, Any]:
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    if isinstance(obj, dict):
        return obj
    return dict(obj)


def _classify(e: Exception) -> ProviderTransportError:
    if isinstance(e, ollama.ResponseError):
        status = getattr(e, "status_code", None) or 0
        err_str = str(e.error)
        if "invalid character '<'" in err_str or "failed to parse JSON" in err_str:
            msg = ("Ollama returned an HTML error page instead of JSON; the server crashed "
                   "or ran out of memory.")
        elif status == 404:
            msg = f"Ollama model not found: {err_str}"
        else:
            msg = f"Ollama error (HTTP {status}): {err_str}"
        return ProviderTransportError(
            msg, provider="ollama", status=status or None,
            retryable=bool(status) and is_retryable_status(status),
        )
    if isinstance(e, httpx.TimeoutException):
        return ProviderTransportError("Ollama request timed out", provider="ollama", retryable=True)
    if isinstance(e, (ConnectionError, httpx.TransportError)):
        return ProviderTransportError(
            f"Cannot connect to Ollama: {e}", provider="ollama", retryable=True,
        )
    return ProviderTransportError(f"Ollama call failed: {e}", provider="ollama", retryable=False)


async def ollama_simple(ctx: CallContext, system_prompt: str, user_text: str) -> str:
    client = (ctx.ollama_factory or default_ollama_factory)(ctx.endpoint, ctx.timeout)
    for attempt in range(ctx.max_retries + 1):
        try:
            response = await client.generate(
                model=ctx.model,
                system=system_prompt,
                prompt=user_text,
                options={"temperature": ctx.temperature, "num_predict": ctx.max_tokens},
            )
            return _as_dict(response).get("response") or ""
        except (ollama.ResponseError, ConnectionError, httpx.HTTPError) as e:
            err = _classify(e)
            if err.retryable and attempt < ctx.max_retries:
                await asyncio.sleep(backoff_delay(attempt))
                continue
            raise err from e
    return ""


async def ollama_with_tools(
    ctx: CallContext,
    system_prompt: str,
    conversation: list[Message],
    tools: list[dict[str, Any]],
) -> ModelResponse:
    client = (ctx.ollama_factory or default_ollama_factory)(ctx.endpoint, ctx.timeout)
    kwargs: dict[str, Any] = {
        "model": ctx.model,
        "messages": [{"role": "system", "content": system_prompt}, *to_ollama_messages(conversation)],
        "stream": True,
        "options": {"temperature": ctx.temperature, "num_predict": ctx.max_tokens},
    }
    if tools:
        kwargs["tools"] = tools

    for attempt in range(ctx.max_retries + 1):
        content_acc = ""
        raw_calls: list[dict[str, Any]] = []
        done_reason: str | None = None
        streamed = False
        try:
            async for chunk in await client.chat(**kwargs):
                chunk_data = _as_dict(chunk)
                message = chunk_data.get("message") or {}
                piece = message.get("content") or ""
                if piece:
                    streamed = True
                    content_acc += piece
                    ctx.emit_token(piece)
                if message.get("tool_calls"):
                    raw_calls.extend(message["tool_calls"])
                if chunk_data.get("done"):
                    done_reason = chunk_data.get("done_reason")
            break
        except (ollama.ResponseError, ConnectionError, httpx.HTTPError) as e:
            err = _classify(e)
            # Once tokens reached observers a retry would duplicate them
            if err.retryable and not streamed and attempt < ctx.max_retries:
                wait = backoff_delay(attempt)
                logger.warning(
                    f"Transient Ollama error (attempt {attempt + 1}/{ctx.max_retries + 1}), "
                    f"retrying in {wait:.1f}s: {err}"
                )
                await asyncio.sleep(wait)
                continue
            raise err from e

    calls = []
    for tc in raw_calls:
        tc = _as_dict(tc)
        fn = tc.get("function") or {}
        calls.append(ToolCall(
            id=synthetic_call_id("ollama"),
            name=fn.get("name") or tc.get("name") or "",
            input=parse_arguments(fn.get("arguments", tc.get("arguments"))),  # type: ignore[arg-type]
        ))
    return ModelResponse(text=content_acc, tool_calls=calls, stop_reason=done_reason or "stop")


async def list_ollama_models(endpoint: str, timeout: float = 10.0) -> list[dict[str, Any]]:
    """List locally available models; empty when Ollama is unreachable."""
    try:
        response = await default_ollama_factory(endpoint, timeout).list()
    except (ollama.ResponseError, ConnectionError, httpx.HTTPError) as e:
        logger.error(f"Failed to list Ollama models: {e}")
        return []
    models = response.models if hasattr(response, "models") else _as_dict(response).get("models", [])
    return [_as_dict(m) for m in models]


ADAPTER = ProviderAdapter(simple=ollama_simple, with_tools=ollama_with_tools)
