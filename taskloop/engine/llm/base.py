"""Shared call context and the per-provider adapter record."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, NamedTuple

import httpx

from ..agent.models import Message, ModelResponse
from .catalog import ProviderSpec

TokenCallback = Callable[[str], None]


@dataclass
class CallOptions:
    """Per-call overrides. Anything left as None falls back to the client's settings."""

    provider: str | None = None
    model: str | None = None
    endpoint: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    timeout: float | None = None
    max_retries: int | None = None
    on_token: TokenCallback | None = None


@dataclass
class CallContext:
    spec: ProviderSpec
    model: str
    endpoint: str
    api_key: str
    temperature: float
    max_tokens: int
    timeout: float
    max_retries: int
    http: httpx.AsyncClient
    ollama_factory: Callable[[str, float], Any] | None = None
    on_token: TokenCallback | None = field(default=None, repr=False)

    def url(self, path: str) -> str:
        return self.endpoint.rstrip("/") + path

    def emit_token(self, text: str) -> None:
        if self.on_token and text:
            self.on_token(text)


SimpleFn = Callable[[CallContext, str, str], Awaitable[str]]
WithToolsFn = Callable[[CallContext, str, "list[Message]", "list[dict[str, Any]]"], Awaitable[ModelResponse]]


class ProviderAdapter(NamedTuple):
    simple: SimpleFn
    with_tools: WithToolsFn


def synthetic_call_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"
