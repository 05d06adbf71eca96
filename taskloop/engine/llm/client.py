"""Provider-neutral model client: picks the adapter by provider id and fills the call context."""

from __future__ import annotations

import logging
from typing import Any, Callable, Sequence

import httpx

from ..agent.models import Message, ModelResponse, ToolDescriptor
from ..config import Config, get_config
from ..errors import ProviderTransportError
from ..keystore import KeyLookup, as_lookup
from . import anthropic, gemini, ollama, openai
from .base import CallContext, CallOptions, ProviderAdapter
from .catalog import ProviderKind, ProviderSpec, get_provider
from .schemas import tool_definitions

logger = logging.getLogger("taskloop.llm")

ADAPTERS: dict[str, ProviderAdapter] = {
    ProviderKind.ANTHROPIC: anthropic.ADAPTER,
    ProviderKind.OPENAI: openai.ADAPTER,
    ProviderKind.OLLAMA: ollama.ADAPTER,
    ProviderKind.GEMINI: gemini.ADAPTER,
}


class ModelClient:
    """Stateless apart from a shared HTTP connection pool; safe to share across tasks."""

    def __init__(
        self,
        config: Config | None = None,
        keys: KeyLookup | Callable[[str], str | None] | None = None,
        http_client: httpx.AsyncClient | None = None,
        ollama_factory: Callable[[str, float], Any] | None = None,
    ) -> None:
        self.config = config or get_config()
        self._get_key = as_lookup(keys)
        self._http = http_client or httpx.AsyncClient()
        self._owns_http = http_client is None
        self._ollama_factory = ollama_factory

        spec = get_provider(self.config.provider)
        logger.info(f"Model client ready: provider={spec.id} ({spec.kind}), model={self.config.model}")

    @property
    def provider(self) -> str:
        return self.config.provider

    @property
    def provider_spec(self) -> ProviderSpec:
        return get_provider(self.config.provider)

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def _context(self, options: CallOptions | None) -> tuple[ProviderAdapter, CallContext]:
        opts = options or CallOptions()
        cfg = self.config
        spec = get_provider(opts.provider or cfg.provider)

        api_key = ""
        if spec.requires_key:
            api_key = self._get_key(spec.id) or ""
            if not api_key:
                raise ProviderTransportError(
                    f"No API key configured for {spec.label}.",
                    provider=spec.id, retryable=False,
                )

        # Configured endpoint only applies to the configured provider
        endpoint = opts.endpoint or (cfg.endpoint if spec.id == cfg.provider else "") or spec.endpoint
        ctx = CallContext(
            spec=spec,
            model=opts.model or cfg.model,
            endpoint=endpoint,
            api_key=api_key,
            temperature=cfg.temperature if opts.temperature is None else opts.temperature,
            max_tokens=opts.max_tokens or cfg.max_tokens,
            timeout=opts.timeout or cfg.request_timeout,
            max_retries=cfg.max_retries if opts.max_retries is None else opts.max_retries,
            http=self._http,
            ollama_factory=self._ollama_factory,
            on_token=opts.on_token,
        )
        return ADAPTERS[spec.kind], ctx

    async def complete_simple(
        self, system_prompt: str, user_text: str, options: CallOptions | None = None,
    ) -> str:
        adapter, ctx = self._context(options)
        return await adapter.simple(ctx, system_prompt, user_text)

    async def complete_with_tools(
        self,
        system_prompt: str,
        conversation: list[Message],
        tools: Sequence[ToolDescriptor],
        options: CallOptions | None = None,
    ) -> ModelResponse:
        adapter, ctx = self._context(options)
        definitions = tool_definitions(tools, ctx.spec.id)
        logger.debug(
            f"{ctx.spec.id}:{ctx.model} call with {len(conversation)} messages, {len(tools)} tools"
        )
        return await adapter.with_tools(ctx, system_prompt, conversation, definitions)

    async def health_check(self) -> bool:
        """Cheap reachability check for the configured provider."""
        spec = self.provider_spec
        endpoint = self.config.endpoint or spec.endpoint
        if spec.kind == ProviderKind.OLLAMA:
            try:
                await (self._ollama_factory or ollama.default_ollama_factory)(endpoint, 5.0).list()
                return True
            except Exception:
                return False
        if spec.requires_key and not self._get_key(spec.id):
            return False
        try:
            await self._http.get(endpoint, timeout=5.0)
            return True
        except httpx.HTTPError:
            return False
