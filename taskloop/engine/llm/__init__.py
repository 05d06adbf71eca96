"""Model adapter layer.

Public API:
    from taskloop.engine.llm import ModelClient, CallOptions

Internal layout:
    catalog.py   — provider ids, wire kinds, endpoints
    schemas.py   — tool descriptors -> provider tool definitions (incl. flattening)
    transport.py — httpx POST with retryable/terminal classification
    anthropic.py, openai.py, ollama.py, gemini.py — one adapter per wire kind
    client.py    — ModelClient (dispatch by provider id)
"""

from .base import CallOptions
from .catalog import PROVIDERS, ProviderKind, get_provider
from .client import ModelClient
from .schemas import tool_definitions

__all__ = [
    "CallOptions", "ModelClient", "PROVIDERS", "ProviderKind", "get_provider", "tool_definitions",
]
