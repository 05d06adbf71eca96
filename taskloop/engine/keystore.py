"""Credential lookup for model providers.

The real credential store lives outside this package; anything callable as
``get_key(provider_id) -> str | None`` can be handed to the model client.
``EnvKeyStore`` is the default and reads keys from the environment.
"""

from __future__ import annotations

import os
from typing import Callable, Protocol


class KeyLookup(Protocol):
    def get_key(self, provider_id: str) -> str | None: ...


# Provider ids whose conventional variable name differs from <ID>_API_KEY
_ENV_NAMES: dict[str, tuple[str, ...]] = {
    "google": ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
    "xai": ("XAI_API_KEY", "GROK_API_KEY"),
    "together": ("TOGETHER_API_KEY", "TOGETHERAI_API_KEY"),
}


class EnvKeyStore:
    """Reads ``TASKLOOP_KEY_<ID>`` first, then the vendor's usual variable."""

    def __init__(self, environ: dict[str, str] | None = None) -> None:
        self._environ = environ if environ is not None else os.environ

    def get_key(self, provider_id: str) -> str | None:
        pid = provider_id.lower()
        candidates = (f"TASKLOOP_KEY_{pid.upper()}",) + _ENV_NAMES.get(
            pid, (f"{pid.upper()}_API_KEY",)
        )
        for name in candidates:
            value = self._environ.get(name, "").strip()
            if value:
                return value
        return None

    def has_key(self, provider_id: str) -> bool:
        return self.get_key(provider_id) is not None


class StaticKeyStore:
    """In-memory mapping, mostly for tests and embedding."""

    def __init__(self, keys: dict[str, str] | None = None) -> None:
        self._keys = dict(keys or {})

    def get_key(self, provider_id: str) -> str | None:
        return self._keys.get(provider_id)

    def set_key(self, provider_id: str, key: str) -> None:
        self._keys[provider_id] = key


def as_lookup(store: KeyLookup | Callable[[str], str | None] | None) -> Callable[[str], str | None]:
    """Accept a store object, a bare function, or None."""
    if store is None:
        return EnvKeyStore().get_key
    if hasattr(store, "get_key"):
        return store.get_key  # type: ignore[union-attr]
    return store  # type: ignore[return-value]
