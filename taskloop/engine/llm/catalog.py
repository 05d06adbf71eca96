"""Provider catalog: which wire protocol each provider id speaks, and where."""

from __future__ import annotations

from dataclasses import dataclass


class ProviderKind:
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    OLLAMA = "ollama"
    GEMINI = "gemini"


@dataclass(frozen=True)
class ProviderSpec:
    id: str
    label: str
    kind: str
    endpoint: str
    requires_key: bool = True
    messages_path: str = ""
    # Provider cannot parse nested array/object parameter schemas
    flatten_schemas: bool = False


PROVIDERS: dict[str, ProviderSpec] = {
    "ollama": ProviderSpec(
        "ollama", "Ollama (Local)", ProviderKind.OLLAMA,
        "http://127.0.0.1:11434", requires_key=False, flatten_schemas=True,
    ),
    "openai": ProviderSpec(
        "openai", "OpenAI", ProviderKind.OPENAI,
        "https://api.openai.com", messages_path="/v1/chat/completions",
    ),
    "anthropic": ProviderSpec(
        "anthropic", "Anthropic (Claude)", ProviderKind.ANTHROPIC,
        "https://api.anthropic.com", messages_path="/v1/messages",
    ),
    "google": ProviderSpec(
        "google", "Google (Gemini)", ProviderKind.GEMINI,
        "https://generativelanguage.googleapis.com", flatten_schemas=True,
    ),
    "deepseek": ProviderSpec(
        "deepseek", "DeepSeek", ProviderKind.OPENAI,
        "https://api.deepseek.com", messages_path="/v1/chat/completions",
    ),
    "xai": ProviderSpec(
        "xai", "xAI (Grok)", ProviderKind.OPENAI,
        "https://api.x.ai", messages_path="/v1/chat/completions",
    ),
    "mistral": ProviderSpec(
        "mistral", "Mistral AI", ProviderKind.OPENAI,
        "https://api.mistral.ai", messages_path="/v1/chat/completions",
    ),
    "groq": ProviderSpec(
        "groq", "Groq", ProviderKind.OPENAI,
        "https://api.groq.com/openai", messages_path="/v1/chat/completions",
    ),
    "together": ProviderSpec(
        "together", "Together AI", ProviderKind.OPENAI,
        "https://api.together.xyz", messages_path="/v1/chat/completions",
    ),
    "perplexity": ProviderSpec(
        "perplexity", "Perplexity", ProviderKind.OPENAI,
        "https://api.perplexity.ai", messages_path="/chat/completions",
    ),
    "minimax": ProviderSpec(
        "minimax", "MiniMax", ProviderKind.ANTHROPIC,
        "https://api.minimax.io", messages_path="/anthropic/v1/messages",
    ),
}

_KINDS = {
    ProviderKind.ANTHROPIC, ProviderKind.OPENAI, ProviderKind.OLLAMA, ProviderKind.GEMINI,
}


def get_provider(provider_id: str) -> ProviderSpec:
    try:
        return PROVIDERS[provider_id]
    except KeyError:
        raise ValueError(
            f"Unknown provider '{provider_id}'. Known providers: {', '.join(sorted(PROVIDERS))}"
        ) from None


def resolve_kind(provider_or_kind: str) -> tuple[str, bool]:
    """Map a provider id or a bare kind to (kind, flatten_schemas)."""
    spec = PROVIDERS.get(provider_or_kind)
    if spec is not None:
        return spec.kind, spec.flatten_schemas
    if provider_or_kind in _KINDS:
        return provider_or_kind, provider_or_kind in (ProviderKind.OLLAMA, ProviderKind.GEMINI)
    raise ValueError(f"Unknown provider or provider kind '{provider_or_kind}'")
