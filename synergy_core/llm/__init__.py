"""Model boundary: conversation types, providers and the shared instance."""

from synergy_core.llm.base import (
    ContentBlock,
    LLMProvider,
    LLMResponse,
    ToolCall,
    ToolDefinition,
    Turn,
)
from synergy_core.llm.ollama import DEFAULT_BASE_URL, OllamaProvider

__all__ = [
    "ContentBlock",
    "LLMProvider",
    "LLMResponse",
    "OllamaProvider",
    "ToolCall",
    "ToolDefinition",
    "Turn",
    "create_provider",
    "get_provider",
    "set_provider",
]


def create_provider(
    provider: str = "ollama",
    model: str = "llama3.2",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 4096,
    timeout: float = 120.0,
) -> LLMProvider:
    """Build a provider by name.

    Only ``ollama`` ships with the package; other backends are plugged in
    by passing an ``LLMProvider`` to the orchestrator or ``set_provider``.

    Raises:
        ValueError for an unknown provider name
    """
    name = (provider or "").strip().lower()
    if name != "ollama":
        raise ValueError(f"Provider '{provider}' not supported. Use 'ollama' or inject an LLMProvider.")
    return OllamaProvider(
        model=model,
        base_url=base_url or DEFAULT_BASE_URL,
        temperature=temperature,
        max_tokens=max_tokens,
        api_key=api_key,
        timeout=timeout,
    )


_provider: LLMProvider | None = None


def get_provider() -> LLMProvider:
    """Return the shared provider, creating it from the ``model`` config section."""
    global _provider
    if _provider is None:
        from synergy_core.config import get_config

        model = get_config().model
        _provider = create_provider(
            provider=model.provider,
            model=model.model,
            api_key=model.api_key or None,
            base_url=model.base_url or None,
            temperature=model.temperature,
            max_tokens=model.max_tokens,
            timeout=model.timeout,
        )
    return _provider


def set_provider(provider: LLMProvider | None) -> None:
    global _provider
    _provider = provider
