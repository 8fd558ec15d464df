import os

from ..types import LLMProviderError
from .base import BaseProvider
from .generic_openai import GenericOpenAIProvider

DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "ollama": "http://127.0.0.1:11434/v1",
    "generic": "http://127.0.0.1:11434/v1",
}


def build_provider(name: str, provider_config: dict) -> GenericOpenAIProvider:
    """Build an LLM provider from a ``providers`` config entry."""
    ptype = provider_config.get("type", "generic")
    if ptype not in DEFAULT_BASE_URLS:
        raise ValueError(f"Unknown provider type '{ptype}' for provider '{name}'")

    api_key = provider_config.get("api_key")
    if not api_key and provider_config.get("api_key_env"):
        api_key = os.environ.get(provider_config["api_key_env"], "")
    if ptype == "openai" and not api_key:
        raise LLMProviderError(
            f"No API key for provider '{name}'. Set api_key or api_key_env.",
            provider=name,
        )

    return GenericOpenAIProvider(
        base_url=provider_config.get("base_url", DEFAULT_BASE_URLS[ptype]),
        model=provider_config.get("model", ""),
        temperature=provider_config.get("temperature", 0.3),
        api_key=api_key or "not-needed",
        provider_name=name,
    )


__all__ = ["BaseProvider", "GenericOpenAIProvider", "LLMProviderError", "build_provider"]
