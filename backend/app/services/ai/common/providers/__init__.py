"""Provider factory — returns the right provider instance or falls back to mock."""

from __future__ import annotations

import logging

from app.core.config import get_settings

from .base import BaseProvider, ProviderResult
from .mock import MockProvider

logger = logging.getLogger(__name__)

__all__ = ["get_provider", "BaseProvider", "ProviderResult", "MockProvider"]


def _api_key_for(name: str) -> str:
    settings = get_settings()
    return {
        "claude": settings.anthropic_api_key,
        "groq": settings.groq_api_key,
        "openai": settings.openai_api_key,
    }.get(name, "")


def get_provider(provider_name: str) -> BaseProvider:
    """Return a provider instance for *provider_name*.

    If the requested provider is not in the allowlist, has no API key,
    or is unknown, we fall back to ``MockProvider`` with a warning.
    """
    settings = get_settings()
    name = provider_name.lower().strip()

    if name not in settings.ai_allowed_providers:
        logger.warning("Provider %r not in allowlist – falling back to mock", name)
        return MockProvider()

    if name == "mock":
        return MockProvider()

    if name not in {"claude", "groq", "openai"}:
        logger.warning("Unknown provider %r – falling back to mock", name)
        return MockProvider()

    api_key = _api_key_for(name)
    if not api_key:
        logger.warning("API key for %r not set – falling back to mock", name)
        return MockProvider()

    if name == "claude":
        from .claude import ClaudeProvider

        return ClaudeProvider(api_key=api_key)

    if name == "groq":
        from .groq import GroqProvider

        return GroqProvider(api_key=api_key)

    from .openai import OpenAIProvider

    return OpenAIProvider(api_key=api_key)
