"""AI Router — resolves provider + model with override > ENV > mock chain."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from app.core.config import get_settings

from .providers import BaseProvider, get_provider

logger = logging.getLogger(__name__)

STATEMENT_SCOPE = "statement_extract"


@dataclass(frozen=True)
class ResolvedConfig:
    """Final resolved provider + model after the override chain."""

    provider: BaseProvider
    model: str
    temperature: float
    max_tokens: int
    timeout_seconds: float


def _scope_defaults(scope: str) -> tuple[str, str, float | None]:
    settings = get_settings()
    if scope == STATEMENT_SCOPE:
        return (
            settings.ai_statement_provider.lower().strip(),
            settings.ai_statement_model.strip(),
            settings.ai_statement_timeout_seconds,
        )
    return "", "", None


def resolve(
    scope: str,
    *,
    override_provider: str | None = None,
    override_model: str | None = None,
) -> ResolvedConfig:
    """Resolve provider + model for a given *scope*.

    Resolution chain (first non-empty wins):
      1. ``override_provider`` / ``override_model`` (runtime request param,
         only when ``enable_ai_overrides=True``).
      2. ENV scope-specific: ``AI_STATEMENT_PROVIDER`` / ``AI_STATEMENT_MODEL``.
      3. Fallback: ``"mock"`` with empty model.

    If the resolved model is not in the allowlist for that provider, the
    first allowed model is used instead.
    """
    settings = get_settings()
    scope_provider, scope_model, scope_timeout = _scope_defaults(scope)

    provider_name = ""
    if settings.enable_ai_overrides and override_provider:
        provider_name = override_provider.lower().strip()
    if not provider_name:
        provider_name = scope_provider or "mock"

    model = ""
    if settings.enable_ai_overrides and override_model:
        model = override_model.strip()
    if not model:
        model = scope_model

    allowed_models = settings.ai_allowed_models.get(provider_name, [])
    if allowed_models and model and model not in allowed_models:
        logger.warning(
            "Model %r not in allowlist for %r — using first allowed: %r",
            model,
            provider_name,
            allowed_models[0],
        )
        model = allowed_models[0]

    if allowed_models and not model:
        model = allowed_models[0]

    timeout = scope_timeout if scope_timeout is not None else settings.ai_timeout_seconds

    return ResolvedConfig(
        provider=get_provider(provider_name),
        model=model,
        temperature=settings.ai_temperature,
        max_tokens=settings.ai_max_tokens,
        timeout_seconds=timeout,
    )
