"""AI audit — writes scope-dependent audit entries to the audit_logs table."""

from __future__ import annotations

import hashlib
import logging
import uuid
from typing import Any

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.services.audit_service import create_audit_log

from .providers.base import ProviderResult

logger = logging.getLogger(__name__)

# Scope-dependent audit actions. Falls back to "AI_RUN" for unknown scopes.
SCOPE_ACTIONS: dict[str, str] = {
    "statement_extract": "AI_STATEMENT_EXTRACT",
}


def log_ai_run(
    db: Session,
    *,
    scope: str,
    provider_result: ProviderResult,
    prompt_text: str,
    parsed_output: dict[str, Any] | None,
    entity_id: str | None = None,
    extra_meta: dict[str, Any] | None = None,
) -> None:
    """Write an ``AI_RUN`` audit entry.

    * ``scope`` — e.g. ``"statement_extract"``.
    * PII: prompt text is always hashed; raw text is only stored when
      ``AI_DEBUG_STORE_RAW=true``. Statement chunks carry account data, so
      that flag must stay off outside of local debugging.
    """
    settings = get_settings()

    prompt_hash = hashlib.sha256(prompt_text.encode()).hexdigest()
    response_hash = hashlib.sha256(provider_result.raw_text.encode()).hexdigest()

    metadata: dict[str, Any] = {
        "scope": scope,
        "provider": provider_result.provider,
        "model": provider_result.model,
        "prompt_tokens": provider_result.prompt_tokens,
        "completion_tokens": provider_result.completion_tokens,
        "latency_ms": provider_result.latency_ms,
        "stop_reason": provider_result.stop_reason,
        "prompt_hash": prompt_hash,
        "response_hash": response_hash,
    }

    if settings.ai_debug_store_raw:
        metadata["prompt_raw"] = prompt_text
        metadata["response_raw"] = provider_result.raw_text

    if extra_meta:
        metadata.update(extra_meta)

    create_audit_log(
        db,
        entity_type="ai",
        entity_id=entity_id or str(uuid.uuid4()),
        action=SCOPE_ACTIONS.get(scope, "AI_RUN"),
        new_value=parsed_output,
        actor_type="SYSTEM",
        metadata=metadata,
    )
