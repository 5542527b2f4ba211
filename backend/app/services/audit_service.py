import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models.audit import AuditLog
from app.utils.alerting import alert_tracker

logger = logging.getLogger(__name__)

PII_REDACTION_FALLBACK_FIELDS = {
    "phone",
    "email",
    "address",
    "ssn",
    "account_number",
    "routing_number",
    "card_number",
    "iban",
    "prompt_raw",
    "response_raw",
}


def _redact_pii(value: Any, redact_keys: set[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, dict):
        redacted = {}
        for key, item in value.items():
            if isinstance(key, str) and key.lower() in redact_keys:
                redacted[key] = "[REDACTED]"
            else:
                redacted[key] = _redact_pii(item, redact_keys)
        return redacted
    if isinstance(value, list):
        return [_redact_pii(item, redact_keys) for item in value]
    return value


def create_audit_log(
    db: Session,
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    new_value: Optional[dict[str, Any]],
    actor_type: str,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> AuditLog:
    """Stage an audit row on *db*; the caller owns the commit."""
    settings = get_settings()
    if settings.pii_redaction_enabled:
        configured = {item.lower() for item in settings.pii_redaction_fields}
        redact_keys = configured or set(PII_REDACTION_FALLBACK_FIELDS)
        new_value = _redact_pii(new_value, redact_keys)
        if metadata is not None:
            metadata = _redact_pii(metadata, redact_keys)

    log = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        new_value=new_value,
        actor_type=actor_type,
        ip_address=ip_address,
        user_agent=user_agent,
        audit_meta=metadata,
    )
    db.add(log)
    try:
        alert_tracker.record(action, metadata)
    except Exception:
        logger.exception("Alert tracker failed for action=%s", action)
    return log
