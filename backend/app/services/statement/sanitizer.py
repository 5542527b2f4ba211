"""PII masking applied to each chunk before it leaves the process.

``Sanitizer`` is the collaborator interface the orchestrator consumes;
``RegexSanitizer`` is a pattern-based default that masks account numbers,
routing numbers, SSNs, e-mail addresses, phone numbers and street addresses.
It is a best-effort filter with no completeness guarantee.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Protocol

from app.core.config import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SanitizationResult:
    cleaned_text: str
    removed_counts: dict[str, int] = field(default_factory=dict)

    @property
    def total_removed(self) -> int:
        return sum(self.removed_counts.values())


class Sanitizer(Protocol):
    def sanitize(self, text: str) -> SanitizationResult: ...


# (category, placeholder, patterns) applied in order; earlier masks shield later patterns.
_RULES: tuple[tuple[str, str, tuple[re.Pattern[str], ...]], ...] = (
    (
        "account_number",
        "[ACCOUNT_NUMBER]",
        (
            re.compile(r"\b\d{4}[-\s]\d{4}[-\s]\d{4}[-\s]\d{4}\b"),
            re.compile(r"(?:Account|Acct)\s*(?:Number|#|No\.?)[\s:]*\d{8,17}", re.IGNORECASE),
            re.compile(r"(?:Account|Acct)[\s:]+\d{4}[-\s]*\d{4}[-\s]*\d{4,8}", re.IGNORECASE),
        ),
    ),
    ("routing_number", "[ROUTING_NUMBER]", (re.compile(r"\b[0-3]\d{8}\b"),)),
    ("ssn", "[SSN]", (re.compile(r"\b\d{3}[-\s]?\d{2}[-\s]?\d{4}\b"),)),
    ("email", "[EMAIL]", (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),)),
    (
        "phone",
        "[PHONE]",
        (
            re.compile(r"\+1[-.\s]?\d{3}[-.\s]?\d{3}[-.\s]?\d{4}\b"),
            re.compile(r"\(\d{3}\)\s*\d{3}[-.\s]?\d{4}\b"),
            re.compile(r"\b\d{3}[-.\s]?\d{3}[-.\s]?\d{4}\b"),
        ),
    ),
    (
        "address",
        "[ADDRESS]",
        (
            re.compile(
                # House number must open a line or follow whitespace, never a date's "/".
                r"(?<!\S)\d+\s+[A-Za-z ]+?\s(?:Street|St|Avenue|Ave|Road|Rd|Drive|Dr|Lane|Ln|Boulevard|Blvd|"
                r"Circle|Cir|Court|Ct|Place|Pl)\b",
                re.IGNORECASE,
            ),
        ),
    ),
)


class RegexSanitizer:
    def sanitize(self, text: str) -> SanitizationResult:
        cleaned = text
        counts: dict[str, int] = {}
        for category, placeholder, patterns in _RULES:
            for pattern in patterns:
                cleaned, replaced = pattern.subn(placeholder, cleaned)
                if replaced:
                    counts[category] = counts.get(category, 0) + replaced
        if counts:
            logger.debug("Sanitized chunk: %s", counts)
        return SanitizationResult(cleaned_text=cleaned, removed_counts=counts)


class PassthroughSanitizer:
    def sanitize(self, text: str) -> SanitizationResult:
        return SanitizationResult(cleaned_text=text)


def get_default_sanitizer() -> Sanitizer:
    """Regex masking when ``PII_REDACTION_ENABLED`` is on, otherwise passthrough."""
    if get_settings().pii_redaction_enabled:
        return RegexSanitizer()
    logger.warning("PII redaction disabled; statement text is sent to the backend unmasked")
    return PassthroughSanitizer()
