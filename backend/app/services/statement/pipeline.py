"""End-to-end statement parsing job: segment, extract, merge, report."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from decimal import Decimal
from enum import StrEnum
from typing import Any, Optional, Sequence

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.services.ai.statement_extract.contracts import CategoryVocabulary, ValidatedTransaction
from app.services.ai.statement_extract.service import StatementExtractor
from app.services.audit_service import create_audit_log

from .orchestrator import (
    ChunkExtractor,
    ChunkProgress,
    ProcessingError,
    ProcessingResult,
    ProcessingSummary,
    process_chunks,
    processing_stats_message,
    sort_transactions_by_date,
)
from .progress import ProgressBroadcaster
from .sanitizer import Sanitizer
from .segmenter import describe_segmentation, segment_text

logger = logging.getLogger(__name__)

BANK_INDICATORS = ("statement", "account", "balance", "transaction")
MAX_PLAUSIBLE_AMOUNT = Decimal("1000000")
HIGH_CONFIDENCE_MIN_TRANSACTIONS = 3


class ParseOutcome(StrEnum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    NO_TRANSACTIONS = "no_transactions"


class Confidence(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass
class StatementParseResult:
    job_id: str
    transactions: list[ValidatedTransaction]
    errors: list[ProcessingError]
    summary: ProcessingSummary
    outcome: ParseOutcome
    confidence: Confidence
    strategy: str
    message: str


def estimate_parsing_confidence(transactions: Sequence[ValidatedTransaction], original_text: str) -> Confidence:
    """Rough plausibility grade of an extraction, for display only."""
    if not transactions:
        return Confidence.LOW

    lowered = original_text.lower()
    has_indicators = any(indicator in lowered for indicator in BANK_INDICATORS)
    reasonable_amounts = all(Decimal(0) < abs(t.amount) < MAX_PLAUSIBLE_AMOUNT for t in transactions)
    has_descriptions = all(len(t.description) > 2 for t in transactions)

    if has_indicators and reasonable_amounts and has_descriptions and len(transactions) >= HIGH_CONFIDENCE_MIN_TRANSACTIONS:
        return Confidence.HIGH
    if reasonable_amounts:
        return Confidence.MEDIUM
    return Confidence.LOW


def _outcome(result: ProcessingResult) -> ParseOutcome:
    if not result.transactions:
        return ParseOutcome.NO_TRANSACTIONS
    if result.has_errors:
        return ParseOutcome.PARTIAL
    return ParseOutcome.COMPLETED


def _audit_job(
    db: Session,
    *,
    job_id: str,
    result: ProcessingResult,
    outcome: ParseOutcome,
    ip_address: Optional[str],
    user_agent: Optional[str],
) -> None:
    for error in result.errors:
        create_audit_log(
            db,
            entity_type="statement_job",
            entity_id=job_id,
            action="STATEMENT_CHUNK_FAILED",
            new_value={"chunk_id": error.chunk_id, "error": error.error[:500], "retry_count": error.retry_count},
            actor_type="SYSTEM",
            ip_address=ip_address,
            user_agent=user_agent,
        )

    action = "STATEMENT_NO_TRANSACTIONS" if outcome == ParseOutcome.NO_TRANSACTIONS else "STATEMENT_PARSED"
    create_audit_log(
        db,
        entity_type="statement_job",
        entity_id=job_id,
        action=action,
        new_value={"outcome": outcome.value, **asdict(result.summary)},
        actor_type="SYSTEM",
        ip_address=ip_address,
        user_agent=user_agent,
    )
    db.commit()


async def parse_statement(
    text: str,
    *,
    job_id: str,
    categories: CategoryVocabulary | None = None,
    broadcaster: ProgressBroadcaster | None = None,
    extractor: ChunkExtractor | None = None,
    sanitizer: Sanitizer | None = None,
    db: Session | None = None,
    max_tokens_per_chunk: int | None = None,
    override_provider: str | None = None,
    override_model: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    **tunables: Any,
) -> StatementParseResult:
    """Run one parsing job and return its result.

    Progress is published to *broadcaster* under *job_id* when given; the
    last event is retained for ``PROGRESS_RETENTION_SECONDS`` afterwards.
    Extra keyword arguments (``max_retries``, ``backoff_base_seconds``,
    ``pacing_seconds``, ``min_chunk_chars``) are passed to the orchestrator.
    """
    settings = get_settings()

    def on_progress(progress: ChunkProgress) -> None:
        if broadcaster is not None:
            broadcaster.publish_step(job_id, progress.status.value, progress.percentage, progress.message)

    if broadcaster is not None:
        broadcaster.publish_step(job_id, "segmenting", 0, "Analyzing statement layout...")

    segmentation = segment_text(text, max_tokens_per_chunk or settings.statement_chunk_max_tokens)
    description = describe_segmentation(segmentation)
    logger.info("Job %s: %s", job_id, description)
    if broadcaster is not None:
        broadcaster.publish_step(job_id, "segmenting", 0, description)

    if extractor is None:
        extractor = StatementExtractor(
            override_provider=override_provider,
            override_model=override_model,
            db=db,
            job_id=job_id,
        )

    result = await process_chunks(
        segmentation.chunks,
        categories,
        on_progress,
        extractor=extractor,
        sanitizer=sanitizer,
        **tunables,
    )

    transactions = sort_transactions_by_date(result.transactions)
    outcome = _outcome(result)
    confidence = estimate_parsing_confidence(transactions, text)
    message = processing_stats_message(result)
    logger.info("Job %s: %s (outcome=%s, confidence=%s)", job_id, message, outcome.value, confidence.value)

    if db is not None:
        _audit_job(db, job_id=job_id, result=result, outcome=outcome, ip_address=ip_address, user_agent=user_agent)

    if broadcaster is not None:
        broadcaster.schedule_cleanup(job_id, settings.progress_retention_seconds)

    return StatementParseResult(
        job_id=job_id,
        transactions=transactions,
        errors=result.errors,
        summary=result.summary,
        outcome=outcome,
        confidence=confidence,
        strategy=segmentation.strategy,
        message=message,
    )
