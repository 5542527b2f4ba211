"""Sequential chunk processing with per-chunk retry, backoff and progress reporting.

Chunks are processed strictly one after another. A chunk that keeps failing
after its retry budget is recorded as a ``ProcessingError`` and skipped; it
never aborts the job or discards transactions gathered from other chunks.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import StrEnum
from typing import Callable, Optional, Protocol, Sequence

from app.core.config import get_settings
from app.services.ai.statement_extract.contracts import CategoryVocabulary, ValidatedTransaction

from .sanitizer import Sanitizer, get_default_sanitizer
from .segmenter import RawChunk, filter_transaction_chunks

logger = logging.getLogger(__name__)


class ChunkStatus(StrEnum):
    PROCESSING = "processing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class ProcessingError:
    chunk_id: str
    error: str
    retry_count: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class ChunkProgress:
    current_chunk: int
    total_chunks: int
    current_chunk_id: str
    status: ChunkStatus
    message: str
    percentage: int
    processed_transactions: int
    errors: tuple[ProcessingError, ...] = ()


@dataclass(frozen=True)
class ProcessingSummary:
    total_chunks: int
    successful_chunks: int
    failed_chunks: int
    skipped_chunks: int
    total_transactions: int
    processing_time_ms: int


@dataclass
class ProcessingResult:
    transactions: list[ValidatedTransaction]
    errors: list[ProcessingError]
    summary: ProcessingSummary
    progress: ChunkProgress

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


class ChunkExtractor(Protocol):
    async def extract(
        self,
        chunk_text: str,
        categories: CategoryVocabulary | None = None,
        *,
        chunk_id: str | None = None,
    ) -> list[ValidatedTransaction]: ...


ProgressCallback = Callable[[ChunkProgress], None]


@dataclass
class _ChunkOutcome:
    success: bool
    transactions: list[ValidatedTransaction]
    retry_count: int
    error: str = ""


def backoff_delay(retry_count: int, base_seconds: float) -> float:
    """Seconds to wait before retry number *retry_count* (1-based)."""
    return base_seconds * (2**retry_count)


def deduplicate_transactions(transactions: Sequence[ValidatedTransaction]) -> list[ValidatedTransaction]:
    """Drop repeats of the same (date, amount, description[:50]); first occurrence wins."""
    seen: set[tuple[str, str, str]] = set()
    unique: list[ValidatedTransaction] = []
    for transaction in transactions:
        key = transaction.dedupe_key
        if key in seen:
            continue
        seen.add(key)
        unique.append(transaction)
    return unique


def sort_transactions_by_date(transactions: Sequence[ValidatedTransaction]) -> list[ValidatedTransaction]:
    """Oldest first; same-day records keep their extraction order."""
    return sorted(transactions, key=lambda t: t.date)


def processing_stats_message(result: ProcessingResult) -> str:
    summary = result.summary
    stats = f"Processed {summary.total_transactions} transactions in {round(summary.processing_time_ms / 1000)}s"
    if summary.failed_chunks:
        stats += f" ({summary.failed_chunks} sections failed)"
    return stats


async def _process_chunk_with_retry(
    chunk: RawChunk,
    categories: CategoryVocabulary | None,
    *,
    extractor: ChunkExtractor,
    sanitizer: Sanitizer,
    max_retries: int,
    backoff_base_seconds: float,
    min_chunk_chars: int,
    on_retry: Callable[[int], None],
) -> _ChunkOutcome:
    last_error = ""
    for retry_count in range(max_retries + 1):
        if retry_count > 0:
            on_retry(retry_count)
            await asyncio.sleep(backoff_delay(retry_count, backoff_base_seconds))

        try:
            cleaned = sanitizer.sanitize(chunk.content).cleaned_text
            if len(cleaned.strip()) < min_chunk_chars:
                logger.debug("Chunk %s has too little content after sanitizing; skipping", chunk.id)
                return _ChunkOutcome(success=True, transactions=[], retry_count=retry_count)

            transactions = await extractor.extract(cleaned, categories, chunk_id=chunk.id)
            return _ChunkOutcome(success=True, transactions=list(transactions), retry_count=retry_count)
        except Exception as exc:
            last_error = str(exc) or type(exc).__name__
            logger.warning(
                "Chunk %s attempt %d/%d failed: %s",
                chunk.id,
                retry_count + 1,
                max_retries + 1,
                last_error,
            )

    return _ChunkOutcome(success=False, transactions=[], retry_count=max_retries, error=last_error)


async def process_chunks(
    chunks: Sequence[RawChunk],
    categories: CategoryVocabulary | None,
    on_progress: Optional[ProgressCallback],
    *,
    extractor: ChunkExtractor,
    sanitizer: Sanitizer | None = None,
    max_retries: int | None = None,
    backoff_base_seconds: float | None = None,
    pacing_seconds: float | None = None,
    min_chunk_chars: int | None = None,
) -> ProcessingResult:
    """Extract transactions from the transaction-bearing *chunks*, one at a time.

    Tunables default to the ``STATEMENT_*`` settings. Returns the merged,
    deduplicated transactions (in extraction order) and every chunk failure.
    """
    settings = get_settings()
    if max_retries is None:
        max_retries = settings.statement_max_retries
    if backoff_base_seconds is None:
        backoff_base_seconds = settings.statement_backoff_base_seconds
    if pacing_seconds is None:
        pacing_seconds = settings.statement_chunk_delay_seconds
    if min_chunk_chars is None:
        min_chunk_chars = settings.statement_min_chunk_chars
    if sanitizer is None:
        sanitizer = get_default_sanitizer()

    def emit(progress: ChunkProgress) -> None:
        if on_progress is not None:
            on_progress(progress)

    started = time.monotonic()
    work = filter_transaction_chunks(chunks)
    total = len(work)
    collected: list[ValidatedTransaction] = []
    errors: list[ProcessingError] = []
    successful = 0

    logger.info("Processing %d of %d chunks (max_retries=%d)", total, len(chunks), max_retries)
    emit(
        ChunkProgress(
            current_chunk=0,
            total_chunks=total,
            current_chunk_id="",
            status=ChunkStatus.PROCESSING,
            message="Starting statement processing...",
            percentage=0,
            processed_transactions=0,
        )
    )

    for index, chunk in enumerate(work):
        number = index + 1
        progress = ChunkProgress(
            current_chunk=number,
            total_chunks=total,
            current_chunk_id=chunk.id,
            status=ChunkStatus.PROCESSING,
            message=f"Processing section {number} of {total}...",
            percentage=round(index / total * 100),
            processed_transactions=len(collected),
            errors=tuple(errors),
        )
        emit(progress)

        def on_retry(retry_count: int, progress: ChunkProgress = progress, number: int = number) -> None:
            emit(
                replace(
                    progress,
                    status=ChunkStatus.RETRYING,
                    message=f"Retrying section {number} (attempt {retry_count + 1}/{max_retries + 1})...",
                )
            )

        outcome = await _process_chunk_with_retry(
            chunk,
            categories,
            extractor=extractor,
            sanitizer=sanitizer,
            max_retries=max_retries,
            backoff_base_seconds=backoff_base_seconds,
            min_chunk_chars=min_chunk_chars,
            on_retry=on_retry,
        )

        if outcome.success:
            collected.extend(outcome.transactions)
            successful += 1
            emit(
                replace(
                    progress,
                    status=ChunkStatus.COMPLETED,
                    message=f"Completed section {number} - found {len(outcome.transactions)} transactions",
                    processed_transactions=len(collected),
                )
            )
        else:
            errors.append(ProcessingError(chunk_id=chunk.id, error=outcome.error, retry_count=outcome.retry_count))
            logger.error("Chunk %s failed after %d retries: %s", chunk.id, outcome.retry_count, outcome.error)
            emit(
                replace(
                    progress,
                    status=ChunkStatus.ERROR,
                    message=f"Failed to process section {number}: {outcome.error}",
                    errors=tuple(errors),
                )
            )

        if number < total and pacing_seconds > 0:
            await asyncio.sleep(pacing_seconds)

    transactions = deduplicate_transactions(collected)
    if len(transactions) != len(collected):
        logger.info("Removed %d duplicate transactions", len(collected) - len(transactions))

    final = ChunkProgress(
        current_chunk=total,
        total_chunks=total,
        current_chunk_id="",
        status=ChunkStatus.ERROR if errors else ChunkStatus.COMPLETED,
        message=(
            f"Completed with {len(errors)} errors - found {len(transactions)} transactions"
            if errors
            else f"Successfully processed all sections - found {len(transactions)} transactions"
        ),
        percentage=100,
        processed_transactions=len(transactions),
        errors=tuple(errors),
    )
    emit(final)

    summary = ProcessingSummary(
        total_chunks=total,
        successful_chunks=successful,
        failed_chunks=total - successful,
        skipped_chunks=len(chunks) - total,
        total_transactions=len(transactions),
        processing_time_ms=round((time.monotonic() - started) * 1000),
    )
    return ProcessingResult(transactions=transactions, errors=errors, summary=summary, progress=final)
