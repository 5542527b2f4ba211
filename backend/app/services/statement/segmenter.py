"""Statement text segmentation under a token budget.

Splits extracted statement text into contiguous, line-aligned chunks whose
estimated size fits the extraction backend's input budget, preferring
natural boundaries (pages, month changes, section headers, dead zones).
Token counts are a ``ceil(chars / 4)`` approximation, not real tokenization,
so the budget should be set conservatively.

Segmentation never fails: the worst case is a single chunk.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import Sequence

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS_PER_CHUNK = 15_000
CHARS_PER_TOKEN = 4

TRANSACTION_RATIO = 0.4
HEADER_RATIO = 0.8
MIXED_RATIO = 0.1
DEAD_ZONE_MIN_LINES = 3

_TRANSACTION_PATTERNS = (
    re.compile(r"\d{1,2}/\d{1,2}/\d{2,4}"),
    re.compile(r"\d{4}-\d{2}-\d{2}"),
    re.compile(r"\$\d+\.\d{2}"),
    re.compile(r"[-+]?\$?\d{1,3}(?:,\d{3})*\.\d{2}"),
    re.compile(r"\b(debit|credit|deposit|withdrawal|payment|transfer|fee)\b", re.IGNORECASE),
    re.compile(r"\b(pending|posted|cleared)\b", re.IGNORECASE),
    re.compile(r"\b\d+\.\d{2}\b"),
    re.compile(r"\b(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)\b", re.IGNORECASE),
)

_HEADER_FOOTER_PATTERNS = (
    re.compile(r"^(page \d+|statement|account|customer|address|phone|email)", re.IGNORECASE),
    re.compile(r"^(continued|subtotal|total|balance|summary)", re.IGNORECASE),
    re.compile(r"^\s*$"),
    re.compile(r"^[-=_\s]+$"),
    re.compile(r"^(bank|credit union|financial)", re.IGNORECASE),
)

_PAGE_MARKER_RE = re.compile(r"^(page \d+|statement page)", re.IGNORECASE)
_SECTION_HEADER_RE = re.compile(r"^(transaction|activity|summary|account activity)", re.IGNORECASE)
_US_DATE_RE = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{2,4})")


class ChunkKind(StrEnum):
    HEADER = "header"
    TRANSACTIONS = "transactions"
    FOOTER = "footer"
    MIXED = "mixed"


EXTRACTABLE_KINDS = frozenset({ChunkKind.TRANSACTIONS, ChunkKind.MIXED})


@dataclass(frozen=True)
class RawChunk:
    """A contiguous slice of the source lines ``[start_line, end_line)``."""

    id: str
    content: str
    start_line: int
    end_line: int
    estimated_tokens: int
    kind: ChunkKind

    @property
    def line_count(self) -> int:
        return self.end_line - self.start_line


@dataclass(frozen=True)
class SegmentationMetadata:
    total_lines: int
    average_chunk_size: int
    largest_chunk_size: int


@dataclass(frozen=True)
class SegmentationResult:
    chunks: list[RawChunk]
    total_estimated_tokens: int
    strategy: str
    metadata: SegmentationMetadata


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def is_transaction_line(line: str) -> bool:
    return any(pattern.search(line) for pattern in _TRANSACTION_PATTERNS)


def is_header_footer_line(line: str) -> bool:
    return any(pattern.search(line) for pattern in _HEADER_FOOTER_PATTERNS)


def classify_lines(lines: Sequence[str]) -> ChunkKind:
    """Classify a block of lines by the share of transaction-shaped lines."""
    if not lines:
        return ChunkKind.FOOTER

    transaction_lines = 0
    header_footer_lines = 0
    for line in lines:
        if is_transaction_line(line):
            transaction_lines += 1
        elif is_header_footer_line(line):
            header_footer_lines += 1

    total = len(lines)
    if transaction_lines / total > TRANSACTION_RATIO:
        return ChunkKind.TRANSACTIONS
    if header_footer_lines / total > HEADER_RATIO:
        return ChunkKind.HEADER
    if transaction_lines / total > MIXED_RATIO:
        return ChunkKind.MIXED
    return ChunkKind.FOOTER


def _month_year(line: str) -> tuple[int, int] | None:
    match = _US_DATE_RE.search(line)
    if match is None:
        return None
    return int(match.group(1)), int(match.group(3))


def find_break_points(lines: Sequence[str]) -> list[int]:
    """Return sorted, unique line indexes where a new chunk may start.

    ``0`` and ``len(lines)`` are always included.
    """
    n = len(lines)
    dead = [not is_transaction_line(line) and not is_header_footer_line(line) for line in lines]
    points = {0, n}

    for i in range(1, n - 1):
        current = lines[i].strip()

        if _PAGE_MARKER_RE.match(current):
            points.add(i)
            continue

        current_date = _month_year(current)
        next_date = _month_year(lines[i + 1].strip())
        if current_date and next_date and current_date != next_date:
            points.add(i + 1)
            continue

        if _SECTION_HEADER_RE.match(current):
            points.add(i)
            continue

        # Start of a dead zone: a run of lines that are neither transactions nor boilerplate.
        run_end = i + DEAD_ZONE_MIN_LINES
        if not dead[i - 1] and run_end <= n and all(dead[i:run_end]):
            points.add(i)

    return sorted(points)


def _make_chunk(lines: Sequence[str], start: int, end: int) -> RawChunk:
    block = lines[start:end]
    content = "\n".join(block)
    return RawChunk(
        id="",
        content=content,
        start_line=start,
        end_line=end,
        estimated_tokens=estimate_tokens(content),
        kind=classify_lines(block),
    )


def _split_oversized(lines: Sequence[str], chunk: RawChunk, max_tokens: int) -> list[RawChunk]:
    """Cut *chunk* at the last line that keeps each piece within budget."""
    pieces: list[RawChunk] = []
    start = chunk.start_line
    length = 0
    for i in range(chunk.start_line, chunk.end_line):
        line_length = len(lines[i])
        candidate = line_length if i == start else length + 1 + line_length
        if i > start and math.ceil(candidate / CHARS_PER_TOKEN) > max_tokens:
            pieces.append(_make_chunk(lines, start, i))
            start = i
            candidate = line_length
        length = candidate
    pieces.append(_make_chunk(lines, start, chunk.end_line))

    oversize = [piece for piece in pieces if piece.estimated_tokens > max_tokens]
    if oversize:
        logger.warning("%d single-line chunk(s) exceed the %d token budget", len(oversize), max_tokens)
    return pieces


def _optimise(lines: Sequence[str], chunks: list[RawChunk], max_tokens: int) -> list[RawChunk]:
    optimised: list[RawChunk] = []
    current: RawChunk | None = None

    for chunk in chunks:
        if chunk.estimated_tokens > max_tokens:
            if current is not None:
                optimised.append(current)
                current = None
            optimised.extend(_split_oversized(lines, chunk, max_tokens))
            continue

        if current is None:
            current = chunk
            continue

        merged_tokens = math.ceil((len(current.content) + 1 + len(chunk.content)) / CHARS_PER_TOKEN)
        if merged_tokens > max_tokens:
            optimised.append(current)
            current = chunk
        else:
            current = _make_chunk(lines, current.start_line, chunk.end_line)

    if current is not None:
        optimised.append(current)

    return [replace(chunk, id=f"chunk-{index}") for index, chunk in enumerate(optimised, start=1)]


def segment_text(text: str, max_tokens_per_chunk: int = DEFAULT_MAX_TOKENS_PER_CHUNK) -> SegmentationResult:
    """Split *text* into chunks of at most *max_tokens_per_chunk* estimated tokens.

    Chunk line ranges cover every input line exactly once and in order. A
    single line longer than the budget is never cut and becomes its own chunk.
    """
    max_tokens = max(1, int(max_tokens_per_chunk))
    lines = text.split("\n")
    total_tokens = estimate_tokens(text)

    if total_tokens <= max_tokens:
        chunk = RawChunk(
            id="chunk-1",
            content=text,
            start_line=0,
            end_line=len(lines),
            estimated_tokens=total_tokens,
            kind=classify_lines(lines),
        )
        return SegmentationResult(
            chunks=[chunk],
            total_estimated_tokens=total_tokens,
            strategy="single-chunk",
            metadata=SegmentationMetadata(
                total_lines=len(lines),
                average_chunk_size=total_tokens,
                largest_chunk_size=total_tokens,
            ),
        )

    break_points = find_break_points(lines)
    initial = [_make_chunk(lines, start, end) for start, end in zip(break_points, break_points[1:])]
    chunks = _optimise(lines, initial, max_tokens)

    sizes = [chunk.estimated_tokens for chunk in chunks]
    logger.debug(
        "Segmented %d lines into %d chunks (%d break points, budget=%d)",
        len(lines),
        len(chunks),
        len(break_points),
        max_tokens,
    )
    return SegmentationResult(
        chunks=chunks,
        total_estimated_tokens=total_tokens,
        strategy="smart-segmentation",
        metadata=SegmentationMetadata(
            total_lines=len(lines),
            average_chunk_size=round(sum(sizes) / len(sizes)),
            largest_chunk_size=max(sizes),
        ),
    )


def filter_transaction_chunks(chunks: Sequence[RawChunk]) -> list[RawChunk]:
    """Keep only chunks worth sending for extraction."""
    return [chunk for chunk in chunks if chunk.kind in EXTRACTABLE_KINDS]


def describe_segmentation(result: SegmentationResult) -> str:
    extractable = filter_transaction_chunks(result.chunks)
    return (
        f"Found {len(result.chunks)} sections ({len(extractable)} contain transactions). "
        f"Average section size: {result.metadata.average_chunk_size} tokens. "
        f"Processing {len(extractable)} sections for transactions."
    )
