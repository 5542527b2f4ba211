#!/usr/bin/env python3
"""
Parse a statement text file into transactions from the command line.

Progress lines go to stderr, the final JSON result to stdout.

Usage:
  cd backend
  export AI_STATEMENT_PROVIDER=claude ANTHROPIC_API_KEY=...   # or .env
  PYTHONPATH=. python scripts/parse_statement.py statement.txt

  With a closed category vocabulary and a smaller chunk budget:
  PYTHONPATH=. python scripts/parse_statement.py statement.txt \\
      --categories '{"income": ["Sales"], "expense": ["Rent", "Meals"]}' --max-tokens 4000

Without AI_STATEMENT_PROVIDER the mock backend is used and no transactions
are returned.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import uuid

# Run from repo root or backend; ensure backend is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pydantic import ValidationError

from app.services.ai.statement_extract.contracts import CategoryVocabulary
from app.services.statement.pipeline import StatementParseResult, parse_statement
from app.services.statement.progress import ProgressBroadcaster, ProgressEvent


def _load_categories(raw: str | None) -> CategoryVocabulary | None:
    if not raw:
        return None
    if os.path.isfile(raw):
        with open(raw, encoding="utf-8") as fh:
            raw = fh.read()
    return CategoryVocabulary.model_validate_json(raw)


def _print_progress(event: ProgressEvent) -> None:
    print(f"[{event.percentage:3d}%] {event.step}: {event.message}", file=sys.stderr)


def _result_payload(result: StatementParseResult) -> dict:
    return {
        "job_id": result.job_id,
        "outcome": result.outcome.value,
        "confidence": result.confidence.value,
        "strategy": result.strategy,
        "message": result.message,
        "transactions": [t.model_dump(mode="json") for t in result.transactions],
        "errors": [
            {
                "chunk_id": e.chunk_id,
                "error": e.error,
                "retry_count": e.retry_count,
                "timestamp": e.timestamp.isoformat(),
            }
            for e in result.errors
        ],
        "summary": {
            "total_chunks": result.summary.total_chunks,
            "successful_chunks": result.summary.successful_chunks,
            "failed_chunks": result.summary.failed_chunks,
            "skipped_chunks": result.summary.skipped_chunks,
            "total_transactions": result.summary.total_transactions,
            "processing_time_ms": result.summary.processing_time_ms,
        },
    }


async def _run(text: str, job_id: str, categories: CategoryVocabulary | None, max_tokens: int | None) -> StatementParseResult:
    broadcaster = ProgressBroadcaster()
    broadcaster.subscribe(job_id, _print_progress)
    try:
        return await parse_statement(
            text,
            job_id=job_id,
            categories=categories,
            broadcaster=broadcaster,
            max_tokens_per_chunk=max_tokens,
        )
    finally:
        broadcaster.cleanup(job_id)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Parse statement text into transactions.")
    parser.add_argument("file", help="Statement text file ('-' reads stdin).")
    parser.add_argument("--job-id", default=None, help="Job id used in progress lines (default: random UUID).")
    parser.add_argument("--categories", default=None, help="Category vocabulary as JSON or a path to a JSON file.")
    parser.add_argument("--max-tokens", type=int, default=None, help="Chunk budget in estimated tokens.")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level.")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.file == "-":
            text = sys.stdin.read()
        else:
            with open(args.file, encoding="utf-8") as fh:
                text = fh.read()
    except OSError as exc:
        print(f"Error: cannot read {args.file}: {exc}", file=sys.stderr)
        return 2

    try:
        categories = _load_categories(args.categories)
    except (OSError, ValidationError) as exc:
        print(f"Error: invalid --categories: {exc}", file=sys.stderr)
        return 2

    result = asyncio.run(_run(text, args.job_id or str(uuid.uuid4()), categories, args.max_tokens))
    print(json.dumps(_result_payload(result), indent=2, ensure_ascii=False))
    return 0 if result.outcome.value != "no_transactions" else 1


if __name__ == "__main__":
    sys.exit(main())
