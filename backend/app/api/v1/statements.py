"""Statement parsing API.

Endpoints:
  POST /statements/parse    - parse statement text into transactions
  GET  /statements/progress - SSE stream of a parse job's progress events
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.dependencies import get_optional_db
from app.services.ai.statement_extract.contracts import CategoryVocabulary, ValidatedTransaction
from app.services.statement.pipeline import parse_statement
from app.services.statement.progress import ProgressBroadcaster, ProgressEvent
from app.utils.alerting import alert_tracker
from app.utils.rate_limit import client_ip, parse_rate_limiter

logger = logging.getLogger(__name__)

router = APIRouter()

_progress_sse_connections = 0


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def _ensure_statement_parse_enabled() -> None:
    settings = get_settings()
    if not settings.enable_statement_parse:
        raise HTTPException(status_code=404, detail="Not Found")


def get_progress_broadcaster(request: Request) -> ProgressBroadcaster:
    return request.app.state.progress_broadcaster


# ---------------------------------------------------------------------------
# Request/Response models
# ---------------------------------------------------------------------------


class StatementParseRequest(BaseModel):
    text: str = Field(..., min_length=1)
    job_id: Optional[str] = Field(default=None, min_length=1, max_length=128, pattern=r"^[A-Za-z0-9_.:-]+$")
    categories: Optional[CategoryVocabulary] = None
    override_provider: Optional[str] = None
    override_model: Optional[str] = None


class ProcessingErrorOut(BaseModel):
    chunk_id: str
    error: str
    retry_count: int
    timestamp: datetime


class ProcessingSummaryOut(BaseModel):
    total_chunks: int
    successful_chunks: int
    failed_chunks: int
    skipped_chunks: int
    total_transactions: int
    processing_time_ms: int


class StatementParseResponse(BaseModel):
    job_id: str
    outcome: str  # "completed" | "partial" | "no_transactions"
    confidence: str  # "high" | "medium" | "low"
    strategy: str
    message: str
    transactions: list[ValidatedTransaction]
    errors: list[ProcessingErrorOut]
    summary: ProcessingSummaryOut


# ---------------------------------------------------------------------------
# POST /statements/parse
# ---------------------------------------------------------------------------


@router.post(
    "/statements/parse",
    response_model=StatementParseResponse,
    dependencies=[Depends(_ensure_statement_parse_enabled)],
)
async def parse_statement_endpoint(
    payload: StatementParseRequest,
    request: Request,
    broadcaster: ProgressBroadcaster = Depends(get_progress_broadcaster),
    db: Optional[Session] = Depends(get_optional_db),
):
    """Parse statement text. Progress is published under ``job_id`` while the request runs."""
    settings = get_settings()

    if len(payload.text) > settings.statement_max_text_chars:
        raise HTTPException(status_code=413, detail="Statement text too large")

    ip = client_ip(request)
    if settings.rate_limit_parse_enabled:
        retry_after = parse_rate_limiter.admit(ip or "unknown", settings.rate_limit_parse_per_min)
        if retry_after is not None:
            alert_tracker.record("RATE_LIMIT_BLOCKED", {"path": request.url.path, "ip": ip})
            raise HTTPException(
                status_code=429,
                detail="Too Many Requests",
                headers={"Retry-After": str(retry_after)},
            )

    job_id = payload.job_id or str(uuid.uuid4())
    result = await parse_statement(
        payload.text,
        job_id=job_id,
        categories=payload.categories,
        broadcaster=broadcaster,
        db=db,
        override_provider=payload.override_provider,
        override_model=payload.override_model,
        ip_address=ip,
        user_agent=request.headers.get("user-agent"),
    )

    return StatementParseResponse(
        job_id=result.job_id,
        outcome=result.outcome.value,
        confidence=result.confidence.value,
        strategy=result.strategy,
        message=result.message,
        transactions=result.transactions,
        errors=[ProcessingErrorOut(**asdict(error)) for error in result.errors],
        summary=ProcessingSummaryOut(**asdict(result.summary)),
    )


# ---------------------------------------------------------------------------
# GET /statements/progress
# ---------------------------------------------------------------------------


def _sse_message(event: ProgressEvent) -> str:
    return f"data: {event.model_dump_json()}\n\n"


@router.get("/statements/progress", dependencies=[Depends(_ensure_statement_parse_enabled)])
async def statement_progress_sse(
    request: Request,
    job_id: str = Query(..., min_length=1, max_length=128),
    broadcaster: ProgressBroadcaster = Depends(get_progress_broadcaster),
):
    """SSE stream for one job: ``connected`` first, then every progress event until a terminal one."""
    global _progress_sse_connections

    settings = get_settings()
    if _progress_sse_connections >= settings.progress_sse_max_connections:
        raise HTTPException(429, "Too many active progress streams")

    _progress_sse_connections += 1
    queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
    listener = queue.put_nowait

    async def event_stream():
        global _progress_sse_connections
        try:
            yield _sse_message(ProgressEvent(job_id=job_id, step="connected", percentage=0, message="connected"))
            broadcaster.subscribe(job_id, listener)
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=settings.progress_sse_keepalive_seconds)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield _sse_message(event)
                if event.is_terminal:
                    break
        finally:
            broadcaster.unsubscribe(job_id, listener)
            _progress_sse_connections -= 1

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
