"""Statement extraction service — one backend call per statement chunk.

The backend is a best-effort classifier: its output is parsed defensively
and every record is re-validated here. Only a failed backend *call* raises
(``ExtractionError``); malformed or empty output degrades to fewer records.
"""

from __future__ import annotations

import datetime as dt
import logging
import math
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.core.config import get_settings

from ..common import router as ai_router
from ..common.audit import log_ai_run
from ..common.json_tools import extract_json_array
from .contracts import (
    CandidateTransaction,
    CategoryVocabulary,
    ExtractionError,
    TransactionType,
    ValidatedTransaction,
)

logger = logging.getLogger(__name__)

STATEMENT_SYSTEM_PROMPT = (
    "You convert bank statement text into transaction records. "
    "You answer with a JSON array only, never with prose or markdown."
)

STATEMENT_EXTRACT_PROMPT = """Extract bank transactions from this statement and return ONLY valid JSON.

BANK STATEMENT:
{content}

TASK: Extract all transactions as a JSON array. Each transaction needs:
- date: YYYY-MM-DD format
- description: Clean transaction description
- amount: Number (positive for income, negative for expenses)
- type: "income" or "expense"{category_instructions}

CRITICAL: Your response must be ONLY valid JSON - no explanations, no markdown, no other text.

Example format:
[{{"date":"2024-01-15","description":"Coffee Shop","amount":-4.50,"type":"expense","category":"Meals & Entertainment"}},{{"date":"2024-01-16","description":"Salary","amount":2500.00,"type":"income","category":"Service Revenue"}}]

If no transactions found, return: []

JSON:"""

_CLOSED_VOCABULARY_INSTRUCTIONS = """

AVAILABLE CATEGORIES (use these exact names):
Income categories: {income}
Expense categories: {expense}

- category: Must be one of the exact category names listed above"""

_OPEN_VOCABULARY_INSTRUCTIONS = """
- category: Use descriptive category name (e.g., "Office Supplies", "Travel", "Service Revenue")"""

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")
_US_DATE_FORMATS = ("%m/%d/%Y", "%m/%d/%y")
_CENT = Decimal("0.01")


def build_extraction_prompt(chunk_text: str, categories: Optional[CategoryVocabulary] = None) -> str:
    if categories is not None and not categories.is_empty():
        instructions = _CLOSED_VOCABULARY_INSTRUCTIONS.format(
            income=", ".join(categories.income),
            expense=", ".join(categories.expense),
        )
    else:
        instructions = _OPEN_VOCABULARY_INSTRUCTIONS
    return STATEMENT_EXTRACT_PROMPT.format(content=chunk_text, category_instructions=instructions)


def parse_statement_date(value: Any) -> Optional[dt.date]:
    """Parse ISO ``YYYY-MM-DD`` (optionally with a time part) or US ``MM/DD/YYYY``."""
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    if _ISO_DATE_RE.match(text):
        try:
            return dt.date.fromisoformat(text[:10])
        except ValueError:
            return None
    for fmt in _US_DATE_FORMATS:
        try:
            return dt.datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def parse_amount(value: Any) -> Optional[Decimal]:
    """Parse a signed amount; accepts numbers and strings like ``"$1,234.50"`` or ``"(12.00)"``."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        raw = str(value)
    elif isinstance(value, str):
        raw = value.strip().replace("$", "").replace(",", "").replace(" ", "")
        if raw.startswith("(") and raw.endswith(")"):
            raw = "-" + raw[1:-1]
    else:
        return None

    try:
        amount = Decimal(raw)
        if not amount.is_finite():
            return None
        # Raises once the value needs more digits than the context precision.
        return amount.quantize(_CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return None


def _validate_one(
    candidate: CandidateTransaction,
    categories: Optional[CategoryVocabulary],
    max_abs_amount: Optional[float],
) -> Optional[ValidatedTransaction]:
    description = str(candidate.description).strip() if candidate.description is not None else ""
    category = str(candidate.category).strip() if candidate.category is not None else ""
    if not description or not category or candidate.date is None or candidate.amount is None:
        logger.warning("Skipping transaction with missing fields: %s", candidate.model_dump())
        return None

    parsed_date = parse_statement_date(candidate.date)
    if parsed_date is None:
        logger.warning("Skipping transaction with invalid date: %r", candidate.date)
        return None

    amount = parse_amount(candidate.amount)
    if amount is None:
        logger.warning("Skipping transaction with invalid amount: %r", candidate.amount)
        return None

    if max_abs_amount is not None and abs(amount) > Decimal(str(max_abs_amount)):
        logger.warning("Skipping transaction with implausible amount: %s", amount)
        return None

    # Amount sign is authoritative; the backend's own label is only compared.
    tx_type = TransactionType.from_amount(amount)
    if candidate.type is not None and str(candidate.type).strip().lower() != tx_type.value:
        logger.debug("Backend type %r disagrees with amount %s; using %s", candidate.type, amount, tx_type.value)

    if categories is not None and not categories.is_empty():
        category = categories.canonical(category) or category

    return ValidatedTransaction(
        date=parsed_date,
        description=description,
        amount=amount,
        type=tx_type,
        category=category,
    )


def validate_candidates(
    records: Iterable[Any],
    categories: Optional[CategoryVocabulary] = None,
    *,
    max_abs_amount: Optional[float] = None,
) -> list[ValidatedTransaction]:
    """Turn raw backend records into ``ValidatedTransaction`` objects.

    Invalid records are logged and dropped; this never raises.
    """
    validated: list[ValidatedTransaction] = []
    for record in records:
        if not isinstance(record, dict):
            logger.warning("Skipping non-object record: %r", record)
            continue
        try:
            candidate = CandidateTransaction.model_validate(record)
        except ValidationError:
            logger.warning("Skipping unreadable record: %r", record)
            continue
        try:
            transaction = _validate_one(candidate, categories, max_abs_amount)
        except (ArithmeticError, ValueError):
            logger.warning("Skipping record that failed validation: %r", record, exc_info=True)
            continue
        if transaction is not None:
            validated.append(transaction)
    return validated


class StatementExtractor:
    """Extracts validated transactions from one chunk of statement text."""

    def __init__(
        self,
        *,
        override_provider: str | None = None,
        override_model: str | None = None,
        db: Session | None = None,
        job_id: str | None = None,
    ) -> None:
        self._override_provider = override_provider
        self._override_model = override_model
        self._db = db
        self._job_id = job_id
        self._config: ai_router.ResolvedConfig | None = None

    @property
    def config(self) -> ai_router.ResolvedConfig:
        if self._config is None:
            self._config = ai_router.resolve(
                ai_router.STATEMENT_SCOPE,
                override_provider=self._override_provider,
                override_model=self._override_model,
            )
        return self._config

    async def extract(
        self,
        chunk_text: str,
        categories: CategoryVocabulary | None = None,
        *,
        chunk_id: str | None = None,
    ) -> list[ValidatedTransaction]:
        config = self.config
        prompt = build_extraction_prompt(chunk_text, categories)

        try:
            result = await config.provider.generate(
                prompt,
                system_prompt=STATEMENT_SYSTEM_PROMPT,
                model=config.model,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                timeout_seconds=config.timeout_seconds,
            )
        except Exception as exc:
            logger.warning("Statement extraction call failed provider=%s chunk=%s: %s", config.provider.name, chunk_id, exc)
            raise ExtractionError(f"{config.provider.name} call failed: {exc}", provider=config.provider.name) from exc

        records = extract_json_array(result.raw_text)
        transactions = validate_candidates(
            records,
            categories,
            max_abs_amount=get_settings().statement_max_abs_amount,
        )
        logger.info(
            "Chunk %s: %d records returned, %d valid (provider=%s, %.0f ms)",
            chunk_id,
            len(records),
            len(transactions),
            result.provider,
            result.latency_ms,
        )

        if self._db is not None:
            log_ai_run(
                self._db,
                scope=ai_router.STATEMENT_SCOPE,
                provider_result=result,
                prompt_text=prompt,
                parsed_output={"records": len(records), "valid": len(transactions)},
                entity_id=self._job_id,
                extra_meta={"chunk_id": chunk_id, "truncated": result.truncated},
            )

        return transactions
