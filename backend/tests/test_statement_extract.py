"""Tests for the statement extraction client.

Covers:
- Prompt construction (open and closed category vocabulary)
- Candidate validation: dates, amounts, sign-derived type, categories
- StatementExtractor: backend call, recovery, ExtractionError, audit row
"""

import asyncio
import datetime as dt
import unittest
from decimal import Decimal
from unittest.mock import patch

import httpx
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.models.audit import AuditLog, Base
from app.services.ai.common.providers.base import BaseProvider, ProviderResult
from app.services.ai.common.providers.mock import MockProvider
from app.services.ai.statement_extract.contracts import (
    CategoryVocabulary,
    ExtractionError,
    TransactionType,
    ValidatedTransaction,
)
from app.services.ai.statement_extract.service import (
    StatementExtractor,
    build_extraction_prompt,
    parse_amount,
    parse_statement_date,
    validate_candidates,
)

COFFEE = {"date": "2024-01-15", "description": "Coffee Shop", "amount": -4.5, "type": "expense", "category": "Meals"}
SALARY = {"date": "2024-01-16", "description": "Salary", "amount": 2500, "type": "income", "category": "Service Revenue"}

RESPONSE = (
    '[{"date":"2024-01-15","description":"Coffee Shop","amount":-4.50,"type":"expense",'
    '"category":"Meals & Entertainment"},{"date":"2024-01-16","description":"Salary",'
    '"amount":2500.00,"type":"income","category":"Service Revenue"}]'
)


class FailingProvider(BaseProvider):
    name = "failing"

    async def generate(self, prompt, **kwargs):
        raise httpx.ReadTimeout("timed out")


class RecordingProvider(MockProvider):
    def __init__(self, response_text="[]", stop_reason="end_turn"):
        super().__init__(response_text)
        self.calls = []
        self._stop_reason = stop_reason

    async def generate(self, prompt, **kwargs):
        self.calls.append((prompt, kwargs))
        result = await super().generate(prompt, **kwargs)
        return ProviderResult(
            raw_text=result.raw_text,
            model=result.model,
            provider=result.provider,
            stop_reason=self._stop_reason,
        )


class PromptTests(unittest.TestCase):
    def test_open_vocabulary_prompt(self):
        prompt = build_extraction_prompt("01/15/2024 COFFEE SHOP -4.50")
        self.assertIn("01/15/2024 COFFEE SHOP -4.50", prompt)
        self.assertIn("Use descriptive category name", prompt)
        self.assertNotIn("AVAILABLE CATEGORIES", prompt)
        self.assertIn('[{"date":"2024-01-15"', prompt)
        self.assertTrue(prompt.endswith("JSON:"))

    def test_closed_vocabulary_prompt(self):
        categories = CategoryVocabulary(income=["Sales", "Interest"], expense=["Rent"])
        prompt = build_extraction_prompt("text", categories)
        self.assertIn("AVAILABLE CATEGORIES (use these exact names):", prompt)
        self.assertIn("Income categories: Sales, Interest", prompt)
        self.assertIn("Expense categories: Rent", prompt)
        self.assertIn("Must be one of the exact category names", prompt)

    def test_empty_vocabulary_is_open(self):
        prompt = build_extraction_prompt("text", CategoryVocabulary())
        self.assertNotIn("AVAILABLE CATEGORIES", prompt)


class ParsingTests(unittest.TestCase):
    def test_parse_dates(self):
        self.assertEqual(parse_statement_date("2024-01-15"), dt.date(2024, 1, 15))
        self.assertEqual(parse_statement_date("2024-01-15T10:30:00Z"), dt.date(2024, 1, 15))
        self.assertEqual(parse_statement_date("01/15/2024"), dt.date(2024, 1, 15))
        self.assertEqual(parse_statement_date("1/5/24"), dt.date(2024, 1, 5))
        self.assertIsNone(parse_statement_date("2024-13-01"))
        self.assertIsNone(parse_statement_date("yesterday"))
        self.assertIsNone(parse_statement_date(20240115))

    def test_parse_amounts(self):
        self.assertEqual(parse_amount(-4.5), Decimal("-4.50"))
        self.assertEqual(parse_amount(2500), Decimal("2500.00"))
        self.assertEqual(parse_amount("$1,234.50"), Decimal("1234.50"))
        self.assertEqual(parse_amount("(12.00)"), Decimal("-12.00"))
        self.assertEqual(parse_amount("4.505"), Decimal("4.51"))
        self.assertIsNone(parse_amount(True))
        self.assertIsNone(parse_amount(None))
        self.assertIsNone(parse_amount(float("nan")))
        self.assertIsNone(parse_amount("abc"))
        self.assertIsNone(parse_amount([1]))

    def test_amount_beyond_decimal_precision_is_rejected(self):
        self.assertIsNone(parse_amount(1e30))
        self.assertIsNone(parse_amount("1e40"))
        self.assertIsNone(parse_amount("9" * 30))


class ValidationTests(unittest.TestCase):
    def test_example_records(self):
        transactions = validate_candidates([COFFEE, SALARY])
        self.assertEqual(len(transactions), 2)
        coffee, salary = transactions
        self.assertEqual(coffee.date, dt.date(2024, 1, 15))
        self.assertEqual(coffee.amount, Decimal("-4.50"))
        self.assertEqual(coffee.type, TransactionType.EXPENSE)
        self.assertEqual(salary.type, TransactionType.INCOME)
        self.assertEqual(salary.category, "Service Revenue")

    def test_type_follows_amount_sign(self):
        record = dict(COFFEE, type="income")
        (transaction,) = validate_candidates([record])
        self.assertEqual(transaction.type, TransactionType.EXPENSE)

        (zero,) = validate_candidates([dict(COFFEE, amount=0)])
        self.assertEqual(zero.type, TransactionType.INCOME)

    def test_invalid_records_are_dropped(self):
        records = [
            dict(COFFEE, description=""),
            dict(COFFEE, date="yesterday"),
            dict(COFFEE, amount="abc"),
            dict(COFFEE, amount=True),
            {key: value for key, value in COFFEE.items() if key != "category"},
            "not a record",
            None,
            SALARY,
        ]
        transactions = validate_candidates(records)
        self.assertEqual([t.description for t in transactions], ["Salary"])

    def test_category_is_canonicalised_against_vocabulary(self):
        categories = CategoryVocabulary(income=["Sales"], expense=["Meals & Entertainment"])
        records = [dict(COFFEE, category="meals & entertainment"), dict(SALARY, category="Consulting")]
        coffee, salary = validate_candidates(records, categories)
        self.assertEqual(coffee.category, "Meals & Entertainment")
        self.assertEqual(salary.category, "Consulting")

    def test_magnitude_ceiling(self):
        transactions = validate_candidates([COFFEE, SALARY], max_abs_amount=1000)
        self.assertEqual([t.description for t in transactions], ["Coffee Shop"])

    def test_oversized_amount_drops_only_that_record(self):
        records = [COFFEE, dict(SALARY, amount=1e30), dict(SALARY, amount="1e40")]
        transactions = validate_candidates(records)
        self.assertEqual([t.description for t in transactions], ["Coffee Shop"])

    def test_json_output_and_dedupe_key(self):
        (coffee,) = validate_candidates([COFFEE])
        payload = coffee.model_dump(mode="json")
        self.assertEqual(
            payload,
            {"date": "2024-01-15", "description": "Coffee Shop", "amount": -4.5, "type": "expense", "category": "Meals"},
        )
        self.assertEqual(coffee.dedupe_key, ("2024-01-15", "-4.50", "Coffee Shop"))

    def test_validated_transaction_is_frozen(self):
        (coffee,) = validate_candidates([COFFEE])
        with self.assertRaises(Exception):
            coffee.description = "changed"
        self.assertIsInstance(coffee, ValidatedTransaction)


class StatementExtractorTests(unittest.TestCase):
    def test_extracts_transactions_from_backend_response(self):
        provider = RecordingProvider(RESPONSE)
        with patch("app.services.ai.common.router.get_provider", return_value=provider):
            extractor = StatementExtractor()
            transactions = asyncio.run(extractor.extract("01/15 COFFEE SHOP 4.50", chunk_id="chunk-1"))

        self.assertEqual([t.description for t in transactions], ["Coffee Shop", "Salary"])
        self.assertEqual(len(provider.calls), 1)
        prompt, kwargs = provider.calls[0]
        self.assertIn("01/15 COFFEE SHOP 4.50", prompt)
        self.assertIn("JSON array", kwargs["system_prompt"])

    def test_truncated_response_keeps_complete_records(self):
        truncated = RESPONSE[: RESPONSE.index('{"date":"2024-01-16"') + 25]
        provider = RecordingProvider(truncated, stop_reason="max_tokens")
        with patch("app.services.ai.common.router.get_provider", return_value=provider):
            transactions = asyncio.run(StatementExtractor().extract("text"))

        self.assertEqual([t.description for t in transactions], ["Coffee Shop"])

    def test_unparseable_response_yields_no_transactions(self):
        provider = RecordingProvider("Sorry, I can't help with that.")
        with patch("app.services.ai.common.router.get_provider", return_value=provider):
            transactions = asyncio.run(StatementExtractor().extract("text"))

        self.assertEqual(transactions, [])

    def test_oversized_amount_is_dropped_without_failing_the_chunk(self):
        provider = RecordingProvider(RESPONSE.replace('"amount":2500.00', '"amount":1e30'))
        with patch("app.services.ai.common.router.get_provider", return_value=provider):
            transactions = asyncio.run(StatementExtractor().extract("text", chunk_id="chunk-1"))

        self.assertEqual([t.description for t in transactions], ["Coffee Shop"])
        self.assertEqual(len(provider.calls), 1)

    def test_backend_failure_raises_extraction_error(self):
        with patch("app.services.ai.common.router.get_provider", return_value=FailingProvider()):
            with self.assertRaises(ExtractionError) as ctx:
                asyncio.run(StatementExtractor().extract("text", chunk_id="chunk-2"))

        self.assertEqual(ctx.exception.provider, "failing")
        self.assertIn("timed out", str(ctx.exception))


class StatementExtractorAuditTests(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine(
            "sqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine)

    def tearDown(self):
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def test_backend_call_is_audited_without_raw_text(self):
        db = self.SessionLocal()
        try:
            with patch("app.services.ai.common.router.get_provider", return_value=RecordingProvider(RESPONSE)):
                extractor = StatementExtractor(db=db, job_id="job-1")
                asyncio.run(extractor.extract("text", chunk_id="chunk-1"))
            db.commit()

            rows = db.query(AuditLog).all()
            self.assertEqual(len(rows), 1)
            row = rows[0]
            self.assertEqual(row.action, "AI_STATEMENT_EXTRACT")
            self.assertEqual(row.entity_type, "ai")
            self.assertEqual(row.entity_id, "job-1")
            self.assertEqual(row.new_value, {"records": 2, "valid": 2})
            self.assertEqual(row.audit_meta["chunk_id"], "chunk-1")
            self.assertEqual(row.audit_meta["scope"], "statement_extract")
            self.assertFalse(row.audit_meta["truncated"])
            self.assertNotIn("prompt_raw", row.audit_meta)
            self.assertEqual(len(row.audit_meta["prompt_hash"]), 64)
        finally:
            db.close()
