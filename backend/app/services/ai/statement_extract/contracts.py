"""Statement extract scope contracts — candidate and validated transaction records."""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer


class StatementIngestError(Exception):
    pass


class ExtractionError(StatementIngestError):
    """The backend call itself could not be completed (network, auth, quota, timeout)."""

    def __init__(self, message: str, *, provider: str = "") -> None:
        super().__init__(message)
        self.provider = provider


class TransactionType(StrEnum):
    INCOME = "income"
    EXPENSE = "expense"

    @classmethod
    def from_amount(cls, amount: Decimal) -> TransactionType:
        return cls.INCOME if amount >= 0 else cls.EXPENSE


class CategoryVocabulary(BaseModel):
    """Closed set of category names the backend must choose from."""

    income: list[str] = Field(default_factory=list)
    expense: list[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.income or self.expense)

    def canonical(self, name: str) -> Optional[str]:
        """Return the vocabulary spelling of *name* (case-insensitive), if listed."""
        wanted = name.strip().casefold()
        for known in (*self.income, *self.expense):
            if known.casefold() == wanted:
                return known
        return None


class CandidateTransaction(BaseModel):
    """One record as the backend returned it; nothing is trusted yet."""

    model_config = ConfigDict(extra="ignore")

    date: Any = None
    description: Any = None
    amount: Any = None
    type: Any = None
    category: Any = None


class ValidatedTransaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: dt.date
    description: str
    amount: Decimal
    type: TransactionType
    category: str

    @field_serializer("amount", when_used="json")
    def _amount_as_number(self, amount: Decimal) -> float:
        return float(amount)

    @property
    def dedupe_key(self) -> tuple[str, str, str]:
        """Identity used to collapse the same posting seen in two chunks."""
        return (self.date.isoformat(), str(self.amount), self.description[:50])
