"""Abstract base for all text-generation backends."""

from __future__ import annotations

import abc
from dataclasses import dataclass

TRUNCATION_STOP_REASONS = frozenset({"max_tokens", "length"})


@dataclass(frozen=True)
class ProviderResult:
    """Immutable result returned by every provider."""

    raw_text: str
    model: str
    provider: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0
    stop_reason: str = ""

    @property
    def truncated(self) -> bool:
        """True when the backend stopped because it hit the output ceiling."""
        return self.stop_reason in TRUNCATION_STOP_REASONS


class BaseProvider(abc.ABC):
    """Contract that every provider must implement.

    Implementations raise on transport, auth and quota failures; they never
    inspect or repair the generated text.
    """

    name: str = "base"

    @abc.abstractmethod
    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        model: str = "",
        temperature: float = 0.1,
        max_tokens: int = 4000,
        timeout_seconds: float = 30.0,
    ) -> ProviderResult:
        """Send *prompt* and return a ``ProviderResult``."""
