"""Mock provider — deterministic responses for tests and keyless fallback."""

from __future__ import annotations

import time

from .base import BaseProvider, ProviderResult


class MockProvider(BaseProvider):
    """Returns a fixed response without touching the network.

    The default response is an empty JSON array, i.e. "no transactions in
    this chunk", which keeps a keyless deployment functional but inert.
    """

    name = "mock"

    def __init__(self, response_text: str = "[]") -> None:
        self._response_text = response_text

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
        t0 = time.monotonic()
        text = self._response_text
        elapsed = (time.monotonic() - t0) * 1000
        return ProviderResult(
            raw_text=text,
            model=model or "mock-v1",
            provider=self.name,
            prompt_tokens=len(prompt.split()),
            completion_tokens=len(text.split()),
            latency_ms=round(elapsed, 2),
            stop_reason="end_turn",
        )
