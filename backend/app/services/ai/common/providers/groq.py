"""Groq provider (OpenAI-compatible API)."""

from __future__ import annotations

from .openai import ChatCompletionsProvider


class GroqProvider(ChatCompletionsProvider):
    name = "groq"
    base_url = "https://api.groq.com/openai/v1"
    default_model = "llama-3.3-70b-versatile"
