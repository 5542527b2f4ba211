from functools import lru_cache
import json
from typing import Annotated, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_list_value(value: str) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        raw = value.strip()
        if raw == "":
            return []
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, list):
                return [str(item).strip() for item in parsed if str(item).strip()]
        except Exception:
            pass
        return [item.strip() for item in raw.split(",") if item.strip()]
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return []


def _parse_models_map(value: str) -> dict[str, list[str]]:
    """``AI_ALLOWED_MODELS`` is a JSON object: ``{"claude": ["model-a", ...]}``."""
    if not value or not value.strip():
        return {}
    try:
        parsed = json.loads(value)
    except (json.JSONDecodeError, ValueError):
        return {}
    if not isinstance(parsed, dict):
        return {}
    return {
        str(name).lower().strip(): _parse_list_value(models) if isinstance(models, list) else []
        for name, models in parsed.items()
    }


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="forbid",
        validate_by_name=True,
        populate_by_name=True,
    )
    database_url: str = ""

    docs_enabled: bool = Field(default=True)
    openapi_enabled: bool = Field(default=True)
    expose_error_details: bool = False

    pii_redaction_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("PII_REDACTION_ENABLED"),
    )
    pii_redaction_fields: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: [
            "phone",
            "email",
            "address",
            "ssn",
            "account_number",
            "routing_number",
        ],
        validation_alias=AliasChoices("PII_REDACTION_FIELDS"),
    )

    rate_limit_parse_enabled: bool = False
    rate_limit_parse_per_min: int = 10
    trusted_proxy_cidrs_raw: str = Field(
        default="",
        validation_alias=AliasChoices("TRUSTED_PROXY_CIDRS"),
    )

    security_headers_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("SECURITY_HEADERS_ENABLED", "SECURE_HEADERS_ENABLED"),
    )

    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=list)
    cors_allow_methods: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["GET", "POST", "OPTIONS"])
    cors_allow_headers: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["Authorization", "Content-Type", "Accept"])

    # --- AI backend ---
    ai_allowed_providers_raw: str = Field(
        default="mock,claude,openai,groq",
        validation_alias=AliasChoices("AI_ALLOWED_PROVIDERS"),
    )
    ai_allowed_models_raw: str = Field(
        default="",
        validation_alias=AliasChoices("AI_ALLOWED_MODELS"),
    )
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    groq_api_key: str = ""
    enable_ai_overrides: bool = False
    ai_debug_store_raw: bool = False
    ai_timeout_seconds: float = 30.0
    ai_temperature: float = 0.1
    ai_max_tokens: int = 4000

    ai_statement_provider: str = ""
    ai_statement_model: str = ""
    ai_statement_timeout_seconds: float = 60.0

    # --- Statement pipeline ---
    enable_statement_parse: bool = True
    statement_max_text_chars: int = 500_000
    statement_chunk_max_tokens: int = Field(default=15_000, ge=100)
    statement_max_retries: int = Field(default=2, ge=0)
    statement_backoff_base_seconds: float = Field(default=1.0, ge=0.0)
    statement_chunk_delay_seconds: float = Field(default=0.5, ge=0.0)
    statement_min_chunk_chars: int = Field(default=50, ge=0)
    statement_max_abs_amount: Optional[float] = Field(default=None, gt=0)

    # --- Progress stream ---
    progress_retention_seconds: float = 300.0
    progress_sse_max_connections: int = 100
    progress_sse_keepalive_seconds: float = 15.0

    @field_validator(
        "cors_allow_origins",
        "cors_allow_methods",
        "cors_allow_headers",
        "pii_redaction_fields",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            if value.strip() == "":
                return []
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @property
    def ai_allowed_providers(self) -> list[str]:
        return [item.lower() for item in _parse_list_value(self.ai_allowed_providers_raw)]

    @property
    def ai_allowed_models(self) -> dict[str, list[str]]:
        return _parse_models_map(self.ai_allowed_models_raw)

    @property
    def trusted_proxy_cidrs(self) -> list[str]:
        return _parse_list_value(self.trusted_proxy_cidrs_raw)

    def validate_required_config(self) -> list[str]:
        """Return human-readable problems that make the service unusable."""
        errors: list[str] = []
        provider = (self.ai_statement_provider or "").lower().strip()
        key_by_provider = {
            "claude": self.anthropic_api_key,
            "openai": self.openai_api_key,
            "groq": self.groq_api_key,
        }
        if provider and provider != "mock":
            if provider not in key_by_provider:
                errors.append(f"AI_STATEMENT_PROVIDER {provider!r} is not supported")
            elif not key_by_provider[provider]:
                errors.append(f"AI_STATEMENT_PROVIDER={provider} requires an API key")
            if provider not in self.ai_allowed_providers:
                errors.append(f"AI_STATEMENT_PROVIDER {provider!r} is not in AI_ALLOWED_PROVIDERS")
        if self.ai_allowed_models_raw.strip() and not self.ai_allowed_models:
            errors.append("AI_ALLOWED_MODELS must be a JSON object of provider -> model list")
        return errors


@lru_cache
def get_settings() -> Settings:
    return Settings()
