from decimal import Decimal
from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]
_DEFAULT_FALLBACK_CHAIN = ["openai-gpt5-mini", "anthropic-claude", "mock"]


def _parse_csv_list(v: Any, default: List[str]) -> List[str]:
    try:
        if v is None or v == "":
            return default.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return default.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or default.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or default.copy()
    except ValueError:
        return default.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="aidispatch", alias="MONGODB_DB_NAME")

    # Ledger store: "mongo" or "memory"
    ledger_backend: str = Field(default="mongo", alias="LEDGER_BACKEND")
    ledger_conflict_retries: int = Field(default=5, alias="LEDGER_CONFLICT_RETRIES")
    # seconds a dispatch keeps retrying a conflicted refund
    ledger_refund_window: float = Field(default=30.0, alias="LEDGER_REFUND_WINDOW")

    # Redis (generation job queue)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Token encryption (Fernet key, base64)
    token_encryption_key: str = Field(default="", alias="TOKEN_ENCRYPTION_KEY")

    # System-level vendor keys
    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    openai_base_url: str = Field(default="https://api.openai.com/v1", alias="OPENAI_BASE_URL")
    openai_gpt5_model: str = Field(default="gpt-5", alias="OPENAI_GPT5_MODEL")
    anthropic_api_key: str = Field(default="", alias="ANTHROPIC_API_KEY")
    anthropic_base_url: str = Field(default="https://api.anthropic.com/v1", alias="ANTHROPIC_BASE_URL")
    provider_http_timeout: float = Field(default=60.0, alias="AI_TIMEOUT")
    provider_max_tokens: int = 4000

    # Dispatch
    default_provider: str = Field(default="openai-gpt5", alias="AI_DEFAULT_PROVIDER")
    fallback_chain_raw: str = Field(
        default=",".join(_DEFAULT_FALLBACK_CHAIN),
        alias="AI_FALLBACK_CHAIN",
        description="Comma-separated or JSON list of provider ids",
    )
    dispatch_timeout_seconds: float = Field(default=60.0, alias="AI_DISPATCH_TIMEOUT")
    dispatch_preauthorize: bool = Field(default=False, alias="AI_DISPATCH_PREAUTHORIZE")
    rate_limit_max_attempts: int = Field(default=3, alias="AI_RATE_LIMIT_MAX_ATTEMPTS")
    rate_limit_base_delay: float = Field(default=0.5, alias="AI_RATE_LIMIT_BASE_DELAY")
    rate_limit_max_delay: float = Field(default=8.0, alias="AI_RATE_LIMIT_MAX_DELAY")
    rate_limit_max_retry_after: float = Field(default=30.0, alias="AI_RATE_LIMIT_MAX_RETRY_AFTER")

    # Credits
    demo_credits: Decimal = Field(default=Decimal("5.00"), alias="DEMO_CREDITS")
    webhook_secret: str = Field(default="", alias="PAYMENTS_WEBHOOK_SECRET")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_csv_list(getattr(self, "cors_origins_raw", None), _DEFAULT_CORS)

    @property
    def fallback_chain(self) -> List[str]:
        return _parse_csv_list(getattr(self, "fallback_chain_raw", None), _DEFAULT_FALLBACK_CHAIN)

    def system_key(self, vendor: str) -> str:
        """System-level API key for a vendor family ("" when not configured)."""
        return {
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
        }.get(vendor, "")


@lru_cache
def get_settings() -> Settings:
    return Settings()
