from datetime import datetime, timezone
from typing import Any

from beanie import Document
from pydantic import Field
from pymongo import ASCENDING, IndexModel


class UserApiToken(Document):
    """A user's own vendor API key. One per (user, provider)."""

    user_id: str
    provider: str  # vendor family: "openai" | "anthropic"
    token_encrypted: str = ""
    display_name: str = ""
    is_active: bool = True
    last_used_at: datetime | None = None
    usage_stats: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Settings:
        name = "user_api_tokens"
        indexes = [
            IndexModel([("user_id", ASCENDING), ("provider", ASCENDING)], unique=True),
        ]
