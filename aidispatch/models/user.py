from datetime import datetime, timezone

from beanie import Document, Indexed
from pydantic import Field


class User(Document):
    """Account owner of a credit ledger. Sign-in is handled upstream."""

    email: Indexed(str, unique=True)
    name: str = ""
    role: str = "user"  # "user" | "admin"
    session_version: int = 0
    demo_credits_granted: bool = False
    last_login_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Settings:
        name = "users"
