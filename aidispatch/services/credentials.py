"""Which key pays for a provider call: the user's own, or the system key."""

from typing import Awaitable, Callable

from pydantic import BaseModel

from aidispatch.core.config import Settings, get_settings
from aidispatch.core.encryption import decrypt_api_key
from aidispatch.core.logging import get_logger
from aidispatch.providers.base import Credential

log = get_logger(__name__)


class StoredToken(BaseModel):
    """What the resolver needs from a persisted user key."""

    id: str
    vendor: str
    token_encrypted: str
    is_active: bool = True


FindToken = Callable[[str, str], Awaitable[StoredToken | None]]
MarkUsed = Callable[[str], Awaitable[None]]


async def find_stored_token(user_id: str, vendor: str) -> StoredToken | None:
    from aidispatch.services.api_tokens import find_active_token

    doc = await find_active_token(user_id, vendor)
    if doc is None:
        return None
    return StoredToken(
        id=str(doc.id),
        vendor=doc.provider,
        token_encrypted=doc.token_encrypted,
        is_active=doc.is_active,
    )


async def mark_stored_token_used(token_id: str) -> None:
    from aidispatch.services.api_tokens import mark_used

    await mark_used(token_id)


class CredentialResolver:
    """
    A present, active, non-empty user key for the vendor counts as self-funding,
    whether or not a system key is configured. Keys that no longer decrypt
    (rotated encryption secret) count as absent.
    """

    def __init__(
        self,
        find_token: FindToken | None = None,
        mark_used: MarkUsed | None = None,
        settings: Settings | None = None,
    ):
        self._find_token = find_token or find_stored_token
        self._mark_used = mark_used or mark_stored_token_used
        self._settings = settings

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    async def get_credential(self, user_id: str, vendor: str) -> Credential | None:
        """The user's own key for ``vendor``, or None."""
        if vendor == "mock":
            return None
        token = await self._find_token(user_id, vendor)
        if token is None or not token.is_active:
            return None
        api_key = decrypt_api_key(token.token_encrypted).strip()
        if not api_key:
            log.warning("user_api_key_unreadable", user_id=user_id, vendor=vendor, token_id=token.id)
            return None
        return Credential(vendor=vendor, api_key=api_key, source="user", token_id=token.id)

    async def has_own_credential(self, user_id: str, vendor: str) -> bool:
        return await self.get_credential(user_id, vendor) is not None

    def system_credential(self, vendor: str) -> Credential:
        """System key for ``vendor``; api_key is empty when none is configured."""
        return Credential(vendor=vendor, api_key=self.settings.system_key(vendor), source="system")

    async def mark_used(self, credential: Credential) -> None:
        if credential.source != "user" or not credential.token_id:
            return
        await self._mark_used(credential.token_id)
