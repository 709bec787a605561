"""User-supplied vendor API keys: store encrypted, list masked, toggle, delete."""

from datetime import datetime, timezone

from beanie import PydanticObjectId
from bson import ObjectId

from aidispatch.core.encryption import decrypt_api_key, encrypt_api_key, mask_api_key
from aidispatch.core.exceptions import BadRequestError, NotFoundError
from aidispatch.core.logging import get_logger
from aidispatch.models.user_api_token import UserApiToken

log = get_logger(__name__)

TOKEN_VENDORS = {
    "openai": {"name": "OpenAI", "prefix": "sk-", "min_length": 20},
    "anthropic": {"name": "Anthropic", "prefix": "sk-ant-", "min_length": 30},
}


def validate_token_format(provider: str, token: str) -> tuple[bool, str]:
    """Return (valid, message) for a key of the given vendor."""
    rules = TOKEN_VENDORS.get(provider)
    if rules is None:
        return False, "Unsupported provider."
    valid = token.startswith(rules["prefix"]) and len(token) >= rules["min_length"]
    message = (
        f'{rules["name"]} API keys should start with "{rules["prefix"]}" '
        f'and be at least {rules["min_length"]} characters long.'
    )
    return valid, message


def default_display_name(provider: str) -> str:
    name = TOKEN_VENDORS.get(provider, {}).get("name") or provider.capitalize()
    return f"{name} API Key"


def token_to_public(token: UserApiToken) -> dict:
    return {
        "id": str(token.id),
        "provider": token.provider,
        "provider_display_name": TOKEN_VENDORS.get(token.provider, {}).get("name") or token.provider.capitalize(),
        "display_name": token.display_name,
        "masked_token": mask_api_key(decrypt_api_key(token.token_encrypted)),
        "is_active": token.is_active,
        "last_used_at": token.last_used_at.isoformat() if token.last_used_at else None,
        "created_at": token.created_at.isoformat(),
    }


async def list_tokens(user_id: str) -> list[UserApiToken]:
    return await UserApiToken.find(UserApiToken.user_id == user_id).sort(-UserApiToken.created_at).to_list()


async def _get_owned(user_id: str, token_id: str) -> UserApiToken:
    if not ObjectId.is_valid(token_id):
        raise NotFoundError("API token not found")
    token = await UserApiToken.get(PydanticObjectId(token_id))
    if not token or token.user_id != user_id:
        raise NotFoundError("API token not found")
    return token


async def store_token(user_id: str, provider: str, token: str, display_name: str | None = None) -> UserApiToken:
    token = token.strip()
    valid, message = validate_token_format(provider, token)
    if not valid:
        raise BadRequestError(message, details={"provider": provider})
    existing = await UserApiToken.find_one(UserApiToken.user_id == user_id, UserApiToken.provider == provider)
    if existing:
        raise BadRequestError(
            "You already have an API token for this provider. Update or delete the existing token first.",
            details={"provider": provider, "token_id": str(existing.id)},
        )
    doc = UserApiToken(
        user_id=user_id,
        provider=provider,
        token_encrypted=encrypt_api_key(token),
        display_name=display_name or default_display_name(provider),
    )
    await doc.insert()
    log.info("api_token_stored", user_id=user_id, provider=provider, token_id=str(doc.id))
    return doc


async def update_token(user_id: str, token_id: str, token: str, display_name: str | None = None) -> UserApiToken:
    doc = await _get_owned(user_id, token_id)
    token = token.strip()
    valid, message = validate_token_format(doc.provider, token)
    if not valid:
        raise BadRequestError(message, details={"provider": doc.provider})
    doc.token_encrypted = encrypt_api_key(token)
    if display_name:
        doc.display_name = display_name
    doc.updated_at = datetime.now(timezone.utc)
    await doc.save()
    log.info("api_token_updated", user_id=user_id, provider=doc.provider, token_id=token_id)
    return doc


async def toggle_token(user_id: str, token_id: str) -> UserApiToken:
    doc = await _get_owned(user_id, token_id)
    doc.is_active = not doc.is_active
    doc.updated_at = datetime.now(timezone.utc)
    await doc.save()
    log.info("api_token_toggled", user_id=user_id, token_id=token_id, is_active=doc.is_active)
    return doc


async def delete_token(user_id: str, token_id: str) -> None:
    doc = await _get_owned(user_id, token_id)
    await doc.delete()
    log.info("api_token_deleted", user_id=user_id, provider=doc.provider, token_id=token_id)


async def find_active_token(user_id: str, vendor: str) -> UserApiToken | None:
    return await UserApiToken.find_one(
        UserApiToken.user_id == user_id,
        UserApiToken.provider == vendor,
        UserApiToken.is_active == True,  # noqa: E712
    )


async def mark_used(token_id: str) -> None:
    """Stamp last_used_at and bump the per-token use counter."""
    if not ObjectId.is_valid(token_id):
        return
    doc = await UserApiToken.get(PydanticObjectId(token_id))
    if not doc:
        return
    doc.last_used_at = datetime.now(timezone.utc)
    doc.usage_stats = {**doc.usage_stats, "uses": int(doc.usage_stats.get("uses", 0)) + 1}
    await doc.save()
