from fastapi import APIRouter

from aidispatch.core.config import get_settings
from aidispatch.providers.registry import get_registry

router = APIRouter()


@router.get("")
async def list_providers():
    """Registered providers with cost and whether a system key is configured."""
    settings = get_settings()
    registry = get_registry()
    return {
        "providers": registry.available_providers(settings),
        "default_provider": registry.canonical_id(settings.default_provider),
        "aliases": dict(registry.aliases),
    }
