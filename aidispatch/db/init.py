import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from aidispatch.core.config import get_settings
from aidispatch.models.credit_transaction import CreditTransaction
from aidispatch.models.failed_job import FailedJob
from aidispatch.models.generation_job import GenerationJob
from aidispatch.models.user import User
from aidispatch.models.user_api_token import UserApiToken

DOCUMENT_MODELS = [
    User,
    CreditTransaction,
    UserApiToken,
    GenerationJob,
    FailedJob,
]


def _use_tls(uri: str) -> bool:
    """True for Atlas SRV URIs or an explicit tls=true; plain mongodb:// (local, CI) stays unencrypted."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db() -> AsyncIOMotorClient:
    settings = get_settings()
    kwargs = {}
    if _use_tls(settings.mongodb_uri):
        kwargs["tlsCAFile"] = certifi.where()
        kwargs["tlsDisableOCSPEndpointCheck"] = True
    client = AsyncIOMotorClient(settings.mongodb_uri, tz_aware=True, **kwargs)
    database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
    return client
