import os
from types import SimpleNamespace
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Test configuration: in-memory ledger, no system vendor keys
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB_NAME", "aidispatch_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("LEDGER_BACKEND", "memory")
os.environ.setdefault("PAYMENTS_WEBHOOK_SECRET", "whsec-test")
os.environ["OPENAI_API_KEY"] = ""
os.environ["ANTHROPIC_API_KEY"] = ""

from aidispatch.ledger.memory import MemoryLedgerStore  # noqa: E402
from aidispatch.providers.registry import build_registry  # noqa: E402
from aidispatch.services.credentials import CredentialResolver  # noqa: E402
from aidispatch.services.dispatcher import ProviderDispatcher  # noqa: E402
from aidispatch.services.ledger import CreditLedger  # noqa: E402
from fakes import FakeProviders, FakeTokens, make_settings  # noqa: E402

USER_ID = "64b000000000000000000001"


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def registry(settings):
    return build_registry(settings)


@pytest.fixture
def store() -> MemoryLedgerStore:
    return MemoryLedgerStore()


@pytest.fixture
def ledger(store) -> CreditLedger:
    return CreditLedger(store=store, conflict_retries=30)


@pytest.fixture
def providers() -> FakeProviders:
    return FakeProviders()


@pytest.fixture
def tokens() -> FakeTokens:
    return FakeTokens()


@pytest.fixture
def credentials(tokens, settings) -> CredentialResolver:
    return CredentialResolver(find_token=tokens.find, mark_used=tokens.mark_used, settings=settings)


@pytest.fixture
def dispatcher(registry, ledger, credentials, providers, settings) -> ProviderDispatcher:
    return ProviderDispatcher(
        registry=registry,
        ledger=ledger,
        credentials=credentials,
        client_factory=providers,
        settings=settings,
    )


@pytest.fixture
def user():
    return SimpleNamespace(id=USER_ID, email="dev@example.com", session_version=0)


@pytest_asyncio.fixture
async def client(user, ledger, dispatcher) -> AsyncGenerator[AsyncClient, None]:
    from aidispatch.deps import get_current_user, get_ledger, get_provider_dispatcher
    from aidispatch.main import app

    app.dependency_overrides[get_current_user] = lambda: user
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_provider_dispatcher] = lambda: dispatcher
    try:
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
        ) as ac:
            yield ac
    finally:
        app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def mongo():
    """Beanie on a throwaway database; skips the test when MongoDB is not reachable."""
    from beanie import init_beanie
    from motor.motor_asyncio import AsyncIOMotorClient
    from pymongo.errors import PyMongoError

    from aidispatch.core.config import get_settings
    from aidispatch.db.init import DOCUMENT_MODELS

    settings = get_settings()
    mongo_client = AsyncIOMotorClient(settings.mongodb_uri, serverSelectionTimeoutMS=500, tz_aware=True)
    try:
        await mongo_client.admin.command("ping")
    except PyMongoError:
        mongo_client.close()
        pytest.skip("MongoDB not reachable")
    database = mongo_client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
    try:
        yield database
    finally:
        await mongo_client.drop_database(settings.mongodb_db_name)
        mongo_client.close()
