from aidispatch.core.encryption import decrypt_api_key, encrypt_api_key, mask_api_key
from aidispatch.services.api_tokens import default_display_name, validate_token_format
from aidispatch.services.credentials import CredentialResolver, StoredToken
from fakes import make_settings

USER = "user-1"
OPENAI_KEY = "sk-user-owned-openai-key-0001"


async def test_user_key_is_returned_decrypted(credentials, tokens):
    token = tokens.add(USER, "openai", OPENAI_KEY)
    credential = await credentials.get_credential(USER, "openai")
    assert credential.api_key == OPENAI_KEY
    assert credential.source == "user"
    assert credential.token_id == token.id
    assert OPENAI_KEY not in repr(credential)


async def test_missing_or_inactive_key_is_absent(credentials, tokens):
    assert await credentials.get_credential(USER, "openai") is None
    tokens.add(USER, "anthropic", "sk-ant-REDACTED", is_active=False)
    assert await credentials.get_credential(USER, "anthropic") is None
    assert await credentials.has_own_credential(USER, "anthropic") is False


async def test_undecryptable_key_is_absent(tokens, settings):
    async def find(user_id, vendor):
        return StoredToken(id="tok-1", vendor=vendor, token_encrypted="gAAAA-not-a-fernet-token")

    resolver = CredentialResolver(find_token=find, mark_used=tokens.mark_used, settings=settings)
    assert await resolver.get_credential(USER, "openai") is None


async def test_mock_never_has_a_user_key(credentials, tokens):
    tokens.add(USER, "mock", "whatever-key-value")
    assert await credentials.get_credential(USER, "mock") is None


async def test_user_key_wins_over_system_key(tokens):
    resolver = CredentialResolver(
        find_token=tokens.find,
        mark_used=tokens.mark_used,
        settings=make_settings(OPENAI_API_KEY="sk-system-openai-key-123"),
    )
    tokens.add(USER, "openai", OPENAI_KEY)
    credential = await resolver.get_credential(USER, "openai")
    assert credential.api_key == OPENAI_KEY


def test_system_credential():
    resolver = CredentialResolver(settings=make_settings(ANTHROPIC_API_KEY="sk-ant-system"))
    credential = resolver.system_credential("anthropic")
    assert credential.source == "system"
    assert credential.api_key == "sk-ant-system"
    assert resolver.system_credential("openai").api_key == ""


async def test_mark_used_only_for_user_keys(credentials, tokens):
    token = tokens.add(USER, "openai", OPENAI_KEY)
    await credentials.mark_used(credentials.system_credential("openai"))
    assert tokens.used == []
    await credentials.mark_used(await credentials.get_credential(USER, "openai"))
    assert tokens.used == [token.id]


def test_encrypt_round_trip():
    cipher = encrypt_api_key(OPENAI_KEY)
    assert cipher != OPENAI_KEY
    assert decrypt_api_key(cipher) == OPENAI_KEY
    assert encrypt_api_key("") == ""
    assert decrypt_api_key("") == ""


def test_mask_api_key():
    assert mask_api_key("sk-abcdefghij1234") == "sk-a*********1234"
    assert mask_api_key("short") == "*****"


def test_validate_token_format():
    assert validate_token_format("openai", OPENAI_KEY)[0]
    assert not validate_token_format("openai", "sk-short")[0]
    assert validate_token_format("anthropic", "sk-ant-" + "x" * 30)[0]
    valid, message = validate_token_format("anthropic", OPENAI_KEY)
    assert not valid
    assert "sk-ant-" in message
    assert validate_token_format("gemini", "anything") == (False, "Unsupported provider.")


def test_default_display_name():
    assert default_display_name("openai") == "OpenAI API Key"
    assert default_display_name("anthropic") == "Anthropic API Key"
