"""Tests for credential parsing and resolution."""
from datetime import timedelta

import pytest
from structlog.testing import capture_logs

from shared import database
from shared.context import NodeContext
from shared.credentials import (
    GOOGLE_DEFAULT_MODEL,
    GOOGLE_DEFAULT_URL,
    MULTIMODAL_PROVIDER,
    RELAY_DEFAULT_URL,
    RELAY_PROVIDER,
    CredentialResolver,
    DatabaseCredentialResolver,
    SecretsCredentialResolver,
    build_multimodal_config,
    build_relay_config,
    mask_secret,
    require_credential,
)
from shared.errors import ConfigurationError
from shared.models import Integration, utc_now

from conftest import GOOGLE_KEY, RELAY_TOKEN, StaticResolver, assert_secret_masked


async def add_integration(provider, config, enabled=True, age_minutes=0, name=None):
    async with database.get_db_session() as db:
        integration = Integration(
            provider=provider,
            name=name or provider,
            config=config,
            enabled=enabled,
            updated_at=utc_now() - timedelta(minutes=age_minutes),
        )
        db.add(integration)
        await db.flush()
        return integration.integration_id


class TestMasking:

    @pytest.mark.parametrize("secret,masked", [
        ("", ""),
        (None, ""),
        ("abc", "***"),
        ("12345678", "********"),
        ("relay-secret-token-1234", "rela…1234"),
    ])
    def test_mask_secret(self, secret, masked):
        assert mask_secret(secret) == masked

    def test_token_not_in_repr(self):
        credential = build_relay_config({"apiKey": "relay-secret-token-1234"})

        assert "relay-secret-token-1234" not in repr(credential)
        assert "relay-secret-token-1234" not in str(credential.model_dump())
        assert credential.token == "relay-secret-token-1234"


class TestRelayConfig:

    def test_defaults(self):
        credential = build_relay_config({"apiKey": "token-abcdefgh"}, integration_id="int_1")

        assert credential.provider_id == RELAY_PROVIDER
        assert credential.base_url == RELAY_DEFAULT_URL.rstrip("/")
        assert credential.mode == "photo"
        assert credential.integration_id == "int_1"

    def test_relay_url_and_auth_token_aliases(self):
        credential = build_relay_config({
            "relayUrl": "https://relay.example.com/",
            "authToken": "token-abcdefgh",
            "midjourney_mode": "video",
        })

        assert credential.base_url == "https://relay.example.com"
        assert credential.token == "token-abcdefgh"
        assert credential.mode == "video"

    def test_unknown_mode_is_photo(self):
        credential = build_relay_config({"apiKey": "token-abcdefgh", "midjourney_mode": "sketch"})
        assert credential.mode == "photo"

    def test_missing_token(self):
        with pytest.raises(ConfigurationError):
            build_relay_config({"baseUrl": "https://relay.example.com", "apiKey": "  "})


class TestMultimodalConfig:

    def test_defaults(self):
        credential = build_multimodal_config({"apiKey": "google-key-123456"})

        assert credential.provider_id == MULTIMODAL_PROVIDER
        assert credential.base_url == GOOGLE_DEFAULT_URL
        assert credential.model == GOOGLE_DEFAULT_MODEL
        assert credential.mode == "image"
        assert credential.max_outputs is None

    def test_extra_fallbacks(self):
        credential = build_multimodal_config({
            "extra": {
                "GOOGLE_AI_STUDIO_API_KEY": "google-key-123456",
                "model": "gemini-2.5-flash-image",
                "mode": "text",
                "maxOutputs": 3,
            },
        })

        assert credential.token == "google-key-123456"
        assert credential.model == "gemini-2.5-flash-image"
        assert credential.mode == "text"
        assert credential.max_outputs == 3

    def test_first_listed_model(self):
        credential = build_multimodal_config({"apiKey": "google-key-123456", "models": ["", "gemini-pro-vision"]})
        assert credential.model == "gemini-pro-vision"

    @pytest.mark.parametrize("value,expected", [(20, 8), (0, 1), (2.7, 2), ("4", None), (True, None)])
    def test_max_outputs_clamped(self, value, expected):
        credential = build_multimodal_config({"apiKey": "google-key-123456", "extra": {"maxOutputs": value}})
        assert credential.max_outputs == expected

    def test_missing_key(self):
        with pytest.raises(ConfigurationError):
            build_multimodal_config({"extra": {"model": "gemini"}})


class TestDatabaseResolver:

    async def test_no_integration(self, db):
        assert await DatabaseCredentialResolver().resolve(RELAY_PROVIDER) is None

    async def test_newest_row_wins(self, db):
        await add_integration(RELAY_PROVIDER, {"apiKey": "old-token-123456"}, age_minutes=10)
        newest = await add_integration(RELAY_PROVIDER, {"apiKey": "new-token-123456", "baseUrl": "https://r.test/"})

        credential = await DatabaseCredentialResolver().resolve(RELAY_PROVIDER)

        assert credential.token == "new-token-123456"
        assert credential.base_url == "https://r.test"
        assert credential.integration_id == newest

    async def test_newest_disabled_row_blocks_provider(self, db):
        await add_integration(RELAY_PROVIDER, {"apiKey": "old-token-123456"}, age_minutes=10)
        await add_integration(RELAY_PROVIDER, {"apiKey": "new-token-123456"}, enabled=False)

        with pytest.raises(ConfigurationError, match="disabled"):
            await DatabaseCredentialResolver().resolve(RELAY_PROVIDER)

    async def test_other_provider_rows_are_ignored(self, db):
        await add_integration(MULTIMODAL_PROVIDER, {"apiKey": "google-key-123456"})

        assert await DatabaseCredentialResolver().resolve(RELAY_PROVIDER) is None
        credential = await DatabaseCredentialResolver().resolve(MULTIMODAL_PROVIDER)
        assert credential.token == "google-key-123456"

    async def test_unknown_provider(self, db):
        with pytest.raises(ConfigurationError):
            await DatabaseCredentialResolver().resolve("dall-e")

    async def test_resolved_relay_token_is_masked_in_logs(self, db):
        await add_integration(RELAY_PROVIDER, {"apiKey": RELAY_TOKEN})

        with capture_logs() as logs:
            credential = await DatabaseCredentialResolver().resolve(RELAY_PROVIDER)

        assert credential.token == RELAY_TOKEN
        assert_secret_masked(logs, RELAY_TOKEN)

    async def test_resolved_google_key_is_masked_in_logs(self, db):
        await add_integration(MULTIMODAL_PROVIDER, {"apiKey": GOOGLE_KEY})

        with capture_logs() as logs:
            await DatabaseCredentialResolver().resolve(MULTIMODAL_PROVIDER)

        assert_secret_masked(logs, GOOGLE_KEY)

    async def test_rejected_config_does_not_log_secret(self, db):
        await add_integration(RELAY_PROVIDER, {"authTokn": RELAY_TOKEN})

        with capture_logs() as logs:
            with pytest.raises(ConfigurationError):
                await DatabaseCredentialResolver().resolve(RELAY_PROVIDER)

        assert_secret_masked(logs, RELAY_TOKEN, expect_masked=False)
        assert any(entry["event"] == "relay_integration_missing_token" for entry in logs)

    def test_satisfies_protocol(self):
        assert isinstance(DatabaseCredentialResolver(), CredentialResolver)
        assert isinstance(StaticResolver(), CredentialResolver)


class TestSecretsResolver:

    async def test_relay_from_secrets(self):
        ctx = NodeContext(secrets={
            "RELAY_AUTH_TOKEN": "secret-token-123456",
            "RELAY_BASE_URL": "https://relay.secrets.test/",
            "RELAY_MODE": "video",
        })

        credential = await SecretsCredentialResolver(ctx).resolve(RELAY_PROVIDER)

        assert credential.base_url == "https://relay.secrets.test"
        assert credential.mode == "video"

    async def test_google_from_secrets(self):
        ctx = NodeContext(secrets={"GOOGLE_API_KEY": "google-key-123456", "GOOGLE_IMAGE_MODEL": "gemini-x"})

        credential = await SecretsCredentialResolver(ctx).resolve(MULTIMODAL_PROVIDER)

        assert credential.model == "gemini-x"
        assert credential.base_url == GOOGLE_DEFAULT_URL

    async def test_missing_secret(self):
        assert await SecretsCredentialResolver(NodeContext()).resolve(RELAY_PROVIDER) is None

    async def test_environment_fallback(self, monkeypatch):
        monkeypatch.setenv("RELAY_AUTH_TOKEN", "env-token-123456")
        ctx = NodeContext(use_environment=True)

        credential = await SecretsCredentialResolver(ctx).resolve(RELAY_PROVIDER)

        assert credential.token == "env-token-123456"


class TestRequireCredential:

    async def test_missing_credential_raises(self):
        with pytest.raises(ConfigurationError, match=RELAY_PROVIDER):
            await require_credential(StaticResolver(), RELAY_PROVIDER)
