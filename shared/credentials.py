"""
Credential resolution for generation providers.

Operations never read global state: a CredentialResolver is injected, asked
for a provider once, and the resulting IntegrationConfig snapshot is passed
down to every request.

Two resolvers ship here:
- DatabaseCredentialResolver: newest enabled row of the integrations table
- SecretsCredentialResolver: workflow secrets (ctx.get_secret)
"""
import os
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import structlog
from pydantic import BaseModel, Field, SecretStr, field_validator
from sqlalchemy import select

from .database import get_db_session
from .errors import ConfigurationError
from .models import Integration

logger = structlog.get_logger()

RELAY_PROVIDER = "midjourney_mindworkflow_relay"
MULTIMODAL_PROVIDER = "google_ai_studio"

RELAY_DEFAULT_URL = os.environ.get("RELAY_DEFAULT_URL", "https://relay.mindworkflow.com")
GOOGLE_DEFAULT_URL = "https://generativelanguage.googleapis.com"
GOOGLE_DEFAULT_MODEL = "gemini-2.0-flash-exp"

MAX_OUTPUTS_LIMIT = 8


def mask_secret(secret: Optional[str]) -> str:
    """
    Render a secret for logs and error messages.

    First 4 + "…" + last 4 characters; anything of 8 characters or fewer is
    fully starred.
    """
    if not secret:
        return ""
    if len(secret) <= 8:
        return "*" * len(secret)
    return f"{secret[:4]}…{secret[-4:]}"


class IntegrationConfig(BaseModel):
    """Immutable credential snapshot for one provider."""
    provider_id: str
    integration_id: Optional[str] = None
    name: Optional[str] = None
    base_url: str
    auth_token: SecretStr
    mode: str = "photo"
    model: Optional[str] = None
    max_outputs: Optional[int] = Field(default=None, ge=1, le=MAX_OUTPUTS_LIMIT)

    model_config = {"frozen": True}

    @field_validator("base_url", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v):
        if isinstance(v, str):
            return v.strip().rstrip("/")
        return v

    @property
    def token(self) -> str:
        """Raw token, for request headers only."""
        return self.auth_token.get_secret_value()

    @property
    def masked_token(self) -> str:
        return mask_secret(self.token)


@runtime_checkable
class CredentialResolver(Protocol):
    """Anything that can answer "which credential do I use for this provider"."""

    async def resolve(self, provider_id: str) -> Optional[IntegrationConfig]:
        ...


async def require_credential(resolver: CredentialResolver, provider_id: str) -> IntegrationConfig:
    """Resolve or raise ConfigurationError when nothing is configured."""
    credential = await resolver.resolve(provider_id)
    if credential is None:
        raise ConfigurationError(f"No integration configured for provider '{provider_id}'")
    return credential


# =============================================================================
# CONFIG PARSING
# =============================================================================

def _first_string(source: Dict[str, Any], *keys: str) -> str:
    """First non-blank string value among keys, stripped."""
    for key in keys:
        value = source.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _clamp_max_outputs(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return max(1, min(MAX_OUTPUTS_LIMIT, int(value)))


def build_relay_config(
    config: Dict[str, Any],
    integration_id: Optional[str] = None,
    name: Optional[str] = None,
) -> IntegrationConfig:
    """
    Build a relay credential from a stored config dict.

    Accepts baseUrl/relayUrl for the endpoint and apiKey/authToken for the
    token; mode is "video" only when midjourney_mode says so.
    """
    base_url = _first_string(config, "baseUrl", "relayUrl") or RELAY_DEFAULT_URL
    token = _first_string(config, "apiKey", "authToken")
    if not token:
        logger.error(
            "relay_integration_missing_token",
            integration_id=integration_id,
            config_keys=sorted(config.keys()),
        )
        raise ConfigurationError("Relay integration is missing its auth token")

    mode = "video" if config.get("midjourney_mode") == "video" else "photo"

    return IntegrationConfig(
        provider_id=RELAY_PROVIDER,
        integration_id=integration_id,
        name=name,
        base_url=base_url,
        auth_token=token,
        mode=mode,
    )


def build_multimodal_config(
    config: Dict[str, Any],
    integration_id: Optional[str] = None,
    name: Optional[str] = None,
) -> IntegrationConfig:
    """
    Build a Google AI Studio credential from a stored config dict.

    Values missing from the top level fall back to config["extra"].
    """
    extra = config.get("extra") if isinstance(config.get("extra"), dict) else {}

    api_key = _first_string(config, "apiKey") or _first_string(extra, "GOOGLE_AI_STUDIO_API_KEY", "apiKey")
    if not api_key:
        raise ConfigurationError("Google AI Studio integration is missing API key")

    model = _first_string(extra, "model")
    if not model:
        models = config.get("models") or []
        model = next((m.strip() for m in models if isinstance(m, str) and m.strip()), "")
    model = model or GOOGLE_DEFAULT_MODEL

    base_url = _first_string(config, "baseUrl") or _first_string(extra, "baseUrl") or GOOGLE_DEFAULT_URL
    mode = "text" if _first_string(extra, "mode") == "text" else "image"
    max_outputs = _clamp_max_outputs(extra.get("maxOutputs", extra.get("max_outputs")))

    return IntegrationConfig(
        provider_id=MULTIMODAL_PROVIDER,
        integration_id=integration_id,
        name=name,
        base_url=base_url,
        auth_token=api_key,
        mode=mode,
        model=model,
        max_outputs=max_outputs,
    )


_CONFIG_BUILDERS = {
    RELAY_PROVIDER: build_relay_config,
    MULTIMODAL_PROVIDER: build_multimodal_config,
}


# =============================================================================
# RESOLVERS
# =============================================================================

class DatabaseCredentialResolver:
    """Resolve credentials from the integrations table."""

    async def resolve(self, provider_id: str) -> Optional[IntegrationConfig]:
        builder = _CONFIG_BUILDERS.get(provider_id)
        if builder is None:
            raise ConfigurationError(f"Unknown provider '{provider_id}'")

        async with get_db_session() as db:
            result = await db.execute(
                select(Integration)
                .where(Integration.provider == provider_id)
                .order_by(Integration.updated_at.desc())
            )
            rows = result.scalars().all()

        if not rows:
            logger.info("integration_not_configured", provider=provider_id)
            return None

        # Newest row decides: an administrator disabling it switches the provider off
        if not rows[0].enabled:
            raise ConfigurationError(f"Integration '{provider_id}' is disabled by administrator")

        row = rows[0]
        credential = builder(row.config or {}, integration_id=row.integration_id, name=row.name)
        logger.info(
            "integration_resolved",
            provider=provider_id,
            integration_id=row.integration_id,
            base_url=credential.base_url,
            token=credential.masked_token,
            mode=credential.mode,
        )
        return credential


class SecretsCredentialResolver:
    """
    Resolve credentials from workflow secrets.

    Relay: RELAY_BASE_URL, RELAY_AUTH_TOKEN, RELAY_MODE
    Google AI Studio: GOOGLE_API_KEY, GOOGLE_IMAGE_MODEL, GOOGLE_API_BASE_URL
    """

    def __init__(self, ctx):
        self.ctx = ctx

    async def resolve(self, provider_id: str) -> Optional[IntegrationConfig]:
        if provider_id == RELAY_PROVIDER:
            token = self.ctx.get_secret("RELAY_AUTH_TOKEN")
            if not token:
                return None
            return build_relay_config({
                "baseUrl": self.ctx.get_secret("RELAY_BASE_URL") or "",
                "apiKey": token,
                "midjourney_mode": self.ctx.get_secret("RELAY_MODE") or "photo",
            })

        if provider_id == MULTIMODAL_PROVIDER:
            api_key = self.ctx.get_secret("GOOGLE_API_KEY")
            if not api_key:
                return None
            return build_multimodal_config({
                "apiKey": api_key,
                "baseUrl": self.ctx.get_secret("GOOGLE_API_BASE_URL") or "",
                "extra": {"model": self.ctx.get_secret("GOOGLE_IMAGE_MODEL") or ""},
            })

        raise ConfigurationError(f"Unknown provider '{provider_id}'")
