"""OAuth client configuration for broker authorization.

Uses Authlib's httpx integration for the authorization-code and refresh
grants.

Usage:
    from app.core.oauth import create_oauth_client, TRADESTATION_OAUTH

    async with create_oauth_client(TRADESTATION_OAUTH) as client:
        url, _ = client.create_authorization_url(TRADESTATION_OAUTH.authorize_url, state=state)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx
from authlib.integrations.httpx_client import AsyncOAuth2Client

from app.core.config import settings


@dataclass(frozen=True)
class OAuthProviderConfig:
    name: str
    authorize_url: str
    token_url: str
    scope: str
    extra_authorize_params: dict[str, str] = field(default_factory=dict)


TRADESTATION_OAUTH = OAuthProviderConfig(
    name="tradestation",
    authorize_url="https://signin.tradestation.com/authorize",
    token_url="https://signin.tradestation.com/oauth/token",
    scope="openid profile offline_access ReadAccount",
    extra_authorize_params={"audience": "https://api.tradestation.com"},
)


def _credentials(config: OAuthProviderConfig) -> tuple[str, str, str]:
    if config.name == "tradestation":
        return (
            settings.tradestation_client_id,
            settings.tradestation_client_secret,
            settings.tradestation_redirect_uri,
        )
    raise ValueError(f"Unknown OAuth provider: {config.name}")


def is_configured(config: OAuthProviderConfig) -> bool:
    client_id, client_secret, _ = _credentials(config)
    return bool(client_id and client_secret)


def create_oauth_client(
    config: OAuthProviderConfig,
    transport: httpx.AsyncBaseTransport | None = None,
    **kwargs: Any,
) -> AsyncOAuth2Client:
    """Create an Authlib OAuth2 client for the provider."""
    client_id, client_secret, redirect_uri = _credentials(config)
    return AsyncOAuth2Client(
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=redirect_uri,
        scope=config.scope,
        token_endpoint_auth_method="client_secret_post",
        timeout=settings.broker_request_timeout,
        transport=transport,
        **kwargs,
    )
