"""
Broker connection lifecycle: OAuth authorization, API-key linking and
disconnecting. Credentials are stored Fernet-encrypted.
"""

from __future__ import annotations

from typing import Any, Optional

from app.core.config import settings
from app.core.encryption import encrypt_credentials, get_key_hint
from app.core.exceptions import AuthenticationError, BadRequestError, NotFoundError
from app.core.logging import get_logger
from app.repositories import broker_connections_orm as connections_repo
from app.repositories.broker_connections_orm import BrokerConnectionRecord

from . import oauth_state
from .errors import BrokerAuthError, BrokerError
from .registry import get_adapter
from .types import AuthKind, BrokerAccount


logger = get_logger("brokers.connections")


async def start_authorization(user_id: str, broker_type: str) -> str:
    """Issue a single-use state and return the broker's authorize URL."""
    adapter = get_adapter(broker_type)
    if adapter.auth_kind is not AuthKind.OAUTH:
        raise BadRequestError(f"{adapter.broker_type.value} connects with an API key, not OAuth")
    state = await oauth_state.issue_state(user_id, adapter.broker_type.value)
    return adapter.authorization_url(state)


async def _save_accounts(
    user_id: str,
    broker_type: str,
    accounts: list[BrokerAccount],
    credentials: dict[str, Any],
    token_expires_at=None,
    sync_interval_minutes: Optional[int] = None,
) -> list[BrokerConnectionRecord]:
    adapter = get_adapter(broker_type)
    if not accounts:
        raise BadRequestError(f"No {broker_type} accounts are accessible with these credentials")
    if not adapter.supports_multiple_accounts:
        accounts = accounts[:1]
        # One live connection per user for single-account brokers.
        for existing in await connections_repo.list_user_connections(user_id):
            if (
                existing.broker_type == broker_type
                and existing.status != "DISABLED"
                and existing.account_id != accounts[0].id
            ):
                await connections_repo.disable_connection(user_id, existing.id)

    encrypted = encrypt_credentials(credentials)
    interval = sync_interval_minutes or settings.broker_sync_default_interval_minutes
    return [
        await connections_repo.save_connection(
            user_id=user_id,
            broker_type=broker_type,
            account_id=account.id,
            encrypted_credentials=encrypted,
            token_expires_at=token_expires_at,
            sync_interval_minutes=interval,
        )
        for account in accounts
    ]


async def complete_authorization(code: str, state: str) -> list[int]:
    """Consume the state, exchange the code and persist a connection per account."""
    payload = await oauth_state.consume_state(state)
    if payload is None:
        raise AuthenticationError("Invalid or expired authorization state", error_code="INVALID_OAUTH_STATE")
    if not code:
        raise BadRequestError("Missing authorization code")

    user_id, broker_type = payload["user_id"], payload["broker_type"]
    adapter = get_adapter(broker_type)
    try:
        tokens = await adapter.exchange_code(code)
        credentials = tokens.to_credentials()
        accounts = await adapter.fetch_accounts(credentials)
    except BrokerAuthError as e:
        raise AuthenticationError(e.message, error_code="BROKER_AUTH_FAILED") from e
    except BrokerError as e:
        raise BadRequestError(e.message, error_code=e.code) from e

    saved = await _save_accounts(
        user_id, broker_type, accounts, credentials, token_expires_at=tokens.expires_at
    )
    logger.info(
        "Broker authorization completed",
        extra={"user_id": user_id, "broker": broker_type, "accounts": len(saved)},
    )
    return [record.id for record in saved]


async def connect_with_api_key(
    user_id: str,
    broker_type: str,
    api_key: str,
    api_secret: str,
    sync_interval_minutes: Optional[int] = None,
) -> list[int]:
    adapter = get_adapter(broker_type)
    if adapter.auth_kind is not AuthKind.API_KEY:
        raise BadRequestError(f"{adapter.broker_type.value} connects through OAuth authorization")

    credentials = {"api_key": api_key, "api_secret": api_secret, "paper": settings.alpaca_paper}
    try:
        accounts = await adapter.authenticate(credentials)
    except BrokerAuthError as e:
        raise AuthenticationError(e.message, error_code="BROKER_AUTH_FAILED") from e
    except BrokerError as e:
        raise BadRequestError(e.message, error_code=e.code) from e

    saved = await _save_accounts(
        user_id,
        adapter.broker_type.value,
        accounts,
        credentials,
        sync_interval_minutes=sync_interval_minutes,
    )
    logger.info(
        "Broker connected with API key",
        extra={"user_id": user_id, "broker": broker_type, "key_hint": get_key_hint(api_key)},
    )
    return [record.id for record in saved]


async def list_connections(user_id: str) -> list[BrokerConnectionRecord]:
    return await connections_repo.list_user_connections(user_id)


async def get_user_connection(user_id: str, connection_id: int) -> BrokerConnectionRecord:
    connection = await connections_repo.get_connection(connection_id)
    if connection is None or connection.user_id != user_id:
        raise NotFoundError(f"Broker connection {connection_id} not found")
    return connection


async def disconnect(user_id: str, connection_id: int) -> None:
    if not await connections_repo.disable_connection(user_id, connection_id):
        raise NotFoundError(f"Broker connection {connection_id} not found")
    logger.info("Broker disconnected", extra={"user_id": user_id, "connection_id": connection_id})


__all__ = [
    "complete_authorization",
    "connect_with_api_key",
    "disconnect",
    "get_user_connection",
    "list_connections",
    "start_authorization",
]
