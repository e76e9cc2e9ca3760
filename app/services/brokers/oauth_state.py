"""Single-use OAuth state tokens stored in Valkey."""

from __future__ import annotations

import json
import secrets
from typing import Any, Optional

from app.cache.client import get_valkey_client
from app.core.config import settings
from app.core.logging import get_logger


logger = get_logger("brokers.oauth_state")

STATE_PREFIX = "tradejournal:oauth_state"


def _key(state: str) -> str:
    return f"{STATE_PREFIX}:{state}"


async def issue_state(user_id: str, broker_type: str) -> str:
    state = secrets.token_urlsafe(32)
    client = await get_valkey_client()
    await client.set(
        _key(state),
        json.dumps({"user_id": user_id, "broker_type": broker_type}),
        ex=settings.broker_oauth_state_ttl,
    )
    return state


async def consume_state(state: str) -> Optional[dict[str, Any]]:
    """Return the state's payload and delete it; None when unknown, expired or already used."""
    if not state:
        return None
    client = await get_valkey_client()
    raw = await client.getdel(_key(state))
    if raw is None:
        logger.warning("OAuth state rejected (unknown, expired or replayed)")
        return None
    return json.loads(raw)
