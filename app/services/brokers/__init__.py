"""Broker integrations: adapters, connection lifecycle, sync, scheduling and monitoring."""

from .base import BrokerAdapter
from .errors import BrokerApiError, BrokerAuthError, BrokerError, BrokerRateLimitError, BrokerUnavailableError
from .registry import get_adapter, parse_broker_type, register_adapter
from .sync import BrokerSyncEngine, get_sync_engine
from .types import BrokerTrade, BrokerType, ConnectionStatus, SyncStatus, SyncTrigger


__all__ = [
    "BrokerAdapter",
    "BrokerApiError",
    "BrokerAuthError",
    "BrokerError",
    "BrokerRateLimitError",
    "BrokerSyncEngine",
    "BrokerTrade",
    "BrokerType",
    "BrokerUnavailableError",
    "ConnectionStatus",
    "SyncStatus",
    "SyncTrigger",
    "get_adapter",
    "get_sync_engine",
    "parse_broker_type",
    "register_adapter",
]
