"""Broker adapter registry keyed by BrokerType."""

from __future__ import annotations

from app.core.exceptions import BadRequestError

from .alpaca import AlpacaAdapter
from .base import BrokerAdapter
from .tradestation import TradeStationAdapter
from .types import BrokerType


_ADAPTERS: dict[BrokerType, BrokerAdapter] = {}


def register_adapter(adapter: BrokerAdapter) -> None:
    _ADAPTERS[adapter.broker_type] = adapter


def parse_broker_type(value: str | BrokerType) -> BrokerType:
    if isinstance(value, BrokerType):
        return value
    try:
        return BrokerType(value.strip().upper())
    except ValueError as e:
        raise BadRequestError(
            f"Unknown broker: {value}",
            error_code="UNKNOWN_BROKER",
            details={"supported": [b.value for b in BrokerType]},
        ) from e


def get_adapter(broker_type: str | BrokerType) -> BrokerAdapter:
    broker = parse_broker_type(broker_type)
    if broker not in _ADAPTERS:
        register_adapter({BrokerType.TRADESTATION: TradeStationAdapter, BrokerType.ALPACA: AlpacaAdapter}[broker]())
    return _ADAPTERS[broker]


def reset_adapters() -> None:
    _ADAPTERS.clear()
