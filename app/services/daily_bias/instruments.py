"""Supported instruments and how each maps onto market data sources."""

from __future__ import annotations

from enum import Enum


SUPPORTED_INSTRUMENTS: tuple[str, ...] = (
    "NQ1",
    "ES1",
    "TSLA",
    "NVDA",
    "SPY",
    "TQQQ",
    "AMD",
    "AAPL",
    "XAU/USD",
    "PLTR",
    "SOXL",
    "AMZN",
    "MSTR",
    "EUR/USD",
    "QQQ",
    "MSFT",
    "COIN",
    "BTC",
    "META",
    "GME",
    "SQQQ",
    "MARA",
)

MAG7_SYMBOLS: tuple[str, ...] = ("AAPL", "MSFT", "GOOGL", "AMZN", "META", "NVDA", "TSLA")

INDEX_INSTRUMENTS = frozenset({"NQ1", "ES1", "SPY", "QQQ", "TQQQ", "SQQQ"})

_YAHOO_TICKERS = {
    "NQ1": "NQ=F",
    "ES1": "ES=F",
    "XAU/USD": "GC=F",
    "EUR/USD": "EURUSD=X",
    "BTC": "BTC-USD",
}

_MACRO_CURRENCIES = {
    "EUR/USD": ("USD", "EUR"),
}


class InstrumentClass(str, Enum):
    INDEX = "index"
    FOREX_METAL = "forex_metal"
    STOCK = "stock"
    OTHER = "other"


def normalize_instrument(instrument: str) -> str:
    return instrument.strip().upper()


def is_supported(instrument: str) -> bool:
    return normalize_instrument(instrument) in SUPPORTED_INSTRUMENTS


def classify_instrument(instrument: str) -> InstrumentClass:
    symbol = normalize_instrument(instrument)
    if symbol in INDEX_INSTRUMENTS:
        return InstrumentClass.INDEX
    if "/" in symbol or "USD" in symbol:
        return InstrumentClass.FOREX_METAL
    if symbol == "BTC":
        return InstrumentClass.OTHER
    return InstrumentClass.STOCK


def yahoo_ticker(instrument: str) -> str:
    symbol = normalize_instrument(instrument)
    return _YAHOO_TICKERS.get(symbol, symbol)


def macro_currencies(instrument: str) -> tuple[str, ...]:
    """Calendar currencies whose events move the instrument."""
    return _MACRO_CURRENCIES.get(normalize_instrument(instrument), ("USD",))
