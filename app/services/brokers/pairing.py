"""FIFO pairing of executions into closed round-trip trades."""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Optional

from .types import BrokerTrade, parse_timestamp


@dataclass
class Fill:
    fill_id: str
    symbol: str
    side: str  # buy | sell
    quantity: Decimal
    price: Decimal
    filled_at: datetime
    commission: Decimal = Decimal("0")


@dataclass
class _Lot:
    fill: Fill
    remaining: Decimal


@dataclass(frozen=True)
class PairingCursor:
    """
    Where the next incremental fetch must start so FIFO pairing sees every
    fill of the positions still open.

    No position is held across ``fills_from``. Fills stamped exactly
    ``fills_from`` that close a position opened earlier are listed in
    ``skip_ids``.
    """

    fills_from: datetime
    skip_ids: frozenset[str] = frozenset()

    def admits(self, fill: Fill) -> bool:
        return fill.filled_at >= self.fills_from and fill.fill_id not in self.skip_ids

    def to_dict(self) -> dict[str, Any]:
        return {"fills_from": self.fills_from.isoformat(), "skip_ids": sorted(self.skip_ids)}

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> Optional[PairingCursor]:
        fills_from = parse_timestamp((data or {}).get("fills_from"))
        if fills_from is None:
            return None
        return cls(fills_from=fills_from, skip_ids=frozenset(data.get("skip_ids") or ()))


def _share(commission: Decimal, part: Decimal, whole: Decimal) -> Decimal:
    return commission * part / whole if whole else Decimal("0")


def pair_fills_fifo(fills: Iterable[Fill]) -> list[BrokerTrade]:
    """
    Match opposite-side executions per symbol, oldest open lot first.

    A closing fill larger than the open position closes everything and opens
    a new lot with the remainder. Unmatched open lots produce no trade.
    Trade ids are ``{opening fill id}-{closing fill id}`` so re-importing the
    same executions yields the same ids.
    """
    trades: list[BrokerTrade] = []
    for symbol, symbol_fills in _by_symbol(fills).items():
        lots: deque[_Lot] = deque()

        for fill in symbol_fills:
            remaining = fill.quantity
            while remaining > 0 and lots and lots[0].fill.side != fill.side:
                lot = lots[0]
                matched = min(lot.remaining, remaining)
                opening = lot.fill
                direction = "LONG" if opening.side == "buy" else "SHORT"
                gross = (fill.price - opening.price) * matched
                if direction == "SHORT":
                    gross = -gross
                fees = _share(opening.commission, matched, opening.quantity) + _share(
                    fill.commission, matched, fill.quantity
                )
                trades.append(
                    BrokerTrade(
                        broker_trade_id=f"{opening.fill_id}-{fill.fill_id}",
                        symbol=symbol,
                        direction=direction,
                        opened_at=opening.filled_at,
                        closed_at=fill.filled_at,
                        entry_price=opening.price,
                        exit_price=fill.price,
                        quantity=matched,
                        realized_pnl=(gross - fees).quantize(Decimal("0.000001")),
                        fees=fees.quantize(Decimal("0.000001")),
                        raw={"entry_fill_id": opening.fill_id, "exit_fill_id": fill.fill_id},
                    )
                )
                lot.remaining -= matched
                remaining -= matched
                if lot.remaining == 0:
                    lots.popleft()

            if remaining > 0:
                lots.append(_Lot(fill=fill, remaining=remaining))

    trades.sort(key=lambda t: (t.closed_at, t.broker_trade_id))
    return trades


def _by_symbol(fills: Iterable[Fill]) -> dict[str, list[Fill]]:
    grouped: dict[str, list[Fill]] = defaultdict(list)
    for fill in fills:
        if fill.quantity > 0:
            grouped[fill.symbol.strip().upper()].append(fill)
    for symbol_fills in grouped.values():
        symbol_fills.sort(key=lambda f: (f.filled_at, f.fill_id))
    return grouped


@dataclass
class _Episode:
    """Fills of one symbol from flat to flat (or to now, when still open)."""

    fills: list[Fill]
    closed: bool

    @property
    def start(self) -> datetime:
        return self.fills[0].filled_at

    @property
    def end(self) -> datetime:
        return self.fills[-1].filled_at


def _episodes(symbol_fills: list[Fill]) -> list[_Episode]:
    episodes: list[_Episode] = []
    current: list[Fill] = []
    net = Decimal("0")
    for fill in symbol_fills:
        current.append(fill)
        net += fill.quantity if fill.side == "buy" else -fill.quantity
        if net == 0:
            episodes.append(_Episode(current, closed=True))
            current = []
    if current:
        episodes.append(_Episode(current, closed=False))
    return episodes


def resume_cursor(fills: Iterable[Fill]) -> Optional[PairingCursor]:
    """
    Cursor for the next fetch after pairing ``fills``.

    Starts at the earliest open position, or at the newest fill when every
    symbol is flat, then moves back past any closed position that straddles
    that instant. None when there are no fills.
    """
    episodes = [e for symbol_fills in _by_symbol(fills).values() for e in _episodes(symbol_fills)]
    if not episodes:
        return None

    open_starts = [e.start for e in episodes if not e.closed]
    fills_from = min(open_starts) if open_starts else max(e.end for e in episodes)

    moved = True
    while moved:
        moved = False
        for episode in episodes:
            if episode.closed and episode.start < fills_from < episode.end:
                fills_from = episode.start
                moved = True

    skip = frozenset(
        fill.fill_id
        for episode in episodes
        if episode.start < fills_from
        for fill in episode.fills
        if fill.filled_at == fills_from
    )
    return PairingCursor(fills_from=fills_from, skip_ids=skip)
