"""Deterministic market calculations.

These feed the prompts as precomputed context and build the fallback
output of a stage when the model never produced a valid answer.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd


def volatility_index(high: float, low: float, change_percent: float) -> float:
    """
    Volatility on a 0-100 scale from the day's range and move.

    0-2% range maps to 0-25, 2-5% to 25-50, 5-10% to 50-75 and beyond
    10% to 75-100; the absolute change adds up to 10 points.
    """
    if low <= 0:
        return 50.0
    range_pct = (high - low) / low * 100

    if range_pct <= 2:
        index = range_pct / 2 * 25
    elif range_pct <= 5:
        index = 25 + (range_pct - 2) / 3 * 25
    elif range_pct <= 10:
        index = 50 + (range_pct - 5) / 5 * 25
    else:
        index = 75 + min((range_pct - 10) / 10 * 25, 25)

    index += min(abs(change_percent), 10.0)
    return float(round(min(index, 100.0)))


def risk_level_for(volatility: float) -> str:
    if volatility <= 25:
        return "LOW"
    if volatility <= 50:
        return "MEDIUM"
    if volatility <= 75:
        return "HIGH"
    return "CRITICAL"


def security_score_for(volatility: float) -> float:
    return round(max(0.0, min(10.0, 10.0 - volatility / 10.0)), 1)


@dataclass
class VolumeStats:
    total_volume: float
    average_volume: float
    volume_ratio: float
    buy_pressure: float
    sell_pressure: float


def volume_stats(bars: pd.DataFrame) -> VolumeStats:
    """Volume profile and a bar-direction proxy for order flow."""
    volume = bars["Volume"].fillna(0).astype(float)
    total = float(volume.sum())
    average = float(volume.mean()) if len(volume) else 0.0
    ratio = float(volume.iloc[-1] / average) if average > 0 else 1.0

    up = bars["Close"] >= bars["Open"]
    buy_volume = float(volume[up].sum())
    buy = buy_volume / total if total > 0 else 0.5
    return VolumeStats(
        total_volume=total,
        average_volume=round(average, 2),
        volume_ratio=round(ratio, 3),
        buy_pressure=round(buy, 3),
        sell_pressure=round(1 - buy, 3),
    )


def find_swing_points(prices: np.ndarray, window: int = 3) -> tuple[list[int], list[int]]:
    """Indices of local maxima and minima ``window`` bars on each side."""
    highs: list[int] = []
    lows: list[int] = []
    for i in range(window, len(prices) - window):
        left = prices[i - window:i]
        right = prices[i + 1:i + window + 1]
        if prices[i] > left.max() and prices[i] > right.max():
            highs.append(i)
        if prices[i] < left.min() and prices[i] < right.min():
            lows.append(i)
    return highs, lows


def cluster_price_levels(prices: list[float], tolerance_pct: float = 0.5) -> list[tuple[float, int]]:
    """Merge nearby levels into (center, touches) zones."""
    if not prices:
        return []
    ordered = sorted(prices)
    clusters: list[tuple[float, int]] = []
    current = [ordered[0]]
    for price in ordered[1:]:
        center = float(np.mean(current))
        if abs(price - center) / center <= tolerance_pct / 100:
            current.append(price)
        else:
            clusters.append((float(np.mean(current)), len(current)))
            current = [price]
    clusters.append((float(np.mean(current)), len(current)))
    return clusters


def support_resistance(
    bars: pd.DataFrame, max_levels: int = 3, window: int = 3
) -> tuple[list[dict], list[dict]]:
    """Support below and resistance above the last close, strongest first."""
    highs = bars["High"].to_numpy(dtype=float)
    lows = bars["Low"].to_numpy(dtype=float)
    last = float(bars["Close"].iloc[-1])

    swing_highs, _ = find_swing_points(highs, window)
    _, swing_lows = find_swing_points(lows, window)
    levels = cluster_price_levels([highs[i] for i in swing_highs] + [lows[i] for i in swing_lows])
    if not levels:
        levels = [(float(lows.min()), 1), (float(highs.max()), 1)]

    max_touches = max(count for _, count in levels)

    def as_level(center: float, count: int) -> dict:
        return {"price": round(center, 4), "strength": round(min(1.0, 0.4 + 0.6 * count / max_touches), 2)}

    supports = sorted((lv for lv in levels if lv[0] < last), key=lambda lv: last - lv[0])
    resistances = sorted((lv for lv in levels if lv[0] > last), key=lambda lv: lv[0] - last)
    return (
        [as_level(c, n) for c, n in supports[:max_levels]],
        [as_level(c, n) for c, n in resistances[:max_levels]],
    )


def trend_from_closes(closes: np.ndarray, flat_threshold: float = 0.0005) -> tuple[str, float]:
    """Direction and strength from a least-squares slope normalized by price."""
    if len(closes) < 2:
        return "SIDEWAYS", 0.0
    x = np.arange(len(closes), dtype=float)
    slope, _ = np.polyfit(x, closes.astype(float), 1)
    normalized = slope / float(np.mean(closes))
    strength = float(min(1.0, abs(normalized) / (flat_threshold * 10)))
    if normalized > flat_threshold:
        return "UPTREND", round(strength, 2)
    if normalized < -flat_threshold:
        return "DOWNTREND", round(strength, 2)
    return "SIDEWAYS", round(strength, 2)


def return_correlation(a: pd.Series, b: pd.Series) -> float:
    """Pearson correlation of aligned percentage returns, 0.0 when undefined."""
    joined = pd.concat([a.pct_change(), b.pct_change()], axis=1, join="inner").dropna()
    if len(joined) < 3:
        return 0.0
    matrix = np.corrcoef(joined.iloc[:, 0].to_numpy(), joined.iloc[:, 1].to_numpy())
    value = float(matrix[0, 1])
    if np.isnan(value):
        return 0.0
    return round(max(-1.0, min(1.0, value)), 3)
