"""
Stateless indicator functions over bar windows.

Every function returns ``None`` when there is not enough data, so callers
can treat a missing indicator as "no evidence" rather than as zero.
"""

from __future__ import annotations

import datetime as dt
from typing import NamedTuple, Optional, Sequence
from zoneinfo import ZoneInfo

import numpy as np

from intraday_thesis.types import Bar

NY_TZ = ZoneInfo("America/New_York")


class Bands(NamedTuple):
    middle: float
    upper: float
    lower: float


def _array(values: Sequence[float]) -> np.ndarray:
    return np.asarray(values, dtype=float)


def closes_of(bars: Sequence[Bar]) -> np.ndarray:
    return np.fromiter((b.close for b in bars), dtype=float, count=len(bars))


def ema(values: Sequence[float], period: int) -> Optional[float]:
    """
    Exponential moving average of the full series.

    Seeded with the SMA of the first ``period`` values, then smoothed with
    alpha = 2 / (period + 1).
    """
    arr = _array(values)
    if period <= 0 or len(arr) < period:
        return None
    value = float(np.mean(arr[:period]))
    alpha = 2.0 / (period + 1)
    for x in arr[period:]:
        value = (float(x) - value) * alpha + value
    return value


def atr(bars: Sequence[Bar], period: int = 14) -> Optional[float]:
    """Average True Range as the simple mean of the last ``period`` true ranges."""
    if period <= 0 or len(bars) < period + 1:
        return None
    highs = np.fromiter((b.high for b in bars), dtype=float, count=len(bars))
    lows = np.fromiter((b.low for b in bars), dtype=float, count=len(bars))
    closes = closes_of(bars)
    prev_close = closes[:-1]
    h = highs[1:]
    lo = lows[1:]
    tr = np.maximum(h - lo, np.maximum(np.abs(h - prev_close), np.abs(lo - prev_close)))
    return float(np.mean(tr[-period:]))


def _typical_vwap(bars: Sequence[Bar]) -> Optional[float]:
    if not bars:
        return None
    vol = np.fromiter((b.volume for b in bars), dtype=float, count=len(bars))
    typical = np.fromiter(((b.high + b.low + b.close) / 3.0 for b in bars), dtype=float, count=len(bars))
    # Bars without volume carry no weight.
    mask = vol > 0
    total = float(np.sum(vol[mask]))
    if total <= 0:
        return None
    return float(np.sum(typical[mask] * vol[mask]) / total)


def vwap(bars: Sequence[Bar], period: int) -> Optional[float]:
    """Rolling VWAP over the last ``period`` bars using typical price."""
    if period <= 0 or len(bars) < period:
        return None
    return _typical_vwap(list(bars)[-period:])


def session_bounds(ts_ms: int) -> Optional[tuple[int, int]]:
    """Regular-session [09:30, 16:00) New York bounds for the day of ``ts_ms``; None on weekends."""
    local = dt.datetime.fromtimestamp(ts_ms / 1000.0, tz=NY_TZ)
    if local.weekday() >= 5:
        return None
    start = local.replace(hour=9, minute=30, second=0, microsecond=0)
    end = local.replace(hour=16, minute=0, second=0, microsecond=0)
    return int(start.timestamp() * 1000), int(end.timestamp() * 1000)


def session_vwap(bars: Sequence[Bar]) -> Optional[float]:
    """VWAP anchored at the regular-session open of the last bar's trading day."""
    if not bars:
        return None
    bounds = session_bounds(bars[-1].ts)
    if bounds is None:
        return None
    start, end = bounds
    return _typical_vwap([b for b in bars if start <= b.ts < end])


def rsi(values: Sequence[float], period: int = 14) -> Optional[float]:
    """Relative Strength Index with Wilder smoothing."""
    arr = _array(values)
    if period <= 0 or len(arr) < period + 1:
        return None
    changes = np.diff(arr)
    gains = np.where(changes > 0, changes, 0.0)
    losses = np.where(changes < 0, -changes, 0.0)
    avg_gain = float(np.mean(gains[:period]))
    avg_loss = float(np.mean(losses[:period]))
    for g, l in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + float(g)) / period
        avg_loss = (avg_loss * (period - 1) + float(l)) / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def bollinger(values: Sequence[float], period: int = 20, num_std: float = 2.0) -> Optional[Bands]:
    """SMA +/- ``num_std`` population standard deviations."""
    arr = _array(values)
    if period <= 0 or len(arr) < period:
        return None
    window = arr[-period:]
    mean = float(np.mean(window))
    sigma = float(np.std(window))
    return Bands(middle=mean, upper=mean + num_std * sigma, lower=mean - num_std * sigma)


def relative_volume(bars: Sequence[Bar], lookback: int = 20) -> Optional[float]:
    """Volume of the last bar divided by the mean volume of the ``lookback`` bars before it."""
    if lookback <= 0 or len(bars) < lookback + 1:
        return None
    vols = np.fromiter((b.volume for b in bars), dtype=float, count=len(bars))
    base = float(np.mean(vols[-(lookback + 1):-1]))
    if base <= 0:
        return None
    return float(vols[-1] / base)


def pct_move(start: float, end: float) -> float:
    if start == 0:
        return 0.0
    return (end - start) / start * 100.0


def ny_time(ts_ms: int) -> dt.datetime:
    return dt.datetime.fromtimestamp(ts_ms / 1000.0, tz=NY_TZ)


def minutes_to_session_close(ts_ms: int) -> Optional[int]:
    bounds = session_bounds(ts_ms)
    if bounds is None:
        return None
    start, end = bounds
    if not start <= ts_ms < end:
        return None
    return int((end - ts_ms) // 60_000)
