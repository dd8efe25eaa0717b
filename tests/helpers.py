"""Synthetic bar builders shared by the test modules."""

from __future__ import annotations

from typing import List, Sequence

from intraday_thesis.types import (
    Bar,
    Direction,
    EntryZone,
    FeatureBundle,
    Pattern,
    ScoreBreakdown,
    SetupCandidate,
    SetupResult,
    Targets,
)

# Tuesday 2024-03-05 09:30 America/New_York (14:30 UTC), aligned to a 5-minute boundary.
SESSION_OPEN_MS = 1_709_649_000_000
MINUTE_MS = 60_000
FIVE_MIN_MS = 5 * MINUTE_MS


def bar(ts: int, o: float, h: float, l: float, c: float, v: float = 1000.0, symbol: str = "SPY") -> Bar:
    return Bar(ts=ts, open=o, high=h, low=l, close=c, volume=v, symbol=symbol)


def bars_from_closes(
    closes: Sequence[float],
    *,
    start_ts: int = SESSION_OPEN_MS,
    step_ms: int = FIVE_MIN_MS,
    wick: float = 0.05,
    volume: float = 1000.0,
) -> List[Bar]:
    """Each bar opens at the previous close and closes at the given value."""
    out: List[Bar] = []
    prev = closes[0]
    for i, c in enumerate(closes):
        o = prev
        out.append(bar(start_ts + i * step_ms, o, max(o, c) + wick, min(o, c) - wick, c, volume))
        prev = c
    return out


def trend_closes(n: int, *, start: float = 100.0, step: float = 0.2) -> List[float]:
    return [start + i * step for i in range(n)]


def zigzag_closes(n: int, *, start: float = 100.0, up: float = 0.5, down: float = 0.3, leg: int = 3) -> List[float]:
    """Stair-step trend: ``leg`` bars up by ``up`` then one bar back by ``down``."""
    closes = [start]
    i = 0
    while len(closes) < n:
        step = -down if (i + 1) % (leg + 1) == 0 else up
        closes.append(closes[-1] + step)
        i += 1
    return closes


def chop_closes(n: int, *, mid: float = 100.0, amp: float = 0.1) -> List[float]:
    return [mid + (amp if i % 2 else -amp) for i in range(n)]


def minute_bars(closes: Sequence[float], *, start_ts: int = SESSION_OPEN_MS, volume: float = 1000.0) -> List[Bar]:
    return bars_from_closes(closes, start_ts=start_ts, step_ms=MINUTE_MS, wick=0.02, volume=volume)


def candidate(
    direction: Direction = Direction.LONG,
    *,
    ts: int = SESSION_OPEN_MS,
    entry: float = 100.0,
    stop: float = 99.0,
    total: int = 70,
    pattern: Pattern = Pattern.FOLLOW,
    early_idea: bool = False,
    cid: str | None = None,
) -> SetupCandidate:
    risk = abs(entry - stop)
    s = direction.sign
    return SetupCandidate(
        id=cid or f"setup_{ts}_{pattern.value.lower()}_{direction.value.lower()}{'_early' if early_idea else ''}",
        ts=ts,
        symbol="SPY",
        direction=direction,
        pattern=pattern,
        trigger_price=entry,
        entry_zone=EntryZone(entry - 0.05, entry + 0.05),
        stop=stop,
        targets=Targets(entry + s * risk, entry + s * 2 * risk, entry + s * 3 * risk),
        score=ScoreBreakdown(70, 70, 70, total),
        features=FeatureBundle(),
        grade="B",
        early_idea=early_idea,
        not_actionable_reason="no qualifying setup pattern" if early_idea else None,
    )


def two_candidates(ts: int = SESSION_OPEN_MS) -> SetupResult:
    long_c = candidate(Direction.LONG, ts=ts, entry=100.0, stop=99.0, total=72)
    short_c = candidate(Direction.SHORT, ts=ts, entry=100.0, stop=101.0, total=40, early_idea=True)
    return SetupResult(candidates=(long_c, short_c), top=long_c)
