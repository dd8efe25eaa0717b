"""
Entry timing for a directional idea.

Four components of up to 25 points each: the close broke a level and the bar
before it already held there, the last three bars tested the level and the
close rejected it, price reacted the same way at VWAP, and bar ranges
contracted after the move. Without an entry zone the level is VWAP.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from intraday_thesis.types import Bar, Direction, EntryZone, TimingSignal, TimingState

MIN_BARS = 6
FULL = 25
PARTIAL = 12
SHOCK_ONE_BAR_ATR = 0.6
SHOCK_TWO_BAR_ATR = 0.9


def _break_and_hold(d: Direction, last: Bar, prev: Bar, level: Optional[float]) -> int:
    if level is None:
        return 0
    broke = d.sign * (last.close - level) > 0
    held = d.sign * (prev.close - level) > 0
    if broke and held:
        return FULL
    return PARTIAL if broke else 0


def _retest(d: Direction, recent: Sequence[Bar], last: Bar, level: Optional[float]) -> int:
    if level is None:
        return 0
    if d is Direction.LONG:
        touched = any(b.low <= level for b in recent)
    else:
        touched = any(b.high >= level for b in recent)
    return FULL if touched and d.sign * (last.close - level) > 0 else 0


def _range_contraction(bars: Sequence[Bar]) -> int:
    ranges = [max(0.0, b.range) for b in bars[-MIN_BARS:]]
    before = sum(ranges[:3]) / 3
    after = sum(ranges[3:]) / 3
    if after < 0.9 * before:
        return FULL
    if after <= 1.1 * before:
        return PARTIAL
    return 0


def compute_timing_signal(
    direction: Direction,
    bars: Sequence[Bar],
    *,
    vwap: Optional[float] = None,
    atr: Optional[float] = None,
    entry_zone: Optional[EntryZone] = None,
) -> TimingSignal:
    bars = list(bars)
    if len(bars) < MIN_BARS:
        return TimingSignal(reasons=("insufficient bars for timing",))

    last, prev, prev2 = bars[-1], bars[-2], bars[-3]
    impulse = False
    if atr:
        impulse = (max(0.0, last.range) >= SHOCK_ONE_BAR_ATR * atr
                   or max(0.0, last.range) + max(0.0, prev.range) >= SHOCK_TWO_BAR_ATR * atr)

    if entry_zone is not None:
        level: Optional[float] = entry_zone.high if direction is Direction.LONG else entry_zone.low
        level_name = "zone"
    else:
        level, level_name = vwap, "VWAP"

    break_acceptance = _break_and_hold(direction, last, prev, level)
    retest_quality = _retest(direction, (prev2, prev, last), last, level)
    vwap_reaction = _break_and_hold(direction, last, prev, vwap)
    atr_normalization = _range_contraction(bars)
    score = min(100, break_acceptance + retest_quality + vwap_reaction + atr_normalization)

    in_zone = entry_zone is not None and entry_zone.low <= last.close <= entry_zone.high
    if in_zone:
        state = TimingState.ENTRY_WINDOW_OPEN
    elif impulse:
        state = TimingState.IMPULSE_DETECTED
    elif break_acceptance or retest_quality:
        state = TimingState.PULLBACK_IN_PROGRESS
    else:
        state = TimingState.WAITING

    reasons: List[str] = []
    if break_acceptance:
        reasons.append(f"break+accept ({level_name})")
    if retest_quality:
        reasons.append(f"retest ({level_name})")
    if vwap_reaction:
        reasons.append("vwap reaction")
    if atr_normalization:
        reasons.append("atr normalization")
    if impulse:
        reasons.append("impulse detected")
    if not reasons:
        reasons.append("timing not ready")

    return TimingSignal(
        state=state,
        score=score,
        break_acceptance=break_acceptance,
        retest_quality=retest_quality,
        vwap_reaction=vwap_reaction,
        atr_normalization=atr_normalization,
        impulse=impulse,
        reasons=tuple(reasons),
    )
