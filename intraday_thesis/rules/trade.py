from __future__ import annotations

from typing import List, Optional, Sequence

from intraday_thesis.types import Direction, TradeContext

TARGET_NAMES = ("T1", "T2", "T3")


def reference_targets(direction: Direction, entry: float, stop: float, targets: Sequence[float]) -> List[float]:
    """The trade's own targets, extended with whole R-multiples up to T3."""
    risk = abs(entry - stop)
    out = [float(t) for t in list(targets)[:3]]
    while len(out) < 3:
        out.append(entry + direction.sign * (len(out) + 1) * risk)
    return out


def trade_context(
    direction: Direction,
    close: float,
    *,
    entry: float,
    stop: float,
    targets: Sequence[float],
    threat_r: float = 0.25,
    near_abs: float = 0.03,
) -> TradeContext:
    s = direction.sign
    levels = reference_targets(direction, entry, stop, targets)
    risk = abs(entry - stop)

    hit: Optional[str] = None
    for name, level in reversed(list(zip(TARGET_NAMES, levels))):
        if s * (close - level) >= 0:
            hit = name
            break

    near: Optional[str] = None
    if hit is None:
        for name, level in zip(TARGET_NAMES, levels):
            if s * (close - level) >= -near_abs:
                near = name
                break

    return TradeContext(
        risk=risk,
        r_now=s * (close - entry) / risk if risk > 0 else 0.0,
        targets=tuple(levels),
        r_to_targets=tuple((s * (t - entry) / risk) if risk > 0 else 0.0 for t in levels),
        distance_to_stop=s * (close - stop),
        distance_to_targets=tuple(s * (t - close) for t in levels),
        stop_threatened=s * (close - stop) <= threat_r * risk,
        near_target=near,
        target_hit=hit,
        profit_pct=100.0 * s * (close - entry) / entry if entry else 0.0,
    )
