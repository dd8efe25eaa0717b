"""
Market-structure helpers: fractal pivots, HH/HL vs LH/LL classification and
alternating swing extraction.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, NamedTuple, Optional, Sequence, Tuple

from intraday_thesis.types import Bar, Structure


class Pivot(NamedTuple):
    index: int
    price: float


@dataclass(frozen=True)
class StructureResult:
    structure: Structure
    reasons: Tuple[str, ...] = ()
    highs: Tuple[Pivot, ...] = ()
    lows: Tuple[Pivot, ...] = ()


@dataclass(frozen=True)
class SwingPoint:
    ts: int
    price: float
    kind: str  # "HIGH" | "LOW"
    index: int


@dataclass(frozen=True)
class LastSwings:
    last_high: Optional[SwingPoint] = None
    prev_high: Optional[SwingPoint] = None
    last_low: Optional[SwingPoint] = None
    prev_low: Optional[SwingPoint] = None


def detect_pivots(bars: Sequence[Bar], width: int) -> Tuple[List[Pivot], List[Pivot]]:
    """
    A pivot high is strictly above the highs of ``width`` bars on each side;
    a pivot low is strictly below the lows.
    """
    highs: List[Pivot] = []
    lows: List[Pivot] = []
    for i in range(width, len(bars) - width):
        bar = bars[i]
        neighbours = [bars[j] for j in range(i - width, i + width + 1) if j != i]
        if all(bar.high > o.high for o in neighbours):
            highs.append(Pivot(i, bar.high))
        if all(bar.low < o.low for o in neighbours):
            lows.append(Pivot(i, bar.low))
    return highs, lows


def detect_structure(bars: Sequence[Bar], *, lookback: int = 22, pivot_width: int = 2) -> StructureResult:
    """Compare the last two pivot highs and lows inside the lookback window."""
    if len(bars) < lookback or len(bars) < pivot_width * 2 + 1:
        return StructureResult(Structure.MIXED, ("insufficient bars for structure detection",))

    window = list(bars)[-lookback:]
    highs, lows = detect_pivots(window, pivot_width)
    if len(highs) < 2 or len(lows) < 2:
        return StructureResult(
            Structure.MIXED,
            (f"insufficient pivots: {len(highs)} highs, {len(lows)} lows",),
            tuple(highs),
            tuple(lows),
        )

    h1, h2 = highs[-2], highs[-1]
    l1, l2 = lows[-2], lows[-1]
    hh, lh = h2.price > h1.price, h2.price < h1.price
    hl, ll = l2.price > l1.price, l2.price < l1.price

    reasons = [
        f"H1={h1.price:.2f} H2={h2.price:.2f} {'HH' if hh else 'LH' if lh else '='}",
        f"L1={l1.price:.2f} L2={l2.price:.2f} {'HL' if hl else 'LL' if ll else '='}",
    ]
    if lh and ll:
        structure = Structure.BEARISH
        reasons.append("BEARISH structure: LH + LL")
    elif hh and hl:
        structure = Structure.BULLISH
        reasons.append("BULLISH structure: HH + HL")
    else:
        structure = Structure.MIXED
        reasons.append("MIXED structure: no clear trend")
    return StructureResult(structure, tuple(reasons), tuple(highs), tuple(lows))


def extract_swings(bars: Sequence[Bar], lookback: int = 2, *, use_close: bool = False) -> List[SwingPoint]:
    if len(bars) < lookback * 2 + 1:
        return []

    def hi(i: int) -> float:
        return bars[i].close if use_close else bars[i].high

    def lo(i: int) -> float:
        return bars[i].close if use_close else bars[i].low

    swings: List[SwingPoint] = []
    for i in range(lookback, len(bars) - lookback):
        is_high = all(hi(i) > hi(i - k) and hi(i) > hi(i + k) for k in range(1, lookback + 1))
        is_low = all(lo(i) < lo(i - k) and lo(i) < lo(i + k) for k in range(1, lookback + 1))
        if is_high:
            swings.append(SwingPoint(bars[i].ts, hi(i), "HIGH", i))
        if is_low:
            swings.append(SwingPoint(bars[i].ts, lo(i), "LOW", i))
    swings.sort(key=lambda s: s.index)
    return compress_same_kind(swings)


def compress_same_kind(swings: Sequence[SwingPoint]) -> List[SwingPoint]:
    """Collapse runs of same-kind swings, keeping the most extreme one."""
    out: List[SwingPoint] = []
    for cur in swings:
        if not out or out[-1].kind != cur.kind:
            out.append(cur)
            continue
        prev = out[-1]
        if cur.kind == "HIGH" and cur.price >= prev.price:
            out[-1] = cur
        elif cur.kind == "LOW" and cur.price <= prev.price:
            out[-1] = cur
    return out


def last_swings(swings: Sequence[SwingPoint]) -> LastSwings:
    highs = [s for s in swings if s.kind == "HIGH"]
    lows = [s for s in swings if s.kind == "LOW"]
    return LastSwings(
        last_high=highs[-1] if highs else None,
        prev_high=highs[-2] if len(highs) >= 2 else None,
        last_low=lows[-1] if lows else None,
        prev_low=lows[-2] if len(lows) >= 2 else None,
    )
