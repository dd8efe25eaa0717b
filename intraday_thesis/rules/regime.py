from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from intraday_thesis.config import RegimeConfig
from intraday_thesis.indicators import vwap as compute_vwap
from intraday_thesis.structure import detect_structure
from intraday_thesis.types import Bar, Regime, RegimeResult, Structure, VwapSlope

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class VwapSlopeResult:
    vwap: Optional[float]
    slope: VwapSlope
    slope_pct: Optional[float]
    reasons: Tuple[str, ...]


def vwap_slope_from_history(
    bars: Sequence[Bar],
    *,
    period: int,
    lookback: int,
    threshold_pct: float,
) -> VwapSlopeResult:
    """Compare VWAP now with VWAP ``lookback`` bars earlier."""
    if len(bars) < period + lookback:
        return VwapSlopeResult(compute_vwap(bars, period), VwapSlope.FLAT, None, ("insufficient bars for VWAP slope",))

    current = compute_vwap(bars, period)
    past = compute_vwap(list(bars)[: len(bars) - lookback], period)
    if current is None or past is None:
        return VwapSlopeResult(current, VwapSlope.FLAT, None, ("VWAP unavailable (no volume)",))

    diff_pct = (current - past) / past * 100.0 if past else 0.0
    if diff_pct > threshold_pct:
        slope = VwapSlope.UP
    elif diff_pct < -threshold_pct:
        slope = VwapSlope.DOWN
    else:
        slope = VwapSlope.FLAT
    return VwapSlopeResult(
        current,
        slope,
        diff_pct,
        (
            f"VWAP={current:.2f} (was {past:.2f} {lookback} bars ago)",
            f"vwapSlope={diff_pct:.3f}% -> {slope.value}",
        ),
    )


def tally_votes(
    price: float,
    vwap: Optional[float],
    slope: VwapSlope,
    structure: Structure,
) -> Tuple[int, int, Tuple[str, ...]]:
    """One vote each from price-vs-VWAP, VWAP slope and swing structure."""
    bull = bear = 0
    reasons = []
    if vwap is not None:
        if price > vwap:
            bull += 1
            reasons.append("vote bull: price>VWAP")
        elif price < vwap:
            bear += 1
            reasons.append("vote bear: price<VWAP")
    if slope is VwapSlope.UP:
        bull += 1
        reasons.append("vote bull: VWAP slope UP")
    elif slope is VwapSlope.DOWN:
        bear += 1
        reasons.append("vote bear: VWAP slope DOWN")
    if structure is Structure.BULLISH:
        bull += 1
        reasons.append("vote bull: HH+HL structure")
    elif structure is Structure.BEARISH:
        bear += 1
        reasons.append("vote bear: LH+LL structure")
    return bull, bear, tuple(reasons)


def resolve_regime(bull: int, bear: int, slope: VwapSlope, structure: Structure) -> Regime:
    """
    2-of-3 majority declares a trend. Without a majority the regime is
    TRANSITION when slope or structure carries a directional read (the market
    is moving but the evidence is split), CHOP otherwise.
    """
    if bull >= 2 and bull > bear:
        return Regime.TREND_UP
    if bear >= 2 and bear > bull:
        return Regime.TREND_DOWN
    if slope is not VwapSlope.FLAT or structure is not Structure.MIXED:
        return Regime.TRANSITION
    return Regime.CHOP


class RegimeClassifier:
    """Evidence-voting regime classifier over closed bars."""

    def __init__(self, config: Optional[RegimeConfig] = None) -> None:
        self.config = config or RegimeConfig()

    def classify(self, bars: Sequence[Bar], current_price: Optional[float] = None) -> RegimeResult:
        cfg = self.config
        if len(bars) < cfg.min_bars:
            return RegimeResult(Regime.CHOP, (f"insufficient bars for regime detection (< {cfg.min_bars})",))

        price = bars[-1].close if current_price is None else float(current_price)
        slope_info = vwap_slope_from_history(
            bars,
            period=cfg.vwap_period,
            lookback=cfg.slope_lookback_bars,
            threshold_pct=cfg.slope_threshold_pct,
        )
        struct = detect_structure(bars, lookback=cfg.structure_lookback, pivot_width=cfg.pivot_width)

        bull, bear, vote_reasons = tally_votes(price, slope_info.vwap, slope_info.slope, struct.structure)
        regime = resolve_regime(bull, bear, slope_info.slope, struct.structure)

        reasons = (
            *slope_info.reasons,
            *struct.reasons,
            *vote_reasons,
            f"{regime.value}: bull={bull} bear={bear}",
        )
        log.debug("regime=%s bull=%d bear=%d", regime.value, bull, bear)
        return RegimeResult(
            regime=regime,
            reasons=reasons,
            vwap=slope_info.vwap,
            vwap_slope=slope_info.slope,
            vwap_slope_pct=slope_info.slope_pct,
            structure=struct.structure,
            bull_votes=bull,
            bear_votes=bear,
        )
