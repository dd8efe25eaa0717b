"""
Direction inference from short bar windows.

DirectionInferenceEngine is the slower read (12 bars) used to pick a trade
direction. TacticalBiasEngine looks at the last 5 bars and reacts to sudden
range expansion ("shock") without waiting for the regime classifier.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from intraday_thesis.config import DirectionConfig, TacticalConfig
from intraday_thesis.indicators import atr as compute_atr
from intraday_thesis.indicators import ema, pct_move
from intraday_thesis.indicators import vwap as compute_vwap
from intraday_thesis.types import BiasTier, Bar, Direction, DirectionInference, TacticalBias

log = logging.getLogger(__name__)


def _clamp(x: float, lo: float = 0.0, hi: float = 100.0) -> float:
    return max(lo, min(hi, x))


@dataclass(frozen=True)
class _WindowStats:
    green_ratio: float
    red_ratio: float
    max_up_streak: int
    max_down_streak: int


def _window_stats(window: Sequence[Bar]) -> _WindowStats:
    n = len(window)
    green = sum(1 for b in window if b.close > b.open)
    red = sum(1 for b in window if b.close < b.open)

    up = down = max_up = max_down = 0
    for prev, cur in zip(window, window[1:]):
        if cur.close > prev.close:
            up, down = up + 1, 0
            max_up = max(max_up, up)
        elif cur.close < prev.close:
            down, up = down + 1, 0
            max_down = max(max_down, down)
        else:
            up = down = 0
    return _WindowStats(
        green_ratio=green / n if n else 0.0,
        red_ratio=red / n if n else 0.0,
        max_up_streak=max_up,
        max_down_streak=max_down,
    )


@dataclass(frozen=True)
class _Levels:
    atr: Optional[float]
    ema9: Optional[float]
    ema20: Optional[float]
    vwap: Optional[float]


def _levels(bars: Sequence[Bar], atr_period: int, vwap_period: int) -> _Levels:
    bars = list(bars)
    return _Levels(
        atr=compute_atr(bars, atr_period),
        ema9=ema([b.close for b in bars[-30:]], 9),
        ema20=ema([b.close for b in bars[-60:]], 20),
        vwap=compute_vwap(bars, vwap_period),
    )


class DirectionInferenceEngine:
    """
    Asserts LONG or SHORT only when slope, candle colour and EMA alignment all
    agree. The candle-colour requirement is relaxed for strong, aligned moves,
    which still contain a few retracement bars.
    """

    def __init__(self, config: Optional[DirectionConfig] = None) -> None:
        self.config = config or DirectionConfig()

    def infer(self, bars: Sequence[Bar]) -> DirectionInference:
        cfg = self.config
        if len(bars) < cfg.min_bars:
            return DirectionInference(None, 0, (f"insufficient bars (< {cfg.min_bars}) to infer direction",))

        bars = list(bars)
        window = bars[-min(cfg.window, len(bars)):]
        first_close, last_close = window[0].close, window[-1].close
        lv = _levels(bars, cfg.atr_period, cfg.vwap_period)
        stats = _window_stats(window)

        slope_pct = pct_move(first_close, last_close)
        slope_atr = (last_close - first_close) / lv.atr if lv.atr else None

        if lv.ema9 is not None and lv.ema20 is not None:
            ema_bull: Optional[bool] = last_close > lv.ema9 > lv.ema20
            ema_bear: Optional[bool] = last_close < lv.ema9 < lv.ema20
        elif lv.ema9 is not None:
            ema_bull, ema_bear = last_close > lv.ema9, last_close < lv.ema9
        elif lv.ema20 is not None:
            ema_bull, ema_bear = last_close > lv.ema20, last_close < lv.ema20
        else:
            ema_bull = ema_bear = None

        vwap_bull = last_close > lv.vwap if lv.vwap is not None else True
        vwap_bear = last_close < lv.vwap if lv.vwap is not None else True

        if slope_atr is not None:
            strong_up, strong_down = slope_atr >= cfg.strong_slope_atr, slope_atr <= -cfg.strong_slope_atr
            slope_up, slope_down = slope_atr >= cfg.slope_atr, slope_atr <= -cfg.slope_atr
        else:
            strong_up, strong_down = slope_pct >= cfg.strong_slope_pct, slope_pct <= -cfg.strong_slope_pct
            slope_up, slope_down = slope_pct >= cfg.slope_pct, slope_pct <= -cfg.slope_pct

        need_bull = cfg.strong_candle_ratio if (strong_up and vwap_bull and ema_bull) else cfg.base_candle_ratio
        need_bear = cfg.strong_candle_ratio if (strong_down and vwap_bear and ema_bear) else cfg.base_candle_ratio

        bullish = slope_up and stats.green_ratio >= need_bull and ema_bull is not False and vwap_bull
        bearish = slope_down and stats.red_ratio >= need_bear and ema_bear is not False and vwap_bear

        direction: Optional[Direction] = None
        if bullish and not bearish:
            direction = Direction.LONG
        elif bearish and not bullish:
            direction = Direction.SHORT

        stack_bear = lv.ema9 is not None and lv.ema20 is not None and lv.ema9 < lv.ema20
        stack_bull = lv.ema9 is not None and lv.ema20 is not None and lv.ema9 > lv.ema20
        vetoed = False
        if direction is Direction.LONG and lv.vwap is not None:
            if last_close < lv.vwap and stack_bear:
                direction, vetoed = None, True
        if direction is Direction.SHORT and lv.vwap is not None:
            strong_down_ok = (
                (slope_atr <= -cfg.veto_override_slope_atr) if slope_atr is not None
                else slope_pct <= -cfg.veto_override_slope_pct
            ) and stats.red_ratio >= cfg.strong_candle_ratio
            if last_close > lv.vwap and stack_bull and not strong_down_ok:
                direction, vetoed = None, True

        reasons: List[str] = []
        slope_txt = f"slope={slope_atr:.2f} ATR" if slope_atr is not None else f"slope={slope_pct:.2f}%"
        if direction is None:
            if vetoed and stack_bear:
                reasons.append("veto: price<VWAP and EMA9<EMA20 blocks LONG")
            elif vetoed:
                reasons.append("veto: price>VWAP and EMA9>EMA20 blocks SHORT")
            reasons.append("direction unclear")
            reasons.append(slope_txt)
            reasons.append(
                f"greenRatio={stats.green_ratio:.0%} redRatio={stats.red_ratio:.0%} "
                f"(need >= {cfg.base_candle_ratio:.0%})"
            )
            return DirectionInference(None, 0, tuple(reasons), slope_atr, slope_pct)

        long_side = direction is Direction.LONG
        ratio = stats.green_ratio if long_side else stats.red_ratio
        streak = stats.max_up_streak if long_side else stats.max_down_streak
        aligned = bool(ema_bull if long_side else ema_bear)

        reasons.append(slope_txt)
        reasons.append(f"{'greenRatio' if long_side else 'redRatio'}={ratio:.0%}")
        if streak:
            reasons.append(f"{'bullishStreak' if long_side else 'bearishStreak'}={streak}")
        if aligned:
            reasons.append(f"EMA alignment: {'bullish' if long_side else 'bearish'}")

        confidence = 0.0
        if slope_atr is not None:
            confidence += min(40.0, abs(slope_atr) * 20.0)
        else:
            confidence += min(30.0, abs(slope_pct) * 100.0)
        confidence += ratio * 30.0
        confidence += min(20.0, streak * 3.0)
        if aligned:
            confidence += 10.0

        return DirectionInference(direction, int(round(_clamp(confidence))), tuple(reasons), slope_atr, slope_pct)


class TacticalBiasEngine:
    """Fast 5-bar bias with a shock override for range expansion."""

    def __init__(self, config: Optional[TacticalConfig] = None, *, atr_period: int = 14, vwap_period: int = 30) -> None:
        self.config = config or TacticalConfig()
        self._atr_period = atr_period
        self._vwap_period = vwap_period

    def infer(self, bars: Sequence[Bar]) -> TacticalBias:
        cfg = self.config
        if len(bars) < cfg.min_bars:
            return TacticalBias(None, BiasTier.NONE, 0, 0, (f"insufficient bars (< {cfg.min_bars}) for tactical bias",))

        bars = list(bars)
        window = bars[-min(cfg.lookback, len(bars)):]
        first, last = window[0], window[-1]
        lv = _levels(bars, self._atr_period, self._vwap_period)
        stats = _window_stats(window)
        slope_atr = (last.close - first.close) / lv.atr if lv.atr else None

        score = 0
        reasons: List[str] = []

        if lv.vwap is not None:
            if last.close > lv.vwap:
                score += 1
                reasons.append("price>VWAP")
            elif last.close < lv.vwap:
                score -= 1
                reasons.append("price<VWAP")

        if lv.ema9 is not None and lv.ema20 is not None:
            if lv.ema9 > lv.ema20:
                score += 1
                reasons.append("EMA9>EMA20")
            elif lv.ema9 < lv.ema20:
                score -= 1
                reasons.append("EMA9<EMA20")

        has_emas = lv.ema9 is not None and lv.ema20 is not None
        aligned_up = (last.close > lv.vwap if lv.vwap is not None else True) and (lv.ema9 > lv.ema20 if has_emas else True)
        aligned_down = (last.close < lv.vwap if lv.vwap is not None else True) and (lv.ema9 < lv.ema20 if has_emas else True)

        relaxed = cfg.relaxed_candle_ratio
        if aligned_up and slope_atr is not None and slope_atr >= cfg.slope_atr and stats.green_ratio >= relaxed:
            score += 1
            reasons.append(f"greenRatio={stats.green_ratio:.0%}")
        elif aligned_down and slope_atr is not None and slope_atr <= -cfg.slope_atr and stats.red_ratio >= relaxed:
            score -= 1
            reasons.append(f"redRatio={stats.red_ratio:.0%}")
        elif stats.green_ratio >= cfg.base_candle_ratio:
            score += 1
            reasons.append(f"greenRatio={stats.green_ratio:.0%}")
        elif stats.red_ratio >= cfg.base_candle_ratio:
            score -= 1
            reasons.append(f"redRatio={stats.red_ratio:.0%}")

        if slope_atr is not None:
            if slope_atr <= -cfg.momentum_slope_atr and stats.red_ratio >= relaxed:
                score -= 2
                reasons.append(f"downMomentum={slope_atr:.2f} ATR")
            elif slope_atr >= cfg.momentum_slope_atr and stats.green_ratio >= relaxed:
                score += 2
                reasons.append(f"upMomentum={slope_atr:.2f} ATR")

            if slope_atr >= cfg.slope_atr:
                score += 1
                reasons.append(f"slope={slope_atr:.2f} ATR up")
            elif slope_atr <= -cfg.slope_atr:
                score -= 1
                reasons.append(f"slope={slope_atr:.2f} ATR down")

        bias: Optional[Direction] = None
        tier = BiasTier.NONE
        if abs(score) >= 3:
            tier = BiasTier.CLEAR
        elif abs(score) == 2:
            tier = BiasTier.LEAN
        if tier is not BiasTier.NONE:
            bias = Direction.LONG if score > 0 else Direction.SHORT

        confidence = min(100, int(round(abs(score) / 4 * 100)))

        last_range = last.high - last.low
        prev_range = (window[-2].high - window[-2].low) if len(window) >= 2 else 0.0
        shock = False
        shock_reason: Optional[str] = None
        if lv.atr:
            shock = (
                last_range >= cfg.shock_one_bar_atr * lv.atr
                or (last_range + prev_range) >= cfg.shock_two_bar_atr * lv.atr
            )
        if shock:
            shock_reason = f"range={last_range:.2f}; 2-bar={last_range + prev_range:.2f}; atr={lv.atr:.2f}"
            bias = Direction.LONG if last.close >= last.open else Direction.SHORT
            tier = BiasTier.CLEAR
            confidence = min(100, max(confidence, cfg.shock_min_confidence))
            reasons.append(f"shock: {shock_reason}")

        if bias is None:
            reasons.append("tactical bias unclear")

        return TacticalBias(
            bias=bias,
            tier=tier,
            score=score,
            confidence=int(_clamp(confidence)),
            reasons=tuple(reasons),
            shock=shock,
            shock_reason=shock_reason,
        )
