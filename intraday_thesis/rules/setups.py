"""
SetupEngine: turns regime + direction + indicators into scored trade candidates.

Three independent detectors run on every evaluation:

- FOLLOW   trend continuation after an EMA9 reclaim, stop behind the last swing
- RECLAIM  dip into the VWAP/EMA20 value band, rejection candle, two closes back past EMA9
- FADE     countertrend turn from an RSI extreme (score capped)

Every candidate is enriched with a feature bundle (including an entry timing
read) and flags, scored as 45% alignment / 25% structure / 30% quality, then
ranked deterministically.
When fewer than two high-conviction candidates exist, low-score "early
ideas" are synthesized for directions without one, each carrying the reason
it is not actionable yet.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

from intraday_thesis.config import SetupConfig
from intraday_thesis.errors import InvalidRiskGeometry
from intraday_thesis.indicators import atr as compute_atr
from intraday_thesis.indicators import ema, minutes_to_session_close, ny_time, relative_volume, rsi
from intraday_thesis.indicators import vwap as compute_vwap
from intraday_thesis.rules.timing import compute_timing_signal
from intraday_thesis.rules.volume import volume_policy
from intraday_thesis.structure import extract_swings, last_swings
from intraday_thesis.types import (
    Bar,
    Direction,
    DirectionInference,
    EntryZone,
    FeatureBundle,
    Pattern,
    Regime,
    RegimeResult,
    ScoreBreakdown,
    SetupCandidate,
    SetupResult,
    Structure,
    TacticalBias,
    Targets,
    VolumeRegime,
)

log = logging.getLogger(__name__)

ALIGNMENT_WEIGHT = 0.45
STRUCTURE_WEIGHT = 0.25
QUALITY_WEIGHT = 0.30

PATTERN_PREFERENCE: Dict[Regime, Tuple[Pattern, ...]] = {
    Regime.TREND_UP: (Pattern.FOLLOW, Pattern.RECLAIM, Pattern.FADE),
    Regime.TREND_DOWN: (Pattern.FOLLOW, Pattern.RECLAIM, Pattern.FADE),
    Regime.TRANSITION: (Pattern.RECLAIM, Pattern.FOLLOW, Pattern.FADE),
    Regime.CHOP: (Pattern.RECLAIM, Pattern.FADE, Pattern.FOLLOW),
}


def _clamp(x: float, lo: float = 0.0, hi: float = 100.0) -> float:
    return max(lo, min(hi, x))


def grade_from_score(score: int) -> str:
    if score >= 80:
        return "A"
    if score >= 70:
        return "B"
    if score >= 60:
        return "C"
    if score >= 50:
        return "D"
    return "F"


def targets_from_r(direction: Direction, entry: float, stop: float) -> Targets:
    risk = abs(entry - stop)
    s = direction.sign
    return Targets(entry + s * risk, entry + s * 2 * risk, entry + s * 3 * risk)


def validate_geometry(direction: Direction, entry: float, stop: float, targets: Targets) -> None:
    """Stop strictly on the risk side of entry, targets strictly farther out."""
    s = direction.sign
    if not (s * (entry - stop) > 0):
        raise InvalidRiskGeometry(f"stop {stop:.4f} not on risk side of {direction.value} entry {entry:.4f}")
    dists = [s * (t - entry) for t in targets.as_tuple()]
    if not (0 < dists[0] < dists[1] < dists[2]):
        raise InvalidRiskGeometry(f"targets not increasing from entry {entry:.4f}: {targets}")


def weighted_total(alignment: float, structure: float, quality: float) -> int:
    return int(round(ALIGNMENT_WEIGHT * alignment + STRUCTURE_WEIGHT * structure + QUALITY_WEIGHT * quality))


@dataclass(frozen=True)
class SetupContext:
    ts: int
    symbol: str
    bars: Sequence[Bar]
    regime: RegimeResult
    direction: DirectionInference
    tactical: Optional[TacticalBias] = None


@dataclass
class _Inputs:
    """Indicators resolved once per evaluation and shared by all detectors."""
    close: float
    atr: float
    ema9: float
    ema20: float
    vwap: Optional[float]
    rsi: Optional[float]
    rel_vol: Optional[float]
    ema9_series: List[float] = field(default_factory=list)


@dataclass
class _Draft:
    direction: Direction
    pattern: Pattern
    trigger: float
    zone: EntryZone
    stop: float
    alignment: float
    structure: float
    quality: float
    rationale: List[str]
    flags: List[str] = field(default_factory=list)


class SetupEngine:
    def __init__(self, config: Optional[SetupConfig] = None) -> None:
        self.config = config or SetupConfig()

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def evaluate(self, ctx: SetupContext) -> SetupResult:
        cfg = self.config
        bars = list(ctx.bars)
        if len(bars) < cfg.min_bars:
            return SetupResult(reason=f"insufficient bars for setup detection (< {cfg.min_bars})")

        inputs = self._resolve_inputs(bars)
        if inputs is None:
            return SetupResult(reason="ATR/EMA unavailable; cannot size setups")

        thesis_dir = ctx.direction.direction or ctx.regime.regime.direction
        blocked_reason: Optional[str] = None
        chop_override = False
        if ctx.regime.regime is Regime.CHOP:
            chop_override = self._chop_override(ctx, inputs, thesis_dir)
            if not chop_override:
                blocked_reason = "chop regime blocks setups"

        drafts: List[_Draft] = []
        rejections: List[str] = []
        if blocked_reason is None:
            if thesis_dir is not None and self._trend_allowed(ctx.regime, thesis_dir):
                for detector in (self._detect_follow, self._detect_reclaim):
                    draft = detector(thesis_dir, bars, inputs, ctx, rejections)
                    if draft is not None:
                        drafts.append(draft)
            drafts.extend(self._detect_fade(bars, inputs, ctx, rejections))

        candidates: List[SetupCandidate] = []
        for draft in drafts:
            if chop_override:
                draft.flags.extend(["CHOP_OVERRIDE", "CHOP_RISK"])
            try:
                candidates.append(self._finalize(draft, bars, inputs, ctx))
            except InvalidRiskGeometry as exc:
                log.debug("Discarding %s %s candidate: %s", draft.pattern.value, draft.direction.value, exc)
                rejections.append(f"{draft.pattern.value}: {exc}")

        high_conviction = [c for c in candidates if c.score.total >= cfg.high_conviction_score]
        if len(high_conviction) < 2:
            why = blocked_reason or ("; ".join(rejections) if rejections else "no qualifying setup pattern")
            candidates.extend(self._early_ideas(candidates, bars, inputs, ctx, why))

        ranked = self.rank(candidates, ctx.regime.regime)
        top = self.pick_top(ranked, ctx.regime.regime)
        reason = None
        if not any(not c.early_idea for c in ranked):
            reason = blocked_reason or ("; ".join(rejections) if rejections else "no qualifying setup pattern")
        return SetupResult(candidates=tuple(ranked), top=top, reason=reason)

    def rank(self, candidates: Sequence[SetupCandidate], regime: Regime) -> List[SetupCandidate]:
        order = PATTERN_PREFERENCE[regime]
        return sorted(
            candidates,
            key=lambda c: (c.early_idea, -c.score.total, order.index(c.pattern), c.direction.value, c.id),
        )

    def pick_top(self, ranked: Sequence[SetupCandidate], regime: Regime) -> Optional[SetupCandidate]:
        """Regime pattern preference among high-conviction candidates, else the best raw score."""
        actionable = [c for c in ranked if not c.early_idea]
        strong = [c for c in actionable if c.score.total >= self.config.high_conviction_score]
        for pattern in PATTERN_PREFERENCE[regime]:
            for c in strong:
                if c.pattern is pattern:
                    return c
        if actionable:
            return actionable[0]
        return ranked[0] if ranked else None

    # ------------------------------------------------------------------
    # Inputs and gates
    # ------------------------------------------------------------------

    def _resolve_inputs(self, bars: List[Bar]) -> Optional[_Inputs]:
        cfg = self.config
        closes = [b.close for b in bars]
        atr_v = compute_atr(bars, cfg.atr_period)
        ema9 = ema(closes[-60:], 9)
        ema20 = ema(closes[-80:], 20)
        if not atr_v or atr_v <= 0 or ema9 is None or ema20 is None:
            return None
        ema9_series = [v for v in (ema(closes[-60 - k: len(closes) - k], 9) for k in range(3, -1, -1)) if v is not None]
        return _Inputs(
            close=bars[-1].close,
            atr=atr_v,
            ema9=ema9,
            ema20=ema20,
            vwap=compute_vwap(bars, 30),
            rsi=rsi(closes, cfg.rsi_period),
            rel_vol=relative_volume(bars, cfg.rel_vol_lookback),
            ema9_series=ema9_series,
        )

    def _aligned(self, direction: Direction, inputs: _Inputs) -> bool:
        s = direction.sign
        vwap_ok = inputs.vwap is None or s * (inputs.close - inputs.vwap) > 0
        return vwap_ok and s * (inputs.ema9 - inputs.ema20) > 0

    def _chop_override(self, ctx: SetupContext, inputs: _Inputs, direction: Optional[Direction]) -> bool:
        slope = ctx.direction.slope_atr
        if direction is None or slope is None:
            return False
        strong = abs(slope) >= self.config.chop_override_slope_atr and slope * direction.sign > 0
        return strong and self._aligned(direction, inputs)

    @staticmethod
    def _trend_allowed(regime: RegimeResult, direction: Direction) -> bool:
        if regime.regime.direction is direction.opposite:
            return False
        if direction is Direction.LONG and regime.structure is Structure.BEARISH:
            return False
        if direction is Direction.SHORT and regime.structure is Structure.BULLISH:
            return False
        return True

    # ------------------------------------------------------------------
    # Detectors
    # ------------------------------------------------------------------

    def _detect_follow(self, d: Direction, bars, inputs: _Inputs, ctx: SetupContext, rejections: List[str]) -> Optional[_Draft]:
        cfg = self.config
        if not has_ema9_reclaim(d, bars, inputs.ema9):
            return None

        trigger = inputs.close
        buffer = cfg.stop_buffer_atr * inputs.atr
        swings = last_swings(extract_swings(bars[-40:], 2))
        if d is Direction.LONG:
            anchor = swings.last_low.price if swings.last_low and swings.last_low.price < trigger else None
            stop = (anchor if anchor is not None else min(b.low for b in bars[-cfg.swing_lookback:])) - buffer
        else:
            anchor = swings.last_high.price if swings.last_high and swings.last_high.price > trigger else None
            stop = (anchor if anchor is not None else max(b.high for b in bars[-cfg.swing_lookback:])) + buffer

        risk = abs(trigger - stop)
        if not (cfg.min_risk_atr * inputs.atr <= risk <= cfg.max_risk_atr * inputs.atr):
            rejections.append(f"FOLLOW: risk {risk / inputs.atr:.2f} ATR outside [{cfg.min_risk_atr}, {cfg.max_risk_atr}]")
            return None

        zone = _zone(d, trigger, risk, toward_stop=0.20, away=0.05)
        vwap_side = _side_bonus(d, inputs.close, inputs.vwap, 5, -5)
        near_mean = 5 if abs(zone.mid - inputs.ema20) <= 1.0 * inputs.atr else -5
        aligned_structure = ctx.regime.structure in (Structure.BULLISH, Structure.BEARISH)
        return _Draft(
            direction=d,
            pattern=Pattern.FOLLOW,
            trigger=trigger,
            zone=zone,
            stop=stop,
            alignment=_clamp(0.6 * ctx.direction.confidence + 0.4 * 80),
            structure=80 if aligned_structure else 55,
            quality=_clamp(70 + vwap_side + near_mean),
            rationale=[
                "pattern=FOLLOW",
                f"EMA9 reclaim at {inputs.ema9:.2f}",
                f"swing stop {stop:.2f} (risk {risk / inputs.atr:.2f} ATR)",
            ],
        )

    def _detect_reclaim(self, d: Direction, bars, inputs: _Inputs, ctx: SetupContext, rejections: List[str]) -> Optional[_Draft]:
        cfg = self.config
        if len(bars) < 6:
            return None
        anchors = [inputs.ema20] + ([inputs.vwap] if inputs.vwap is not None else [])
        pad = cfg.reclaim_band_atr * inputs.atr
        band_low, band_high = min(anchors) - pad, max(anchors) + pad

        last_two = bars[-2:]
        holds = all(d.sign * (b.close - inputs.ema9) > 0 for b in last_two)
        if not holds:
            return None

        rejection_bar: Optional[Bar] = None
        rejection_idx = -1
        for idx in range(len(bars) - 3, len(bars) - 7, -1):
            b = bars[idx]
            rng = b.high - b.low
            if rng <= 0:
                continue
            if d is Direction.LONG:
                touched = b.low <= band_high
                rejected = b.close > band_low and (b.close - b.low) >= 0.5 * rng
            else:
                touched = b.high >= band_low
                rejected = b.close < band_high and (b.high - b.close) >= 0.5 * rng
            if touched and rejected:
                rejection_bar, rejection_idx = b, idx
                break
        if rejection_bar is None:
            return None

        trigger = inputs.close
        buffer = cfg.stop_buffer_atr * inputs.atr
        tail = bars[rejection_idx:]
        if d is Direction.LONG:
            stop = min(b.low for b in tail) - buffer
        else:
            stop = max(b.high for b in tail) + buffer
        risk = abs(trigger - stop)
        if not (cfg.min_risk_atr * inputs.atr <= risk <= cfg.max_risk_atr * inputs.atr):
            rejections.append(f"RECLAIM: risk {risk / inputs.atr:.2f} ATR outside [{cfg.min_risk_atr}, {cfg.max_risk_atr}]")
            return None

        zone = _zone(d, trigger, risk, toward_stop=0.15, away=0.05)
        aligned_structure = ctx.regime.structure in (Structure.BULLISH, Structure.BEARISH)
        return _Draft(
            direction=d,
            pattern=Pattern.RECLAIM,
            trigger=trigger,
            zone=zone,
            stop=stop,
            alignment=_clamp(0.6 * ctx.direction.confidence + 0.4 * 75),
            structure=75 if aligned_structure else 60,
            quality=_clamp(72 + _side_bonus(d, inputs.close, inputs.vwap, 5, -8)),
            rationale=[
                "pattern=RECLAIM",
                f"value band [{band_low:.2f}, {band_high:.2f}] tested at {rejection_bar.ts}",
                "two closes held past EMA9",
            ],
        )

    def _detect_fade(self, bars, inputs: _Inputs, ctx: SetupContext, rejections: List[str]) -> List[_Draft]:
        cfg = self.config
        if inputs.rsi is None or len(bars) < 3:
            return []
        regime_dir = ctx.regime.regime.direction
        if inputs.rsi <= cfg.rsi_oversold:
            d = Direction.LONG
        elif inputs.rsi >= cfg.rsi_overbought:
            d = Direction.SHORT
        else:
            return []
        # A fade is only a fade against the prevailing trend.
        if regime_dir is d:
            return []

        last, prev1, prev2 = bars[-1], bars[-2], bars[-3]
        if d is Direction.LONG:
            turn = prev2.close <= prev1.close <= last.close
        else:
            turn = prev2.close >= prev1.close >= last.close
        reclaim = d.sign * (last.close - inputs.ema9) > 0
        if not (turn and reclaim):
            return []

        trigger = inputs.close
        buffer = cfg.stop_buffer_atr * inputs.atr
        window = bars[-cfg.fade_swing_lookback:]
        stop = (min(b.low for b in window) - buffer) if d is Direction.LONG else (max(b.high for b in window) + buffer)
        risk = abs(trigger - stop)
        if risk > cfg.max_risk_atr * inputs.atr:
            rejections.append(f"FADE: risk {risk / inputs.atr:.2f} ATR above {cfg.max_risk_atr}")
            return []

        return [
            _Draft(
                direction=d,
                pattern=Pattern.FADE,
                trigger=trigger,
                zone=_zone(d, trigger, risk, toward_stop=0.15, away=0.05),
                stop=stop,
                alignment=45,
                structure=45,
                quality=60,
                rationale=["pattern=FADE", "countertrend=true", f"rsi={inputs.rsi:.1f} two-step turn, EMA9 reclaimed"],
            )
        ]

    # ------------------------------------------------------------------
    # Enrichment and synthesis
    # ------------------------------------------------------------------

    def _finalize(self, draft: _Draft, bars: List[Bar], inputs: _Inputs, ctx: SetupContext, *, early: bool = False,
                  not_actionable: Optional[str] = None) -> SetupCandidate:
        cfg = self.config
        d = draft.direction
        features = self._features(bars, inputs, ctx)
        features = replace(features, timing=compute_timing_signal(d, bars, vwap=inputs.vwap, atr=inputs.atr))
        flags = list(draft.flags)
        quality = draft.quality

        if ctx.regime.regime.direction is d.opposite:
            flags.append("COUNTER_REGIME")
        if _is_extended(d, inputs, cfg.extended_atr):
            flags.append("EXTENDED")
            quality -= 10
        if features.volume_regime is not VolumeRegime.NORMAL:
            flags.append(features.volume_regime.value)
        if features.volume_regime is VolumeRegime.THIN_TAPE:
            quality -= 10
        if inputs.rel_vol is not None and inputs.rel_vol < cfg.rel_vol_soft:
            quality = min(quality, cfg.low_volume_quality_cap)
        if self._late_session(ctx.ts):
            flags.append("LATE_SESSION")
        if self._rsi_exhausted(d, inputs):
            flags.append("RSI_EXHAUSTION")
        if early:
            flags.append("EARLY_IDEA")

        alignment = int(round(_clamp(draft.alignment)))
        structure = int(round(_clamp(draft.structure)))
        quality_i = int(round(_clamp(quality)))
        total = weighted_total(alignment, structure, quality_i)
        if draft.pattern is Pattern.FADE:
            total = min(cfg.fade_score_cap, total)
        if early:
            total = min(cfg.early_idea_max_score, total)
        total = int(_clamp(total))

        entry = draft.zone.mid
        targets = targets_from_r(d, entry, draft.stop)
        validate_geometry(d, entry, draft.stop, targets)

        suffix = "early" if early else draft.pattern.value.lower()
        return SetupCandidate(
            id=f"setup_{ctx.ts}_{suffix}_{d.value.lower()}",
            ts=ctx.ts,
            symbol=ctx.symbol,
            direction=d,
            pattern=draft.pattern,
            trigger_price=draft.trigger,
            entry_zone=draft.zone,
            stop=draft.stop,
            targets=targets,
            score=ScoreBreakdown(alignment, structure, quality_i, total),
            flags=tuple(dict.fromkeys(flags)),
            features=features,
            rationale=tuple(draft.rationale),
            grade=grade_from_score(total),
            early_idea=early,
            not_actionable_reason=not_actionable,
        )

    def _early_ideas(self, existing: Sequence[SetupCandidate], bars: List[Bar], inputs: _Inputs,
                     ctx: SetupContext, why: str) -> List[SetupCandidate]:
        cfg = self.config
        covered = {c.direction for c in existing}
        out: List[SetupCandidate] = []
        for d in (Direction.LONG, Direction.SHORT):
            if d in covered:
                continue
            trigger = inputs.close
            window = bars[-cfg.swing_lookback:]
            buffer = cfg.stop_buffer_atr * inputs.atr
            min_risk = cfg.min_risk_atr * inputs.atr
            if d is Direction.LONG:
                stop = min(min(b.low for b in window) - buffer, trigger - min_risk)
            else:
                stop = max(max(b.high for b in window) + buffer, trigger + min_risk)
            risk = abs(trigger - stop)
            agree = 0
            if ctx.direction.direction is d:
                agree += 1
            if ctx.tactical is not None and ctx.tactical.bias is d:
                agree += 1
            if ctx.regime.regime.direction is d:
                agree += 1
            pattern = Pattern.FADE if ctx.regime.regime.direction is d.opposite else Pattern.FOLLOW
            draft = _Draft(
                direction=d,
                pattern=pattern,
                trigger=trigger,
                zone=_zone(d, trigger, risk, toward_stop=0.10, away=0.10),
                stop=stop,
                alignment=25 + 15 * agree,
                structure=40,
                quality=40,
                rationale=["early idea", f"best available {d.value} read: {agree}/3 signals agree"],
            )
            try:
                out.append(self._finalize(draft, bars, inputs, ctx, early=True, not_actionable=why))
            except InvalidRiskGeometry as exc:
                log.debug("Discarding early %s idea: %s", d.value, exc)
        return out

    def _features(self, bars: List[Bar], inputs: _Inputs, ctx: SetupContext) -> FeatureBundle:
        a = inputs.atr
        ema9_slope = None
        if len(inputs.ema9_series) >= 2:
            ema9_slope = (inputs.ema9_series[-1] - inputs.ema9_series[0]) / a
        side = 1 if inputs.close >= inputs.ema9 else -1
        since = 0
        for b in reversed(bars[:-1]):
            if (1 if b.close >= inputs.ema9 else -1) != side:
                break
            since += 1
        return FeatureBundle(
            price_vs_vwap_atr=((inputs.close - inputs.vwap) / a) if inputs.vwap is not None else None,
            price_vs_ema9_atr=(inputs.close - inputs.ema9) / a,
            price_vs_ema20_atr=(inputs.close - inputs.ema20) / a,
            vwap_slope_pct=ctx.regime.vwap_slope_pct,
            ema9_slope_atr=ema9_slope,
            impulse_atr=bars[-1].range / a,
            bars_since_ema9_cross=since,
            rsi=inputs.rsi,
            rel_vol=inputs.rel_vol,
            volume_regime=volume_policy(inputs.rel_vol, self.config).regime,
            minutes_to_close=minutes_to_session_close(ctx.ts),
        )

    def _late_session(self, ts: int) -> bool:
        local = ny_time(ts)
        return (local.hour, local.minute) >= (self.config.late_session_hour, self.config.late_session_minute)

    def _rsi_exhausted(self, d: Direction, inputs: _Inputs) -> bool:
        cfg = self.config
        if inputs.rsi is None or inputs.vwap is None:
            return False
        stretched = d.sign * (inputs.close - inputs.vwap) > cfg.exhaustion_vwap_atr * inputs.atr
        if d is Direction.LONG:
            return stretched and inputs.rsi >= cfg.rsi_exhaustion_high
        return stretched and inputs.rsi <= cfg.rsi_exhaustion_low


def has_ema9_reclaim(d: Direction, bars: Sequence[Bar], ema9: Optional[float]) -> bool:
    """
    LONG: some recent close was below EMA9 and the last bar is a green close back
    above it that improves on the previous bar. SHORT mirrors it.
    """
    if ema9 is None:
        return False
    window = list(bars)[-8:]
    if len(window) < 4:
        return False
    last, prev = window[-1], window[-2]
    if d is Direction.LONG:
        dipped = any(b.close < ema9 for b in window)
        reclaimed = last.close > ema9 and last.close > last.open
        improving = last.close > prev.close or (prev.close < prev.open and last.close > last.open)
    else:
        dipped = any(b.close > ema9 for b in window)
        reclaimed = last.close < ema9 and last.close < last.open
        improving = last.close < prev.close or (prev.close > prev.open and last.close < last.open)
    return dipped and reclaimed and improving


def _zone(d: Direction, trigger: float, risk: float, *, toward_stop: float, away: float) -> EntryZone:
    if d is Direction.LONG:
        return EntryZone(trigger - toward_stop * risk, trigger + away * risk)
    return EntryZone(trigger - away * risk, trigger + toward_stop * risk)


def _side_bonus(d: Direction, price: float, level: Optional[float], good: int, bad: int) -> int:
    if level is None:
        return 0
    return good if d.sign * (price - level) >= 0 else bad


def _is_extended(d: Direction, inputs: _Inputs, k: float) -> bool:
    limit = k * inputs.atr
    for level in (inputs.vwap, inputs.ema20, inputs.ema9):
        if level is not None and d.sign * (inputs.close - level) > limit:
            return True
    return False

