"""
Core type definitions for the thesis engine.

This module contains the enums and dataclasses shared by the aggregator,
the rule engines, the setup engine and the orchestrator.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple


class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def opposite(self) -> "Direction":
        return Direction.SHORT if self is Direction.LONG else Direction.LONG

    @property
    def sign(self) -> int:
        return 1 if self is Direction.LONG else -1


class Selection(str, Enum):
    """Answer of the decision gateway."""
    LONG = "LONG"
    SHORT = "SHORT"
    PASS = "PASS"

    def as_direction(self) -> Optional[Direction]:
        if self is Selection.PASS:
            return None
        return Direction(self.value)


class Regime(str, Enum):
    TREND_UP = "TREND_UP"
    TREND_DOWN = "TREND_DOWN"
    CHOP = "CHOP"              # No directional evidence
    TRANSITION = "TRANSITION"  # Evidence present but split

    @property
    def is_trend(self) -> bool:
        return self in (Regime.TREND_UP, Regime.TREND_DOWN)

    @property
    def direction(self) -> Optional[Direction]:
        if self is Regime.TREND_UP:
            return Direction.LONG
        if self is Regime.TREND_DOWN:
            return Direction.SHORT
        return None


class Structure(str, Enum):
    BULLISH = "BULLISH"  # HH + HL
    BEARISH = "BEARISH"  # LH + LL
    MIXED = "MIXED"


class VwapSlope(str, Enum):
    UP = "UP"
    DOWN = "DOWN"
    FLAT = "FLAT"


class BiasTier(str, Enum):
    CLEAR = "CLEAR"
    LEAN = "LEAN"
    NONE = "NONE"


class Pattern(str, Enum):
    FOLLOW = "FOLLOW"    # Trend continuation after an EMA9 reclaim
    RECLAIM = "RECLAIM"  # Rejection out of the VWAP/EMA20 value band
    FADE = "FADE"        # Countertrend turn from an RSI extreme


class VolumeRegime(str, Enum):
    THIN_TAPE = "THIN_TAPE"
    LOW_VOL = "LOW_VOL"
    NORMAL = "NORMAL"
    VOL_SPIKE = "VOL_SPIKE"
    CLIMAX_VOL = "CLIMAX_VOL"


class TimingState(str, Enum):
    WAITING = "WAITING"
    IMPULSE_DETECTED = "IMPULSE_DETECTED"
    PULLBACK_IN_PROGRESS = "PULLBACK_IN_PROGRESS"
    ENTRY_WINDOW_OPEN = "ENTRY_WINDOW_OPEN"


@dataclass(frozen=True)
class Bar:
    """One OHLCV sample. ``ts`` is epoch milliseconds."""
    ts: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    symbol: str = ""

    @property
    def is_green(self) -> bool:
        return self.close > self.open

    @property
    def is_red(self) -> bool:
        return self.close < self.open

    @property
    def range(self) -> float:
        return self.high - self.low


@dataclass
class FormingBar:
    """In-progress bucket; mutated in place until rollover."""
    start_ts: int
    end_ts: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    symbol: str = ""
    last_tick_ts: int = 0

    @property
    def progress_minutes(self) -> int:
        return int((self.last_tick_ts - self.start_ts) // 60_000) + 1

    def to_bar(self) -> Bar:
        return Bar(
            ts=self.end_ts,
            open=self.open,
            high=self.high,
            low=self.low,
            close=self.close,
            volume=self.volume,
            symbol=self.symbol,
        )


@dataclass(frozen=True)
class RegimeResult:
    regime: Regime
    reasons: Tuple[str, ...] = ()
    vwap: Optional[float] = None
    vwap_slope: VwapSlope = VwapSlope.FLAT
    vwap_slope_pct: Optional[float] = None
    structure: Structure = Structure.MIXED
    bull_votes: int = 0
    bear_votes: int = 0


@dataclass(frozen=True)
class DirectionInference:
    direction: Optional[Direction]
    confidence: int = 0  # 0-100
    reasons: Tuple[str, ...] = ()
    slope_atr: Optional[float] = None
    slope_pct: float = 0.0


@dataclass(frozen=True)
class TacticalBias:
    bias: Optional[Direction]
    tier: BiasTier = BiasTier.NONE
    score: int = 0  # signed
    confidence: int = 0  # 0-100
    reasons: Tuple[str, ...] = ()
    shock: bool = False
    shock_reason: Optional[str] = None


@dataclass(frozen=True)
class TacticalSnapshot:
    """What the tactical layer currently believes, as seen by the debouncer."""
    ts: int
    active_direction: Optional[Direction]
    tier: BiasTier = BiasTier.NONE
    confidence: int = 0
    shock: bool = False


@dataclass(frozen=True)
class EntryZone:
    low: float
    high: float

    @property
    def mid(self) -> float:
        return (self.low + self.high) / 2.0


@dataclass(frozen=True)
class Targets:
    t1: float
    t2: float
    t3: float

    def as_tuple(self) -> Tuple[float, float, float]:
        return (self.t1, self.t2, self.t3)


@dataclass(frozen=True)
class ScoreBreakdown:
    alignment: int
    structure: int
    quality: int
    total: int


@dataclass(frozen=True)
class TimingSignal:
    """Entry timing read. Each component is worth 0, 12 or 25 points."""
    state: TimingState = TimingState.WAITING
    score: int = 0
    break_acceptance: int = 0
    retest_quality: int = 0
    vwap_reaction: int = 0
    atr_normalization: int = 0
    impulse: bool = False
    reasons: Tuple[str, ...] = ()


@dataclass(frozen=True)
class FeatureBundle:
    """Context attached to each candidate. Distances are in ATR units, signed."""
    price_vs_vwap_atr: Optional[float] = None
    price_vs_ema9_atr: Optional[float] = None
    price_vs_ema20_atr: Optional[float] = None
    vwap_slope_pct: Optional[float] = None
    ema9_slope_atr: Optional[float] = None
    impulse_atr: Optional[float] = None
    bars_since_ema9_cross: Optional[int] = None
    rsi: Optional[float] = None
    rel_vol: Optional[float] = None
    volume_regime: VolumeRegime = VolumeRegime.NORMAL
    minutes_to_close: Optional[int] = None
    timing: Optional[TimingSignal] = None


@dataclass(frozen=True)
class SetupCandidate:
    id: str
    ts: int
    symbol: str
    direction: Direction
    pattern: Pattern
    trigger_price: float
    entry_zone: EntryZone
    stop: float
    targets: Targets
    score: ScoreBreakdown
    flags: Tuple[str, ...] = ()
    features: FeatureBundle = field(default_factory=FeatureBundle)
    rationale: Tuple[str, ...] = ()
    grade: str = "F"
    early_idea: bool = False
    not_actionable_reason: Optional[str] = None

    @property
    def entry(self) -> float:
        return self.entry_zone.mid

    @property
    def risk(self) -> float:
        return abs(self.entry - self.stop)


@dataclass(frozen=True)
class SetupResult:
    candidates: Tuple[SetupCandidate, ...] = ()
    top: Optional[SetupCandidate] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class TradeContext:
    """
    Where the last decision close sits inside an open trade.

    Informational only: exits are still decided on the close against the stop
    and the first target. Distances are in price units and positive while the
    level is still ahead; ``targets`` always holds three levels (T1..T3).
    """
    risk: float
    r_now: float
    targets: Tuple[float, ...]
    r_to_targets: Tuple[float, ...]
    distance_to_stop: float
    distance_to_targets: Tuple[float, ...]
    stop_threatened: bool = False
    near_target: Optional[str] = None
    target_hit: Optional[str] = None
    profit_pct: float = 0.0
