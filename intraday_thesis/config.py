from __future__ import annotations

import os
from dataclasses import dataclass

from intraday_thesis.llm.config import LLMConfig


def _get_env(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None or value == "" else value


def _get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def _get_env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class AggregatorConfig:
    bucket_minutes: int = 5
    max_1m_bars: int = 600
    max_5m_bars: int = 300


@dataclass(frozen=True)
class RegimeConfig:
    min_bars: int = 30
    vwap_period: int = 30
    slope_lookback_bars: int = 10
    # Percent change of VWAP over the lookback needed to call the slope UP/DOWN.
    slope_threshold_pct: float = 0.02
    structure_lookback: int = 22
    pivot_width: int = 2


@dataclass(frozen=True)
class DirectionConfig:
    min_bars: int = 6
    window: int = 12
    atr_period: int = 14
    vwap_period: int = 30
    slope_atr: float = 0.6
    slope_pct: float = 0.15
    strong_slope_atr: float = 1.2
    strong_slope_pct: float = 0.30
    base_candle_ratio: float = 0.65
    strong_candle_ratio: float = 0.55
    # SHORT survives the bull-alignment veto when the down move is at least this strong.
    veto_override_slope_atr: float = 0.8
    veto_override_slope_pct: float = 0.30


@dataclass(frozen=True)
class TacticalConfig:
    min_bars: int = 6
    lookback: int = 5
    base_candle_ratio: float = 0.58
    relaxed_candle_ratio: float = 0.52
    slope_atr: float = 0.5
    momentum_slope_atr: float = 0.8
    shock_one_bar_atr: float = 0.6
    shock_two_bar_atr: float = 0.9
    shock_min_confidence: int = 80


@dataclass(frozen=True)
class SetupConfig:
    min_bars: int = 30
    atr_period: int = 14
    rsi_period: int = 14
    rel_vol_lookback: int = 20
    swing_lookback: int = 10
    fade_swing_lookback: int = 12
    stop_buffer_atr: float = 0.10
    min_risk_atr: float = 0.25
    max_risk_atr: float = 2.5
    rsi_oversold: float = 35.0
    rsi_overbought: float = 65.0
    rsi_exhaustion_high: float = 70.0
    rsi_exhaustion_low: float = 30.0
    exhaustion_vwap_atr: float = 1.0
    reclaim_band_atr: float = 0.25
    chop_override_slope_atr: float = 1.2
    extended_atr: float = 1.5
    # Relative-volume cutoffs; tuned empirically, not derived.
    rel_vol_thin: float = 0.45
    rel_vol_low: float = 0.70
    rel_vol_soft: float = 0.90
    rel_vol_spike: float = 1.5
    rel_vol_climax: float = 2.5
    low_volume_quality_cap: int = 70
    fade_score_cap: int = 65
    high_conviction_score: int = 60
    early_idea_max_score: int = 45
    late_session_hour: int = 15
    late_session_minute: int = 30


@dataclass(frozen=True)
class DebounceConfig:
    min_hold_s: int = 120
    confirm_s: int = 60


@dataclass(frozen=True)
class AdvisoryConfig:
    enabled: bool = False
    bars_window: int = 45
    strong_confidence: int = 80
    very_high_confidence: int = 90
    min_publish_gap_s: int = 180
    same_direction_refresh_s: int = 900
    confidence_jump: int = 12
    unstable_interval_s: int = 60
    stable_interval_s: int = 180
    vwap_deadband_atr: float = 0.15
    agreement_window: int = 4
    agreement_required: int = 3


@dataclass(frozen=True)
class OrchestratorConfig:
    min_candidates: int = 2
    # Minimum spacing between gateway selection calls while waiting for a thesis.
    selection_interval_s: int = 0
    gateway_timeout_s: float = 20.0
    target_r_multiples: tuple[float, float] = (1.0, 2.0)
    closed_bars_in_request: int = 20
    # In-trade context: stop counts as threatened within this many R of it.
    stop_threat_r: float = 0.25
    near_target_abs: float = 0.03


@dataclass(frozen=True)
class FeedConfig:
    next_bar_timeout_s: float = 60.0
    backoff_base_s: float = 5.0
    backoff_multiplier: float = 1.5
    backoff_cap_s: float = 60.0
    connection_limit_floor_s: float = 30.0


@dataclass(frozen=True)
class GovernorConfig:
    dedupe_ttl_s: int = 48 * 60 * 60
    dedupe_max_keys: int = 2500


@dataclass(frozen=True)
class EngineConfig:
    symbol: str = "SPY"
    instance_id: str = "thesis-engine-001"
    db_path: str | None = None
    aggregator: AggregatorConfig = AggregatorConfig()
    regime: RegimeConfig = RegimeConfig()
    direction: DirectionConfig = DirectionConfig()
    tactical: TacticalConfig = TacticalConfig()
    setups: SetupConfig = SetupConfig()
    debounce: DebounceConfig = DebounceConfig()
    advisory: AdvisoryConfig = AdvisoryConfig()
    orchestrator: OrchestratorConfig = OrchestratorConfig()
    feed: FeedConfig = FeedConfig()
    governor: GovernorConfig = GovernorConfig()
    llm: LLMConfig = LLMConfig()

    @staticmethod
    def from_env() -> "EngineConfig":
        return EngineConfig(
            symbol=_get_env("ENGINE_SYMBOL", "SPY").strip().upper(),
            instance_id=_get_env("ENGINE_INSTANCE_ID", "thesis-engine-001").strip(),
            db_path=(_get_env("ENGINE_DB_PATH", "").strip() or None),
            regime=RegimeConfig(
                slope_threshold_pct=_get_env_float("REGIME_SLOPE_THRESHOLD_PCT", 0.02),
            ),
            debounce=DebounceConfig(
                min_hold_s=_get_env_int("DEBOUNCE_MIN_HOLD_S", 120),
                confirm_s=_get_env_int("DEBOUNCE_CONFIRM_S", 60),
            ),
            advisory=AdvisoryConfig(
                enabled=_get_env_bool("ADVISORY_ENABLED", False),
            ),
            orchestrator=OrchestratorConfig(
                selection_interval_s=_get_env_int("ORCH_SELECTION_INTERVAL_S", 0),
                gateway_timeout_s=_get_env_float("ORCH_GATEWAY_TIMEOUT_S", 20.0),
            ),
            feed=FeedConfig(
                next_bar_timeout_s=_get_env_float("FEED_NEXT_BAR_TIMEOUT_S", 60.0),
                backoff_base_s=_get_env_float("FEED_BACKOFF_BASE_S", 5.0),
                backoff_multiplier=_get_env_float("FEED_BACKOFF_MULTIPLIER", 1.5),
                backoff_cap_s=_get_env_float("FEED_BACKOFF_CAP_S", 60.0),
                connection_limit_floor_s=_get_env_float("FEED_CONNECTION_LIMIT_FLOOR_S", 30.0),
            ),
            governor=GovernorConfig(
                dedupe_ttl_s=_get_env_int("DEDUPE_TTL_S", 48 * 60 * 60),
                dedupe_max_keys=_get_env_int("DEDUPE_MAX_KEYS", 2500),
            ),
            llm=LLMConfig.from_env(),
        )
