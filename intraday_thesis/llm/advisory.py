from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from intraday_thesis.config import AdvisoryConfig
from intraday_thesis.debounce import AgreementRing
from intraday_thesis.llm.gateway import DecisionGateway, DirectionOpinion, OpinionRequest
from intraday_thesis.types import BiasTier, TacticalBias

log = logging.getLogger(__name__)


@dataclass
class AdvisoryState:
    last_call_ms: Optional[int] = None
    last_published_label: Optional[str] = None
    last_published_conf: Optional[int] = None
    last_published_ms: Optional[int] = None
    latest: Optional[DirectionOpinion] = None
    latest_ms: Optional[int] = None
    ring: AgreementRing = field(default_factory=lambda: AgreementRing(4))

    def to_dict(self) -> dict:
        return {
            "last_call_ms": self.last_call_ms,
            "last_published_label": self.last_published_label,
            "last_published_conf": self.last_published_conf,
            "last_published_ms": self.last_published_ms,
            "recent_calls": self.ring.values(),
        }

    @staticmethod
    def from_dict(data: dict, *, ring_size: int = 4) -> "AdvisoryState":
        ring = AgreementRing(ring_size)
        for label in data.get("recent_calls") or []:
            ring.push(str(label))
        return AdvisoryState(
            last_call_ms=data.get("last_call_ms"),
            last_published_label=data.get("last_published_label"),
            last_published_conf=data.get("last_published_conf"),
            last_published_ms=data.get("last_published_ms"),
            ring=ring,
        )


@dataclass(frozen=True)
class AdvisoryDecision:
    called: bool
    published: bool
    opinion: Optional[DirectionOpinion] = None
    reason: str = ""


class LlmDirectionAdvisor:
    """
    Secondary advisory read from the LLM, separate from the thesis engine.

    Calls are throttled by tactical stability and skipped while price sits in
    the VWAP deadband. An opinion is published only when it is strong, the
    minimum gap since the last publish has passed, and it is either a flip
    (confirmed by recent agreement, very high confidence or an explicit
    override), a confidence jump, or a periodic refresh.
    """

    def __init__(self, gateway: DecisionGateway, config: Optional[AdvisoryConfig] = None,
                 state: Optional[AdvisoryState] = None) -> None:
        self.gateway = gateway
        self.config = config or AdvisoryConfig()
        self.state = state or AdvisoryState(ring=AgreementRing(self.config.agreement_window))

    def call_interval_ms(self, tactical: Optional[TacticalBias]) -> int:
        stable = tactical is not None and tactical.tier is BiasTier.CLEAR and not tactical.shock
        seconds = self.config.stable_interval_s if stable else self.config.unstable_interval_s
        return int(seconds * 1000)

    def maybe_update(
        self,
        ts: int,
        *,
        price: float,
        tactical: Optional[TacticalBias],
        vwap: Optional[float],
        atr: Optional[float],
        build_request: Callable[[], OpinionRequest],
    ) -> AdvisoryDecision:
        cfg = self.config
        st = self.state
        if not self.gateway.enabled:
            return AdvisoryDecision(False, False, reason="gateway disabled")

        if st.last_call_ms is not None and ts - st.last_call_ms < self.call_interval_ms(tactical):
            return AdvisoryDecision(False, False, reason="throttled")

        if vwap is not None and atr and abs(price - vwap) < cfg.vwap_deadband_atr * atr:
            return AdvisoryDecision(False, False, reason="inside VWAP deadband")

        st.last_call_ms = ts
        opinion = self.gateway.direction_opinion(build_request())
        st.latest, st.latest_ms = opinion, ts
        st.ring.push(opinion.label)

        published, why = self._should_publish(ts, opinion)
        if published:
            st.last_published_label = opinion.label
            st.last_published_conf = opinion.confidence
            st.last_published_ms = ts
            log.info("Advisory published %s (%d)", opinion.label, opinion.confidence)
        return AdvisoryDecision(True, published, opinion, why)

    def _should_publish(self, ts: int, opinion: DirectionOpinion) -> tuple[bool, str]:
        cfg = self.config
        st = self.state
        if opinion.direction is None or opinion.confidence < cfg.strong_confidence:
            return False, "not strong"
        if st.last_published_ms is not None and ts - st.last_published_ms < cfg.min_publish_gap_s * 1000:
            return False, "publish gap"
        if st.last_published_label is None:
            return True, "first strong read"

        if opinion.label != st.last_published_label:
            if st.ring.agrees(opinion.label, cfg.agreement_required):
                return True, "flip confirmed by agreement"
            if opinion.confidence >= cfg.very_high_confidence:
                return True, "flip on very high confidence"
            if opinion.override:
                return True, "flip on override"
            return False, "flip unconfirmed"

        if st.last_published_ms is not None and ts - st.last_published_ms >= cfg.same_direction_refresh_s * 1000:
            return True, "refresh"
        if st.last_published_conf is not None and opinion.confidence - st.last_published_conf >= cfg.confidence_jump:
            return True, "confidence jump"
        return False, "no change"
