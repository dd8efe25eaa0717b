from __future__ import annotations

import dataclasses
import logging
from typing import Callable, List, Optional, Sequence

from intraday_thesis.config import DebounceConfig, OrchestratorConfig
from intraday_thesis.debounce import DebounceState, DirectionDebouncer
from intraday_thesis.events import (
    DomainEvent,
    EntryTriggered,
    EventType,
    LlmDirectionPublished,
    MindStateUpdated,
    PullbackCaptured,
    ThesisCleared,
    ThesisEstablished,
    TradeExited,
    make_event,
)
from intraday_thesis.llm.advisory import AdvisoryState, LlmDirectionAdvisor
from intraday_thesis.llm.gateway import DecisionGateway, OpinionRequest, SelectionRequest, candidates_for_request
from intraday_thesis.orchestrator.state import TRANSITIONS, MinimalExecutionState, Phase
from intraday_thesis.rules.trade import trade_context
from intraday_thesis.types import (
    Bar,
    Direction,
    FormingBar,
    RegimeResult,
    Selection,
    SetupCandidate,
    SetupResult,
    TacticalBias,
    TacticalSnapshot,
    TradeContext,
)

log = logging.getLogger(__name__)

# Wait reasons surfaced in MIND_STATE_UPDATED and persisted with the state.
WAIT_CANDIDATES = "waiting_for_candidates"
WAIT_ACTIONABLE = "no_actionable_candidate"
WAIT_SELECTION_COOLDOWN = "selection_cooldown"
WAIT_LLM_PASS = "llm_pass"
WAIT_DEBOUNCE = "direction_debounce"
WAIT_PULLBACK = "waiting_for_pullback"
WAIT_ENTRY = "waiting_for_entry"
IN_TRADE = "in_trade"
THESIS_INVALIDATED = "thesis_invalidated"
STOPPED_OUT = "stopped_out"
TARGET_HIT = "target_hit"
STATE_INCOMPLETE = "state_incomplete"


class Orchestrator:
    """
    Execution phase state machine.

    WAITING_FOR_THESIS -> WAITING_FOR_PULLBACK -> WAITING_FOR_ENTRY -> IN_TRADE
    -> WAITING_FOR_THESIS. Advances at most one phase per closed decision bar.
    All exits are judged on the bar close; wicks through stop or target are
    ignored.
    """

    def __init__(
        self,
        *,
        gateway: DecisionGateway,
        instance_id: str,
        symbol: str,
        config: Optional[OrchestratorConfig] = None,
        debounce: Optional[DebounceConfig] = None,
        advisor: Optional[LlmDirectionAdvisor] = None,
        state: Optional[MinimalExecutionState] = None,
    ) -> None:
        self.gateway = gateway
        self.instance_id = instance_id
        self.symbol = symbol
        self.config = config or OrchestratorConfig()
        self.debounce_config = debounce or DebounceConfig()
        self.advisor = advisor
        self.state = state or MinimalExecutionState()
        self.debouncer = self._debouncer(self.state.debounce)
        self.tactical_debouncer = self._debouncer(DebounceState())

    def _debouncer(self, state: DebounceState) -> DirectionDebouncer:
        return DirectionDebouncer(
            min_hold_ms=self.debounce_config.min_hold_s * 1000,
            confirm_ms=self.debounce_config.confirm_s * 1000,
            state=state,
        )

    @property
    def phase(self) -> Phase:
        return self.state.phase

    # ------------------------------------------------------------------
    # Decision bars
    # ------------------------------------------------------------------

    def on_closed_bar(
        self,
        bar: Bar,
        *,
        closed_bars: Sequence[Bar],
        forming: Optional[FormingBar] = None,
        setups: Optional[SetupResult] = None,
        regime: Optional[RegimeResult] = None,
        direction: Optional[Direction] = None,
        tactical: Optional[TacticalBias] = None,
    ) -> List[DomainEvent]:
        setups = setups or SetupResult()
        events: List[DomainEvent] = []
        st = self.state
        phase = st.phase

        if phase is Phase.WAITING_FOR_THESIS:
            events.extend(self._seek_thesis(bar, closed_bars, forming, setups))
        elif phase in (Phase.WAITING_FOR_PULLBACK, Phase.WAITING_FOR_ENTRY) and self._invalidated(bar):
            events.append(self._clear_thesis(bar, THESIS_INVALIDATED))
        elif phase is Phase.WAITING_FOR_PULLBACK:
            events.extend(self._seek_pullback(bar, closed_bars))
        elif phase is Phase.WAITING_FOR_ENTRY:
            events.extend(self._seek_entry(bar))
        elif phase is Phase.IN_TRADE:
            events.extend(self._manage_trade(bar))

        events.append(self._mind_state(bar, setups, regime, direction, tactical))
        return events

    def _seek_thesis(self, bar: Bar, closed_bars: Sequence[Bar], forming: Optional[FormingBar],
                     setups: SetupResult) -> List[DomainEvent]:
        st = self.state
        cfg = self.config
        candidates = list(setups.candidates)

        if len(candidates) < cfg.min_candidates:
            st.wait_reason = WAIT_CANDIDATES
            return []
        if all(c.early_idea for c in candidates):
            st.wait_reason = WAIT_ACTIONABLE
            return []
        interval_ms = int(cfg.selection_interval_s) * 1000
        if interval_ms and st.last_selection_ts is not None and bar.ts - st.last_selection_ts < interval_ms:
            st.wait_reason = WAIT_SELECTION_COOLDOWN
            return []

        request = SelectionRequest(
            ts=bar.ts,
            symbol=self.symbol,
            closed_bars=tuple(closed_bars[-cfg.closed_bars_in_request:]),
            forming_bar=forming,
            candidates=candidates_for_request(candidates),
        )
        result = self.gateway.select(request)
        st.last_selection_ts = bar.ts

        if result.selection is Selection.PASS:
            st.clear_pullback_and_entry()
            st.wait_reason = WAIT_LLM_PASS
            log.info("Selection PASS at ts=%s: %s", bar.ts, result.reason)
            return []

        wanted = result.selection.as_direction()
        accepted = self.debouncer.propose(wanted, bar.ts)
        if accepted is not wanted:
            st.clear_pullback_and_entry()
            st.wait_reason = WAIT_DEBOUNCE
            return []

        candidate = _best_for(candidates, wanted, setups.top)
        st.play_id = f"play_{bar.ts}"
        st.thesis_direction = wanted
        st.thesis_confidence = max(0, min(100, int(result.confidence)))
        st.thesis_price = bar.close
        st.thesis_ts = bar.ts
        st.thesis_stop = candidate.stop if candidate else None
        st.active_candidate_id = candidate.id if candidate else None
        st.clear_pullback_and_entry()
        self._transition(Phase.WAITING_FOR_PULLBACK)
        st.wait_reason = WAIT_PULLBACK
        log.info("Thesis %s (%d) at ts=%s", wanted.value, st.thesis_confidence, bar.ts)
        return [self._event(EventType.THESIS_ESTABLISHED, bar.ts, ThesisEstablished(
            play_id=st.play_id,
            symbol=self.symbol,
            direction=wanted.value,
            confidence=st.thesis_confidence,
            price=bar.close,
            reason=result.reason,
            candidate_id=st.active_candidate_id,
        ))]

    def _invalidated(self, bar: Bar) -> bool:
        st = self.state
        if st.thesis_stop is None or st.thesis_direction is None:
            return False
        if st.thesis_direction is Direction.LONG:
            return bar.close < st.thesis_stop
        return bar.close > st.thesis_stop

    def _seek_pullback(self, bar: Bar, closed_bars: Sequence[Bar]) -> List[DomainEvent]:
        st = self.state
        prev = closed_bars[-2] if len(closed_bars) >= 2 else None
        if not _is_pullback(bar, prev, st.thesis_direction):
            return []
        st.pullback_high, st.pullback_low, st.pullback_ts = bar.high, bar.low, bar.ts
        self._transition(Phase.WAITING_FOR_ENTRY)
        st.wait_reason = WAIT_ENTRY
        return [self._event(EventType.PULLBACK_CAPTURED, bar.ts, PullbackCaptured(
            play_id=st.play_id or f"play_{bar.ts}",
            symbol=self.symbol,
            direction=st.thesis_direction.value,
            pullback_high=bar.high,
            pullback_low=bar.low,
            price=bar.close,
        ))]

    def _seek_entry(self, bar: Bar) -> List[DomainEvent]:
        st = self.state
        d = st.thesis_direction
        if d is None or st.pullback_high is None or st.pullback_low is None:
            return [self._drop_incomplete(bar)]

        if d is Direction.LONG:
            triggered = bar.close > st.pullback_high
            deeper = bar.low < st.pullback_low
            stop = st.pullback_low
        else:
            triggered = bar.close < st.pullback_low
            deeper = bar.high > st.pullback_high
            stop = st.pullback_high

        if not triggered:
            if deeper:
                # The pullback is still extending; re-anchor on this bar.
                st.pullback_high, st.pullback_low, st.pullback_ts = bar.high, bar.low, bar.ts
            return []

        risk = abs(bar.close - stop)
        if risk <= 0:
            return []
        st.entry_price = bar.close
        st.entry_ts = bar.ts
        st.stop_price = stop
        st.targets = [bar.close + d.sign * r * risk for r in self.config.target_r_multiples]
        self._transition(Phase.IN_TRADE)
        st.wait_reason = IN_TRADE
        log.info("Entry %s at %.4f stop %.4f targets %s", d.value, bar.close, stop, st.targets)
        return [self._event(EventType.ENTRY_TRIGGERED, bar.ts, EntryTriggered(
            play_id=st.play_id or f"play_{bar.ts}",
            symbol=self.symbol,
            direction=d.value,
            entry_price=bar.close,
            stop_price=stop,
            targets=tuple(st.targets),
        ))]

    def _manage_trade(self, bar: Bar) -> List[DomainEvent]:
        st = self.state
        d = st.thesis_direction
        if d is None or st.stop_price is None or st.entry_price is None:
            return [self._drop_incomplete(bar)]
        close = bar.close
        t1 = st.targets[0] if st.targets else None

        if (close < st.stop_price) if d is Direction.LONG else (close > st.stop_price):
            reason = STOPPED_OUT
        elif t1 is not None and ((close >= t1) if d is Direction.LONG else (close <= t1)):
            reason = TARGET_HIT
        else:
            return []

        risk = abs(st.entry_price - st.stop_price)
        r_mult = d.sign * (close - st.entry_price) / risk if risk > 0 else None
        event = self._event(EventType.TRADE_EXITED, bar.ts, TradeExited(
            play_id=st.play_id or f"play_{bar.ts}",
            symbol=self.symbol,
            direction=d.value,
            reason=reason,
            exit_price=close,
            entry_price=st.entry_price,
            stop_price=st.stop_price,
            r_multiple=round(r_mult, 3) if r_mult is not None else None,
        ))
        log.info("Trade exited (%s) at %.4f", reason, close)
        st.clear_thesis()
        self._transition(Phase.WAITING_FOR_THESIS)
        st.wait_reason = reason
        return [event]

    def _clear_thesis(self, bar: Bar, reason: str) -> DomainEvent:
        st = self.state
        previous = st.thesis_direction.value if st.thesis_direction else None
        play_id = st.play_id
        st.clear_thesis()
        self._transition(Phase.WAITING_FOR_THESIS)
        st.wait_reason = reason
        log.info("Thesis cleared (%s) at ts=%s", reason, bar.ts)
        return self._event(EventType.THESIS_CLEARED, bar.ts, ThesisCleared(
            symbol=self.symbol,
            reason=reason,
            previous_direction=previous,
            play_id=play_id,
        ))

    def _drop_incomplete(self, bar: Bar) -> DomainEvent:
        log.warning("Phase %s missing %s at ts=%s; clearing thesis",
                    self.state.phase.value, ", ".join(self.state.missing_fields()), bar.ts)
        return self._clear_thesis(bar, STATE_INCOMPLETE)

    def _transition(self, new_phase: Phase) -> None:
        old = self.state.phase
        if new_phase not in TRANSITIONS[old]:
            raise RuntimeError(f"Illegal phase transition {old.value} -> {new_phase.value}")
        if new_phase is not old:
            log.debug("Phase %s -> %s", old.value, new_phase.value)
        self.state.phase = new_phase

    def _mind_state(self, bar: Bar, setups: SetupResult, regime: Optional[RegimeResult],
                    direction: Optional[Direction], tactical: Optional[TacticalBias]) -> DomainEvent:
        st = self.state
        candidate = None
        if st.active_candidate_id:
            candidate = next((c for c in setups.candidates if c.id == st.active_candidate_id), None)
        if candidate is None:
            candidate = setups.top
        return self._event(EventType.MIND_STATE_UPDATED, bar.ts, MindStateUpdated(
            symbol=self.symbol,
            price=bar.close,
            phase=st.phase.value,
            regime=regime.regime.value if regime else None,
            direction=direction.value if direction else None,
            tactical_bias=tactical.bias.value if tactical and tactical.bias else None,
            thesis_direction=st.thesis_direction.value if st.thesis_direction else None,
            thesis_confidence=st.thesis_confidence,
            thesis_ts=st.thesis_ts,
            candidate=candidate,
            candidate_count=len(setups.candidates),
            wait_reason=st.wait_reason,
            play_id=st.play_id,
            trade=self.in_trade_context(bar.close),
        ))

    def in_trade_context(self, close: float) -> Optional[TradeContext]:
        st = self.state
        if st.phase is not Phase.IN_TRADE or st.missing_fields():
            return None
        return trade_context(
            st.thesis_direction, close,
            entry=st.entry_price, stop=st.stop_price, targets=st.targets,
            threat_r=self.config.stop_threat_r, near_abs=self.config.near_target_abs,
        )

    # ------------------------------------------------------------------
    # Tactical debounce and advisory (1m cadence)
    # ------------------------------------------------------------------

    def apply_tactical_debounce(self, snapshot: TacticalSnapshot, ts: Optional[int] = None) -> TacticalSnapshot:
        accepted = self.tactical_debouncer.propose(snapshot.active_direction, snapshot.ts if ts is None else ts)
        if accepted is snapshot.active_direction:
            return snapshot
        return dataclasses.replace(snapshot, active_direction=accepted)

    def on_minute(
        self,
        bar: Bar,
        *,
        tactical: Optional[TacticalBias],
        vwap: Optional[float],
        atr: Optional[float],
        build_request: Callable[[], OpinionRequest],
    ) -> List[DomainEvent]:
        if self.advisor is None:
            return []
        decision = self.advisor.maybe_update(
            bar.ts, price=bar.close, tactical=tactical, vwap=vwap, atr=atr, build_request=build_request,
        )
        if not decision.published or decision.opinion is None:
            return []
        op = decision.opinion
        return [self._event(EventType.LLM_DIRECTION_PUBLISHED, bar.ts, LlmDirectionPublished(
            symbol=self.symbol,
            direction=op.label,
            confidence=op.confidence,
            reason=decision.reason,
            coach_line=op.coach_line,
            next_level=op.next_level,
            likelihood_hit=op.likelihood_hit,
        ))]

    def bot_state(self, price: Optional[float] = None) -> dict:
        st = self.state
        out = {
            "phase": st.phase.value,
            "thesisDirection": st.thesis_direction.value if st.thesis_direction else None,
            "thesisConfidence": st.thesis_confidence,
            "entryPrice": st.entry_price,
            "stopPrice": st.stop_price,
            "targets": list(st.targets),
            "waitReason": st.wait_reason,
        }
        if price is not None:
            out["trade"] = self.in_trade_context(price)
        return out

    # ------------------------------------------------------------------
    # Snapshot / restore
    # ------------------------------------------------------------------

    def snapshot(self) -> dict:
        out = {
            "execution": self.state.to_dict(),
            "tactical_debounce": self.tactical_debouncer.state.to_dict(),
        }
        if self.advisor is not None:
            out["advisory"] = self.advisor.state.to_dict()
        return out

    def restore(self, data: dict) -> None:
        self.state = MinimalExecutionState.from_dict(data.get("execution") or {})
        self.debouncer = self._debouncer(self.state.debounce)
        self.tactical_debouncer = self._debouncer(DebounceState.from_dict(data.get("tactical_debounce") or {}))
        if self.advisor is not None and data.get("advisory"):
            self.advisor.state = AdvisoryState.from_dict(
                data["advisory"], ring_size=self.advisor.config.agreement_window,
            )

    def _event(self, etype: EventType, ts: int, data) -> DomainEvent:
        return make_event(etype, ts, self.instance_id, data)


def _is_pullback(bar: Bar, prev: Optional[Bar], direction: Optional[Direction]) -> bool:
    if direction is Direction.LONG:
        return bar.is_red or (prev is not None and bar.low < prev.low)
    if direction is Direction.SHORT:
        return bar.is_green or (prev is not None and bar.high > prev.high)
    return False


def _best_for(candidates: Sequence[SetupCandidate], direction: Direction,
              top: Optional[SetupCandidate]) -> Optional[SetupCandidate]:
    if top is not None and top.direction is direction and not top.early_idea:
        return top
    same = [c for c in candidates if c.direction is direction]
    actionable = [c for c in same if not c.early_idea]
    pool = actionable or same
    if not pool:
        return None
    return max(pool, key=lambda c: c.score.total)
