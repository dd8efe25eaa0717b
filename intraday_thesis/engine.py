from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional

from intraday_thesis.config import EngineConfig
from intraday_thesis.datafeed.aggregator import BarAggregator
from intraday_thesis.datafeed.feed import BarFeed
from intraday_thesis.errors import FeedExhausted
from intraday_thesis.events import DomainEvent, EventPublisher, EventType, SetupCandidates, make_event
from intraday_thesis.governor import MessageGovernor
from intraday_thesis.indicators import atr, session_vwap, vwap
from intraday_thesis.llm.advisory import LlmDirectionAdvisor
from intraday_thesis.llm.gateway import DecisionGateway, OpinionRequest
from intraday_thesis.orchestrator import Orchestrator
from intraday_thesis.persistence import SNAPSHOT_VERSION, SqliteStore
from intraday_thesis.rules.direction import DirectionInferenceEngine, TacticalBiasEngine
from intraday_thesis.rules.regime import RegimeClassifier
from intraday_thesis.rules.setups import SetupContext, SetupEngine
from intraday_thesis.types import Bar, RegimeResult, SetupResult, TacticalBias, TacticalSnapshot

log = logging.getLogger(__name__)


@dataclass
class Engine:
    """
    Per-symbol ingest pipeline.

    Each 1-minute bar is processed to completion before the next is accepted:
    aggregate, classify, score setups on every closed 5-minute bar, step the
    orchestrator, then publish the resulting events in order.
    """

    config: EngineConfig
    gateway: DecisionGateway
    publisher: EventPublisher
    governor: MessageGovernor
    orchestrator: Orchestrator
    store: Optional[SqliteStore] = None

    aggregator: BarAggregator = field(init=False)
    regime_classifier: RegimeClassifier = field(init=False)
    direction_engine: DirectionInferenceEngine = field(init=False)
    tactical_engine: TacticalBiasEngine = field(init=False)
    setup_engine: SetupEngine = field(init=False)

    bars_1m: Deque[Bar] = field(init=False)
    bars_5m: Deque[Bar] = field(init=False)
    last_regime: Optional[RegimeResult] = field(default=None, init=False)
    last_setups: Optional[SetupResult] = field(default=None, init=False)
    last_tactical: Optional[TacticalBias] = field(default=None, init=False)
    tactical_snapshot: Optional[TacticalSnapshot] = field(default=None, init=False)
    last_ts: Optional[int] = field(default=None, init=False)
    _run_id: Optional[int] = field(default=None, init=False)

    def __post_init__(self) -> None:
        cfg = self.config
        self.aggregator = BarAggregator(cfg.aggregator.bucket_minutes)
        self.regime_classifier = RegimeClassifier(cfg.regime)
        self.direction_engine = DirectionInferenceEngine(cfg.direction)
        self.tactical_engine = TacticalBiasEngine(
            cfg.tactical, atr_period=cfg.direction.atr_period, vwap_period=cfg.direction.vwap_period,
        )
        self.setup_engine = SetupEngine(cfg.setups)
        self.bars_1m = deque(maxlen=cfg.aggregator.max_1m_bars)
        self.bars_5m = deque(maxlen=cfg.aggregator.max_5m_bars)

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        *,
        gateway: Optional[DecisionGateway] = None,
        store: Optional[SqliteStore] = None,
    ) -> "Engine":
        gateway = gateway or DecisionGateway.from_config(config.llm, timeout_s=config.orchestrator.gateway_timeout_s)
        if store is None and config.db_path:
            store = SqliteStore(config.db_path)
        governor = MessageGovernor(config.governor)
        advisor = LlmDirectionAdvisor(gateway, config.advisory) if config.advisory.enabled else None
        orchestrator = Orchestrator(
            gateway=gateway,
            instance_id=config.instance_id,
            symbol=config.symbol,
            config=config.orchestrator,
            debounce=config.debounce,
            advisor=advisor,
        )
        engine = cls(
            config=config,
            gateway=gateway,
            publisher=EventPublisher(governor=governor),
            governor=governor,
            orchestrator=orchestrator,
            store=store,
        )
        if store is not None:
            snapshot = store.load_snapshot(config.instance_id)
            if snapshot:
                engine.restore(snapshot)
        return engine

    # ------------------------------------------------------------------
    # Per-tick pipeline
    # ------------------------------------------------------------------

    def process_bar(self, bar: Bar) -> List[DomainEvent]:
        events: List[DomainEvent] = []
        if self.last_ts is not None and bar.ts <= self.last_ts:
            log.warning("Ignoring stale 1m bar ts=%s (last %s)", bar.ts, self.last_ts)
            return events

        closed = self.aggregator.push_1m(bar)
        if self.aggregator.forming is None or self.aggregator.forming.last_tick_ts != bar.ts:
            # Rejected by the aggregator (non-finite close).
            return events
        self.last_ts = bar.ts
        self.bars_1m.append(bar)

        tactical = self.tactical_engine.infer(self.bars_1m)
        self.last_tactical = tactical
        self.tactical_snapshot = self.orchestrator.apply_tactical_debounce(TacticalSnapshot(
            ts=bar.ts,
            active_direction=tactical.bias,
            tier=tactical.tier,
            confidence=tactical.confidence,
            shock=tactical.shock,
        ))

        if closed is not None:
            events.extend(self._on_decision_bar(closed, tactical))

        if self.orchestrator.advisor is not None:
            events.extend(self.orchestrator.on_minute(
                bar,
                tactical=tactical,
                vwap=session_vwap(self.bars_1m) or vwap(self.bars_1m, self.config.regime.vwap_period),
                atr=atr(self.bars_5m, self.config.direction.atr_period),
                build_request=lambda: self._opinion_request(bar),
            ))

        self._emit(events)
        self._save_snapshot()
        return events

    def _on_decision_bar(self, closed: Bar, tactical: TacticalBias) -> List[DomainEvent]:
        cfg = self.config
        self.bars_5m.append(closed)
        bars = list(self.bars_5m)

        regime = self.regime_classifier.classify(bars)
        direction = self.direction_engine.infer(bars)
        setups = self.setup_engine.evaluate(SetupContext(
            ts=closed.ts,
            symbol=cfg.symbol,
            bars=bars,
            regime=regime,
            direction=direction,
            tactical=tactical,
        ))
        self.last_regime, self.last_setups = regime, setups
        log.debug(
            "5m close ts=%s regime=%s direction=%s candidates=%d",
            closed.ts, regime.regime.value, direction.direction, len(setups.candidates),
        )

        events: List[DomainEvent] = []
        if setups.candidates:
            events.append(make_event(EventType.SETUP_CANDIDATES, closed.ts, cfg.instance_id, SetupCandidates(
                symbol=cfg.symbol,
                regime=regime.regime.value,
                candidates=setups.candidates,
                top_id=setups.top.id if setups.top else None,
                reason=setups.reason,
            )))
        events.extend(self.orchestrator.on_closed_bar(
            closed,
            closed_bars=bars,
            forming=self.aggregator.forming,
            setups=setups,
            regime=regime,
            direction=direction.direction,
            tactical=tactical,
        ))
        return events

    def _opinion_request(self, bar: Bar) -> OpinionRequest:
        cfg = self.config
        return OpinionRequest(
            ts=bar.ts,
            symbol=cfg.symbol,
            price=bar.close,
            closed_bars=tuple(list(self.bars_5m)[-cfg.orchestrator.closed_bars_in_request:]),
            forming_bar=self.aggregator.forming,
            bars_1m=tuple(list(self.bars_1m)[-cfg.advisory.bars_window:]),
            bot_state=self.orchestrator.bot_state(bar.close),
        )

    def _emit(self, events: List[DomainEvent]) -> None:
        for event in events:
            if self.publisher.publish(event) and self.store is not None and self._run_id is not None:
                self.store.log_event(self._run_id, event)

    # ------------------------------------------------------------------
    # Ingest loop
    # ------------------------------------------------------------------

    def run(self, feed: BarFeed) -> int:
        """Pull bars until the feed is exhausted. Returns the number of bars processed."""
        timeout_s = self.config.feed.next_bar_timeout_s
        processed = 0
        if self.store is not None:
            self._run_id = self.store.start_run(self.config)
        try:
            while True:
                try:
                    bar = feed.next_bar(timeout_s)
                except FeedExhausted as exc:
                    log.info("Bar feed exhausted: %s", exc)
                    break
                if bar is None:
                    log.warning("No bar received within %.0fs; still waiting", timeout_s)
                    continue
                try:
                    self.process_bar(bar)
                    processed += 1
                except Exception as exc:
                    log.exception("Tick processing failed for bar ts=%s", bar.ts)
                    if self.store is not None and self._run_id is not None:
                        self.store.log_error(self._run_id, where="process_bar", message=str(exc), bar_ts=bar.ts)
        finally:
            self.publisher.flush()
            if self.store is not None and self._run_id is not None:
                self.store.end_run(self._run_id)
            self._run_id = None
        return processed

    def close(self) -> None:
        self.publisher.close()
        self.gateway.close()
        if self.store is not None:
            self.store.close()
            self.store = None

    # ------------------------------------------------------------------
    # Snapshot / restore
    # ------------------------------------------------------------------

    def snapshot(self) -> dict:
        out = {
            "version": SNAPSHOT_VERSION,
            "instance_id": self.config.instance_id,
            "orchestrator": self.orchestrator.snapshot(),
            "governor": self.governor.export_state(),
        }
        # Before the first bar the store stamps wall-clock time instead.
        if self.last_ts is not None:
            out["saved_at"] = self.last_ts
        return out

    def restore(self, snapshot: dict) -> None:
        if snapshot.get("version") != SNAPSHOT_VERSION:
            log.warning("Ignoring snapshot with unsupported version %r", snapshot.get("version"))
            return
        self.orchestrator.restore(snapshot.get("orchestrator") or {})
        self.governor = MessageGovernor(self.config.governor, initial_state=snapshot.get("governor"))
        self.publisher.governor = self.governor
        log.info("Restored state for %s: phase=%s", self.config.instance_id, self.orchestrator.phase.value)

    def _save_snapshot(self) -> None:
        if self.store is not None:
            self.store.save_snapshot(self.config.instance_id, self.snapshot())
