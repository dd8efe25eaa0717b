from __future__ import annotations

import json
import logging
import unittest

from intraday_thesis.events import EventType
from intraday_thesis.llm.gateway import DecisionGateway
from intraday_thesis.llm.gemini import ScriptedClient
from intraday_thesis.orchestrator import Orchestrator, Phase
from intraday_thesis.orchestrator.state import MinimalExecutionState
from intraday_thesis.types import Direction, SetupResult
from tests.helpers import FIVE_MIN_MS, SESSION_OPEN_MS, bar, candidate, two_candidates

logging.disable(logging.CRITICAL)

T = SESSION_OPEN_MS + 6 * FIVE_MIN_MS

LONG_REPLY = json.dumps({"selected": "LONG", "confidence": 80, "reason": "trend continuation"})
SHORT_REPLY = json.dumps({"selected": "SHORT", "confidence": 77, "reason": "failed breakout"})
PASS_REPLY = json.dumps({"selected": "PASS", "confidence": 30, "reason": "no edge"})


def _types(events):
    return [e.type for e in events]


class OrchestratorHarness:
    def __init__(self, reply: str = LONG_REPLY) -> None:
        self.client = ScriptedClient(replies=[reply])
        self.orch = Orchestrator(gateway=DecisionGateway(self.client), instance_id="test-1", symbol="SPY")
        self.bars = []

    def step(self, o, h, l, c, *, setups=None):
        ts = T + len(self.bars) * FIVE_MIN_MS
        b = bar(ts, o, h, l, c)
        self.bars.append(b)
        return self.orch.on_closed_bar(b, closed_bars=list(self.bars), setups=setups)

    def establish(self):
        return self.step(99.8, 100.1, 99.7, 100.0, setups=two_candidates(T))


class TestThesisSelection(unittest.TestCase):
    def test_thesis_established_from_selection(self) -> None:
        h = OrchestratorHarness()
        events = h.establish()
        self.assertEqual(_types(events), [EventType.THESIS_ESTABLISHED, EventType.MIND_STATE_UPDATED])
        est = events[0].data
        self.assertEqual(est.direction, "LONG")
        self.assertEqual(est.confidence, 80)
        self.assertEqual(est.play_id, f"play_{T}")
        st = h.orch.state
        self.assertIs(st.phase, Phase.WAITING_FOR_PULLBACK)
        self.assertEqual(st.thesis_stop, 99.0)
        self.assertEqual(st.wait_reason, "waiting_for_pullback")
        self.assertEqual(events[-1].data.phase, "WAITING_FOR_PULLBACK")
        self.assertEqual(len(h.client.prompts), 1)

    def test_pass_clears_pullback_and_entry_but_keeps_phase(self) -> None:
        h = OrchestratorHarness(PASS_REPLY)
        st = h.orch.state
        st.pullback_high, st.pullback_low, st.entry_price, st.targets = 101.0, 100.0, 100.5, [101.0]
        events = h.establish()
        self.assertEqual(_types(events), [EventType.MIND_STATE_UPDATED])
        self.assertIs(st.phase, Phase.WAITING_FOR_THESIS)
        self.assertIsNone(st.pullback_high)
        self.assertIsNone(st.pullback_low)
        self.assertIsNone(st.entry_price)
        self.assertEqual(st.targets, [])
        self.assertEqual(st.wait_reason, "llm_pass")

    def test_single_candidate_does_not_call_gateway(self) -> None:
        h = OrchestratorHarness()
        only = candidate(Direction.LONG, ts=T)
        h.step(99.8, 100.1, 99.7, 100.0, setups=SetupResult(candidates=(only,), top=only))
        self.assertEqual(h.client.prompts, [])
        self.assertEqual(h.orch.state.wait_reason, "waiting_for_candidates")

    def test_early_ideas_only_do_not_call_gateway(self) -> None:
        h = OrchestratorHarness()
        ideas = (
            candidate(Direction.LONG, ts=T, early_idea=True),
            candidate(Direction.SHORT, ts=T, stop=101.0, early_idea=True),
        )
        h.step(99.8, 100.1, 99.7, 100.0, setups=SetupResult(candidates=ideas, top=ideas[0]))
        self.assertEqual(h.client.prompts, [])
        self.assertEqual(h.orch.state.wait_reason, "no_actionable_candidate")
        self.assertIs(h.orch.phase, Phase.WAITING_FOR_THESIS)

    def test_recent_opposite_thesis_is_debounced(self) -> None:
        h = OrchestratorHarness()
        h.orch.state.debounce.accepted = Direction.SHORT
        h.orch.state.debounce.accepted_at_ms = T - 10_000
        events = h.establish()
        self.assertEqual(_types(events), [EventType.MIND_STATE_UPDATED])
        self.assertIs(h.orch.phase, Phase.WAITING_FOR_THESIS)
        self.assertEqual(h.orch.state.wait_reason, "direction_debounce")

    def test_gateway_failure_is_a_pass(self) -> None:
        h = OrchestratorHarness("not json at all")
        events = h.establish()
        self.assertEqual(_types(events), [EventType.MIND_STATE_UPDATED])
        self.assertEqual(h.orch.state.wait_reason, "llm_pass")


class TestLongLifecycle(unittest.TestCase):
    def _in_trade(self) -> OrchestratorHarness:
        h = OrchestratorHarness()
        h.establish()
        pb = h.step(100.5, 100.6, 100.1, 100.2)  # red bar
        self.assertEqual(_types(pb)[0], EventType.PULLBACK_CAPTURED)
        self.assertEqual((pb[0].data.pullback_high, pb[0].data.pullback_low), (100.6, 100.1))
        entry = h.step(100.2, 100.9, 100.15, 100.8)
        self.assertEqual(_types(entry)[0], EventType.ENTRY_TRIGGERED)
        self.assertIs(h.orch.phase, Phase.IN_TRADE)
        return h

    def test_entry_geometry(self) -> None:
        h = self._in_trade()
        st = h.orch.state
        self.assertEqual(st.entry_price, 100.8)
        self.assertEqual(st.stop_price, 100.1)
        self.assertEqual(len(st.targets), 2)
        self.assertAlmostEqual(st.targets[0], 101.5)
        self.assertAlmostEqual(st.targets[1], 102.2)
        self.assertEqual(st.wait_reason, "in_trade")

    def test_wick_through_stop_does_not_exit(self) -> None:
        h = self._in_trade()
        events = h.step(100.8, 100.9, 99.5, 100.5)
        self.assertEqual(_types(events), [EventType.MIND_STATE_UPDATED])
        self.assertIs(h.orch.phase, Phase.IN_TRADE)

    def test_close_exactly_at_stop_does_not_exit(self) -> None:
        h = self._in_trade()
        h.step(100.8, 100.9, 100.0, 100.1)
        self.assertIs(h.orch.phase, Phase.IN_TRADE)

    def test_close_below_stop_stops_out(self) -> None:
        h = self._in_trade()
        events = h.step(100.8, 100.9, 99.9, 100.0)
        self.assertEqual(_types(events), [EventType.TRADE_EXITED, EventType.MIND_STATE_UPDATED])
        exited = events[0].data
        self.assertEqual(exited.reason, "stopped_out")
        self.assertLess(exited.r_multiple, -1.0)
        st = h.orch.state
        self.assertIs(st.phase, Phase.WAITING_FOR_THESIS)
        self.assertIsNone(st.thesis_direction)
        self.assertIsNone(st.play_id)
        self.assertEqual(st.wait_reason, "stopped_out")

    def test_mind_state_carries_trade_context(self) -> None:
        h = self._in_trade()
        events = h.step(100.8, 100.9, 100.15, 100.2)
        self.assertIs(h.orch.phase, Phase.IN_TRADE)
        trade = events[-1].data.trade
        self.assertIsNotNone(trade)
        self.assertAlmostEqual(trade.risk, 0.7)
        self.assertAlmostEqual(trade.r_now, -0.6 / 0.7)
        self.assertEqual(len(trade.targets), 3)
        self.assertAlmostEqual(trade.targets[2], 102.9)
        self.assertEqual([round(r, 6) for r in trade.r_to_targets], [1.0, 2.0, 3.0])
        self.assertTrue(trade.stop_threatened)
        self.assertIsNone(trade.target_hit)
        self.assertIsNotNone(h.orch.bot_state(100.2)["trade"])

        exited = h.step(100.2, 101.7, 100.15, 101.6)
        self.assertEqual(exited[0].data.reason, "target_hit")
        self.assertIsNone(exited[-1].data.trade)

    def test_wick_through_target_does_not_exit(self) -> None:
        h = self._in_trade()
        h.step(100.8, 102.0, 100.7, 101.2)
        self.assertIs(h.orch.phase, Phase.IN_TRADE)

    def test_close_through_target_exits(self) -> None:
        h = self._in_trade()
        events = h.step(100.8, 101.7, 100.7, 101.6)
        exited = events[0].data
        self.assertEqual(exited.reason, "target_hit")
        self.assertAlmostEqual(exited.r_multiple, 1.143, places=3)
        self.assertEqual(exited.play_id, f"play_{T}")
        self.assertIs(h.orch.phase, Phase.WAITING_FOR_THESIS)

    def test_pullback_reanchors_when_deeper(self) -> None:
        h = OrchestratorHarness()
        h.establish()
        h.step(100.5, 100.6, 100.1, 100.2)
        events = h.step(100.2, 100.3, 99.9, 100.0)  # no trigger, deeper low
        self.assertEqual(_types(events), [EventType.MIND_STATE_UPDATED])
        st = h.orch.state
        self.assertEqual((st.pullback_high, st.pullback_low), (100.3, 99.9))
        self.assertIs(st.phase, Phase.WAITING_FOR_ENTRY)

    def test_thesis_invalidated_on_close_through_thesis_stop(self) -> None:
        h = OrchestratorHarness()
        h.establish()
        events = h.step(100.0, 100.1, 98.4, 98.5)
        self.assertEqual(_types(events), [EventType.THESIS_CLEARED, EventType.MIND_STATE_UPDATED])
        cleared = events[0].data
        self.assertEqual(cleared.reason, "thesis_invalidated")
        self.assertEqual(cleared.previous_direction, "LONG")
        self.assertIs(h.orch.phase, Phase.WAITING_FOR_THESIS)
        self.assertEqual(h.orch.state.wait_reason, "thesis_invalidated")

    def test_green_bar_without_lower_low_is_not_a_pullback(self) -> None:
        h = OrchestratorHarness()
        h.establish()
        events = h.step(100.0, 100.4, 99.9, 100.3)
        self.assertEqual(_types(events), [EventType.MIND_STATE_UPDATED])
        self.assertIs(h.orch.phase, Phase.WAITING_FOR_PULLBACK)


class TestShortLifecycle(unittest.TestCase):
    def test_short_entry_and_target(self) -> None:
        h = OrchestratorHarness(SHORT_REPLY)
        long_c = candidate(Direction.LONG, ts=T, total=50)
        short_c = candidate(Direction.SHORT, ts=T, entry=100.0, stop=101.0, total=68)
        h.step(100.2, 100.3, 99.9, 100.0, setups=SetupResult(candidates=(short_c, long_c), top=short_c))
        self.assertEqual(h.orch.state.thesis_stop, 101.0)
        pb = h.step(99.8, 100.0, 99.7, 99.9)  # green bar
        self.assertEqual(_types(pb)[0], EventType.PULLBACK_CAPTURED)
        entry = h.step(99.9, 99.95, 99.5, 99.6)
        self.assertEqual(_types(entry)[0], EventType.ENTRY_TRIGGERED)
        st = h.orch.state
        self.assertEqual(st.stop_price, 100.0)
        self.assertAlmostEqual(st.targets[0], 99.2)
        events = h.step(99.6, 99.7, 99.1, 99.15)
        self.assertEqual(events[0].data.reason, "target_hit")
        self.assertGreater(events[0].data.r_multiple, 1.0)


class TestSnapshotRestore(unittest.TestCase):
    def test_round_trip_through_json(self) -> None:
        h = OrchestratorHarness()
        h.establish()
        h.step(100.5, 100.6, 100.1, 100.2)
        snap = json.loads(json.dumps(h.orch.snapshot()))

        fresh = Orchestrator(gateway=DecisionGateway(None), instance_id="test-1", symbol="SPY")
        fresh.restore(snap)
        self.assertEqual(fresh.state, h.orch.state)
        self.assertIs(fresh.phase, Phase.WAITING_FOR_ENTRY)
        self.assertIs(fresh.debouncer.current, Direction.LONG)
        self.assertIs(fresh.debouncer.state, fresh.state.debounce)

    def test_state_dict_round_trip(self) -> None:
        st = MinimalExecutionState(phase=Phase.IN_TRADE, thesis_direction=Direction.SHORT, entry_price=100.0,
                                   stop_price=100.5, targets=[99.5, 99.0])
        self.assertEqual(MinimalExecutionState.from_dict(st.to_dict()), st)

    def test_partial_in_trade_snapshot_falls_back_to_waiting(self) -> None:
        orch = Orchestrator(gateway=DecisionGateway(None), instance_id="test-1", symbol="SPY")
        orch.restore({"execution": {"phase": "IN_TRADE", "play_id": "play_1", "thesis_direction": "LONG",
                                    "entry_price": 100.0}})
        self.assertIs(orch.phase, Phase.WAITING_FOR_THESIS)
        self.assertIsNone(orch.state.thesis_direction)
        self.assertIsNone(orch.state.entry_price)
        for i in range(3):
            b = bar(T + i * FIVE_MIN_MS, 100.0, 100.2, 99.8, 100.1)
            events = orch.on_closed_bar(b, closed_bars=[b])
            self.assertEqual(_types(events), [EventType.MIND_STATE_UPDATED])
        self.assertIs(orch.phase, Phase.WAITING_FOR_THESIS)

    def test_partial_entry_snapshot_falls_back_to_waiting(self) -> None:
        st = MinimalExecutionState.from_dict({"phase": "WAITING_FOR_ENTRY", "thesis_direction": "SHORT",
                                              "pullback_high": 101.0})
        self.assertIs(st.phase, Phase.WAITING_FOR_THESIS)
        self.assertIsNone(st.pullback_high)

    def test_trade_without_stop_is_cleared_not_stuck(self) -> None:
        h = OrchestratorHarness()
        h.establish()
        h.step(100.5, 100.6, 100.1, 100.2)
        h.step(100.2, 100.9, 100.15, 100.8)
        self.assertIs(h.orch.phase, Phase.IN_TRADE)
        h.orch.state.stop_price = None
        events = h.step(100.8, 100.9, 100.6, 100.7)
        self.assertEqual(_types(events), [EventType.THESIS_CLEARED, EventType.MIND_STATE_UPDATED])
        self.assertEqual(events[0].data.reason, "state_incomplete")
        self.assertEqual(events[0].data.previous_direction, "LONG")
        self.assertIs(h.orch.phase, Phase.WAITING_FOR_THESIS)

    def test_entry_without_pullback_is_cleared_not_stuck(self) -> None:
        h = OrchestratorHarness()
        h.establish()
        h.step(100.5, 100.6, 100.1, 100.2)
        self.assertIs(h.orch.phase, Phase.WAITING_FOR_ENTRY)
        h.orch.state.pullback_low = None
        events = h.step(100.2, 100.9, 100.15, 100.8)
        self.assertEqual(events[0].data.reason, "state_incomplete")
        self.assertIs(h.orch.phase, Phase.WAITING_FOR_THESIS)

    def test_illegal_transition_raises(self) -> None:
        orch = Orchestrator(gateway=DecisionGateway(None), instance_id="test-1", symbol="SPY")
        with self.assertRaises(RuntimeError):
            orch._transition(Phase.IN_TRADE)

    def test_bot_state_shape(self) -> None:
        h = OrchestratorHarness()
        h.establish()
        state = h.orch.bot_state()
        self.assertEqual(state["phase"], "WAITING_FOR_PULLBACK")
        self.assertEqual(state["thesisDirection"], "LONG")
        self.assertEqual(state["targets"], [])
        self.assertNotIn("trade", state)
        self.assertIsNone(h.orch.bot_state(100.0)["trade"])


if __name__ == "__main__":
    unittest.main()
