from __future__ import annotations

import unittest

from intraday_thesis.rules.timing import compute_timing_signal
from intraday_thesis.types import Direction, EntryZone, TimingState
from tests.helpers import FIVE_MIN_MS, SESSION_OPEN_MS, bar

WIDE_THEN_TIGHT = [
    (100.5, 101.0, 100.0, 100.6),
    (100.6, 101.1, 100.1, 100.4),
    (100.4, 100.9, 99.9, 100.0),
    (100.0, 100.3, 99.8, 100.1),
    (100.1, 100.4, 99.9, 100.2),
    (100.2, 100.5, 100.0, 100.3),
]


def _bars(rows):
    return [bar(SESSION_OPEN_MS + i * FIVE_MIN_MS, o, h, l, c) for i, (o, h, l, c) in enumerate(rows)]


class TestTimingSignal(unittest.TestCase):
    def test_break_hold_and_retest_of_vwap(self) -> None:
        sig = compute_timing_signal(Direction.LONG, _bars(WIDE_THEN_TIGHT), vwap=100.0, atr=2.0)
        self.assertIs(sig.state, TimingState.PULLBACK_IN_PROGRESS)
        self.assertEqual(
            (sig.break_acceptance, sig.retest_quality, sig.vwap_reaction, sig.atr_normalization),
            (25, 25, 25, 25),
        )
        self.assertEqual(sig.score, 100)
        self.assertFalse(sig.impulse)
        self.assertEqual(sig.reasons, ("break+accept (VWAP)", "retest (VWAP)", "vwap reaction", "atr normalization"))

    def test_wrong_side_only_scores_range_contraction(self) -> None:
        sig = compute_timing_signal(Direction.SHORT, _bars(WIDE_THEN_TIGHT), vwap=100.0, atr=2.0)
        self.assertIs(sig.state, TimingState.WAITING)
        self.assertEqual(sig.score, 25)
        self.assertEqual(sig.reasons, ("atr normalization",))

    def test_large_bars_relative_to_atr_are_an_impulse(self) -> None:
        sig = compute_timing_signal(Direction.LONG, _bars(WIDE_THEN_TIGHT), vwap=100.0, atr=0.6)
        self.assertTrue(sig.impulse)
        self.assertIs(sig.state, TimingState.IMPULSE_DETECTED)
        self.assertIn("impulse detected", sig.reasons)

    def test_close_inside_zone_opens_entry_window(self) -> None:
        zone = EntryZone(100.2, 100.4)
        sig = compute_timing_signal(Direction.LONG, _bars(WIDE_THEN_TIGHT), vwap=100.0, atr=0.6, entry_zone=zone)
        self.assertIs(sig.state, TimingState.ENTRY_WINDOW_OPEN)
        self.assertEqual((sig.break_acceptance, sig.retest_quality), (0, 0))
        self.assertEqual(sig.score, 50)

    def test_expanding_ranges_without_levels(self) -> None:
        rows = WIDE_THEN_TIGHT[3:] + WIDE_THEN_TIGHT[:3]
        sig = compute_timing_signal(Direction.LONG, _bars(rows))
        self.assertIs(sig.state, TimingState.WAITING)
        self.assertEqual(sig.score, 0)
        self.assertEqual(sig.reasons, ("timing not ready",))

    def test_insufficient_bars(self) -> None:
        sig = compute_timing_signal(Direction.LONG, _bars(WIDE_THEN_TIGHT[:5]), vwap=100.0)
        self.assertIs(sig.state, TimingState.WAITING)
        self.assertEqual(sig.score, 0)
        self.assertEqual(sig.reasons, ("insufficient bars for timing",))
