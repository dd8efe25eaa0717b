from __future__ import annotations

import logging
import unittest

from intraday_thesis.datafeed.aggregator import BarAggregator
from tests.helpers import FIVE_MIN_MS, MINUTE_MS, SESSION_OPEN_MS, bar

logging.disable(logging.CRITICAL)


class TestBarAggregator(unittest.TestCase):
    def test_five_ticks_then_rollover_emits_one_closed_bar(self) -> None:
        agg = BarAggregator(5)
        t0 = SESSION_OPEN_MS
        ticks = [
            bar(t0, 100.0, 100.5, 99.8, 100.2, 10),
            bar(t0 + MINUTE_MS, 100.2, 101.0, 100.1, 100.9, 20),
            bar(t0 + 2 * MINUTE_MS, 100.9, 100.95, 99.5, 99.7, 30),
            bar(t0 + 3 * MINUTE_MS, 99.7, 100.0, 99.6, 99.9, 40),
            bar(t0 + 4 * MINUTE_MS, 99.9, 100.4, 99.85, 100.3, 50),
        ]
        closed = [agg.push_1m(b) for b in ticks]
        self.assertEqual(closed, [None] * 5)
        self.assertEqual(agg.forming.progress_minutes, 5)

        out = agg.push_1m(bar(t0 + 5 * MINUTE_MS, 100.3, 100.6, 100.2, 100.5, 5))
        self.assertIsNotNone(out)
        self.assertEqual(out.open, 100.0)
        self.assertEqual(out.high, 101.0)
        self.assertEqual(out.low, 99.5)
        self.assertEqual(out.close, 100.3)
        self.assertEqual(out.volume, 150)
        self.assertEqual(out.ts, t0 + FIVE_MIN_MS - 1)

        # The new bucket is forming, not closed.
        self.assertEqual(agg.forming.start_ts, t0 + FIVE_MIN_MS)
        self.assertEqual(agg.forming.open, 100.3)

    def test_closed_bar_emitted_once_per_boundary(self) -> None:
        agg = BarAggregator(5)
        t0 = SESSION_OPEN_MS
        closed = []
        for i in range(16):
            out = agg.push_1m(bar(t0 + i * MINUTE_MS, 100, 101, 99, 100))
            if out is not None:
                closed.append(out)
        self.assertEqual(len(closed), 3)
        self.assertEqual([b.ts for b in closed], [t0 + k * FIVE_MIN_MS + FIVE_MIN_MS - 1 for k in range(3)])

    def test_non_finite_close_is_dropped(self) -> None:
        agg = BarAggregator(5)
        t0 = SESSION_OPEN_MS
        agg.push_1m(bar(t0, 100, 101, 99, 100.5))
        self.assertIsNone(agg.push_1m(bar(t0 + MINUTE_MS, 100, 150, 50, float("nan"))))
        self.assertEqual(agg.forming.high, 101)
        self.assertEqual(agg.forming.low, 99)
        self.assertEqual(agg.forming.close, 100.5)

    def test_out_of_order_tick_is_ignored(self) -> None:
        agg = BarAggregator(5)
        t0 = SESSION_OPEN_MS
        agg.push_1m(bar(t0 + FIVE_MIN_MS, 100, 101, 99, 100))
        self.assertIsNone(agg.push_1m(bar(t0, 90, 91, 89, 90)))
        self.assertEqual(agg.forming.start_ts, t0 + FIVE_MIN_MS)
        self.assertEqual(agg.forming.low, 99)

    def test_flush_returns_forming_bucket(self) -> None:
        agg = BarAggregator(5)
        self.assertIsNone(agg.flush())
        agg.push_1m(bar(SESSION_OPEN_MS, 100, 101, 99, 100))
        out = agg.flush()
        self.assertIsNotNone(out)
        self.assertIsNone(agg.forming)

    def test_rejects_non_positive_bucket(self) -> None:
        with self.assertRaises(ValueError):
            BarAggregator(0)
