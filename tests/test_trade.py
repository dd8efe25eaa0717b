from __future__ import annotations

import unittest

from intraday_thesis.rules.trade import reference_targets, trade_context
from intraday_thesis.types import Direction


class TestReferenceTargets(unittest.TestCase):
    def test_extends_to_three_r_multiples(self) -> None:
        self.assertEqual(reference_targets(Direction.LONG, 100.0, 99.0, [101.0, 102.0]), [101.0, 102.0, 103.0])
        self.assertEqual(reference_targets(Direction.SHORT, 100.0, 101.0, []), [99.0, 98.0, 97.0])
        self.assertEqual(reference_targets(Direction.LONG, 100.0, 99.0, [101.5, 102.0, 104.0, 105.0]),
                         [101.5, 102.0, 104.0])


class TestTradeContext(unittest.TestCase):
    def _long(self, close: float):
        return trade_context(Direction.LONG, close, entry=100.0, stop=99.0, targets=[101.0, 102.0])

    def test_stop_threatened_within_quarter_r(self) -> None:
        ctx = self._long(99.2)
        self.assertTrue(ctx.stop_threatened)
        self.assertAlmostEqual(ctx.r_now, -0.8)
        self.assertAlmostEqual(ctx.distance_to_stop, 0.2)
        self.assertIsNone(ctx.near_target)
        self.assertIsNone(ctx.target_hit)
        self.assertFalse(self._long(99.5).stop_threatened)

    def test_near_and_hit_targets(self) -> None:
        near = self._long(100.98)
        self.assertEqual(near.near_target, "T1")
        self.assertIsNone(near.target_hit)

        hit = self._long(102.5)
        self.assertEqual(hit.target_hit, "T2")
        self.assertIsNone(hit.near_target)
        self.assertAlmostEqual(hit.r_now, 2.5)
        for got, want in zip(hit.distance_to_targets, (-1.5, -0.5, 0.5)):
            self.assertAlmostEqual(got, want)
        self.assertEqual(hit.r_to_targets, (1.0, 2.0, 3.0))
        self.assertAlmostEqual(hit.profit_pct, 2.5)

    def test_short_side(self) -> None:
        ctx = trade_context(Direction.SHORT, 97.0, entry=100.0, stop=101.0, targets=[99.0])
        self.assertEqual(ctx.targets, (99.0, 98.0, 97.0))
        self.assertEqual(ctx.target_hit, "T3")
        self.assertAlmostEqual(ctx.r_now, 3.0)
        self.assertAlmostEqual(ctx.profit_pct, 3.0)
        self.assertFalse(ctx.stop_threatened)
        self.assertTrue(trade_context(Direction.SHORT, 100.8, entry=100.0, stop=101.0, targets=[99.0]).stop_threatened)
