from __future__ import annotations

import unittest

from intraday_thesis.config import RegimeConfig
from intraday_thesis.rules.regime import RegimeClassifier, resolve_regime, tally_votes, vwap_slope_from_history
from intraday_thesis.types import Regime, Structure, VwapSlope
from tests.helpers import bars_from_closes, chop_closes, trend_closes


class TestRegimeVoting(unittest.TestCase):
    def test_two_bull_one_bear_is_trend_up(self) -> None:
        # price above VWAP, slope UP, structure BEARISH
        bull, bear, reasons = tally_votes(101.0, 100.0, VwapSlope.UP, Structure.BEARISH)
        self.assertEqual((bull, bear), (2, 1))
        self.assertEqual(len(reasons), 3)
        self.assertIs(resolve_regime(bull, bear, VwapSlope.UP, Structure.BEARISH), Regime.TREND_UP)

    def test_two_bear_one_bull_is_trend_down(self) -> None:
        bull, bear, _ = tally_votes(99.0, 100.0, VwapSlope.UP, Structure.BEARISH)
        self.assertEqual((bull, bear), (1, 2))
        self.assertIs(resolve_regime(bull, bear, VwapSlope.UP, Structure.BEARISH), Regime.TREND_DOWN)

    def test_split_evidence_is_transition(self) -> None:
        bull, bear, _ = tally_votes(101.0, 100.0, VwapSlope.DOWN, Structure.MIXED)
        self.assertIs(resolve_regime(bull, bear, VwapSlope.DOWN, Structure.MIXED), Regime.TRANSITION)

    def test_no_directional_evidence_is_chop(self) -> None:
        bull, bear, _ = tally_votes(101.0, 100.0, VwapSlope.FLAT, Structure.MIXED)
        self.assertEqual((bull, bear), (1, 0))
        self.assertIs(resolve_regime(bull, bear, VwapSlope.FLAT, Structure.MIXED), Regime.CHOP)


class TestRegimeClassifier(unittest.TestCase):
    def test_insufficient_bars_is_chop(self) -> None:
        result = RegimeClassifier().classify(bars_from_closes(trend_closes(10)))
        self.assertIs(result.regime, Regime.CHOP)
        self.assertIn("insufficient", result.reasons[0])

    def test_steady_uptrend_is_trend_up(self) -> None:
        result = RegimeClassifier().classify(bars_from_closes(trend_closes(60, step=0.2)))
        self.assertIs(result.vwap_slope, VwapSlope.UP)
        self.assertIs(result.regime, Regime.TREND_UP)
        self.assertGreaterEqual(result.bull_votes, 2)

    def test_steady_downtrend_is_trend_down(self) -> None:
        result = RegimeClassifier().classify(bars_from_closes(trend_closes(60, start=120.0, step=-0.2)))
        self.assertIs(result.regime, Regime.TREND_DOWN)

    def test_flat_chop(self) -> None:
        result = RegimeClassifier().classify(bars_from_closes(chop_closes(60)))
        self.assertIs(result.vwap_slope, VwapSlope.FLAT)
        self.assertIn(result.regime, (Regime.CHOP, Regime.TRANSITION))

    def test_slope_threshold_is_configurable(self) -> None:
        bars = bars_from_closes(trend_closes(60, step=0.01))
        loose = vwap_slope_from_history(bars, period=30, lookback=10, threshold_pct=0.02)
        strict = vwap_slope_from_history(bars, period=30, lookback=10, threshold_pct=5.0)
        self.assertIs(loose.slope, VwapSlope.UP)
        self.assertIs(strict.slope, VwapSlope.FLAT)
        self.assertIsNotNone(RegimeClassifier(RegimeConfig(slope_threshold_pct=5.0)).classify(bars))
