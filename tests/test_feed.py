from __future__ import annotations

import logging
import os
import tempfile
import unittest

from intraday_thesis.config import FeedConfig
from intraday_thesis.datafeed.feed import (
    BackoffPolicy,
    CsvBarFeed,
    QueueBarFeed,
    ReconnectingFeed,
    load_csv_bars,
    parse_ts_ms,
)
from intraday_thesis.errors import FeedError, FeedExhausted
from tests.helpers import SESSION_OPEN_MS, bar

logging.disable(logging.CRITICAL)


class TestQueueBarFeed(unittest.TestCase):
    def test_timeout_returns_none(self) -> None:
        self.assertIsNone(QueueBarFeed().next_bar(timeout_s=0.01))

    def test_delivers_then_exhausts(self) -> None:
        feed = QueueBarFeed()
        b = bar(SESSION_OPEN_MS, 1, 2, 0.5, 1.5)
        feed.push(b)
        feed.end()
        self.assertEqual(feed.next_bar(0.1), b)
        with self.assertRaises(FeedExhausted):
            feed.next_bar(0.1)
        with self.assertRaises(FeedError):
            feed.push(b)


class TestCsvFeed(unittest.TestCase):
    def test_parse_ts(self) -> None:
        self.assertEqual(parse_ts_ms("1709649000000"), SESSION_OPEN_MS)
        self.assertEqual(parse_ts_ms("2024-03-05T14:30:00Z"), SESSION_OPEN_MS)
        self.assertEqual(parse_ts_ms("2024-03-05T09:30:00-05:00"), SESSION_OPEN_MS)
        self.assertEqual(parse_ts_ms("2024-03-05 14:30:00"), SESSION_OPEN_MS)

    def test_loads_sorted_and_skips_bad_rows(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = os.path.join(td, "bars.csv")
            with open(path, "w", encoding="utf-8") as f:
                f.write("ts,open,high,low,close,volume\n")
                f.write(f"{SESSION_OPEN_MS + 60_000},2,3,1,2.5,10\n")
                f.write(f"{SESSION_OPEN_MS},1,2,0.5,1.5,\n")
                f.write(",1,2,0.5,1.5,5\n")
                f.write(f"{SESSION_OPEN_MS + 120_000},x,2,0.5,1.5,5\n")
            bars = load_csv_bars(path, symbol="SPY")
            self.assertEqual([b.ts for b in bars], [SESSION_OPEN_MS, SESSION_OPEN_MS + 60_000])
            self.assertEqual(bars[0].volume, 0.0)
            self.assertEqual(bars[0].symbol, "SPY")

            feed = CsvBarFeed(path, symbol="SPY")
            self.assertEqual(feed.next_bar().ts, SESSION_OPEN_MS)
            self.assertEqual(feed.next_bar().ts, SESSION_OPEN_MS + 60_000)
            with self.assertRaises(FeedExhausted):
                feed.next_bar()


class TestBackoff(unittest.TestCase):
    def test_exponential_with_cap(self) -> None:
        policy = BackoffPolicy()
        delays = [policy.next_delay() for _ in range(8)]
        self.assertEqual(delays[:3], [5.0, 7.5, 11.25])
        self.assertEqual(max(delays), 60.0)
        self.assertEqual(delays[-1], 60.0)

    def test_connection_limit_floor(self) -> None:
        policy = BackoffPolicy()
        self.assertEqual(policy.next_delay(connection_limit=True), 30.0)
        policy.reset()
        self.assertEqual(policy.next_delay(), 5.0)

    def test_policy_from_feed_config(self) -> None:
        cfg = FeedConfig(backoff_base_s=2.0, backoff_multiplier=2.0, backoff_cap_s=7.0, connection_limit_floor_s=10.0)
        policy = BackoffPolicy.from_config(cfg)
        self.assertEqual([policy.next_delay() for _ in range(4)], [2.0, 4.0, 7.0, 7.0])
        self.assertEqual(policy.next_delay(connection_limit=True), 10.0)


class _FlakyFeed:
    def __init__(self, outcomes) -> None:
        self.outcomes = outcomes
        self.closed = False

    def next_bar(self, timeout_s: float = 60.0):
        item = self.outcomes.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def close(self) -> None:
        self.closed = True


class TestReconnectingFeed(unittest.TestCase):
    def test_reconnects_with_backoff(self) -> None:
        b = bar(SESSION_OPEN_MS, 1, 2, 0.5, 1.5)
        feeds = [
            _FlakyFeed([FeedError("socket closed")]),
            _FlakyFeed([FeedError("too many connections", connection_limit=True)]),
            _FlakyFeed([b]),
        ]
        made = list(feeds)
        sleeps = []
        feed = ReconnectingFeed(lambda: feeds.pop(0), sleep=sleeps.append)
        self.assertEqual(feed.next_bar(), b)
        self.assertEqual(sleeps, [5.0, 30.0])
        self.assertEqual(feed.reconnect_count, 2)
        self.assertTrue(made[0].closed and made[1].closed)
        self.assertEqual(feed.policy.attempts, 0)

    def test_gives_up_after_max_attempts(self) -> None:
        feed = ReconnectingFeed(lambda: _FlakyFeed([FeedError("down")]), sleep=lambda s: None, max_attempts=2)
        with self.assertRaises(FeedError):
            feed.next_bar()

    def test_from_config_uses_configured_backoff(self) -> None:
        b = bar(SESSION_OPEN_MS, 1, 2, 0.5, 1.5)
        feeds = [_FlakyFeed([FeedError("socket closed")]), _FlakyFeed([FeedError("reset")]), _FlakyFeed([b])]
        sleeps = []
        cfg = FeedConfig(backoff_base_s=1.0, backoff_multiplier=3.0, backoff_cap_s=60.0)
        feed = ReconnectingFeed.from_config(lambda: feeds.pop(0), cfg, sleep=sleeps.append)
        self.assertEqual(feed.next_bar(), b)
        self.assertEqual(sleeps, [1.0, 3.0])

    def test_exhaustion_propagates(self) -> None:
        feed = ReconnectingFeed(lambda: _FlakyFeed([FeedExhausted("done")]), sleep=lambda s: None)
        with self.assertRaises(FeedExhausted):
            feed.next_bar()


if __name__ == "__main__":
    unittest.main()
