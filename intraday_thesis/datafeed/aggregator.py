from __future__ import annotations

import logging
import math
from typing import Optional

from intraday_thesis.types import Bar, FormingBar

log = logging.getLogger(__name__)


class BarAggregator:
    """
    Folds closed 1-minute bars into N-minute buckets aligned to epoch boundaries.

    A closed bucket is returned exactly once, on the first tick of the next
    bucket. Its ``ts`` is the bucket close time: start + N minutes - 1 ms.
    """

    def __init__(self, bucket_minutes: int = 5) -> None:
        if bucket_minutes <= 0:
            raise ValueError("bucket_minutes must be positive")
        self._bucket_ms = int(bucket_minutes) * 60_000
        self._forming: Optional[FormingBar] = None

    @property
    def bucket_ms(self) -> int:
        return self._bucket_ms

    @property
    def forming(self) -> Optional[FormingBar]:
        return self._forming

    def bucket_start(self, ts: int) -> int:
        return (int(ts) // self._bucket_ms) * self._bucket_ms

    def push_1m(self, bar: Bar) -> Optional[Bar]:
        if not math.isfinite(bar.close):
            log.warning("Dropping 1m bar with non-finite close ts=%s", bar.ts)
            return None

        start = self.bucket_start(bar.ts)
        cur = self._forming
        if cur is None:
            self._forming = self._open_bucket(start, bar)
            return None

        if start == cur.start_ts:
            cur.high = max(cur.high, bar.high)
            cur.low = min(cur.low, bar.low)
            cur.close = bar.close
            cur.volume += bar.volume
            cur.last_tick_ts = int(bar.ts)
            return None

        if start < cur.start_ts:
            log.warning("Dropping out-of-order 1m bar ts=%s (bucket %s already forming)", bar.ts, cur.start_ts)
            return None

        finished = cur.to_bar()
        self._forming = self._open_bucket(start, bar)
        return finished

    def flush(self) -> Optional[Bar]:
        """Close the forming bucket early, e.g. at end of stream."""
        cur = self._forming
        self._forming = None
        return cur.to_bar() if cur is not None else None

    def _open_bucket(self, start: int, bar: Bar) -> FormingBar:
        return FormingBar(
            start_ts=start,
            end_ts=start + self._bucket_ms - 1,
            open=bar.open,
            high=bar.high,
            low=bar.low,
            close=bar.close,
            volume=bar.volume,
            symbol=bar.symbol,
            last_tick_ts=int(bar.ts),
        )
