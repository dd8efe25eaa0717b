"""
Bar feed adapters.

The engine pulls bars with ``next_bar(timeout_s)``. A silent feed returns
``None`` after the bounded wait instead of blocking forever; the end of the
stream is signalled with ``FeedExhausted``. Transport failures surface as
``FeedError`` and are retried by ``ReconnectingFeed`` with exponential backoff.
"""

from __future__ import annotations

import csv
import logging
import queue
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Protocol

from intraday_thesis.config import FeedConfig
from intraday_thesis.errors import FeedError, FeedExhausted
from intraday_thesis.types import Bar

log = logging.getLogger(__name__)


class BarFeed(Protocol):
    def next_bar(self, timeout_s: float = 60.0) -> Optional[Bar]: ...
    def close(self) -> None: ...


_END = object()


class QueueBarFeed:
    """Push-based feed: producers call ``push``; the engine pulls with a bounded wait."""

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()

    def push(self, bar: Bar) -> None:
        if self._closed.is_set():
            raise FeedError("feed is closed")
        self._queue.put(bar)

    def end(self) -> None:
        """Mark the end of the stream; bars already queued are still delivered."""
        self._queue.put(_END)

    def next_bar(self, timeout_s: float = 60.0) -> Optional[Bar]:
        try:
            item = self._queue.get(timeout=max(0.0, float(timeout_s)))
        except queue.Empty:
            return None
        if item is _END:
            self._closed.set()
            raise FeedExhausted("queue feed ended")
        return item  # type: ignore[return-value]

    def close(self) -> None:
        self._closed.set()


class CsvBarFeed:
    """
    Replays 1-minute bars from a CSV file with columns
    ``ts,open,high,low,close,volume``. ``ts`` is epoch milliseconds or ISO-8601.
    """

    def __init__(self, path: str | Path, *, symbol: str = "") -> None:
        self._path = Path(path)
        self._symbol = symbol
        self._bars: Iterator[Bar] = iter(load_csv_bars(self._path, symbol=symbol))

    def next_bar(self, timeout_s: float = 60.0) -> Optional[Bar]:
        _ = timeout_s
        try:
            return next(self._bars)
        except StopIteration:
            raise FeedExhausted(f"end of {self._path.name}") from None

    def close(self) -> None:
        self._bars = iter(())


def parse_ts_ms(value: str) -> int:
    text = str(value).strip()
    if text.lstrip("-").isdigit():
        return int(text)
    ts = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return int(ts.timestamp() * 1000)


def load_csv_bars(path: str | Path, *, symbol: str = "") -> List[Bar]:
    bars: List[Bar] = []
    with open(path, newline="", encoding="utf-8") as f:
        reader = csv.DictReader(f)
        for line_no, row in enumerate(reader, start=2):
            ts_str = row.get("ts") or row.get("timestamp") or row.get("datetime")
            if not ts_str:
                log.warning("%s:%d missing timestamp; skipped", path, line_no)
                continue
            try:
                bars.append(
                    Bar(
                        ts=parse_ts_ms(ts_str),
                        open=float(row["open"]),
                        high=float(row["high"]),
                        low=float(row["low"]),
                        close=float(row["close"]),
                        volume=float(row.get("volume") or 0.0),
                        symbol=(row.get("symbol") or symbol),
                    )
                )
            except (KeyError, ValueError) as exc:
                log.warning("%s:%d unparseable row (%s); skipped", path, line_no, exc)
    bars.sort(key=lambda b: b.ts)
    return bars


@dataclass
class BackoffPolicy:
    """Exponential reconnect delay with a cap and a longer floor for connection-limit errors."""

    base_s: float = 5.0
    multiplier: float = 1.5
    cap_s: float = 60.0
    connection_limit_floor_s: float = 30.0
    attempts: int = 0

    @classmethod
    def from_config(cls, cfg: FeedConfig) -> "BackoffPolicy":
        return cls(
            base_s=cfg.backoff_base_s,
            multiplier=cfg.backoff_multiplier,
            cap_s=cfg.backoff_cap_s,
            connection_limit_floor_s=cfg.connection_limit_floor_s,
        )

    def next_delay(self, *, connection_limit: bool = False) -> float:
        delay = min(self.cap_s, self.base_s * (self.multiplier ** self.attempts))
        self.attempts += 1
        if connection_limit:
            delay = max(delay, self.connection_limit_floor_s)
        return delay

    def reset(self) -> None:
        self.attempts = 0


class ReconnectingFeed:
    """
    Wraps a feed factory. On ``FeedError`` the current feed is dropped and a new
    one is connected after the backoff delay; ``FeedExhausted`` propagates.
    """

    def __init__(
        self,
        connect: Callable[[], BarFeed],
        *,
        policy: Optional[BackoffPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        max_attempts: Optional[int] = None,
    ) -> None:
        self._connect = connect
        self._policy = policy or BackoffPolicy.from_config(FeedConfig())
        self._sleep = sleep
        self._max_attempts = max_attempts
        self._feed: Optional[BarFeed] = None
        self.reconnect_count = 0

    @classmethod
    def from_config(cls, connect: Callable[[], BarFeed], cfg: FeedConfig, **kwargs) -> "ReconnectingFeed":
        return cls(connect, policy=BackoffPolicy.from_config(cfg), **kwargs)

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy

    def next_bar(self, timeout_s: float = 60.0) -> Optional[Bar]:
        while True:
            try:
                feed = self._ensure_connected()
                bar = feed.next_bar(timeout_s)
            except FeedError as exc:
                self._drop()
                if self._max_attempts is not None and self._policy.attempts >= self._max_attempts:
                    raise
                delay = self._policy.next_delay(connection_limit=exc.connection_limit)
                log.warning(
                    "Feed error (%s); reconnect attempt %d in %.1fs",
                    exc, self._policy.attempts, delay,
                )
                self._sleep(delay)
                continue
            self._policy.reset()
            return bar

    def close(self) -> None:
        self._drop()

    def _ensure_connected(self) -> BarFeed:
        if self._feed is None:
            self._feed = self._connect()
            if self._policy.attempts:
                self.reconnect_count += 1
                log.info("Feed reconnected")
        return self._feed

    def _drop(self) -> None:
        feed, self._feed = self._feed, None
        if feed is None:
            return
        try:
            feed.close()
        except Exception:
            log.debug("Error closing feed", exc_info=True)
