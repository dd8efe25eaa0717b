"""
Domain events and their ordered publication.

Every event is a ``DomainEvent(type, timestamp, instance_id, data)`` whose
``data`` is the payload dataclass registered for its type. Events are
validated when published and then delivered to the registered sinks by a
single consumer thread, so events from one tick (and from successive ticks)
reach every sink in the order they were produced.
"""

from __future__ import annotations

import dataclasses
import logging
import queue
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from intraday_thesis.errors import InvalidEventError
from intraday_thesis.serialization import to_jsonable
from intraday_thesis.types import SetupCandidate, TradeContext

log = logging.getLogger(__name__)


class EventType(str, Enum):
    MIND_STATE_UPDATED = "MIND_STATE_UPDATED"
    SETUP_CANDIDATES = "SETUP_CANDIDATES"
    THESIS_ESTABLISHED = "THESIS_ESTABLISHED"
    THESIS_CLEARED = "THESIS_CLEARED"
    PULLBACK_CAPTURED = "PULLBACK_CAPTURED"
    ENTRY_TRIGGERED = "ENTRY_TRIGGERED"
    TRADE_EXITED = "TRADE_EXITED"
    LLM_DIRECTION_PUBLISHED = "LLM_DIRECTION_PUBLISHED"


@dataclass(frozen=True)
class MindStateUpdated:
    """Snapshot of what the engine currently believes, emitted once per decision bar."""
    symbol: str
    price: float
    phase: str
    regime: Optional[str] = None
    direction: Optional[str] = None
    tactical_bias: Optional[str] = None
    thesis_direction: Optional[str] = None
    thesis_confidence: Optional[int] = None
    thesis_ts: Optional[int] = None
    candidate: Optional[SetupCandidate] = None
    candidate_count: int = 0
    wait_reason: Optional[str] = None
    play_id: Optional[str] = None
    trade: Optional[TradeContext] = None


@dataclass(frozen=True)
class SetupCandidates:
    symbol: str
    regime: str
    candidates: Tuple[SetupCandidate, ...]
    top_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class ThesisEstablished:
    play_id: str
    symbol: str
    direction: str
    confidence: int
    price: float
    reason: str = ""
    candidate_id: Optional[str] = None


@dataclass(frozen=True)
class ThesisCleared:
    symbol: str
    reason: str
    previous_direction: Optional[str] = None
    play_id: Optional[str] = None


@dataclass(frozen=True)
class PullbackCaptured:
    play_id: str
    symbol: str
    direction: str
    pullback_high: float
    pullback_low: float
    price: float


@dataclass(frozen=True)
class EntryTriggered:
    play_id: str
    symbol: str
    direction: str
    entry_price: float
    stop_price: float
    targets: Tuple[float, ...]


@dataclass(frozen=True)
class TradeExited:
    play_id: str
    symbol: str
    direction: str
    reason: str  # stopped_out | target_hit
    exit_price: float
    entry_price: float
    stop_price: float
    r_multiple: Optional[float] = None


@dataclass(frozen=True)
class LlmDirectionPublished:
    symbol: str
    direction: str  # LONG | SHORT
    confidence: int
    reason: str = ""
    coach_line: Optional[str] = None
    next_level: Optional[float] = None
    likelihood_hit: Optional[int] = None


PAYLOAD_TYPES: Dict[EventType, Type[Any]] = {
    EventType.MIND_STATE_UPDATED: MindStateUpdated,
    EventType.SETUP_CANDIDATES: SetupCandidates,
    EventType.THESIS_ESTABLISHED: ThesisEstablished,
    EventType.THESIS_CLEARED: ThesisCleared,
    EventType.PULLBACK_CAPTURED: PullbackCaptured,
    EventType.ENTRY_TRIGGERED: EntryTriggered,
    EventType.TRADE_EXITED: TradeExited,
    EventType.LLM_DIRECTION_PUBLISHED: LlmDirectionPublished,
}


@dataclass(frozen=True)
class DomainEvent:
    type: EventType
    timestamp: int
    instance_id: str
    data: Any = field(default=None)

    @property
    def play_id(self) -> Optional[str]:
        return getattr(self.data, "play_id", None)


def make_event(type: EventType, timestamp: int, instance_id: str, data: Any) -> DomainEvent:
    event = DomainEvent(EventType(type), int(timestamp), str(instance_id), data)
    validate_event(event)
    return event


def validate_event(event: DomainEvent) -> None:
    if not isinstance(event.type, EventType):
        raise InvalidEventError(f"Unknown event type: {event.type!r}")
    if isinstance(event.timestamp, bool) or not isinstance(event.timestamp, int) or event.timestamp < 0:
        raise InvalidEventError(f"{event.type.value}: timestamp must be a non-negative int, got {event.timestamp!r}")
    if not event.instance_id:
        raise InvalidEventError(f"{event.type.value}: instance_id is required")

    expected = PAYLOAD_TYPES[event.type]
    if not isinstance(event.data, expected):
        got = type(event.data).__name__
        raise InvalidEventError(f"{event.type.value}: payload must be {expected.__name__}, got {got}")

    for f in dataclasses.fields(event.data):
        required = f.default is dataclasses.MISSING and f.default_factory is dataclasses.MISSING
        if required and getattr(event.data, f.name) in (None, ""):
            raise InvalidEventError(f"{event.type.value}: missing required field {f.name!r}")


def to_dict(event: DomainEvent) -> dict:
    return {
        "type": event.type.value,
        "timestamp": event.timestamp,
        "instanceId": event.instance_id,
        "data": to_jsonable(event.data),
    }


Sink = Callable[[DomainEvent], None]

_STOP = object()


class EventPublisher:
    """
    Single-consumer ordered delivery of domain events.

    ``publish`` runs on the caller's thread: it validates the event, applies
    the governor (if any) and enqueues. One worker thread drains the queue
    and hands each event to every sink in registration order. A failing sink
    is logged and skipped; it never blocks delivery to the others.
    """

    def __init__(self, *, governor: Any = None, sinks: Optional[List[Sink]] = None) -> None:
        self.governor = governor
        self._sinks: List[Sink] = list(sinks or [])
        self._lock = threading.RLock()
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._closed = False
        self.delivered = 0
        self.suppressed = 0

    def add_sink(self, sink: Sink) -> None:
        with self._lock:
            self._sinks.append(sink)

    def publish(self, event: DomainEvent) -> bool:
        validate_event(event)
        if self._closed:
            raise RuntimeError("EventPublisher is closed")
        if self.governor is not None and not self.governor.should_send(event):
            self.suppressed += 1
            log.debug("Governor suppressed %s ts=%s", event.type.value, event.timestamp)
            return False
        self._ensure_worker()
        self._queue.put(event)
        return True

    def publish_all(self, events: List[DomainEvent]) -> int:
        return sum(1 for e in events if self.publish(e))

    def flush(self, timeout_s: Optional[float] = None) -> None:
        """Block until every event published so far has been delivered."""
        if self._thread is None:
            return
        if timeout_s is None:
            self._queue.join()
            return
        done = threading.Event()

        def _wait() -> None:
            self._queue.join()
            done.set()

        threading.Thread(target=_wait, daemon=True).start()
        done.wait(timeout_s)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._thread is not None:
            self._queue.put(_STOP)
            self._thread.join()
            self._thread = None

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name="event-publisher", daemon=True)
                self._thread.start()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._deliver(item)
            finally:
                self._queue.task_done()

    def _deliver(self, event: DomainEvent) -> None:
        with self._lock:
            sinks = list(self._sinks)
        for sink in sinks:
            try:
                sink(event)
            except Exception:
                log.exception("Event sink failed for %s ts=%s", event.type.value, event.timestamp)
        self.delivered += 1
