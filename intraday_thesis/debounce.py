from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from intraday_thesis.types import Direction

log = logging.getLogger(__name__)


@dataclass
class DebounceState:
    accepted: Optional[Direction] = None
    accepted_at_ms: Optional[int] = None
    pending: Optional[Direction] = None
    pending_since_ms: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "accepted": self.accepted.value if self.accepted else None,
            "accepted_at_ms": self.accepted_at_ms,
            "pending": self.pending.value if self.pending else None,
            "pending_since_ms": self.pending_since_ms,
        }

    @staticmethod
    def from_dict(data: dict) -> "DebounceState":
        return DebounceState(
            accepted=Direction(data["accepted"]) if data.get("accepted") else None,
            accepted_at_ms=data.get("accepted_at_ms"),
            pending=Direction(data["pending"]) if data.get("pending") else None,
            pending_since_ms=data.get("pending_since_ms"),
        )


class DirectionDebouncer:
    """
    Anti-flicker gate for direction changes.

    The first direction is accepted immediately. A different direction is
    accepted only when ``min_hold_ms`` has elapsed since the last accepted
    change AND the same proposal has been pending for ``confirm_ms``;
    otherwise the prior direction is kept. ``None`` proposals carry no opinion
    and leave the state untouched apart from dropping a pending flip.
    """

    def __init__(self, *, min_hold_ms: int = 120_000, confirm_ms: int = 60_000,
                 state: Optional[DebounceState] = None) -> None:
        self.min_hold_ms = int(min_hold_ms)
        self.confirm_ms = int(confirm_ms)
        self.state = state or DebounceState()

    @property
    def current(self) -> Optional[Direction]:
        return self.state.accepted

    def propose(self, direction: Optional[Direction], ts_ms: int) -> Optional[Direction]:
        st = self.state
        if st.accepted is None:
            if direction is not None:
                st.accepted, st.accepted_at_ms = direction, int(ts_ms)
            st.pending = st.pending_since_ms = None
            return st.accepted

        if direction is None or direction is st.accepted:
            st.pending = st.pending_since_ms = None
            return st.accepted

        if st.pending is not direction:
            st.pending, st.pending_since_ms = direction, int(ts_ms)

        held = int(ts_ms) - int(st.accepted_at_ms or 0)
        persisted = int(ts_ms) - int(st.pending_since_ms)
        if held >= self.min_hold_ms and persisted >= self.confirm_ms:
            log.info("Direction flip accepted %s -> %s (held %ds)", st.accepted.value, direction.value, held // 1000)
            st.accepted, st.accepted_at_ms = direction, int(ts_ms)
            st.pending = st.pending_since_ms = None
        else:
            log.debug(
                "Direction flip to %s rejected (held %dms < %d or pending %dms < %d)",
                direction.value, held, self.min_hold_ms, persisted, self.confirm_ms,
            )
        return st.accepted

    def reset(self) -> None:
        self.state = DebounceState()


class AgreementRing:
    """Fixed-size ring of recent calls with constant-time per-value counts."""

    def __init__(self, size: int = 4) -> None:
        if size <= 0:
            raise ValueError("size must be positive")
        self._slots: List[Optional[str]] = [None] * size
        self._next = 0
        self._filled = 0
        self._counts: Dict[str, int] = {}

    def __len__(self) -> int:
        return self._filled

    @property
    def size(self) -> int:
        return len(self._slots)

    def push(self, value: str) -> None:
        old = self._slots[self._next]
        if old is not None:
            self._counts[old] -= 1
        self._slots[self._next] = value
        self._counts[value] = self._counts.get(value, 0) + 1
        self._next = (self._next + 1) % len(self._slots)
        self._filled = min(self._filled + 1, len(self._slots))

    def count(self, value: str) -> int:
        return self._counts.get(value, 0)

    def agrees(self, value: str, needed: int) -> bool:
        return self.count(value) >= needed

    def values(self) -> List[str]:
        """Oldest to newest."""
        n = len(self._slots)
        ordered = [self._slots[(self._next + i) % n] for i in range(n)]
        return [v for v in ordered if v is not None]

    def clear(self) -> None:
        self._slots = [None] * len(self._slots)
        self._next = self._filled = 0
        self._counts.clear()
