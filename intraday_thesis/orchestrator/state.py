from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from intraday_thesis.debounce import DebounceState
from intraday_thesis.types import Direction

SNAPSHOT_VERSION = 1

log = logging.getLogger(__name__)


class Phase(str, Enum):
    WAITING_FOR_THESIS = "WAITING_FOR_THESIS"
    WAITING_FOR_PULLBACK = "WAITING_FOR_PULLBACK"
    WAITING_FOR_ENTRY = "WAITING_FOR_ENTRY"
    IN_TRADE = "IN_TRADE"


# Allowed phase edges. Every phase may also fall back to WAITING_FOR_THESIS.
TRANSITIONS = {
    Phase.WAITING_FOR_THESIS: {Phase.WAITING_FOR_THESIS, Phase.WAITING_FOR_PULLBACK},
    Phase.WAITING_FOR_PULLBACK: {Phase.WAITING_FOR_PULLBACK, Phase.WAITING_FOR_ENTRY, Phase.WAITING_FOR_THESIS},
    Phase.WAITING_FOR_ENTRY: {Phase.WAITING_FOR_ENTRY, Phase.IN_TRADE, Phase.WAITING_FOR_THESIS},
    Phase.IN_TRADE: {Phase.IN_TRADE, Phase.WAITING_FOR_THESIS},
}

# Fields a phase cannot be stepped without.
REQUIRED_FIELDS: Dict[Phase, Tuple[str, ...]] = {
    Phase.WAITING_FOR_THESIS: (),
    Phase.WAITING_FOR_PULLBACK: ("thesis_direction",),
    Phase.WAITING_FOR_ENTRY: ("thesis_direction", "pullback_high", "pullback_low"),
    Phase.IN_TRADE: ("thesis_direction", "entry_price", "stop_price"),
}


@dataclass
class MinimalExecutionState:
    """The orchestrator's cursor. Mutated once per decision bar, never concurrently."""

    phase: Phase = Phase.WAITING_FOR_THESIS
    play_id: Optional[str] = None
    thesis_direction: Optional[Direction] = None
    thesis_confidence: Optional[int] = None
    thesis_price: Optional[float] = None
    thesis_ts: Optional[int] = None
    thesis_stop: Optional[float] = None
    active_candidate_id: Optional[str] = None
    pullback_high: Optional[float] = None
    pullback_low: Optional[float] = None
    pullback_ts: Optional[int] = None
    entry_price: Optional[float] = None
    entry_ts: Optional[int] = None
    stop_price: Optional[float] = None
    targets: List[float] = field(default_factory=list)
    wait_reason: Optional[str] = None
    last_selection_ts: Optional[int] = None
    debounce: DebounceState = field(default_factory=DebounceState)

    def clear_pullback_and_entry(self) -> None:
        self.pullback_high = self.pullback_low = None
        self.pullback_ts = None
        self.entry_price = None
        self.entry_ts = None
        self.stop_price = None
        self.targets = []

    def clear_thesis(self) -> None:
        self.play_id = None
        self.thesis_direction = None
        self.thesis_confidence = None
        self.thesis_price = None
        self.thesis_ts = None
        self.thesis_stop = None
        self.active_candidate_id = None
        self.clear_pullback_and_entry()

    def missing_fields(self) -> List[str]:
        return [name for name in REQUIRED_FIELDS[self.phase] if getattr(self, name) is None]

    def to_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "play_id": self.play_id,
            "thesis_direction": self.thesis_direction.value if self.thesis_direction else None,
            "thesis_confidence": self.thesis_confidence,
            "thesis_price": self.thesis_price,
            "thesis_ts": self.thesis_ts,
            "thesis_stop": self.thesis_stop,
            "active_candidate_id": self.active_candidate_id,
            "pullback_high": self.pullback_high,
            "pullback_low": self.pullback_low,
            "pullback_ts": self.pullback_ts,
            "entry_price": self.entry_price,
            "entry_ts": self.entry_ts,
            "stop_price": self.stop_price,
            "targets": list(self.targets),
            "wait_reason": self.wait_reason,
            "last_selection_ts": self.last_selection_ts,
            "debounce": self.debounce.to_dict(),
        }

    @staticmethod
    def from_dict(data: dict) -> "MinimalExecutionState":
        direction = data.get("thesis_direction")
        state = MinimalExecutionState(
            phase=Phase(data.get("phase") or Phase.WAITING_FOR_THESIS.value),
            play_id=data.get("play_id"),
            thesis_direction=Direction(direction) if direction else None,
            thesis_confidence=data.get("thesis_confidence"),
            thesis_price=data.get("thesis_price"),
            thesis_ts=data.get("thesis_ts"),
            thesis_stop=data.get("thesis_stop"),
            active_candidate_id=data.get("active_candidate_id"),
            pullback_high=data.get("pullback_high"),
            pullback_low=data.get("pullback_low"),
            pullback_ts=data.get("pullback_ts"),
            entry_price=data.get("entry_price"),
            entry_ts=data.get("entry_ts"),
            stop_price=data.get("stop_price"),
            targets=[float(t) for t in data.get("targets") or []],
            wait_reason=data.get("wait_reason"),
            last_selection_ts=data.get("last_selection_ts"),
            debounce=DebounceState.from_dict(data.get("debounce") or {}),
        )
        missing = state.missing_fields()
        if missing:
            log.warning("Snapshot phase %s lacks %s; resetting to %s",
                        state.phase.value, ", ".join(missing), Phase.WAITING_FOR_THESIS.value)
            state.clear_thesis()
            state.phase = Phase.WAITING_FOR_THESIS
            state.wait_reason = None
        return state
