from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, Optional

from intraday_thesis.config import GovernorConfig

log = logging.getLogger(__name__)


class BotMode(str, Enum):
    QUIET = "QUIET"
    ACTIVE = "ACTIVE"


class MessageGovernor:
    """
    Single choke point deciding which events leave the engine.

    QUIET blocks everything. ACTIVE passes each event once, keyed by
    ``{play_id}_{type}_{ts}`` (or ``{type}_{ts}`` without a play). Keys
    expire after the TTL and the oldest are dropped past ``max_keys``.
    Event timestamps serve as the clock so replays behave like live runs.
    """

    def __init__(self, config: Optional[GovernorConfig] = None, *, mode: BotMode = BotMode.ACTIVE,
                 initial_state: Optional[dict] = None) -> None:
        self.config = config or GovernorConfig()
        self.mode = BotMode(mode)
        self._dedupe: Dict[str, int] = {}
        self._last_ms: Optional[int] = None
        if initial_state:
            for key, value in (initial_state.get("dedupe") or {}).items():
                if isinstance(value, (int, float)) and not isinstance(value, bool):
                    self._dedupe[str(key)] = int(value)
            if self._dedupe:
                self._prune(max(self._dedupe.values()))

    @property
    def ttl_ms(self) -> int:
        return int(self.config.dedupe_ttl_s) * 1000

    def __len__(self) -> int:
        return len(self._dedupe)

    def set_mode(self, mode: BotMode) -> None:
        self.mode = BotMode(mode)

    @staticmethod
    def dedupe_key(event) -> str:
        etype = getattr(event.type, "value", event.type)
        play_id = getattr(event, "play_id", None)
        if play_id:
            return f"{play_id}_{etype}_{event.timestamp}"
        return f"{etype}_{event.timestamp}"

    def should_send(self, event) -> bool:
        if self.mode is BotMode.QUIET:
            return False
        now = int(event.timestamp)
        key = self.dedupe_key(event)
        if self._seen(key, now):
            log.debug("Duplicate event blocked: %s", key)
            return False
        self._dedupe[key] = now
        self._prune(now)
        return True

    def export_state(self) -> dict:
        return {"mode": self.mode.value, "dedupe": dict(self._dedupe)}

    def _seen(self, key: str, now: int) -> bool:
        at = self._dedupe.get(key)
        if at is None:
            return False
        if now - at > self.ttl_ms:
            del self._dedupe[key]
            return False
        return True

    def _prune(self, now: int) -> None:
        ttl = self.ttl_ms
        for key in [k for k, at in self._dedupe.items() if now - at > ttl]:
            del self._dedupe[key]
        excess = len(self._dedupe) - int(self.config.dedupe_max_keys)
        if excess > 0:
            oldest = sorted(self._dedupe.items(), key=lambda kv: kv[1])[:excess]
            for key, _ in oldest:
                del self._dedupe[key]
