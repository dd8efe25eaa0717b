"""
Decision gateway: the only place the engine talks to the LLM.

Every call is stateless (the full context travels in the prompt), runs on a
worker thread with a timeout, and is validated against a strict schema.
Nothing raised by the client reaches the caller: expiry, transport errors,
unparseable output and schema violations all degrade to PASS (or NEUTRAL for
direction opinions) with the reason logged.
"""

from __future__ import annotations

import json
import logging
import math
import re
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence, Tuple

from intraday_thesis.errors import GatewayError
from intraday_thesis.llm.config import LLMConfig
from intraday_thesis.llm.gemini import GeminiClient, LLMClient
from intraday_thesis.serialization import to_jsonable
from intraday_thesis.types import Bar, Direction, FormingBar, Selection, SetupCandidate

log = logging.getLogger(__name__)

REASON_UNAVAILABLE = "LLM unavailable"
REASON_TIMEOUT = "LLM timeout"
REASON_ERROR = "LLM error"
REASON_PARSE = "LLM parse error"
REASON_SCHEMA = "LLM invalid schema"

SELECTION_SYSTEM = (
    "You are an intraday trading decision gate. Given closed 5-minute bars, the forming bar "
    "and rule-generated setup candidates, choose LONG, SHORT or PASS. Reply with JSON only: "
    '{"selected": "LONG|SHORT|PASS", "confidence": 0-100, "reason": "<one sentence>"}'
)

OPINION_SYSTEM = (
    "You read intraday tape. Given recent bars and the bot state, give your directional read for "
    "the next 30-60 minutes. Reply with JSON only: "
    '{"direction": "LONG|SHORT|NEUTRAL", "confidence": 0-100, "coachLine": "<short line>", '
    '"nextLevel": <price or null>, "likelihoodHit": 0-100, "override": false}'
)

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


@dataclass(frozen=True)
class SelectionRequest:
    ts: int
    symbol: str
    closed_bars: Tuple[Bar, ...]
    forming_bar: Optional[FormingBar]
    candidates: Tuple[SetupCandidate, ...]


@dataclass(frozen=True)
class SelectionResult:
    selection: Selection
    confidence: int = 0
    reason: str = ""
    valid: bool = True


@dataclass(frozen=True)
class OpinionRequest:
    ts: int
    symbol: str
    price: float
    closed_bars: Tuple[Bar, ...]
    forming_bar: Optional[FormingBar] = None
    bars_1m: Tuple[Bar, ...] = ()
    bot_state: dict = field(default_factory=dict)


@dataclass(frozen=True)
class DirectionOpinion:
    direction: Optional[Direction]  # None means NEUTRAL
    confidence: int = 0
    coach_line: Optional[str] = None
    next_level: Optional[float] = None
    likelihood_hit: Optional[int] = None
    override: bool = False
    valid: bool = True
    reason: str = ""

    @property
    def label(self) -> str:
        return self.direction.value if self.direction else "NEUTRAL"


def build_client(cfg: LLMConfig, *, max_timeout_s: Optional[float] = None) -> Optional[LLMClient]:
    if cfg.provider == "gemini":
        if not cfg.gemini_api_key:
            log.warning("LLM_PROVIDER=gemini but GEMINI_API_KEY is not set; gateway disabled")
            return None
        timeout_s = float(cfg.timeout_s)
        if max_timeout_s is not None:
            # The HTTP request must not outlive the gateway deadline.
            timeout_s = min(timeout_s, float(max_timeout_s))
        return GeminiClient(
            api_key=cfg.gemini_api_key,
            model=cfg.normalized_gemini_model(),
            timeout_s=timeout_s,
            temperature=cfg.temperature,
        )
    if cfg.provider not in {"", "off"}:
        log.warning("Unknown LLM_PROVIDER=%r; gateway disabled", cfg.provider)
    return None


class DecisionGateway:
    def __init__(self, client: Optional[LLMClient], *, timeout_s: float = 20.0) -> None:
        self._client = client
        self._timeout_s = float(timeout_s)
        self._executor: Optional[ThreadPoolExecutor] = None

    @classmethod
    def from_config(cls, cfg: LLMConfig, *, timeout_s: float = 20.0) -> "DecisionGateway":
        return cls(build_client(cfg, max_timeout_s=timeout_s), timeout_s=timeout_s)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    # ------------------------------------------------------------------

    def select(self, request: SelectionRequest) -> SelectionResult:
        if self._client is None:
            return _pass(REASON_UNAVAILABLE)
        prompt = build_selection_prompt(request)
        try:
            obj = parse_json_reply(self._call(prompt, SELECTION_SYSTEM))
            selection, confidence, reason = normalize_selection(obj)
        except GatewayError as exc:
            log.warning("Selection degraded to PASS at ts=%s: %s", request.ts, exc)
            return _pass(str(exc))
        log.info("Gateway selected %s (%d): %s", selection.value, confidence, reason)
        return SelectionResult(selection, confidence, reason, True)

    def direction_opinion(self, request: OpinionRequest) -> DirectionOpinion:
        if self._client is None:
            return DirectionOpinion(None, 0, valid=False, reason=REASON_UNAVAILABLE)
        prompt = build_opinion_prompt(request)
        try:
            obj = parse_json_reply(self._call(prompt, OPINION_SYSTEM))
            return normalize_opinion(obj)
        except GatewayError as exc:
            log.warning("Direction opinion degraded to NEUTRAL at ts=%s: %s", request.ts, exc)
            return DirectionOpinion(None, 0, valid=False, reason=str(exc))

    def _call(self, prompt: str, system: str) -> str:
        if self._client is None:
            raise GatewayError(REASON_UNAVAILABLE)
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="llm-gateway")
        future = self._executor.submit(self._client.generate, prompt=prompt, system=system)
        try:
            return future.result(timeout=self._timeout_s)
        except FutureTimeout:
            future.cancel()
            # The worker may still be blocked in the client; the next call gets a fresh one.
            self._executor.shutdown(wait=False)
            self._executor = None
            raise GatewayError(REASON_TIMEOUT) from None
        except Exception as exc:
            log.debug("LLM client error", exc_info=True)
            raise GatewayError(f"{REASON_ERROR}: {exc}") from exc


def _pass(reason: str) -> SelectionResult:
    return SelectionResult(Selection.PASS, 0, reason, False)


def parse_json_reply(text: str) -> dict:
    raw = str(text or "").strip()
    m = _FENCE.match(raw)
    if m:
        raw = m.group(1).strip()
    try:
        obj = json.loads(raw)
    except ValueError:
        # Tolerate chatter around a single JSON object.
        start, end = raw.find("{"), raw.rfind("}")
        if start < 0 or end <= start:
            raise GatewayError(REASON_PARSE) from None
        try:
            obj = json.loads(raw[start:end + 1])
        except ValueError:
            raise GatewayError(REASON_PARSE) from None
    if not isinstance(obj, dict):
        raise GatewayError(REASON_SCHEMA)
    return obj


def _confidence(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    v = float(value)
    if not math.isfinite(v) or v < 0 or v > 100:
        return None
    return v


def normalize_selection(obj: dict) -> Tuple[Selection, int, str]:
    selected = str(obj.get("selected", "")).strip().upper()
    if selected not in {s.value for s in Selection}:
        raise GatewayError(f"{REASON_SCHEMA}: selected={obj.get('selected')!r}")
    conf = _confidence(obj.get("confidence"))
    if conf is None:
        raise GatewayError(f"{REASON_SCHEMA}: confidence={obj.get('confidence')!r}")
    reason = obj.get("reason")
    if not isinstance(reason, str) or not reason.strip():
        raise GatewayError(f"{REASON_SCHEMA}: reason missing")
    return Selection(selected), int(round(conf)), reason.strip()


def normalize_opinion(obj: dict) -> DirectionOpinion:
    label = str(obj.get("direction", "")).strip().upper()
    if label not in {"LONG", "SHORT", "NEUTRAL"}:
        raise GatewayError(f"{REASON_SCHEMA}: direction={obj.get('direction')!r}")
    conf = _confidence(obj.get("confidence"))
    if conf is None:
        raise GatewayError(f"{REASON_SCHEMA}: confidence={obj.get('confidence')!r}")

    next_level = obj.get("nextLevel")
    if isinstance(next_level, bool) or not isinstance(next_level, (int, float)) or not math.isfinite(float(next_level)):
        next_level = None
    likelihood = _confidence(obj.get("likelihoodHit"))
    coach = obj.get("coachLine")
    return DirectionOpinion(
        direction=None if label == "NEUTRAL" else Direction(label),
        confidence=int(round(conf)),
        coach_line=coach.strip() if isinstance(coach, str) and coach.strip() else None,
        next_level=float(next_level) if next_level is not None else None,
        likelihood_hit=int(round(likelihood)) if likelihood is not None else None,
        override=obj.get("override") is True,
    )


def _bar_row(b: Bar) -> dict:
    return {"ts": b.ts, "o": round(b.open, 4), "h": round(b.high, 4), "l": round(b.low, 4),
            "c": round(b.close, 4), "v": b.volume}


def _forming_row(f: Optional[FormingBar]) -> Optional[dict]:
    if f is None:
        return None
    return {"startTs": f.start_ts, "o": f.open, "h": f.high, "l": f.low, "c": f.close, "v": f.volume,
            "progressMinutes": f.progress_minutes}


def _candidate_row(c: SetupCandidate) -> dict:
    return {
        "id": c.id,
        "direction": c.direction.value,
        "pattern": c.pattern.value,
        "entryZone": [round(c.entry_zone.low, 4), round(c.entry_zone.high, 4)],
        "stop": round(c.stop, 4),
        "targets": [round(t, 4) for t in c.targets.as_tuple()],
        "score": to_jsonable(c.score),
        "grade": c.grade,
        "flags": list(c.flags),
        "features": to_jsonable(c.features),
        "earlyIdea": c.early_idea,
        "notActionableReason": c.not_actionable_reason,
    }


def build_selection_prompt(request: SelectionRequest) -> str:
    payload = {
        "symbol": request.symbol,
        "ts": request.ts,
        "closedBars": [_bar_row(b) for b in request.closed_bars],
        "formingBar": _forming_row(request.forming_bar),
        "candidates": [_candidate_row(c) for c in request.candidates],
    }
    return json.dumps(payload, separators=(",", ":"))


def build_opinion_prompt(request: OpinionRequest) -> str:
    payload = {
        "symbol": request.symbol,
        "currentPrice": request.price,
        "closed5mBars": [_bar_row(b) for b in request.closed_bars],
        "forming5mBar": _forming_row(request.forming_bar),
        "bars1m": [_bar_row(b) for b in request.bars_1m],
        "botState": to_jsonable(request.bot_state),
    }
    return json.dumps(payload, separators=(",", ":"))


def candidates_for_request(candidates: Sequence[SetupCandidate], limit: int = 6) -> Tuple[SetupCandidate, ...]:
    return tuple(list(candidates)[:limit])
