from __future__ import annotations

import json
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import List, Protocol
from urllib.error import HTTPError


class LLMClient(Protocol):
    def generate(self, *, prompt: str, system: str | None = None) -> str: ...


@dataclass(frozen=True)
class GeminiClient(LLMClient):
    """
    Minimal Gemini REST client (no extra deps).

    Endpoint pattern (v1beta):
      https://generativelanguage.googleapis.com/v1beta/models/<model>:generateContent

    Requests ask for ``application/json`` output so the gateway can parse the
    reply directly.
    """

    api_key: str
    model: str = "gemini-2.5-flash"
    timeout_s: float = 30.0
    temperature: float = 0.2

    def generate(self, *, prompt: str, system: str | None = None) -> str:
        _validate_api_key(self.api_key)
        if not self.model:
            raise RuntimeError("GEMINI_MODEL is required")

        url = f"https://generativelanguage.googleapis.com/v1beta/models/{urllib.parse.quote(self.model)}:generateContent"
        payload: dict[str, object] = {
            "contents": [{"role": "user", "parts": [{"text": str(prompt)}]}],
            "generationConfig": {
                "temperature": float(self.temperature),
                "responseMimeType": "application/json",
            },
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": str(system)}]}

        req = urllib.request.Request(
            url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json", "x-goog-api-key": self.api_key},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=float(self.timeout_s)) as resp:
                data = json.loads(resp.read().decode("utf-8"))
        except HTTPError as exc:
            raise RuntimeError(_format_http_error(exc)) from exc
        try:
            # candidates[0].content.parts[].text
            parts = data["candidates"][0]["content"]["parts"]
            return "".join(str(p.get("text", "")) for p in parts)
        except (KeyError, IndexError, TypeError, AttributeError) as exc:
            raise RuntimeError(f"Unexpected Gemini response shape: {data}") from exc


@dataclass
class ScriptedClient(LLMClient):
    """Replays canned replies in order; the last reply repeats once the script runs out."""

    replies: List[str] = field(default_factory=list)
    prompts: List[str] = field(default_factory=list)

    def generate(self, *, prompt: str, system: str | None = None) -> str:
        self.prompts.append(prompt)
        if not self.replies:
            raise RuntimeError("ScriptedClient has no replies")
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]


def _format_http_error(exc: HTTPError) -> str:
    try:
        body = exc.read().decode("utf-8", errors="ignore")
    except Exception:
        body = ""
    detail = body.strip()
    try:
        j = json.loads(detail)
        # Common shape: {"error":{"code":400,"message":"...","status":"INVALID_ARGUMENT"}}
        if isinstance(j, dict) and "error" in j and isinstance(j["error"], dict):
            err = j["error"]
            msg = err.get("message") or detail
            status = err.get("status") or ""
            code = err.get("code") or exc.code
            return f"Gemini HTTP {code} {status}: {msg}"
    except ValueError:
        pass
    return f"Gemini HTTP {exc.code}: {detail or exc.reason}"


def _validate_api_key(api_key: str) -> None:
    """
    Fail fast with actionable errors so we don't end up with opaque HTTP 400s.
    """
    key = str(api_key or "")
    if not key:
        raise RuntimeError("GEMINI_API_KEY is required")
    for bad in [" ", "\t", "\n", "\r"]:
        if bad in key:
            raise RuntimeError("GEMINI_API_KEY contains whitespace; remove spaces/newlines and try again.")
    if "," in key:
        raise RuntimeError("GEMINI_API_KEY contains ',' (did you paste with a trailing comma?)")
    if key.startswith(("\"", "'")) or key.endswith(("\"", "'")):
        raise RuntimeError("GEMINI_API_KEY appears to include quotes; remove them in .env.")
    # Google API keys generally start with 'AIza'.
    if not key.startswith("AIza"):
        raise RuntimeError("GEMINI_API_KEY format looks wrong (expected to start with 'AIza...').")
