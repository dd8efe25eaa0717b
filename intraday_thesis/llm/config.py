from __future__ import annotations

import os
from dataclasses import dataclass


def _get_env(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None or value == "" else value


def _get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


@dataclass(frozen=True)
class LLMConfig:
    provider: str = "off"  # off|gemini

    gemini_api_key: str | None = None
    gemini_model: str = "gemini-2.5-flash"

    timeout_s: float = 30.0
    temperature: float = 0.2

    @staticmethod
    def from_env() -> "LLMConfig":
        return LLMConfig(
            provider=_get_env("LLM_PROVIDER", "off").strip().lower(),
            gemini_api_key=(_get_env("GEMINI_API_KEY", "").strip() or None),
            gemini_model=_get_env("GEMINI_MODEL", "gemini-2.5-flash").strip(),
            timeout_s=_get_env_float("LLM_TIMEOUT_S", 30.0),
            temperature=_get_env_float("LLM_TEMPERATURE", 0.2),
        )

    @property
    def enabled(self) -> bool:
        return self.provider == "gemini"

    def normalized_gemini_model(self) -> str:
        """
        Normalize common shorthand model names to REST identifiers.

        The v1beta endpoint rejects guesses like "gemini-flash" with an opaque 404.
        """
        m = str(self.gemini_model or "").strip()
        aliases = {
            "gemini-flash": "gemini-2.5-flash",
            "gemini-pro": "gemini-2.5-pro",
            "gemini-2.5": "gemini-2.5-flash",
        }
        m = aliases.get(m, m)
        return m or "gemini-2.5-flash"
