from __future__ import annotations


class ThesisEngineError(Exception):
    """Base class for engine errors."""


class FeedError(ThesisEngineError):
    """Transport-level failure of the bar feed; recovered by reconnecting."""

    def __init__(self, message: str, *, connection_limit: bool = False) -> None:
        super().__init__(message)
        self.connection_limit = bool(connection_limit)


class FeedExhausted(ThesisEngineError):
    """The bar feed has no more data. The only condition that ends the ingest loop."""


class GatewayError(ThesisEngineError):
    """LLM transport or parse failure. Never escapes the gateway."""


class InvalidEventError(ThesisEngineError, ValueError):
    """A domain event failed validation at the publish boundary."""


class InvalidRiskGeometry(ThesisEngineError, ValueError):
    """A candidate stop is equal to, or on the wrong side of, its entry."""
