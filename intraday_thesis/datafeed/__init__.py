"""Bar ingestion: 1m -> Nm aggregation and feed adapters with reconnect/backoff."""
