"""Deterministic rule engines: regime, direction, tactical bias, volume policy and setups."""
