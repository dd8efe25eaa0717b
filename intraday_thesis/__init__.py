"""
Intraday thesis engine.

Consumes a stream of 1-minute bars for one instrument and decides, bar by
bar, whether a directional thesis exists, when it becomes tradeable and
when the resulting position should be closed.

Pipeline per tick:

    1m bar -> BarAggregator -> indicators -> RegimeClassifier
           -> DirectionInferenceEngine / TacticalBiasEngine
           -> SetupEngine -> DecisionGateway -> Orchestrator
           -> DomainEvent stream (EventPublisher)

Usage:
    from intraday_thesis.config import EngineConfig
    from intraday_thesis.engine import Engine

    engine = Engine.from_config(EngineConfig.from_env())
    events = engine.process_bar(bar)
"""

__version__ = "0.1.0"
