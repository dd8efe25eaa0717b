"""
Execution orchestrator.

Consumes the rule engines' output on every closed decision bar, asks the
decision gateway to pick LONG/SHORT/PASS when enough candidates exist, and
walks the thesis through its phases:

    WAITING_FOR_THESIS -> WAITING_FOR_PULLBACK -> WAITING_FOR_ENTRY -> IN_TRADE

Trade exits are close-based (stopped_out / target_hit) and return the
machine to WAITING_FOR_THESIS with every trade field cleared. Direction
flips go through a debouncer so a single noisy selection cannot flip the
thesis.
"""

from intraday_thesis.orchestrator.machine import Orchestrator
from intraday_thesis.orchestrator.state import MinimalExecutionState, Phase

__all__ = ["MinimalExecutionState", "Orchestrator", "Phase"]
