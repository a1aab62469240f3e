"""Orchestration engine.

Key Components:
    - PhaseController: Phase state machine for one session
    - QualityGate: Bounded produce/verify iteration
    - ResponseCorrelator: Request/reply over the issue comment stream
    - SequentialExecution / DelegatedExecution: Multi-unit phase strategies
    - SessionStateStore: Per-session state and iteration ledger
    - SessionManager / EventClassifier: Event routing
"""

from issue_forge.engine.controller import PhaseController, SessionOutcome
from issue_forge.engine.correlator import ResponseCorrelator
from issue_forge.engine.execution import DelegatedExecution, ExecutionStrategy, SequentialExecution
from issue_forge.engine.quality_gate import GateResult, QualityGate
from issue_forge.engine.state_manager import SessionStateStore

__all__ = [
    "DelegatedExecution",
    "ExecutionStrategy",
    "GateResult",
    "PhaseController",
    "QualityGate",
    "ResponseCorrelator",
    "SequentialExecution",
    "SessionOutcome",
    "SessionStateStore",
]
