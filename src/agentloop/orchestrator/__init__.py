"""Orchestrator package -- the agent loop, its budget, and its configuration.

Provides the AgentLoop class and module-level run() driver, LoopConfig,
the Budget model and its BudgetController, and the StepRecord / Outcome
result types.
"""

from agentloop.orchestrator.budget import Budget, BudgetController
from agentloop.orchestrator.config import LoopConfig, TimeoutPolicy
from agentloop.orchestrator.loop import AgentLoop, run
from agentloop.orchestrator.models import Outcome, StepRecord

__all__ = [
    # Core
    "AgentLoop",
    "run",
    # Config
    "LoopConfig",
    "TimeoutPolicy",
    # Budget
    "Budget",
    "BudgetController",
    # Results
    "Outcome",
    "StepRecord",
]
