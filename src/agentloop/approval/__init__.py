"""Approval gating for sensitive tool calls."""

from agentloop.approval.gate import ApprovalGate, DecisionProvider, describe_action
from agentloop.approval.providers import (
    DeferredDecisions,
    RiskPolicy,
    ScriptedDecisions,
    auto_approve,
    cli_prompt,
    log_and_approve,
    make_reject_handler,
    reject_all,
)

__all__ = [
    "ApprovalGate",
    "DecisionProvider",
    "describe_action",
    # Providers
    "auto_approve",
    "cli_prompt",
    "log_and_approve",
    "make_reject_handler",
    "reject_all",
    "DeferredDecisions",
    "RiskPolicy",
    "ScriptedDecisions",
]
