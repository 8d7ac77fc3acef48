"""Agent loop configuration types.

Provides TimeoutPolicy and LoopConfig. LoopConfig is a plain mutable
dataclass; callers may adjust settings between runs.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from agentloop.llm.protocols import ModelConfig

if TYPE_CHECKING:
    from agentloop.conversation import ConversationState
    from agentloop.models.content import Turn
    from agentloop.models.outcome import LoopStatus
    from agentloop.orchestrator.budget import Budget
    from agentloop.orchestrator.models import StepRecord


class TimeoutPolicy(str, enum.Enum):
    """What a per-call tool timeout does to the run.

    - ``ERROR_RESULT``: the call gets a ToolTimeout error result and the
      model decides how to react.
    - ``FAIL``: the run ends immediately as Failed.
    """

    ERROR_RESULT = "error_result"
    FAIL = "fail"


@dataclass
class LoopConfig:
    """Configuration for one agent loop run.

    Attributes:
        model: Model settings forwarded to the gateway on every call.
        max_iterations: Maximum number of gateway invocations.
        per_call_timeout: Default seconds a tool handler may run (None = no limit).
        wall_clock_timeout: Seconds the whole run may take (None = no limit).
        max_depth: Maximum delegation depth; the top-level loop is depth 0.
        max_workers: Upper bound on concurrently running tool calls.
        streaming: Ask the gateway to stream and mirror text to the subscriber.
        timeout_policy: What a per-call timeout does to the run.
        allow_nested_delegation: Whether sub-agents keep the delegate_task tool.
        sub_agent_max_iterations: Default iteration budget for sub-agents.
        poll_interval: Seconds between checks while waiting on the gateway
            or on tool calls.
        on_step: Callback invoked after each iteration with a StepRecord.
        on_turn: Callback invoked after each committed turn.
        on_checkpoint: Callback invoked with (state, budget, status) after
            each iteration and once more when the run ends; wire a
            checkpoint store here.
    """

    model: ModelConfig = field(default_factory=ModelConfig)
    max_iterations: int = 10
    per_call_timeout: float | None = None
    wall_clock_timeout: float | None = None
    max_depth: int = 2
    max_workers: int = 8
    streaming: bool = False
    timeout_policy: TimeoutPolicy = TimeoutPolicy.ERROR_RESULT
    allow_nested_delegation: bool = False
    sub_agent_max_iterations: int = 5
    poll_interval: float = 0.05
    on_step: Callable[[StepRecord], None] | None = None
    on_turn: Callable[[Turn], None] | None = None
    on_checkpoint: Callable[[ConversationState, Budget, LoopStatus], None] | None = None
