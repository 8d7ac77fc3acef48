"""Agent loop result models.

Provides StepRecord (one iteration) and Outcome (the terminal result of a
run). Both are frozen: they are immutable records of what happened.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from agentloop.conversation import ConversationSnapshot
from agentloop.llm.protocols import Termination
from agentloop.models.content import ToolResultBlock
from agentloop.models.outcome import ErrorInfo, LoopStatus, Usage
from agentloop.orchestrator.budget import Budget


@dataclass(frozen=True)
class StepRecord:
    """What one loop iteration did.

    Attributes:
        iteration: 1-based iteration number.
        termination: How the gateway response was classified.
        text: Text of the agent turn.
        results: Tool results committed in this iteration.
        usage: Usage reported by the gateway for this iteration.
    """

    iteration: int
    termination: Termination
    text: str = ""
    results: tuple[ToolResultBlock, ...] = ()
    usage: Usage = field(default_factory=Usage)

    @property
    def tool_call_count(self) -> int:
        return len(self.results)


@dataclass(frozen=True)
class Outcome:
    """Terminal result of a loop run.

    Attributes:
        status: Terminal status (never RUNNING).
        content: Text of the most recent agent turn that had any, if one did.
        error: What ended a Failed or Cancelled run.
        usage: Accumulated usage, including delegated sub-runs.
        iterations: Gateway invocations performed.
        conversation: The full history at termination.
        budget: Budget state at termination.
        reason: Why an Exhausted run stopped.
    """

    status: LoopStatus
    content: str | None = None
    error: ErrorInfo | None = None
    usage: Usage = field(default_factory=Usage)
    iterations: int = 0
    conversation: ConversationSnapshot = field(default_factory=ConversationSnapshot)
    budget: Budget = field(default_factory=Budget)
    reason: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is LoopStatus.COMPLETED

    def summary(self) -> str:
        """One-line human readable description of the outcome."""
        parts = [f"{self.status.value} after {self.iterations} iteration(s)"]
        if self.error is not None:
            parts.append(f"{self.error.kind.value}: {self.error.message}")
        elif self.reason:
            parts.append(self.reason)
        return "; ".join(parts)
