"""Loop status, usage accounting, and structured error records."""

from __future__ import annotations

import enum

from pydantic import BaseModel

from agentloop.exceptions import AgentLoopError, ErrorKind


class LoopStatus(str, enum.Enum):
    """Lifecycle states of one loop run.

    ``RUNNING`` is the only non-terminal state; every other state is final.
    """

    RUNNING = "running"
    COMPLETED = "completed"
    EXHAUSTED = "exhausted"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not LoopStatus.RUNNING

    def __str__(self) -> str:
        return self.value


class Usage(BaseModel):
    """Resource usage accumulated over a run, including delegated sub-runs."""

    input_tokens: int = 0
    output_tokens: int = 0
    gateway_calls: int = 0
    tool_calls: int = 0
    delegated_runs: int = 0

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            gateway_calls=self.gateway_calls + other.gateway_calls,
            tool_calls=self.tool_calls + other.tool_calls,
            delegated_runs=self.delegated_runs + other.delegated_runs,
        )

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class ErrorInfo(BaseModel):
    """Serializable description of the error that ended a run."""

    kind: ErrorKind
    message: str

    @classmethod
    def from_exception(cls, exc: AgentLoopError) -> ErrorInfo:
        return cls(kind=exc.kind or ErrorKind.GATEWAY_FATAL, message=str(exc))
