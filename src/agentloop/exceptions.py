"""Agentloop exception hierarchy.

All agentloop-specific exceptions inherit from AgentLoopError. Members of
the loop's error taxonomy carry an ``ErrorKind`` so that a caught exception
can be turned into an error-flagged tool result or a terminal outcome
without losing its classification.
"""

from __future__ import annotations

import enum


class ErrorKind(str, enum.Enum):
    """Classification of every error the loop can surface."""

    UNKNOWN_TOOL = "UnknownTool"
    SCHEMA_VALIDATION = "SchemaValidationError"
    HANDLER = "HandlerError"
    APPROVAL_DENIED = "ApprovalDenied"
    BUDGET_EXHAUSTED = "BudgetExhausted"
    GATEWAY_FATAL = "GatewayFatalError"
    CANCELLED = "CancelledByCaller"
    DELEGATION_DEPTH = "DelegationDepthExceeded"
    TOOL_TIMEOUT = "ToolTimeout"

    def __str__(self) -> str:
        return self.value


class AgentLoopError(Exception):
    """Base exception for all agentloop errors."""

    kind: ErrorKind | None = None


class UnknownToolError(AgentLoopError):
    """Raised when a tool call names a tool that is not registered."""

    kind = ErrorKind.UNKNOWN_TOOL

    def __init__(self, tool_name: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"Unknown tool: {tool_name}")


class SchemaValidationError(AgentLoopError):
    """Raised when tool input does not satisfy the tool's input schema."""

    kind = ErrorKind.SCHEMA_VALIDATION

    def __init__(self, tool_name: str, details: str) -> None:
        self.tool_name = tool_name
        self.details = details
        super().__init__(f"Invalid input for tool '{tool_name}': {details}")


class HandlerError(AgentLoopError):
    """Wraps an exception raised by a tool handler."""

    kind = ErrorKind.HANDLER

    def __init__(self, tool_name: str, cause: BaseException) -> None:
        self.tool_name = tool_name
        self.cause = cause
        super().__init__(f"{type(cause).__name__}: {cause}")


class ApprovalDeniedError(AgentLoopError):
    """Raised when a sensitive tool call is denied by the decision source."""

    kind = ErrorKind.APPROVAL_DENIED

    def __init__(self, tool_name: str, reason: str | None = None) -> None:
        self.tool_name = tool_name
        self.reason = reason
        msg = f"Approval denied for '{tool_name}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class BudgetExhaustedError(AgentLoopError):
    """Raised when an iteration or wall-clock budget runs out."""

    kind = ErrorKind.BUDGET_EXHAUSTED


class GatewayFatalError(AgentLoopError):
    """Raised when the model gateway fails in a way the loop cannot recover from."""

    kind = ErrorKind.GATEWAY_FATAL


class CancelledByCallerError(AgentLoopError):
    """Raised when caller-initiated cancellation is observed."""

    kind = ErrorKind.CANCELLED

    def __init__(self, reason: str = "Cancelled by caller") -> None:
        self.reason = reason
        super().__init__(reason)


class DelegationDepthExceededError(AgentLoopError):
    """Raised when a delegation would nest deeper than the configured maximum."""

    kind = ErrorKind.DELEGATION_DEPTH

    def __init__(self, depth: int, max_depth: int) -> None:
        self.depth = depth
        self.max_depth = max_depth
        super().__init__(
            f"Delegation depth {depth} exceeds maximum (max_depth: {max_depth})"
        )


class ToolTimeoutError(AgentLoopError):
    """Raised when a single tool invocation exceeds its per-call timeout."""

    kind = ErrorKind.TOOL_TIMEOUT

    def __init__(self, tool_name: str, timeout: float) -> None:
        self.tool_name = tool_name
        self.timeout = timeout
        super().__init__(f"Tool '{tool_name}' timed out after {timeout:g}s")


class InvalidSequenceError(AgentLoopError):
    """Raised when an appended turn breaks call/result or request/decision pairing."""


class InvalidTransitionError(AgentLoopError):
    """Raised when a terminal loop state is asked to transition again."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot transition from terminal state '{current}' to '{target}'"
        )


class RegistryError(AgentLoopError):
    """Raised when a tool registry is built from invalid descriptors."""


class PersistenceError(AgentLoopError):
    """Raised when a serialized conversation cannot be restored."""


class RetryExhaustedError(AgentLoopError):
    """All polling attempts finished without reaching the done condition."""

    def __init__(self, attempts: int, last_value: object = None) -> None:
        self.attempts = attempts
        self.last_value = last_value
        super().__init__(f"Gave up after {attempts} attempt(s)")
