"""Agentloop: a bounded, cancellable agent orchestration loop.

A model proposes tool calls; the loop validates them, gates sensitive ones
behind approval, runs them concurrently, feeds the results back, and stops
when the model gives a final answer or a budget runs out. Sub-tasks can be
delegated to independently budgeted sub-agents.
"""

from agentloop._version import __version__

# Core entry points
from agentloop.orchestrator import (
    AgentLoop,
    Budget,
    BudgetController,
    LoopConfig,
    Outcome,
    StepRecord,
    TimeoutPolicy,
    run,
)

# Content and conversation
from agentloop.models.content import (
    ApprovalDecisionBlock,
    ApprovalRequestBlock,
    ContentBlock,
    Risk,
    TextBlock,
    ToolCallBlock,
    ToolResultBlock,
    Turn,
    validate_block,
)
from agentloop.models.outcome import ErrorInfo, LoopStatus, Usage
from agentloop.conversation import ConversationSnapshot, ConversationState
from agentloop.cancellation import CancellationToken

# Tools
from agentloop.toolkit import (
    DispatchReport,
    ToolContext,
    ToolDescriptor,
    ToolDispatcher,
    ToolOutput,
    ToolRegistry,
)

# Approval
from agentloop.approval import (
    ApprovalGate,
    DeferredDecisions,
    RiskPolicy,
    ScriptedDecisions,
    auto_approve,
    log_and_approve,
    reject_all,
)

# Gateway
from agentloop.llm import (
    GatewayResponse,
    InvokeOptions,
    ModelConfig,
    ModelGateway,
    OpenAIGateway,
    Termination,
)

# Delegation, streaming, persistence
from agentloop.delegation import AgentTask, DelegationManager, file_ref_resolver
from agentloop.streaming import StreamChannel, StreamFragment, StreamRecorder
from agentloop.persistence import Checkpoint, restore, serialize
from agentloop.retry import PollResult, poll_until

# Errors
from agentloop.exceptions import (
    AgentLoopError,
    ApprovalDeniedError,
    BudgetExhaustedError,
    CancelledByCallerError,
    DelegationDepthExceededError,
    ErrorKind,
    GatewayFatalError,
    HandlerError,
    InvalidSequenceError,
    InvalidTransitionError,
    PersistenceError,
    RegistryError,
    RetryExhaustedError,
    SchemaValidationError,
    ToolTimeoutError,
    UnknownToolError,
)

__all__ = [
    "__version__",
    # Core
    "AgentLoop",
    "Budget",
    "BudgetController",
    "LoopConfig",
    "Outcome",
    "StepRecord",
    "TimeoutPolicy",
    "run",
    # Content and conversation
    "ApprovalDecisionBlock",
    "ApprovalRequestBlock",
    "ContentBlock",
    "ConversationSnapshot",
    "ConversationState",
    "ErrorInfo",
    "LoopStatus",
    "Risk",
    "TextBlock",
    "ToolCallBlock",
    "ToolResultBlock",
    "Turn",
    "Usage",
    "validate_block",
    "CancellationToken",
    # Tools
    "DispatchReport",
    "ToolContext",
    "ToolDescriptor",
    "ToolDispatcher",
    "ToolOutput",
    "ToolRegistry",
    # Approval
    "ApprovalGate",
    "DeferredDecisions",
    "RiskPolicy",
    "ScriptedDecisions",
    "auto_approve",
    "log_and_approve",
    "reject_all",
    # Gateway
    "GatewayResponse",
    "InvokeOptions",
    "ModelConfig",
    "ModelGateway",
    "OpenAIGateway",
    "Termination",
    # Delegation, streaming, persistence
    "AgentTask",
    "DelegationManager",
    "file_ref_resolver",
    "StreamChannel",
    "StreamFragment",
    "StreamRecorder",
    "Checkpoint",
    "restore",
    "serialize",
    "PollResult",
    "poll_until",
    # Errors
    "AgentLoopError",
    "ApprovalDeniedError",
    "BudgetExhaustedError",
    "CancelledByCallerError",
    "DelegationDepthExceededError",
    "ErrorKind",
    "GatewayFatalError",
    "HandlerError",
    "InvalidSequenceError",
    "InvalidTransitionError",
    "PersistenceError",
    "RegistryError",
    "RetryExhaustedError",
    "SchemaValidationError",
    "ToolTimeoutError",
    "UnknownToolError",
]
