"""Data models shared across agentloop components."""

from agentloop.models.content import (
    ApprovalDecisionBlock,
    ApprovalRequestBlock,
    ContentBlock,
    ErrorKind,
    Risk,
    TextBlock,
    ToolCallBlock,
    ToolResultBlock,
    Turn,
    validate_block,
)
from agentloop.models.outcome import ErrorInfo, LoopStatus, Usage

__all__ = [
    "ApprovalDecisionBlock",
    "ApprovalRequestBlock",
    "ContentBlock",
    "ErrorInfo",
    "ErrorKind",
    "LoopStatus",
    "Risk",
    "TextBlock",
    "ToolCallBlock",
    "ToolResultBlock",
    "Turn",
    "Usage",
    "validate_block",
]
