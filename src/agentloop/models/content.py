"""Content block and turn models for agentloop.

Defines the five content block types as frozen Pydantic models joined in a
discriminated union (ContentBlock), and the Turn that groups blocks into one
exchange unit. Turns are immutable once built; the conversation only ever
appends them.
"""

from __future__ import annotations

import enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from agentloop.exceptions import ErrorKind, InvalidSequenceError

__all__ = [
    "ApprovalDecisionBlock",
    "ApprovalRequestBlock",
    "ContentBlock",
    "ErrorKind",
    "Risk",
    "TextBlock",
    "ToolCallBlock",
    "ToolResultBlock",
    "Turn",
    "validate_block",
]


class Risk(str, enum.Enum):
    """Risk level attached to a sensitive action."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_ORDER[self]


_RISK_ORDER: dict[Risk, int] = {Risk.LOW: 0, Risk.MEDIUM: 1, Risk.HIGH: 2}


class _Block(BaseModel):
    model_config = ConfigDict(frozen=True)


class TextBlock(_Block):
    """Plain text produced by the model or supplied by the user."""

    type: Literal["text"] = "text"
    text: str


class ToolCallBlock(_Block):
    """A capability invocation requested by the model."""

    type: Literal["tool_call"] = "tool_call"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(_Block):
    """The matched outcome of a ToolCallBlock, correlated by ``call_id``."""

    type: Literal["tool_result"] = "tool_result"
    call_id: str
    output: str = ""
    is_error: bool = False
    error_kind: ErrorKind | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ApprovalRequestBlock(_Block):
    """A request for a decision on a sensitive tool call."""

    type: Literal["approval_request"] = "approval_request"
    id: str
    call_id: str
    tool_name: str
    action: str
    input: dict[str, Any] = Field(default_factory=dict)
    risk: Risk = Risk.MEDIUM
    reversible: bool = True


class ApprovalDecisionBlock(_Block):
    """The resolution of an ApprovalRequestBlock."""

    type: Literal["approval_decision"] = "approval_decision"
    request_id: str
    approved: bool
    reason: str | None = None
    decided_by: str | None = None


ContentBlock = Annotated[
    Union[
        TextBlock,
        ToolCallBlock,
        ToolResultBlock,
        ApprovalRequestBlock,
        ApprovalDecisionBlock,
    ],
    Field(discriminator="type"),
]

_block_adapter = TypeAdapter(ContentBlock)


def validate_block(data: dict) -> ContentBlock:
    """Validate a raw dict into the matching content block model.

    Raises:
        InvalidSequenceError: If the dict matches no block type.
    """
    try:
        return _block_adapter.validate_python(data)
    except ValidationError as e:
        raise InvalidSequenceError(f"Invalid content block: {e}") from e


class Turn(BaseModel):
    """One exchange unit: an ordered, immutable sequence of content blocks.

    ``agent`` turns come from the model gateway; ``user`` turns carry the
    task, tool results, and approval records produced by the loop.
    """

    model_config = ConfigDict(frozen=True)

    role: Literal["user", "agent"]
    blocks: tuple[ContentBlock, ...] = ()

    @classmethod
    def user_text(cls, text: str) -> Turn:
        return cls(role="user", blocks=(TextBlock(text=text),))

    @property
    def text(self) -> str:
        """Concatenation of every text block, in order, with no separator."""
        return "".join(b.text for b in self.blocks if isinstance(b, TextBlock))

    @property
    def tool_calls(self) -> list[ToolCallBlock]:
        return [b for b in self.blocks if isinstance(b, ToolCallBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.blocks if isinstance(b, ToolResultBlock)]
