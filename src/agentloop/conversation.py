"""Conversation state: the ordered, append-only turn history of one loop run.

The state enforces pairing as turns arrive. Every tool call opened by an
agent turn must be answered by exactly one tool result before another agent
turn may be appended, and approval decisions must answer requests issued in
the same window. A turn that breaks these rules is rejected whole; the
history is left exactly as it was.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from agentloop.exceptions import InvalidSequenceError
from agentloop.models.content import (
    ApprovalDecisionBlock,
    ApprovalRequestBlock,
    ToolCallBlock,
    ToolResultBlock,
    Turn,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversationSnapshot:
    """Immutable view of the conversation at one point in time."""

    turns: tuple[Turn, ...] = ()

    def __len__(self) -> int:
        return len(self.turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(self.turns)

    @property
    def last_agent_turn(self) -> Turn | None:
        for turn in reversed(self.turns):
            if turn.role == "agent":
                return turn
        return None

    @property
    def last_agent_text(self) -> str | None:
        """Text of the most recent agent turn that said anything."""
        for turn in reversed(self.turns):
            if turn.role == "agent" and turn.text:
                return turn.text
        return None


@dataclass
class _Window:
    """Ids still awaiting an answer since the last agent turn."""

    calls: dict[str, ToolCallBlock]
    requests: dict[str, ApprovalRequestBlock]
    decided: set[str]

    def copy(self) -> _Window:
        return _Window(dict(self.calls), dict(self.requests), set(self.decided))


class ConversationState:
    """Append-only conversation history with call/result pairing checks.

    Usage::

        state = ConversationState()
        state.append(Turn.user_text("Summarize the report"))
        snapshot = state.snapshot()
    """

    def __init__(self, turns: Iterable[Turn] = ()) -> None:
        self._turns: list[Turn] = []
        self._window = _Window({}, {}, set())
        for turn in turns:
            self.append(turn)

    @classmethod
    def from_snapshot(cls, snapshot: ConversationSnapshot) -> ConversationState:
        """Rebuild a state by replaying every turn of a snapshot."""
        return cls(snapshot.turns)

    def __len__(self) -> int:
        return len(self._turns)

    @property
    def pending_call_ids(self) -> list[str]:
        return list(self._window.calls)

    @property
    def pending_approval_ids(self) -> list[str]:
        return [rid for rid in self._window.requests if rid not in self._window.decided]

    @property
    def has_pending(self) -> bool:
        return bool(self._window.calls) or bool(self.pending_approval_ids)

    def snapshot(self) -> ConversationSnapshot:
        return ConversationSnapshot(turns=tuple(self._turns))

    def append(self, turn: Turn) -> None:
        """Append a turn after validating it against the open window.

        Raises:
            InvalidSequenceError: If the turn answers an id that is not
                pending, answers one twice, or opens new tool calls while
                earlier ones are unanswered.
        """
        if turn.role == "agent":
            window = self._check_agent_turn(turn)
        else:
            window = self._check_user_turn(turn)
        self._turns.append(turn)
        self._window = window

    def _check_agent_turn(self, turn: Turn) -> _Window:
        if self._window.calls:
            raise InvalidSequenceError(
                f"Cannot append agent turn: tool call(s) "
                f"{sorted(self._window.calls)} have no result yet"
            )
        calls: dict[str, ToolCallBlock] = {}
        for block in turn.blocks:
            if isinstance(block, (ToolResultBlock, ApprovalRequestBlock, ApprovalDecisionBlock)):
                raise InvalidSequenceError(
                    f"Agent turns cannot carry {block.type} blocks"
                )
            if isinstance(block, ToolCallBlock):
                if block.id in calls:
                    raise InvalidSequenceError(f"Duplicate tool call id: {block.id}")
                calls[block.id] = block
        return _Window(calls, {}, set())

    def _check_user_turn(self, turn: Turn) -> _Window:
        window = self._window.copy()
        for block in turn.blocks:
            if isinstance(block, ToolCallBlock):
                raise InvalidSequenceError("User turns cannot carry tool_call blocks")

            if isinstance(block, ApprovalRequestBlock):
                if block.call_id not in window.calls:
                    raise InvalidSequenceError(
                        f"Approval request {block.id} references unknown call {block.call_id}"
                    )
                if block.id in window.requests:
                    raise InvalidSequenceError(f"Duplicate approval request id: {block.id}")
                window.requests[block.id] = block

            elif isinstance(block, ApprovalDecisionBlock):
                if block.request_id not in window.requests:
                    raise InvalidSequenceError(
                        f"Approval decision references unknown request {block.request_id}"
                    )
                if block.request_id in window.decided:
                    raise InvalidSequenceError(
                        f"Approval request {block.request_id} was already decided"
                    )
                window.decided.add(block.request_id)

            elif isinstance(block, ToolResultBlock):
                if block.call_id not in window.calls:
                    raise InvalidSequenceError(
                        f"Tool result references unknown or answered call {block.call_id}"
                    )
                undecided = [
                    rid
                    for rid, req in window.requests.items()
                    if req.call_id == block.call_id and rid not in window.decided
                ]
                if undecided:
                    raise InvalidSequenceError(
                        f"Tool result for {block.call_id} precedes decision on {undecided[0]}"
                    )
                del window.calls[block.call_id]
        return window
