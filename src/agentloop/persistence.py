"""Serialization boundary for conversations and budgets.

A checkpoint is a versioned JSON document holding every turn of a
conversation plus the budget state. Restoring replays each turn through
``ConversationState.append`` so a blob with broken call/result pairing is
rejected instead of producing an inconsistent state.
"""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel, ConfigDict, ValidationError

from agentloop.conversation import ConversationState
from agentloop.exceptions import InvalidSequenceError, PersistenceError
from agentloop.models.content import Turn
from agentloop.models.outcome import LoopStatus
from agentloop.orchestrator.budget import Budget

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = 1


class Checkpoint(BaseModel):
    """Serialized form of a conversation and its budget."""

    model_config = ConfigDict(frozen=True)

    version: Literal[1] = CHECKPOINT_VERSION
    turns: tuple[Turn, ...] = ()
    budget: Budget = Budget()
    status: LoopStatus | None = None


def to_checkpoint(
    state: ConversationState,
    budget: Budget,
    status: LoopStatus | None = None,
) -> Checkpoint:
    return Checkpoint(turns=state.snapshot().turns, budget=budget, status=status)


def serialize(
    state: ConversationState,
    budget: Budget,
    status: LoopStatus | None = None,
) -> bytes:
    """Encode a conversation and budget as a UTF-8 JSON checkpoint."""
    return to_checkpoint(state, budget, status).model_dump_json().encode("utf-8")


def load_checkpoint(blob: bytes | str) -> Checkpoint:
    """Decode a checkpoint blob without replaying it.

    Raises:
        PersistenceError: If the blob is not a valid checkpoint document.
    """
    try:
        return Checkpoint.model_validate_json(blob)
    except ValidationError as e:
        raise PersistenceError(f"Unreadable checkpoint: {e.error_count()} error(s)") from e


def restore(blob: bytes | str) -> tuple[ConversationState, Budget]:
    """Rebuild the conversation state and budget from a checkpoint blob.

    Raises:
        PersistenceError: If the blob is unreadable or its turns violate
            the conversation's pairing rules.
    """
    checkpoint = load_checkpoint(blob)
    try:
        state = ConversationState(checkpoint.turns)
    except InvalidSequenceError as e:
        raise PersistenceError(f"Corrupt conversation history: {e}") from e
    logger.debug(
        "Restored %d turn(s), %d iteration(s) elapsed",
        len(state),
        checkpoint.budget.elapsed_iterations,
    )
    return state, checkpoint.budget
