"""SQLite checkpoint store.

Uses SQLAlchemy 2.0-style queries (select() + session.execute()). Each
operation runs in its own short session so the store can be shared between
threads (a loop's checkpoint hook and a CLI reading the same file).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import Engine, select

from agentloop.conversation import ConversationState
from agentloop.exceptions import PersistenceError
from agentloop.models.outcome import LoopStatus
from agentloop.orchestrator.budget import Budget
from agentloop.persistence import Checkpoint, load_checkpoint, restore, serialize
from agentloop.storage.engine import create_session_factory, init_db
from agentloop.storage.schema import CheckpointRow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckpointInfo:
    """Summary of a stored run, readable without replaying its turns."""

    run_id: str
    status: LoopStatus
    turn_count: int
    iterations: int
    max_iterations: int
    created_at: datetime
    updated_at: datetime


def _info(row: CheckpointRow) -> CheckpointInfo:
    return CheckpointInfo(
        run_id=row.run_id,
        status=row.status,
        turn_count=row.turn_count,
        iterations=row.iterations,
        max_iterations=row.max_iterations,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqliteCheckpointStore:
    """Stores the latest checkpoint of each run.

    Usage::

        store = SqliteCheckpointStore(create_store_engine("runs.db"))
        config = LoopConfig(on_checkpoint=store.hook("run-1"))
        AgentLoop(gateway, registry, config).run("...")
        state, budget = store.load("run-1")
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        init_db(engine)
        self._session_factory = create_session_factory(engine)

    @property
    def engine(self) -> Engine:
        return self._engine

    def save(
        self,
        run_id: str,
        state: ConversationState,
        budget: Budget,
        status: LoopStatus = LoopStatus.RUNNING,
    ) -> None:
        """Insert or replace the checkpoint for ``run_id``."""
        payload = serialize(state, budget, status).decode("utf-8")
        now = datetime.now(timezone.utc)
        with self._session_factory() as session:
            row = session.get(CheckpointRow, run_id)
            if row is None:
                row = CheckpointRow(run_id=run_id, created_at=now)
                session.add(row)
            row.status = status
            row.turn_count = len(state)
            row.iterations = budget.elapsed_iterations
            row.max_iterations = budget.max_iterations
            row.payload_json = payload
            row.updated_at = now
            session.commit()
        logger.debug("Saved checkpoint %s (%s, %d turn(s))", run_id, status.value, len(state))

    def load(self, run_id: str) -> tuple[ConversationState, Budget]:
        """Restore the conversation and budget of ``run_id``.

        Raises:
            PersistenceError: If the run is unknown or its payload is corrupt.
        """
        return restore(self._row(run_id).payload_json)

    def load_checkpoint(self, run_id: str) -> Checkpoint:
        """Decode the stored checkpoint of ``run_id`` without replaying it."""
        return load_checkpoint(self._row(run_id).payload_json)

    def get(self, run_id: str) -> CheckpointInfo:
        """Return the stored summary for ``run_id``.

        Raises:
            PersistenceError: If the run is unknown.
        """
        return _info(self._row(run_id))

    def list_runs(self) -> list[CheckpointInfo]:
        """All stored runs, most recently updated first."""
        stmt = select(CheckpointRow).order_by(CheckpointRow.updated_at.desc())
        with self._session_factory() as session:
            return [_info(row) for row in session.execute(stmt).scalars().all()]

    def delete(self, run_id: str) -> bool:
        """Delete ``run_id``. Returns False if it was not stored."""
        with self._session_factory() as session:
            row = session.get(CheckpointRow, run_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
        return True

    def hook(self, run_id: str) -> Callable[[ConversationState, Budget, LoopStatus], None]:
        """Build a ``LoopConfig.on_checkpoint`` callback saving under ``run_id``."""

        def on_checkpoint(state: ConversationState, budget: Budget, status: LoopStatus) -> None:
            self.save(run_id, state, budget, status)

        return on_checkpoint

    def _row(self, run_id: str) -> CheckpointRow:
        with self._session_factory() as session:
            row = session.get(CheckpointRow, run_id)
        if row is None:
            raise PersistenceError(f"No checkpoint stored for run '{run_id}'")
        return row
