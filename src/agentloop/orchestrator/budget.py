"""Budget model and the finite-state controller that enforces it.

The controller owns the loop's status. ``RUNNING`` moves to exactly one of
the terminal states (completed, exhausted, failed, cancelled) and never
leaves it. The iteration counter only moves forward.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from pydantic import BaseModel, Field

from agentloop.exceptions import AgentLoopError, InvalidTransitionError
from agentloop.models.outcome import ErrorInfo, LoopStatus

logger = logging.getLogger(__name__)


class Budget(BaseModel):
    """Bounds on one loop run.

    Attributes:
        max_iterations: Maximum number of gateway invocations.
        per_call_timeout: Seconds a single tool invocation may take, or None.
        wall_clock_timeout: Seconds the whole run may take, or None.
        elapsed_iterations: Gateway invocations performed so far.
    """

    max_iterations: int = Field(default=10, ge=0)
    per_call_timeout: float | None = Field(default=None, gt=0)
    wall_clock_timeout: float | None = Field(default=None, gt=0)
    elapsed_iterations: int = Field(default=0, ge=0)

    @property
    def remaining_iterations(self) -> int:
        return max(0, self.max_iterations - self.elapsed_iterations)


def _min_optional(*values: float | None) -> float | None:
    present = [v for v in values if v is not None]
    return min(present) if present else None


class BudgetController:
    """Finite-state controller bounding iterations, call time, and wall-clock time.

    Usage::

        controller = BudgetController(Budget(max_iterations=3))
        controller.start()
        while not controller.is_terminal:
            ...
            controller.advance()
            if controller.iterations_exhausted:
                controller.exhaust()
    """

    def __init__(
        self,
        budget: Budget,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._budget = budget.model_copy()
        self._clock = clock
        self._status = LoopStatus.RUNNING
        self._started_at: float | None = None
        self._error: ErrorInfo | None = None
        self._reason: str | None = None

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def budget(self) -> Budget:
        """Copy of the current budget (callers cannot mutate the controller's)."""
        return self._budget.model_copy()

    @property
    def status(self) -> LoopStatus:
        return self._status

    @property
    def error(self) -> ErrorInfo | None:
        return self._error

    @property
    def reason(self) -> str | None:
        """Why the run was exhausted, if it was."""
        return self._reason

    @property
    def is_terminal(self) -> bool:
        return self._status.is_terminal

    @property
    def iterations_exhausted(self) -> bool:
        return self._budget.elapsed_iterations >= self._budget.max_iterations

    @property
    def deadline(self) -> float | None:
        """Monotonic time at which the wall-clock budget expires, if any."""
        if self._budget.wall_clock_timeout is None or self._started_at is None:
            return None
        return self._started_at + self._budget.wall_clock_timeout

    def remaining_wall_clock(self) -> float | None:
        deadline = self.deadline
        if deadline is None:
            return None
        return max(0.0, deadline - self._clock())

    def wall_clock_expired(self) -> bool:
        remaining = self.remaining_wall_clock()
        return remaining is not None and remaining <= 0

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the wall clock. Calling start() again is a no-op."""
        if self._started_at is None:
            self._started_at = self._clock()

    def advance(self) -> int:
        """Record one gateway invocation and return the new iteration count."""
        if self.is_terminal:
            raise InvalidTransitionError(self._status.value, "advance")
        self._budget = self._budget.model_copy(
            update={"elapsed_iterations": self._budget.elapsed_iterations + 1}
        )
        return self._budget.elapsed_iterations

    def child_budget(
        self,
        *,
        max_iterations: int | None = None,
        per_call_timeout: float | None = None,
        wall_clock_timeout: float | None = None,
    ) -> Budget:
        """Build a budget for a nested run that never exceeds what remains here."""
        remaining = self._budget.remaining_iterations
        iterations = remaining if max_iterations is None else min(max_iterations, remaining)
        return Budget(
            max_iterations=iterations,
            per_call_timeout=_min_optional(per_call_timeout, self._budget.per_call_timeout),
            wall_clock_timeout=_min_optional(
                wall_clock_timeout, self._positive(self.remaining_wall_clock())
            ),
        )

    @staticmethod
    def _positive(value: float | None) -> float | None:
        # Budget rejects a zero timeout; an already expired clock maps to the
        # smallest representable positive bound.
        if value is None:
            return None
        return value if value > 0 else 1e-6

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def complete(self) -> None:
        self._transition(LoopStatus.COMPLETED)

    def exhaust(self, reason: str | None = None) -> None:
        self._transition(LoopStatus.EXHAUSTED)
        self._reason = reason

    def fail(self, error: AgentLoopError) -> None:
        self._transition(LoopStatus.FAILED)
        self._error = ErrorInfo.from_exception(error)

    def cancel(self, error: AgentLoopError | None = None) -> None:
        self._transition(LoopStatus.CANCELLED)
        if error is not None:
            self._error = ErrorInfo.from_exception(error)

    def _transition(self, target: LoopStatus) -> None:
        if self.is_terminal:
            raise InvalidTransitionError(self._status.value, target.value)
        logger.debug("Loop state %s -> %s", self._status.value, target.value)
        self._status = target
