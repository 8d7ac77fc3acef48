"""ToolDispatcher: executes one turn's tool calls against the registry.

Provides a single ``dispatch()`` method that validates every call, routes
sensitive ones through the approval gate, runs handlers concurrently, and
returns exactly one ``ToolResultBlock`` per call. Locally recoverable
failures (unknown tool, invalid input, denial, handler exception, timeout)
become error-flagged results; nothing raises out of ``dispatch()``.

Handlers run on a thread pool. A handler that overruns its timeout, or
whose call is cancelled, is abandoned rather than awaited: its result slot
is filled immediately and whatever the thread returns later is discarded.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from agentloop.cancellation import CancellationToken
from agentloop.exceptions import (
    AgentLoopError,
    ApprovalDeniedError,
    BudgetExhaustedError,
    CancelledByCallerError,
    HandlerError,
    ToolTimeoutError,
    UnknownToolError,
)
from agentloop.models.content import (
    ApprovalDecisionBlock,
    ApprovalRequestBlock,
    ToolCallBlock,
    ToolResultBlock,
)
from agentloop.toolkit.models import ToolContext, ToolOutput, render_output

if TYPE_CHECKING:
    from collections.abc import Sequence

    from agentloop.approval.gate import ApprovalGate
    from agentloop.toolkit.models import ToolDescriptor
    from agentloop.toolkit.registry import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchReport:
    """Everything one ``dispatch()`` call produced.

    Attributes:
        results: One result per call, in call order.
        approval_blocks: Request/decision pairs for gated calls, in call order.
        timed_out: Ids of calls that exceeded their per-call timeout.
        interrupted: ``"cancelled"`` or ``"deadline"`` when the batch was cut
            short, otherwise None.
    """

    results: tuple[ToolResultBlock, ...] = ()
    approval_blocks: tuple[ApprovalRequestBlock | ApprovalDecisionBlock, ...] = ()
    timed_out: tuple[str, ...] = ()
    interrupted: str | None = None

    def result_for(self, call_id: str) -> ToolResultBlock | None:
        for result in self.results:
            if result.call_id == call_id:
                return result
        return None

    @property
    def has_errors(self) -> bool:
        return any(r.is_error for r in self.results)


@dataclass
class _Slot:
    """Mutable per-call state shared between the dispatcher and a worker."""

    call: ToolCallBlock
    token: CancellationToken
    descriptor: ToolDescriptor | None = None
    arguments: dict = field(default_factory=dict)
    future: Future | None = None
    request: ApprovalRequestBlock | None = None
    decision: ApprovalDecisionBlock | None = None
    started_at: float | None = None
    timeout: float | None = None
    result: ToolResultBlock | None = None
    lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def closed(self) -> bool:
        return self.result is not None


def error_result(call_id: str, error: AgentLoopError, **metadata: object) -> ToolResultBlock:
    """Build an error-flagged result from a taxonomy exception."""
    return ToolResultBlock(
        call_id=call_id,
        output=str(error),
        is_error=True,
        error_kind=error.kind,
        metadata=dict(metadata),
    )


class ToolDispatcher:
    """Runs tool calls concurrently and joins on all of them.

    Usage::

        dispatcher = ToolDispatcher(registry, gate=ApprovalGate(auto_approve))
        report = dispatcher.dispatch(turn.tool_calls, cancel=token)
        for result in report.results:
            print(result.call_id, result.is_error, result.output)
    """

    def __init__(
        self,
        registry: ToolRegistry,
        gate: ApprovalGate | None = None,
        *,
        max_workers: int = 8,
        per_call_timeout: float | None = None,
        poll_interval: float = 0.05,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._registry = registry
        self._gate = gate
        self._max_workers = max_workers
        self._per_call_timeout = per_call_timeout
        self._poll_interval = poll_interval
        self._lock = threading.Lock()
        self._active: dict[str, _Slot] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def dispatch(
        self,
        calls: Sequence[ToolCallBlock],
        *,
        cancel: CancellationToken | None = None,
        deadline: float | None = None,
    ) -> DispatchReport:
        """Execute every call and return once each has a result.

        Args:
            calls: Tool calls from one agent turn.
            cancel: Token whose cancellation abandons every unfinished call.
            deadline: ``time.monotonic()`` value after which unfinished
                calls are abandoned with a BudgetExhausted result.

        Returns:
            DispatchReport with exactly one result per call.
        """
        batch_token = cancel.child() if cancel is not None else CancellationToken()
        slots = [_Slot(call=call, token=batch_token.child()) for call in calls]
        runnable = [slot for slot in slots if self._prepare(slot)]

        interrupted: str | None = None
        timed_out: list[str] = []
        if runnable:
            interrupted = self._run(runnable, batch_token, deadline, timed_out)

        approval_blocks: list[ApprovalRequestBlock | ApprovalDecisionBlock] = []
        for slot in slots:
            if slot.request is not None:
                approval_blocks.append(slot.request)
                approval_blocks.append(slot.decision)  # type: ignore[arg-type]

        report = DispatchReport(
            results=tuple(slot.result for slot in slots),  # type: ignore[misc]
            approval_blocks=tuple(approval_blocks),
            timed_out=tuple(timed_out),
            interrupted=interrupted,
        )
        logger.debug(
            "Dispatched %d call(s): %d error(s)%s",
            len(slots),
            sum(1 for r in report.results if r.is_error),
            f", interrupted ({interrupted})" if interrupted else "",
        )
        return report

    def cancel_call(self, call_id: str, reason: str = "Cancelled by caller") -> bool:
        """Cancel one in-flight call; the rest of its batch continues.

        Returns:
            True if the call was in flight, False otherwise.
        """
        with self._lock:
            slot = self._active.get(call_id)
        if slot is None or slot.closed:
            return False
        slot.token.cancel(reason)
        return True

    # ------------------------------------------------------------------
    # Internal methods
    # ------------------------------------------------------------------

    def _prepare(self, slot: _Slot) -> bool:
        """Resolve the descriptor and validate input; close the slot on failure."""
        call = slot.call
        descriptor = self._registry.get(call.name)
        if descriptor is None:
            slot.result = error_result(call.id, UnknownToolError(call.name))
            return False
        try:
            slot.arguments = descriptor.validate_input(call.input)
        except AgentLoopError as exc:
            slot.result = error_result(call.id, exc)
            return False
        slot.descriptor = descriptor
        slot.timeout = (
            descriptor.timeout if descriptor.timeout is not None else self._per_call_timeout
        )
        return True

    def _run(
        self,
        slots: list[_Slot],
        batch_token: CancellationToken,
        deadline: float | None,
        timed_out: list[str],
    ) -> str | None:
        pool = ThreadPoolExecutor(
            max_workers=min(len(slots), self._max_workers),
            thread_name_prefix="agentloop-tool",
        )
        with self._lock:
            for slot in slots:
                self._active[slot.call.id] = slot
        try:
            for slot in slots:
                slot.future = pool.submit(self._execute, slot)
            return self._join(slots, batch_token, deadline, timed_out)
        finally:
            with self._lock:
                for slot in slots:
                    self._active.pop(slot.call.id, None)
            pool.shutdown(wait=False, cancel_futures=True)

    def _join(
        self,
        slots: list[_Slot],
        batch_token: CancellationToken,
        deadline: float | None,
        timed_out: list[str],
    ) -> str | None:
        open_slots = list(slots)
        while open_slots:
            now = time.monotonic()
            interrupted: str | None = None
            if batch_token.is_cancelled:
                interrupted = "cancelled"
            elif deadline is not None and now >= deadline:
                interrupted = "deadline"

            still_open = []
            for slot in open_slots:
                if slot.future.done():  # type: ignore[union-attr]
                    self._close(slot, self._collect(slot))
                elif interrupted == "deadline":
                    self._close(slot, error_result(
                        slot.call.id,
                        BudgetExhaustedError("Wall-clock budget ran out before the call finished"),
                    ))
                elif slot.token.is_cancelled:
                    self._close(slot, error_result(slot.call.id, _cancelled(slot.token)))
                elif self._overran(slot, now):
                    logger.debug("Tool %s (%s) timed out", slot.call.name, slot.call.id)
                    timed_out.append(slot.call.id)
                    self._close(slot, error_result(
                        slot.call.id,
                        ToolTimeoutError(slot.call.name, slot.timeout),  # type: ignore[arg-type]
                    ))
                else:
                    still_open.append(slot)
            if interrupted is not None:
                return interrupted

            open_slots = still_open
            if open_slots:
                wait = self._poll_interval
                if deadline is not None:
                    wait = max(0.0, min(wait, deadline - time.monotonic()))
                batch_token.wait(wait)
        return None

    @staticmethod
    def _overran(slot: _Slot, now: float) -> bool:
        with slot.lock:
            started = slot.started_at
        return slot.timeout is not None and started is not None and now - started >= slot.timeout

    def _close(self, slot: _Slot, result: ToolResultBlock) -> None:
        """Fill the slot's result exactly once and settle any open approval."""
        with slot.lock:
            if slot.closed:
                return
            if slot.request is not None and slot.decision is None:
                slot.decision = ApprovalDecisionBlock(
                    request_id=slot.request.id,
                    approved=False,
                    reason="Call ended before a decision was made",
                    decided_by="gate",
                )
            slot.result = result
        if slot.future is not None and not slot.future.done():
            # Abandoned: drop it if still queued, tell a running handler to stop.
            slot.future.cancel()
            slot.token.cancel(f"Call {slot.call.id} abandoned")

    @staticmethod
    def _collect(slot: _Slot) -> ToolResultBlock:
        try:
            return slot.future.result()  # type: ignore[union-attr]
        except Exception as exc:
            # _execute never raises; guards against a cancelled future.
            logger.debug("Worker for %s failed", slot.call.id, exc_info=True)
            return error_result(slot.call.id, HandlerError(slot.call.name, exc))

    def _execute(self, slot: _Slot) -> ToolResultBlock:
        """Worker body: approval (if gated), then the handler."""
        call = slot.call
        descriptor = slot.descriptor
        assert descriptor is not None
        if slot.token.is_cancelled:
            return error_result(call.id, _cancelled(slot.token))

        if self._gate is not None and self._gate.requires_gating(descriptor):
            request = self._gate.build_request(call, descriptor)
            with slot.lock:
                if slot.closed:
                    return slot.result  # type: ignore[return-value]
                slot.request = request
            decision = self._gate.request_decision(request, cancel=slot.token)
            with slot.lock:
                if slot.closed:
                    return slot.result  # type: ignore[return-value]
                slot.decision = decision
            if not decision.approved:
                return error_result(
                    call.id, ApprovalDeniedError(call.name, decision.reason)
                )

        if slot.token.is_cancelled:
            return error_result(call.id, _cancelled(slot.token))

        kwargs = dict(slot.arguments)
        if descriptor.takes_context:
            kwargs["context"] = ToolContext(call_id=call.id, cancel=slot.token)

        with slot.lock:
            slot.started_at = time.monotonic()
        try:
            value = descriptor.handler(**kwargs)
        except Exception as exc:
            logger.debug("Tool %s failed: %s", call.name, exc, exc_info=True)
            return error_result(call.id, HandlerError(call.name, exc))
        return self._to_result(call.id, value)

    @staticmethod
    def _to_result(call_id: str, value: object) -> ToolResultBlock:
        if isinstance(value, ToolOutput):
            return ToolResultBlock(
                call_id=call_id,
                output=render_output(value.output),
                is_error=value.is_error,
                error_kind=value.error_kind if value.is_error else None,
                metadata=dict(value.metadata),
            )
        return ToolResultBlock(call_id=call_id, output=render_output(value))


def _cancelled(token: CancellationToken) -> CancelledByCallerError:
    return CancelledByCallerError(token.reason or "Cancelled by caller")
