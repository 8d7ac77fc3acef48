"""Core agent loop.

Provides the AgentLoop class that drives a model through request/response
turns: snapshot the conversation, invoke the gateway, classify the reply,
dispatch any tool calls (through the approval gate), commit the results,
and repeat until the model finishes or the budget says stop.

Each iteration is sequential. Within an iteration, tool calls run
concurrently and are joined before the next gateway call. The gateway call
itself runs on a worker thread so cancellation and the wall-clock budget
are observed while it is in flight; an abandoned call is never committed.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import wait as futures_wait
from typing import TYPE_CHECKING

from agentloop.approval.gate import ApprovalGate
from agentloop.approval.providers import make_reject_handler
from agentloop.cancellation import CancellationToken
from agentloop.conversation import ConversationState
from agentloop.exceptions import (
    BudgetExhaustedError,
    CancelledByCallerError,
    DelegationDepthExceededError,
    GatewayFatalError,
    InvalidSequenceError,
    ToolTimeoutError,
)
from agentloop.llm.protocols import GatewayResponse, InvokeOptions, Termination
from agentloop.models.content import Turn
from agentloop.models.outcome import LoopStatus, Usage
from agentloop.orchestrator.budget import Budget, BudgetController
from agentloop.orchestrator.config import LoopConfig, TimeoutPolicy
from agentloop.orchestrator.models import Outcome, StepRecord
from agentloop.streaming import StreamChannel
from agentloop.toolkit.executor import DispatchReport, ToolDispatcher, error_result
from agentloop.toolkit.registry import ToolRegistry

if TYPE_CHECKING:
    from agentloop.approval.gate import DecisionProvider
    from agentloop.delegation import DelegationManager
    from agentloop.llm.protocols import ModelGateway
    from agentloop.streaming import StreamSubscriber, TurnStream

logger = logging.getLogger(__name__)


class _WallClockExpired(Exception):
    """The wall-clock budget ran out while the gateway call was in flight."""


class AgentLoop:
    """Agent loop that runs a tool-calling conversation to a terminal Outcome.

    Usage::

        loop = AgentLoop(gateway, registry, LoopConfig(max_iterations=5),
                         approvals=RiskPolicy(max_risk=Risk.LOW))
        outcome = loop.run("Find the cheapest flight and book it")
        print(outcome.status, outcome.content)

    Call ``cancel()`` from another thread to stop a run; in-flight tool
    calls are abandoned and the run ends ``CANCELLED``. A cancelled loop
    stays cancelled; build a new AgentLoop for the next run.
    """

    def __init__(
        self,
        gateway: ModelGateway,
        registry: ToolRegistry,
        config: LoopConfig | None = None,
        *,
        approvals: ApprovalGate | DecisionProvider | None = None,
        delegation: DelegationManager | None = None,
        stream_subscriber: StreamSubscriber | None = None,
        depth: int = 0,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Initialize the loop.

        Args:
            gateway: Model gateway to invoke each iteration.
            registry: Tools available to this run.
            config: Loop configuration (defaults to ``LoopConfig()``).
            approvals: Gate or decision provider for sensitive tools. Without
                one, every sensitive call is denied.
            delegation: Manager providing the ``delegate_task`` tool.
            stream_subscriber: Receives text fragments when streaming.
            depth: Delegation depth of this loop (0 for the top level).
            cancel: Parent token; cancelling it cancels this loop too.
        """
        self._gateway = gateway
        self._registry = registry
        self._config = config or LoopConfig()
        if isinstance(approvals, ApprovalGate):
            self._gate = approvals
        elif approvals is not None:
            self._gate = ApprovalGate(approvals)
        else:
            self._gate = ApprovalGate(make_reject_handler("No approval provider configured"))
        self._delegation = delegation
        self._subscriber = stream_subscriber
        self._depth = depth
        self._cancel = cancel.child() if cancel is not None else CancellationToken()
        self._controller: BudgetController | None = None
        self._dispatcher: ToolDispatcher | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def config(self) -> LoopConfig:
        return self._config

    @property
    def depth(self) -> int:
        return self._depth

    @property
    def cancel_token(self) -> CancellationToken:
        return self._cancel

    @property
    def budget_controller(self) -> BudgetController | None:
        """The controller of the current (or last) run, if one has started."""
        return self._controller

    @property
    def status(self) -> LoopStatus | None:
        """Status of the current (or last) run; None before ``run()``."""
        return self._controller.status if self._controller is not None else None

    def cancel(self, reason: str = "Cancelled by caller") -> None:
        """Signal the loop to stop; safe to call from any thread."""
        self._cancel.cancel(reason)

    def cancel_call(self, call_id: str, reason: str = "Cancelled by caller") -> bool:
        """Cancel one in-flight tool call; the others in its batch continue."""
        if self._dispatcher is None:
            return False
        return self._dispatcher.cancel_call(call_id, reason)

    def run(
        self,
        task: str | None = None,
        *,
        state: ConversationState | None = None,
        budget: Budget | None = None,
    ) -> Outcome:
        """Execute the loop until it reaches a terminal state.

        1. Seed the conversation (task text and/or a restored state)
        2. Loop: invoke gateway -> commit agent turn -> dispatch tool calls
           -> commit results -> advance budget
        3. Return the Outcome

        Args:
            task: Task text appended as a user turn.
            state: Conversation to continue (e.g. from ``restore()``).
            budget: Budget to run under; defaults to the config's limits.
                A restored budget keeps its elapsed iterations.

        Returns:
            Outcome with the terminal status. Errors during the run are
            reported in the Outcome, never raised.

        Raises:
            InvalidSequenceError: If there is nothing to run, or the given
                state still has unanswered tool calls.
        """
        state = state if state is not None else ConversationState()
        if state.has_pending:
            raise InvalidSequenceError(
                f"Cannot resume: call(s) {state.pending_call_ids} have no result"
            )
        if task is not None:
            state.append(Turn.user_text(task))
        if len(state) == 0:
            raise InvalidSequenceError("Nothing to run: no task and an empty conversation")

        config = self._config
        if budget is None:
            budget = Budget(
                max_iterations=config.max_iterations,
                per_call_timeout=config.per_call_timeout,
                wall_clock_timeout=config.wall_clock_timeout,
            )
        controller = BudgetController(budget)
        self._controller = controller
        controller.start()
        usage = Usage()
        logger.info(
            "Agent loop starting (depth %d, max_iterations %d)",
            self._depth,
            budget.max_iterations,
        )

        if self._depth > config.max_depth:
            controller.fail(DelegationDepthExceededError(self._depth, config.max_depth))
            return self._finish(state, controller, usage)

        registry = self._registry
        if self._delegation is not None:
            tool = self._delegation.as_tool(self)
            if tool.name not in registry:
                registry = registry.extended(tool)
        self._dispatcher = ToolDispatcher(
            registry,
            self._gate,
            max_workers=config.max_workers,
            per_call_timeout=budget.per_call_timeout,
            poll_interval=config.poll_interval,
        )
        channel = (
            StreamChannel(self._subscriber, cancel=self._cancel)
            if config.streaming and self._subscriber is not None
            else None
        )

        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="agentloop-gateway")
        try:
            while not controller.is_terminal:
                if self._cancel.is_cancelled:
                    controller.cancel(self._cancelled_error())
                    break
                if controller.wall_clock_expired():
                    controller.exhaust("Wall-clock budget exhausted")
                    break
                if controller.iterations_exhausted:
                    controller.exhaust("Iteration budget exhausted")
                    break
                usage = self._iterate(state, registry, controller, channel, pool, usage)
                if not controller.is_terminal:
                    self._checkpoint(state, controller)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        return self._finish(state, controller, usage)

    # ------------------------------------------------------------------
    # Internal methods
    # ------------------------------------------------------------------

    def _iterate(
        self,
        state: ConversationState,
        registry: ToolRegistry,
        controller: BudgetController,
        channel: StreamChannel | None,
        pool: ThreadPoolExecutor,
        usage: Usage,
    ) -> Usage:
        """Run one iteration; transition the controller when the run ends."""
        stream = channel.open_turn(len(state)) if channel is not None else None
        try:
            response = self._invoke(state, registry, controller, stream, pool)
            if stream is not None:
                stream.commit(response.text)
        except CancelledByCallerError as exc:
            if stream is not None:
                stream.abort()
            controller.cancel(exc)
            return usage
        except _WallClockExpired:
            if stream is not None:
                stream.abort()
            controller.exhaust("Wall-clock budget exhausted")
            return usage
        except GatewayFatalError as exc:
            if stream is not None:
                stream.abort()
            logger.info("Gateway failed: %s", exc)
            controller.fail(exc)
            return usage

        iteration = controller.advance()
        usage = usage + response.usage + Usage(gateway_calls=1)
        turn = response.to_turn()
        try:
            state.append(turn)
        except InvalidSequenceError as exc:
            controller.fail(GatewayFatalError(f"Gateway returned an invalid turn: {exc}"))
            return usage
        self._notify_turn(turn)

        calls = turn.tool_calls
        termination = response.termination
        if termination is Termination.FINAL and calls:
            termination = Termination.TOOL_REQUESTED

        if termination is Termination.FINAL:
            controller.complete()
            self._notify_step(StepRecord(iteration, termination, turn.text, (), response.usage))
            return usage

        report = DispatchReport()
        if calls:
            if controller.iterations_exhausted:
                # Answer the calls so the history stays paired, but run nothing.
                report = DispatchReport(results=tuple(
                    error_result(
                        call.id,
                        BudgetExhaustedError("Iteration budget exhausted; call not executed"),
                    )
                    for call in calls
                ))
            else:
                report = self._dispatcher.dispatch(  # type: ignore[union-attr]
                    calls, cancel=self._cancel, deadline=controller.deadline
                )
            result_turn = Turn(role="user", blocks=report.approval_blocks + report.results)
            try:
                state.append(result_turn)
            except InvalidSequenceError as exc:
                controller.fail(GatewayFatalError(f"Could not commit tool results: {exc}"))
                return usage
            self._notify_turn(result_turn)
            usage = usage + Usage(tool_calls=len(calls)) + _delegated_usage(report)

        self._notify_step(
            StepRecord(iteration, termination, turn.text, report.results, response.usage)
        )

        if report.timed_out and self._config.timeout_policy is TimeoutPolicy.FAIL:
            call = next(c for c in calls if c.id == report.timed_out[0])
            descriptor = registry.get(call.name)
            timeout = (
                descriptor.timeout
                if descriptor is not None and descriptor.timeout is not None
                else controller.budget.per_call_timeout
            )
            controller.fail(ToolTimeoutError(call.name, timeout or 0.0))
        elif report.interrupted == "cancelled":
            controller.cancel(self._cancelled_error())
        elif report.interrupted == "deadline":
            controller.exhaust("Wall-clock budget exhausted")
        return usage

    def _invoke(
        self,
        state: ConversationState,
        registry: ToolRegistry,
        controller: BudgetController,
        stream: TurnStream | None,
        pool: ThreadPoolExecutor,
    ) -> GatewayResponse:
        """Call the gateway on a worker thread, watching cancel and the deadline.

        Raises:
            CancelledByCallerError: If cancellation is observed first.
            _WallClockExpired: If the wall-clock budget runs out first.
            GatewayFatalError: If the gateway fails or returns garbage.
        """
        options = InvokeOptions(model=self._config.model, streaming=self._config.streaming)
        future = pool.submit(
            self._gateway.invoke,
            state.snapshot(),
            registry.descriptors(),
            options,
            on_fragment=stream.push if stream is not None else None,
            cancel=self._cancel,
        )
        while True:
            if self._cancel.is_cancelled:
                future.cancel()
                raise self._cancelled_error()
            wait = self._config.poll_interval
            remaining = controller.remaining_wall_clock()
            if remaining is not None:
                if remaining <= 0:
                    future.cancel()
                    raise _WallClockExpired()
                wait = min(wait, remaining)
            done, _ = futures_wait([future], timeout=wait)
            if done:
                break

        try:
            response = future.result()
        except (CancelledByCallerError, GatewayFatalError):
            raise
        except Exception as exc:
            logger.debug("Gateway raised", exc_info=True)
            raise GatewayFatalError(f"{type(exc).__name__}: {exc}") from exc

        if not isinstance(response, GatewayResponse):
            raise GatewayFatalError(
                f"Gateway returned {type(response).__name__}, expected GatewayResponse"
            )
        return response

    def _cancelled_error(self) -> CancelledByCallerError:
        return CancelledByCallerError(self._cancel.reason or "Cancelled by caller")

    def _finish(
        self, state: ConversationState, controller: BudgetController, usage: Usage
    ) -> Outcome:
        snapshot = state.snapshot()
        outcome = Outcome(
            status=controller.status,
            content=snapshot.last_agent_text,
            error=controller.error,
            usage=usage,
            iterations=controller.budget.elapsed_iterations,
            conversation=snapshot,
            budget=controller.budget,
            reason=controller.reason,
        )
        self._checkpoint(state, controller)
        logger.info("Agent loop finished (depth %d): %s", self._depth, outcome.summary())
        return outcome

    def _checkpoint(self, state: ConversationState, controller: BudgetController) -> None:
        callback = self._config.on_checkpoint
        if callback is None:
            return
        try:
            callback(state, controller.budget, controller.status)
        except Exception:
            logger.debug("on_checkpoint callback error", exc_info=True)

    def _notify_turn(self, turn: Turn) -> None:
        if self._config.on_turn is not None:
            try:
                self._config.on_turn(turn)
            except Exception:
                logger.debug("on_turn callback error", exc_info=True)

    def _notify_step(self, step: StepRecord) -> None:
        if self._config.on_step is not None:
            try:
                self._config.on_step(step)
            except Exception:
                logger.debug("on_step callback error", exc_info=True)


def _delegated_usage(report: DispatchReport) -> Usage:
    total = Usage()
    for result in report.results:
        raw = result.metadata.get("usage")
        if isinstance(raw, dict):
            total = total + Usage.model_validate(raw)
    return total


def run(
    initial_task: str,
    config: LoopConfig | None = None,
    *,
    gateway: ModelGateway,
    registry: ToolRegistry | None = None,
    approvals: ApprovalGate | DecisionProvider | None = None,
    delegate: bool = False,
    stream_subscriber: StreamSubscriber | None = None,
    cancel: CancellationToken | None = None,
) -> Outcome:
    """Run a task to completion with a fresh loop.

    Args:
        initial_task: Task text for the first user turn.
        config: Loop configuration.
        gateway: Model gateway.
        registry: Tools for the run (defaults to none).
        approvals: Gate or decision provider for sensitive tools.
        delegate: Add the ``delegate_task`` tool, spawning sub-agents that
            share this gateway and registry.
        stream_subscriber: Receives text fragments when streaming.
        cancel: Token the caller can use to cancel the run.

    Returns:
        The terminal Outcome.
    """
    config = config or LoopConfig()
    registry = registry if registry is not None else ToolRegistry()
    delegation = None
    if delegate:
        from agentloop.delegation import DelegationManager

        delegation = DelegationManager(
            gateway,
            registry,
            max_depth=config.max_depth,
            model=config.model,
            allow_nested=config.allow_nested_delegation,
            approvals=approvals,
            sub_agent_max_iterations=config.sub_agent_max_iterations,
            max_workers=config.max_workers,
            poll_interval=config.poll_interval,
        )
    loop = AgentLoop(
        gateway,
        registry,
        config,
        approvals=approvals,
        delegation=delegation,
        stream_subscriber=stream_subscriber,
        cancel=cancel,
    )
    return loop.run(initial_task)
