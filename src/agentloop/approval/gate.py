"""ApprovalGate: obtains a decision before a sensitive tool call may run.

The gate does not decide anything itself. Decisions come from an injected
provider -- a human prompt, a policy engine, or a fixed rule -- which may
answer synchronously or hand back a future / awaitable that resolves later.
The gate fails closed: provider errors, malformed decisions, timeouts, and
cancellation all resolve to a denial whose reason says what happened.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
import uuid
from collections.abc import Callable
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import TYPE_CHECKING

from agentloop.models.content import ApprovalDecisionBlock, ApprovalRequestBlock

if TYPE_CHECKING:
    from agentloop.cancellation import CancellationToken
    from agentloop.models.content import ToolCallBlock
    from agentloop.toolkit.models import ToolDescriptor

logger = logging.getLogger(__name__)

# Returns an ApprovalDecisionBlock, a bool, or a Future / awaitable of either.
DecisionProvider = Callable[[ApprovalRequestBlock], object]

_POLL_INTERVAL = 0.05


def describe_action(call: ToolCallBlock, limit: int = 200) -> str:
    """Human-readable one-line summary of a tool call."""
    try:
        args = json.dumps(call.input, sort_keys=True, default=str)
    except (TypeError, ValueError):
        args = str(call.input)
    if len(args) > limit:
        args = args[: limit - 3] + "..."
    return f"{call.name}({args})"


class ApprovalGate:
    """Intercepts sensitive tool calls and resolves each to a decision.

    Usage::

        gate = ApprovalGate(RiskPolicy(max_risk=Risk.MEDIUM))
        if gate.requires_gating(descriptor):
            request = gate.build_request(call, descriptor)
            decision = gate.request_decision(request)
    """

    def __init__(
        self,
        provider: DecisionProvider,
        *,
        decision_timeout: float | None = None,
    ) -> None:
        self._provider = provider
        self._decision_timeout = decision_timeout

    @property
    def provider(self) -> DecisionProvider:
        return self._provider

    def requires_gating(self, descriptor: ToolDescriptor) -> bool:
        return descriptor.sensitive

    def build_request(
        self, call: ToolCallBlock, descriptor: ToolDescriptor
    ) -> ApprovalRequestBlock:
        return ApprovalRequestBlock(
            id=f"apr_{uuid.uuid4().hex[:12]}",
            call_id=call.id,
            tool_name=call.name,
            action=describe_action(call),
            input=call.input,
            risk=descriptor.risk,
            reversible=descriptor.reversible,
        )

    def request_decision(
        self,
        request: ApprovalRequestBlock,
        *,
        cancel: CancellationToken | None = None,
    ) -> ApprovalDecisionBlock:
        """Block until the provider resolves ``request``.

        Never raises; every failure becomes a denial.
        """
        try:
            raw = self._provider(request)
            raw = self._await(raw, cancel)
        except _Unresolved as exc:
            return self._deny(request, str(exc))
        except Exception as exc:
            logger.debug("Decision provider error for %s", request.id, exc_info=True)
            return self._deny(request, f"Decision provider error: {type(exc).__name__}: {exc}")

        decision = self._normalize(request, raw)
        logger.info(
            "Approval %s for %s: %s%s",
            request.id,
            request.tool_name,
            "approved" if decision.approved else "denied",
            f" ({decision.reason})" if decision.reason else "",
        )
        return decision

    # ------------------------------------------------------------------
    # Internal methods
    # ------------------------------------------------------------------

    def _await(self, raw: object, cancel: CancellationToken | None) -> object:
        if isinstance(raw, Future):
            return self._wait_future(raw, cancel)
        if inspect.isawaitable(raw):
            return asyncio.run(self._wait_awaitable(raw))
        return raw

    def _wait_future(self, future: Future, cancel: CancellationToken | None) -> object:
        deadline = (
            time.monotonic() + self._decision_timeout
            if self._decision_timeout is not None
            else None
        )
        while True:
            if cancel is not None and cancel.is_cancelled:
                future.cancel()
                raise _Unresolved("Approval cancelled before a decision was made")
            wait = _POLL_INTERVAL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    future.cancel()
                    raise _Unresolved(
                        f"No decision within {self._decision_timeout:g}s"
                    )
                wait = min(wait, remaining)
            try:
                return future.result(timeout=wait)
            except FutureTimeoutError:
                continue

    async def _wait_awaitable(self, awaitable: object) -> object:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._decision_timeout)  # type: ignore[arg-type]
        except asyncio.TimeoutError:
            raise _Unresolved(f"No decision within {self._decision_timeout:g}s") from None

    def _normalize(self, request: ApprovalRequestBlock, raw: object) -> ApprovalDecisionBlock:
        if isinstance(raw, ApprovalDecisionBlock):
            if raw.request_id != request.id:
                return self._deny(
                    request,
                    f"Decision answered request {raw.request_id}, expected {request.id}",
                )
            return raw
        if isinstance(raw, bool):
            return ApprovalDecisionBlock(
                request_id=request.id,
                approved=raw,
                reason=None if raw else "Denied",
                decided_by=_provider_name(self._provider),
            )
        return self._deny(
            request, f"Decision provider returned unsupported value: {type(raw).__name__}"
        )

    @staticmethod
    def _deny(request: ApprovalRequestBlock, reason: str) -> ApprovalDecisionBlock:
        logger.info("Approval %s for %s denied: %s", request.id, request.tool_name, reason)
        return ApprovalDecisionBlock(
            request_id=request.id, approved=False, reason=reason, decided_by="gate"
        )


class _Unresolved(Exception):
    """The decision source never produced an answer."""


def _provider_name(provider: object) -> str:
    return getattr(provider, "__name__", type(provider).__name__)
