"""Built-in decision providers for the ApprovalGate.

A provider is any callable taking an :class:`ApprovalRequestBlock` and
returning an :class:`ApprovalDecisionBlock`, a plain ``bool``, or a
``concurrent.futures.Future`` resolving to either. Pass one to
``ApprovalGate(provider)`` or to ``AgentLoop(approvals=...)``.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from concurrent.futures import Future

from agentloop.models.content import ApprovalDecisionBlock, ApprovalRequestBlock, Risk

_logger = logging.getLogger(__name__)

# One terminal prompt at a time; gated calls ask from separate pool threads.
_PROMPT_LOCK = threading.Lock()


# ---------------------------------------------------------------------------
# Fixed rules
# ---------------------------------------------------------------------------


def auto_approve(request: ApprovalRequestBlock) -> ApprovalDecisionBlock:
    """Approve every request."""
    return ApprovalDecisionBlock(
        request_id=request.id, approved=True, decided_by="auto_approve"
    )


def reject_all(
    request: ApprovalRequestBlock, *, reason: str = "Rejected by policy"
) -> ApprovalDecisionBlock:
    """Deny every request."""
    return ApprovalDecisionBlock(
        request_id=request.id, approved=False, reason=reason, decided_by="reject_all"
    )


def log_and_approve(
    request: ApprovalRequestBlock, *, logger: logging.Logger | None = None
) -> ApprovalDecisionBlock:
    """Log the request details then approve.

    For audit trail mode -- all actions are approved but logged
    for later review.
    """
    (logger or _logger).info(
        "Auto-approving %s: action=%s, risk=%s, reversible=%s",
        request.id,
        request.action,
        request.risk.value,
        request.reversible,
    )
    return ApprovalDecisionBlock(
        request_id=request.id, approved=True, decided_by="log_and_approve"
    )


def make_reject_handler(reason: str = "Rejected by policy"):
    """Create a reject_all provider with a specific reason."""

    def provider(request: ApprovalRequestBlock) -> ApprovalDecisionBlock:
        return reject_all(request, reason=reason)

    return provider


def cli_prompt(request: ApprovalRequestBlock) -> ApprovalDecisionBlock:
    """Interactive terminal prompt for approve/deny.

    Requires the ``cli`` extra (rich).
    """
    from rich.console import Console
    from rich.prompt import Confirm, Prompt

    console = Console()
    risk_style = {Risk.LOW: "green", Risk.MEDIUM: "yellow", Risk.HIGH: "red"}[request.risk]
    with _PROMPT_LOCK:
        console.print(f"\n[bold]Approval required[/bold] ({request.id})")
        console.print(f"  Action:     {request.action}")
        console.print(f"  Risk:       [{risk_style}]{request.risk.value}[/{risk_style}]")
        console.print(f"  Reversible: {'yes' if request.reversible else 'no'}")

        if Confirm.ask(f"[{request.tool_name}] Approve?", default=False, console=console):
            return ApprovalDecisionBlock(
                request_id=request.id, approved=True, decided_by="cli_prompt"
            )
        reason = Prompt.ask("Rejection reason", default="", console=console).strip()
    return ApprovalDecisionBlock(
        request_id=request.id,
        approved=False,
        reason=reason or "Rejected by user",
        decided_by="cli_prompt",
    )


# ---------------------------------------------------------------------------
# Policy engines
# ---------------------------------------------------------------------------


class RiskPolicy:
    """Rule-based provider deciding from the request's risk and reversibility.

    Rules are checked in order: explicit deny list, explicit allow list,
    irreversibility, then the risk ceiling.

    Args:
        max_risk: Highest risk level approved automatically.
        allow_irreversible: Whether irreversible actions may be approved.
        deny_tools: Tool names that are always denied.
        allow_tools: Tool names that are always approved.
    """

    def __init__(
        self,
        max_risk: Risk = Risk.MEDIUM,
        *,
        allow_irreversible: bool = False,
        deny_tools: Iterable[str] = (),
        allow_tools: Iterable[str] = (),
    ) -> None:
        self.max_risk = max_risk
        self.allow_irreversible = allow_irreversible
        self.deny_tools = frozenset(deny_tools)
        self.allow_tools = frozenset(allow_tools)

    def __call__(self, request: ApprovalRequestBlock) -> ApprovalDecisionBlock:
        approved, reason = self._evaluate(request)
        return ApprovalDecisionBlock(
            request_id=request.id,
            approved=approved,
            reason=reason,
            decided_by="RiskPolicy",
        )

    def _evaluate(self, request: ApprovalRequestBlock) -> tuple[bool, str | None]:
        if request.tool_name in self.deny_tools:
            return False, f"Tool '{request.tool_name}' is on the deny list"
        if request.tool_name in self.allow_tools:
            return True, None
        if not request.reversible and not self.allow_irreversible:
            return False, "Irreversible actions require manual approval"
        if request.risk.rank > self.max_risk.rank:
            return False, (
                f"Risk '{request.risk.value}' exceeds allowed '{self.max_risk.value}'"
            )
        return True, None


class ScriptedDecisions:
    """Answer requests from a fixed sequence of approve/deny values.

    Useful for demos and tests where the decision pattern is known up
    front (for example approve, approve, deny). Once the sequence runs out,
    ``default`` is used.
    """

    def __init__(self, sequence: Iterable[bool], *, default: bool = False) -> None:
        self._sequence = list(sequence)
        self._default = default
        self._index = 0
        self._lock = threading.Lock()
        self.seen: list[ApprovalRequestBlock] = []

    def __call__(self, request: ApprovalRequestBlock) -> ApprovalDecisionBlock:
        with self._lock:
            self.seen.append(request)
            if self._index < len(self._sequence):
                approved = self._sequence[self._index]
                self._index += 1
            else:
                approved = self._default
        return ApprovalDecisionBlock(
            request_id=request.id,
            approved=approved,
            reason=None if approved else "Denied by scripted decision",
            decided_by="ScriptedDecisions",
        )


# ---------------------------------------------------------------------------
# Asynchronous decisions
# ---------------------------------------------------------------------------


class DeferredDecisions:
    """Channel-style provider: requests wait until someone resolves them.

    Each request immediately gets a Future; another thread (a UI, a web
    handler, a reviewer process) inspects :meth:`pending` and calls
    :meth:`resolve`. The gate blocks the issuing call on the future.

    Usage::

        decisions = DeferredDecisions()
        loop = AgentLoop(gateway, registry, approvals=decisions)
        # elsewhere:
        for request in decisions.pending():
            decisions.resolve(request.id, approved=True)
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._requests: dict[str, ApprovalRequestBlock] = {}
        self._futures: dict[str, Future] = {}
        self._arrived = threading.Condition(self._lock)

    def __call__(self, request: ApprovalRequestBlock) -> Future:
        future: Future = Future()
        with self._arrived:
            self._requests[request.id] = request
            self._futures[request.id] = future
            self._arrived.notify_all()
        return future

    def pending(self) -> list[ApprovalRequestBlock]:
        """Requests that have not been resolved (or abandoned) yet."""
        with self._lock:
            self._prune()
            return list(self._requests.values())

    def wait_for_request(self, timeout: float | None = None) -> ApprovalRequestBlock | None:
        """Block until at least one request is pending; return the oldest."""
        with self._arrived:
            self._arrived.wait_for(
                lambda: any(not f.done() for f in self._futures.values()),
                timeout=timeout,
            )
            self._prune()
            return next(iter(self._requests.values()), None)

    def resolve(
        self,
        request_id: str,
        approved: bool,
        reason: str | None = None,
        *,
        decided_by: str = "DeferredDecisions",
    ) -> bool:
        """Resolve a pending request.

        Returns:
            True if the decision was delivered, False if the request was
            unknown, already resolved, or abandoned by the gate.
        """
        decision = ApprovalDecisionBlock(
            request_id=request_id,
            approved=approved,
            reason=reason if reason is not None else (None if approved else "Denied"),
            decided_by=decided_by,
        )
        with self._lock:
            future = self._futures.get(request_id)
            if future is None:
                return False
            if future.done():
                self._forget(request_id)
                return False
            if not future.set_running_or_notify_cancel():
                self._forget(request_id)
                return False
            future.set_result(decision)
            self._forget(request_id)
        return True

    # -- Internal methods (call with the lock held) --

    def _forget(self, request_id: str) -> None:
        self._requests.pop(request_id, None)
        self._futures.pop(request_id, None)

    def _prune(self) -> None:
        for rid in [rid for rid, future in self._futures.items() if future.done()]:
            self._forget(rid)
