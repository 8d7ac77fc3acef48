"""Tests for the approval gate and the built-in decision providers."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future

import pytest

from agentloop.approval import (
    ApprovalGate,
    DeferredDecisions,
    RiskPolicy,
    ScriptedDecisions,
    auto_approve,
    cli_prompt,
    describe_action,
    log_and_approve,
    make_reject_handler,
    reject_all,
)
from agentloop.cancellation import CancellationToken
from agentloop.models.content import ApprovalDecisionBlock, ApprovalRequestBlock, Risk
from agentloop.toolkit import ToolDispatcher, ToolRegistry
from tests.conftest import make_call, make_tool


def make_request(
    tool_name: str = "send_email",
    *,
    risk: Risk = Risk.MEDIUM,
    reversible: bool = True,
    request_id: str = "apr_1",
) -> ApprovalRequestBlock:
    return ApprovalRequestBlock(
        id=request_id,
        call_id="c1",
        tool_name=tool_name,
        action=f"{tool_name}()",
        risk=risk,
        reversible=reversible,
    )


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class TestApprovalGate:
    def test_requires_gating_follows_sensitive_flag(self):
        gate = ApprovalGate(auto_approve)
        assert gate.requires_gating(make_tool("rm", sensitive=True))
        assert not gate.requires_gating(make_tool("ls"))

    def test_build_request_copies_descriptor_flags(self):
        gate = ApprovalGate(auto_approve)
        tool = make_tool("rm", sensitive=True, risk=Risk.HIGH, reversible=False)
        call = make_call("rm", "c7", path="/tmp/x")
        request = gate.build_request(call, tool)
        assert request.id.startswith("apr_")
        assert request.call_id == "c7"
        assert request.risk is Risk.HIGH
        assert request.reversible is False
        assert request.input == {"path": "/tmp/x"}
        assert request.action == 'rm({"path": "/tmp/x"})'

    def test_decision_block_passthrough(self):
        decision = ApprovalGate(auto_approve).request_decision(make_request())
        assert decision.approved
        assert decision.decided_by == "auto_approve"

    def test_bool_decisions(self):
        def approve_if_low(request):
            return request.risk is Risk.LOW

        gate = ApprovalGate(approve_if_low)
        approved = gate.request_decision(make_request(risk=Risk.LOW))
        denied = gate.request_decision(make_request(risk=Risk.HIGH))
        assert approved.approved and approved.reason is None
        assert approved.decided_by == "approve_if_low"
        assert not denied.approved and denied.reason == "Denied"

    def test_mismatched_request_id_is_denied(self):
        def wrong(request):
            return ApprovalDecisionBlock(request_id="other", approved=True)

        decision = ApprovalGate(wrong).request_decision(make_request())
        assert not decision.approved
        assert decision.request_id == "apr_1"
        assert decision.decided_by == "gate"

    def test_provider_exception_is_denied(self):
        def broken(request):
            raise RuntimeError("policy service down")

        decision = ApprovalGate(broken).request_decision(make_request())
        assert not decision.approved
        assert decision.reason == "Decision provider error: RuntimeError: policy service down"

    def test_unsupported_value_is_denied(self):
        decision = ApprovalGate(lambda r: "yes").request_decision(make_request())
        assert not decision.approved
        assert "unsupported value: str" in decision.reason

    def test_future_resolved_later(self):
        future: Future = Future()

        def provider(request):
            return future

        threading.Timer(0.05, future.set_result, args=(True,)).start()
        decision = ApprovalGate(provider).request_decision(make_request())
        assert decision.approved

    def test_future_timeout(self):
        future: Future = Future()
        gate = ApprovalGate(lambda r: future, decision_timeout=0.1)
        decision = gate.request_decision(make_request())
        assert not decision.approved
        assert decision.reason == "No decision within 0.1s"
        assert future.cancelled()

    def test_future_cancelled_by_token(self):
        future: Future = Future()
        token = CancellationToken()
        threading.Timer(0.05, token.cancel).start()
        decision = ApprovalGate(lambda r: future).request_decision(make_request(), cancel=token)
        assert not decision.approved
        assert decision.reason == "Approval cancelled before a decision was made"

    def test_async_provider(self):
        async def reviewer(request):
            return ApprovalDecisionBlock(
                request_id=request.id, approved=True, decided_by="reviewer"
            )

        decision = ApprovalGate(reviewer).request_decision(make_request())
        assert decision.approved
        assert decision.decided_by == "reviewer"

    def test_describe_action_truncates(self):
        call = make_call("write", "c1", body="x" * 500)
        text = describe_action(call, limit=50)
        assert text.startswith("write(")
        assert text.endswith("...)")
        assert len(text) == len("write()") + 50


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class TestFixedProviders:
    def test_reject_all(self):
        decision = reject_all(make_request())
        assert not decision.approved
        assert decision.reason == "Rejected by policy"

    def test_make_reject_handler(self):
        decision = make_reject_handler("Read-only session")(make_request())
        assert not decision.approved
        assert decision.reason == "Read-only session"

    def test_log_and_approve(self, caplog):
        with caplog.at_level(logging.INFO, logger="agentloop.approval.providers"):
            decision = log_and_approve(make_request())
        assert decision.approved
        assert "Auto-approving apr_1" in caplog.text


class TestRiskPolicy:
    def test_within_ceiling(self):
        assert RiskPolicy(Risk.MEDIUM)(make_request(risk=Risk.LOW)).approved

    def test_exceeds_ceiling(self):
        decision = RiskPolicy(Risk.MEDIUM)(make_request(risk=Risk.HIGH))
        assert not decision.approved
        assert decision.reason == "Risk 'high' exceeds allowed 'medium'"

    def test_irreversible(self):
        policy = RiskPolicy(Risk.HIGH)
        decision = policy(make_request(reversible=False))
        assert decision.reason == "Irreversible actions require manual approval"
        assert RiskPolicy(Risk.HIGH, allow_irreversible=True)(make_request(reversible=False)).approved

    def test_lists_take_precedence(self):
        policy = RiskPolicy(Risk.LOW, deny_tools=["send_email"], allow_tools=["drop_table"])
        denied = policy(make_request("send_email", risk=Risk.LOW))
        assert denied.reason == "Tool 'send_email' is on the deny list"
        assert policy(make_request("drop_table", risk=Risk.HIGH, reversible=False)).approved


class TestScriptedDecisions:
    def test_sequence_then_default(self):
        scripted = ScriptedDecisions([True, True, False])
        results = [scripted(make_request(request_id=f"r{i}")).approved for i in range(4)]
        assert results == [True, True, False, False]
        assert [r.id for r in scripted.seen] == ["r0", "r1", "r2", "r3"]

    def test_denial_reason(self):
        decision = ScriptedDecisions([False])(make_request())
        assert decision.reason == "Denied by scripted decision"


class TestDeferredDecisions:
    def test_resolve_through_gate(self):
        decisions = DeferredDecisions()
        gate = ApprovalGate(decisions)
        outcome: dict = {}

        worker = threading.Thread(
            target=lambda: outcome.update(decision=gate.request_decision(make_request()))
        )
        worker.start()
        request = decisions.wait_for_request(timeout=2)
        assert request is not None and request.id == "apr_1"
        assert decisions.pending() == [request]
        assert decisions.resolve(request.id, approved=False, reason="not today")
        worker.join(2)
        assert outcome["decision"].reason == "not today"
        assert decisions.pending() == []

    def test_resolve_twice(self):
        decisions = DeferredDecisions()
        decisions(make_request())
        assert decisions.resolve("apr_1", approved=True)
        assert not decisions.resolve("apr_1", approved=False)

    def test_resolve_unknown(self):
        assert not DeferredDecisions().resolve("nope", approved=True)

    def test_abandoned_request_cannot_be_resolved(self):
        decisions = DeferredDecisions()
        gate = ApprovalGate(decisions, decision_timeout=0.05)
        decision = gate.request_decision(make_request())
        assert not decision.approved
        assert decisions.pending() == []
        assert not decisions.resolve("apr_1", approved=True)

    def test_wait_for_request_times_out(self):
        assert DeferredDecisions().wait_for_request(timeout=0.05) is None

    def test_default_denial_reason(self):
        decisions = DeferredDecisions()
        future = decisions(make_request())
        decisions.resolve("apr_1", approved=False)
        assert future.result().reason == "Denied"

    def test_resolved_requests_are_forgotten(self):
        decisions = DeferredDecisions()
        for i in range(3):
            decisions(make_request(request_id=f"r{i}"))
        decisions.resolve("r0", approved=True)
        assert [r.id for r in decisions.pending()] == ["r1", "r2"]
        assert set(decisions._futures) == {"r1", "r2"}

    def test_abandoned_requests_are_forgotten(self):
        decisions = DeferredDecisions()
        gate = ApprovalGate(decisions, decision_timeout=0.05)
        for i in range(3):
            gate.request_decision(make_request(request_id=f"r{i}"))
        assert decisions.pending() == []
        assert decisions._futures == {}
        assert decisions._requests == {}


class TestCliPrompt:
    def test_concurrent_gated_calls_prompt_one_at_a_time(self, monkeypatch):
        rich_prompt = pytest.importorskip("rich.prompt")
        lock = threading.Lock()
        active = []
        overlaps = []
        asked = []

        def ask(prompt, **kwargs):
            with lock:
                active.append(prompt)
                if len(active) > 1:
                    overlaps.append(tuple(active))
            time.sleep(0.1)
            with lock:
                active.remove(prompt)
                asked.append(prompt)
            return "rm" in prompt

        monkeypatch.setattr(rich_prompt.Confirm, "ask", ask)
        monkeypatch.setattr(rich_prompt.Prompt, "ask", lambda prompt, **kwargs: "no")

        registry = ToolRegistry([
            make_tool("rm", lambda: "removed", sensitive=True),
            make_tool("mv", lambda: "moved", sensitive=True),
        ])
        dispatcher = ToolDispatcher(registry, ApprovalGate(cli_prompt))
        report = dispatcher.dispatch([make_call("rm", "c1"), make_call("mv", "c2")])

        assert overlaps == []
        assert len(asked) == 2
        assert report.results[0].output == "removed"
        assert report.results[1].is_error
        assert report.results[1].output.endswith(": no")


@pytest.mark.parametrize("provider", [auto_approve, reject_all, RiskPolicy()])
def test_providers_answer_the_request_they_were_given(provider):
    decision = provider(make_request(request_id="apr_xyz"))
    assert decision.request_id == "apr_xyz"
