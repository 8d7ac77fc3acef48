"""Tests for DelegationManager and sub-agent loops."""

from __future__ import annotations

import threading
import time

import pytest

from agentloop.cancellation import CancellationToken
from agentloop.delegation import AgentTask, DelegationManager, file_ref_resolver
from agentloop.exceptions import DelegationDepthExceededError, ErrorKind
from agentloop.models.outcome import LoopStatus, Usage
from agentloop.orchestrator import AgentLoop, LoopConfig
from agentloop.orchestrator.budget import Budget
from agentloop.toolkit import ToolRegistry
from tests.conftest import ScriptedGateway, blocking, echo_tool, final, make_call, tool_request


class RoutingGateway:
    """Sends sub-agent calls (role system prompt) to a separate script."""

    def __init__(self, parent: ScriptedGateway, sub: ScriptedGateway) -> None:
        self.parent = parent
        self.sub = sub

    def invoke(self, snapshot, tools, options, *, on_fragment=None, cancel=None):
        prompt = options.model.system_prompt or ""
        target = self.sub if prompt.startswith("You are a") else self.parent
        return target.invoke(snapshot, tools, options, on_fragment=on_fragment, cancel=cancel)


def delegate_call(call_id: str = "d1", **overrides):
    arguments = {
        "task_description": "Research the topic",
        "role": "researcher",
        "output_file": "notes.md",
    }
    arguments.update(overrides)
    return make_call("delegate_task", call_id, **arguments)


# ---------------------------------------------------------------------------
# spawn / delegate
# ---------------------------------------------------------------------------


class TestSpawn:
    def test_sub_agent_runs_with_role_prompt(self, registry):
        gateway = ScriptedGateway([final("findings")])
        manager = DelegationManager(gateway, registry, max_depth=1)
        outcome = manager.spawn(AgentTask("Research X", role="researcher", output_target="out.md"))

        assert outcome.status is LoopStatus.COMPLETED
        assert outcome.content == "findings"
        options = gateway.options[0]
        assert options.model.system_prompt == (
            "You are a researcher. Complete your task and write your output to out.md."
        )
        assert gateway.snapshots[0].turns[0].text == "Research X"

    def test_depth_checked_before_any_gateway_call(self, registry):
        gateway = ScriptedGateway([final()])
        manager = DelegationManager(gateway, registry, max_depth=1)
        with pytest.raises(DelegationDepthExceededError) as exc_info:
            manager.spawn(AgentTask("too deep", depth=1))
        assert exc_info.value.depth == 2
        assert exc_info.value.max_depth == 1
        assert gateway.call_count == 0

    def test_elapsed_iterations_reset(self, registry):
        gateway = ScriptedGateway([final()])
        manager = DelegationManager(gateway, registry)
        outcome = manager.spawn(
            AgentTask("x", budget=Budget(max_iterations=2, elapsed_iterations=2))
        )
        assert outcome.status is LoopStatus.COMPLETED
        assert outcome.iterations == 1

    def test_sub_registry_lacks_delegate_tool(self, registry):
        gateway = ScriptedGateway([final()])
        manager = DelegationManager(gateway, registry)
        with_tool = registry.extended(manager.as_tool(AgentLoop(gateway, registry)))
        DelegationManager(gateway, with_tool).spawn(AgentTask("x"))
        assert gateway.tools[0] == ["echo"]

    def test_negative_depth_rejected(self):
        with pytest.raises(ValueError):
            AgentTask("x", depth=-1)


class TestDelegate:
    def test_completed_result(self, registry):
        gateway = ScriptedGateway([final("the answer", input_tokens=7)])
        manager = DelegationManager(gateway, registry)
        result = manager.delegate(AgentTask("q", role="analyst"), call_id="c9")

        assert result.call_id == "c9"
        assert not result.is_error
        assert result.output == "the answer"
        assert result.metadata["status"] == "completed"
        assert result.metadata["role"] == "analyst"
        assert result.metadata["depth"] == 1
        usage = Usage.model_validate(result.metadata["usage"])
        assert usage == Usage(input_tokens=7, gateway_calls=1, delegated_runs=1)

    def test_empty_content_mentions_output_target(self, registry):
        gateway = ScriptedGateway([final("")])
        manager = DelegationManager(gateway, registry)
        result = manager.delegate(AgentTask("q", output_target="report.md"), call_id="c1")
        assert result.output == "Output written to report.md"

    def test_depth_violation_becomes_error_result(self, registry):
        manager = DelegationManager(ScriptedGateway([final()]), registry, max_depth=1)
        result = manager.delegate(AgentTask("q", depth=3), call_id="c1")
        assert result.is_error
        assert result.error_kind is ErrorKind.DELEGATION_DEPTH
        assert result.metadata == {"status": "not_started", "role": "assistant", "depth": 4}

    def test_exhausted_sub_agent(self, registry):
        gateway = ScriptedGateway(
            [], default=tool_request(make_call("echo", "c1", text="again"), text="still working")
        )
        manager = DelegationManager(gateway, registry)
        result = manager.delegate(
            AgentTask("q", role="writer", budget=Budget(max_iterations=1)), call_id="c1"
        )
        assert result.is_error
        assert result.error_kind is ErrorKind.BUDGET_EXHAUSTED
        assert result.output == (
            "Sub-agent (writer) exhausted: Iteration budget exhausted\n"
            "Last output:\nstill working"
        )
        assert result.metadata["status"] == "exhausted"
        assert result.metadata["iterations"] == 1

    def test_failed_sub_agent(self, registry):
        gateway = ScriptedGateway([RuntimeError("upstream 500")])
        result = DelegationManager(gateway, registry).delegate(AgentTask("q"), call_id="c1")
        assert result.is_error
        assert result.error_kind is ErrorKind.GATEWAY_FATAL
        assert result.metadata["status"] == "failed"

    def test_cancelled_token(self, registry):
        gateway = ScriptedGateway([final()])
        token = CancellationToken()
        token.cancel("parent stopped")
        result = DelegationManager(gateway, registry).delegate(
            AgentTask("q"), call_id="c1", cancel=token
        )
        assert result.error_kind is ErrorKind.CANCELLED
        assert "parent stopped" in result.output
        assert gateway.call_count == 0


class TestSeedText:
    def test_refs_are_inlined(self, registry):
        refs = {"a.md": "alpha"}
        manager = DelegationManager(ScriptedGateway([]), registry, ref_resolver=refs.get)
        seed = manager.seed_text(AgentTask("Summarize", input_refs=("a.md", "missing.md")))
        assert seed == "Summarize\n\nReference materials:\n--- a.md ---\nalpha\n--- end ---\n"

    def test_no_resolver_means_description_only(self, registry):
        manager = DelegationManager(ScriptedGateway([]), registry)
        assert manager.seed_text(AgentTask("Summarize", input_refs=("a.md",))) == "Summarize"

    def test_resolver_errors_are_skipped(self, registry):
        def broken(ref):
            raise OSError("disk gone")

        manager = DelegationManager(ScriptedGateway([]), registry, ref_resolver=broken)
        assert manager.seed_text(AgentTask("Summarize", input_refs=("a.md",))) == "Summarize"


class TestFileRefResolver:
    def test_reads_files_under_root(self, tmp_path):
        (tmp_path / "notes.txt").write_text("hello", encoding="utf-8")
        resolve = file_ref_resolver(tmp_path)
        assert resolve("notes.txt") == "hello"

    def test_missing_file(self, tmp_path):
        assert file_ref_resolver(tmp_path)("nope.txt") is None

    def test_escape_is_refused(self, tmp_path):
        root = tmp_path / "workspace"
        root.mkdir()
        (tmp_path / "secret.txt").write_text("s3cret", encoding="utf-8")
        assert file_ref_resolver(root)("../secret.txt") is None


# ---------------------------------------------------------------------------
# Delegation through the loop
# ---------------------------------------------------------------------------


class TestLoopIntegration:
    def test_delegate_tool_round_trip(self, registry):
        parent = ScriptedGateway([tool_request(delegate_call()), final("Parent done")])
        sub = ScriptedGateway([final("Findings")])
        gateway = RoutingGateway(parent, sub)
        manager = DelegationManager(gateway, registry, max_depth=1)

        outcome = AgentLoop(gateway, registry, delegation=manager).run("Write the report")

        assert outcome.status is LoopStatus.COMPLETED
        result = outcome.conversation.turns[2].tool_results[0]
        assert result.output == "Findings"
        assert result.metadata["depth"] == 1
        assert sub.tools[0] == ["echo"]
        assert outcome.usage.gateway_calls == 3
        assert outcome.usage.delegated_runs == 1
        assert outcome.usage.tool_calls == 1

    def test_nested_delegation_refused_at_max_depth(self, registry):
        parent = ScriptedGateway([tool_request(delegate_call()), final("Parent done")])
        sub = ScriptedGateway([
            tool_request(delegate_call("d2", role="helper")),
            final("Sub done"),
        ])
        gateway = RoutingGateway(parent, sub)
        manager = DelegationManager(gateway, registry, max_depth=1, allow_nested=True)

        outcome = AgentLoop(gateway, registry, delegation=manager).run("task")

        assert outcome.status is LoopStatus.COMPLETED
        assert sub.call_count == 2
        nested = sub.snapshots[1].turns[2].tool_results[0]
        assert nested.error_kind is ErrorKind.DELEGATION_DEPTH
        assert "max_depth: 1" in nested.output

    def test_sub_budget_capped_by_parent(self, registry):
        parent = ScriptedGateway([tool_request(delegate_call()), final("Parent done")])
        sub = ScriptedGateway([], default=tool_request(make_call("echo", "e1", text="x")))
        gateway = RoutingGateway(parent, sub)
        manager = DelegationManager(gateway, registry, sub_agent_max_iterations=5)

        outcome = AgentLoop(gateway, registry, LoopConfig(max_iterations=3), delegation=manager).run(
            "task"
        )

        result = outcome.conversation.turns[2].tool_results[0]
        assert result.metadata["status"] == "exhausted"
        assert result.metadata["iterations"] == 2
        assert sub.call_count == 2

    def test_explicit_iteration_limit(self, registry):
        parent = ScriptedGateway([tool_request(delegate_call(max_iterations=1)), final()])
        sub = ScriptedGateway([], default=tool_request(make_call("echo", "e1", text="x")))
        gateway = RoutingGateway(parent, sub)
        manager = DelegationManager(gateway, registry)

        AgentLoop(gateway, registry, delegation=manager).run("task")
        assert sub.call_count == 1

    def test_parent_cancellation_reaches_sub_agent(self, registry, release):
        parent = ScriptedGateway([tool_request(delegate_call()), final()])
        sub = ScriptedGateway([blocking(release)])
        gateway = RoutingGateway(parent, sub)
        manager = DelegationManager(gateway, registry)
        loop = AgentLoop(gateway, registry, delegation=manager)

        def cancel_when_sub_starts() -> None:
            for _ in range(100):
                if sub.call_count:
                    loop.cancel("stop everything")
                    return
                time.sleep(0.02)

        watcher = threading.Thread(target=cancel_when_sub_starts)
        watcher.start()
        outcome = loop.run("task")
        watcher.join(3)

        assert outcome.status is LoopStatus.CANCELLED
        sub_token = sub.cancel_tokens[0]
        assert sub_token.wait(2)
        assert sub_token.reason == "stop everything"


def test_sub_agents_use_shared_tools():
    parent = ScriptedGateway([tool_request(delegate_call()), final()])
    sub = ScriptedGateway([tool_request(make_call("echo", "e1", text="hi")), final("used echo")])
    gateway = RoutingGateway(parent, sub)
    registry = ToolRegistry([echo_tool()])
    outcome = AgentLoop(gateway, registry, delegation=DelegationManager(gateway, registry)).run("t")
    assert outcome.conversation.turns[2].tool_results[0].output == "used echo"
    assert sub.snapshots[1].turns[2].tool_results[0].output == "echo: hi"
