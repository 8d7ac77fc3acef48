"""Delegation to bounded sub-agents.

Provides:
- AgentTask: the unit of delegated work, carrying its own budget and depth
- DelegationManager: runs a nested AgentLoop for a task and folds its
  Outcome into a single tool result
- DelegateTaskInput: input model of the ``delegate_task`` tool
- file_ref_resolver(): resolves input refs as files under a workspace root

Depth is explicit. A loop at depth ``d`` may delegate only while
``d < max_depth``; the sub-agent then runs at ``d + 1``. The check happens
before any nested loop or gateway call exists.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from agentloop.exceptions import (
    AgentLoopError,
    DelegationDepthExceededError,
    ErrorKind,
    HandlerError,
)
from agentloop.llm.protocols import ModelConfig
from agentloop.models.content import ToolResultBlock
from agentloop.models.outcome import LoopStatus, Usage
from agentloop.orchestrator.budget import Budget
from agentloop.toolkit.executor import error_result
from agentloop.toolkit.models import ToolContext, ToolDescriptor, ToolOutput

if TYPE_CHECKING:
    from agentloop.approval.gate import ApprovalGate, DecisionProvider
    from agentloop.cancellation import CancellationToken
    from agentloop.llm.protocols import ModelGateway
    from agentloop.orchestrator.loop import AgentLoop
    from agentloop.orchestrator.models import Outcome
    from agentloop.toolkit.registry import ToolRegistry

logger = logging.getLogger(__name__)

RefResolver = Callable[[str], "str | None"]

DELEGATE_TOOL_NAME = "delegate_task"


@dataclass(frozen=True)
class AgentTask:
    """A sub-task handed to the DelegationManager.

    Attributes:
        description: What the sub-agent should do.
        role: Role the sub-agent plays (e.g. "researcher", "writer").
        input_refs: References (e.g. file paths) whose content seeds the
            sub-agent's conversation.
        output_target: Where the sub-agent should put its result.
        budget: The sub-agent's own budget.
        depth: Delegation depth of the loop issuing this task.
    """

    description: str
    role: str = "assistant"
    input_refs: tuple[str, ...] = ()
    output_target: str | None = None
    budget: Budget = field(default_factory=Budget)
    depth: int = 0

    def __post_init__(self) -> None:
        if self.depth < 0:
            raise ValueError("depth must be non-negative")


class DelegateTaskInput(BaseModel):
    """Delegate a task to a specialized sub-agent. The sub-agent runs in its
    own context with its own budget and returns its final answer."""

    task_description: str = Field(description="What the sub-agent must accomplish")
    role: str = Field(description="e.g. 'researcher', 'writer', 'reviewer'")
    output_file: str = Field(description="Where the sub-agent writes its output")
    input_files: list[str] = Field(
        default_factory=list, description="Files whose content the sub-agent needs"
    )
    max_iterations: int | None = Field(
        default=None, ge=1, description="Iteration limit for the sub-agent"
    )


def file_ref_resolver(root: str | Path) -> RefResolver:
    """Resolve refs as UTF-8 files confined to ``root``.

    Refs that escape the root or do not exist resolve to None.
    """
    base = Path(root).resolve()

    def resolve(ref: str) -> str | None:
        path = (base / ref).resolve()
        if not path.is_relative_to(base):
            logger.warning("Input ref %s escapes workspace %s", ref, base)
            return None
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")

    return resolve


class DelegationManager:
    """Spawns independently budgeted sub-agent loops.

    Usage::

        manager = DelegationManager(gateway, registry, max_depth=1,
                                    ref_resolver=file_ref_resolver("workspace"))
        loop = AgentLoop(gateway, registry, delegation=manager)
        outcome = loop.run("Write a blog post; delegate each section")
    """

    def __init__(
        self,
        gateway: ModelGateway,
        registry: ToolRegistry,
        *,
        max_depth: int = 2,
        model: ModelConfig | None = None,
        ref_resolver: RefResolver | None = None,
        allow_nested: bool = False,
        approvals: ApprovalGate | DecisionProvider | None = None,
        sub_agent_max_iterations: int = 5,
        max_workers: int = 8,
        poll_interval: float = 0.05,
        tool_name: str = DELEGATE_TOOL_NAME,
    ) -> None:
        """Initialize the manager.

        Args:
            gateway: Gateway used by every sub-agent.
            registry: Tools offered to sub-agents (the delegate tool itself
                is removed unless ``allow_nested`` is set).
            max_depth: Maximum delegation depth.
            model: Base model settings for sub-agents; the system prompt is
                replaced with a role prompt.
            ref_resolver: Turns input refs into seed text.
            allow_nested: Whether sub-agents may delegate further.
            approvals: Gate or decision provider for sub-agents' sensitive tools.
            sub_agent_max_iterations: Iteration limit when the caller gives none.
            max_workers: Concurrent tool calls inside each sub-agent.
            poll_interval: Poll interval inside each sub-agent.
            tool_name: Name of the delegation tool.
        """
        self._gateway = gateway
        self._registry = registry
        self._max_depth = max_depth
        self._model = model or ModelConfig()
        self._ref_resolver = ref_resolver
        self._allow_nested = allow_nested
        self._approvals = approvals
        self._sub_agent_max_iterations = sub_agent_max_iterations
        self._max_workers = max_workers
        self._poll_interval = poll_interval
        self.tool_name = tool_name

    @property
    def max_depth(self) -> int:
        return self._max_depth

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def spawn(self, task: AgentTask, *, cancel: CancellationToken | None = None) -> Outcome:
        """Run a sub-agent for ``task`` to a terminal Outcome.

        Raises:
            DelegationDepthExceededError: If ``task.depth`` is not below
                ``max_depth``. Raised before any loop is constructed.
        """
        if task.depth >= self._max_depth:
            raise DelegationDepthExceededError(task.depth + 1, self._max_depth)

        from agentloop.orchestrator.config import LoopConfig
        from agentloop.orchestrator.loop import AgentLoop

        registry = (
            self._registry if self._allow_nested else self._registry.without(self.tool_name)
        )
        budget = task.budget.model_copy(update={"elapsed_iterations": 0})
        config = LoopConfig(
            model=self._model_for(task),
            max_iterations=budget.max_iterations,
            per_call_timeout=budget.per_call_timeout,
            wall_clock_timeout=budget.wall_clock_timeout,
            max_depth=self._max_depth,
            max_workers=self._max_workers,
            allow_nested_delegation=self._allow_nested,
            sub_agent_max_iterations=self._sub_agent_max_iterations,
            poll_interval=self._poll_interval,
        )
        loop = AgentLoop(
            self._gateway,
            registry,
            config,
            approvals=self._approvals,
            delegation=self if self._allow_nested else None,
            depth=task.depth + 1,
            cancel=cancel,
        )
        logger.info(
            "Spawning sub-agent (%s) at depth %d with %d iteration(s)",
            task.role,
            task.depth + 1,
            budget.max_iterations,
        )
        outcome = loop.run(self.seed_text(task), budget=budget)
        logger.info("Sub-agent (%s) finished: %s", task.role, outcome.summary())
        return outcome

    def delegate(
        self,
        task: AgentTask,
        *,
        call_id: str,
        cancel: CancellationToken | None = None,
    ) -> ToolResultBlock:
        """Run ``task`` and fold its outcome into one tool result.

        Never raises: a depth violation, a sub-agent failure, or any other
        problem becomes an error-flagged result the parent model can act on.
        """
        try:
            outcome = self.spawn(task, cancel=cancel)
        except DelegationDepthExceededError as exc:
            logger.info("Delegation refused: %s", exc)
            return error_result(
                call_id, exc, status="not_started", role=task.role, depth=task.depth + 1
            )
        except AgentLoopError as exc:
            return error_result(call_id, exc, status="not_started", role=task.role)
        except Exception as exc:
            logger.debug("Delegation to %s failed", task.role, exc_info=True)
            return error_result(
                call_id, HandlerError(self.tool_name, exc), status="not_started", role=task.role
            )
        return self._fold(call_id, task, outcome)

    def as_tool(self, parent: AgentLoop) -> ToolDescriptor:
        """Build the delegation tool bound to ``parent``'s depth and budget.

        Sub-agent budgets are capped at what remains of the parent's budget
        when the call is made.
        """

        def handler(
            task_description: str,
            role: str,
            output_file: str,
            input_files: list[str] | None = None,
            max_iterations: int | None = None,
            *,
            context: ToolContext,
        ) -> ToolOutput:
            limit = max_iterations or self._sub_agent_max_iterations
            controller = parent.budget_controller
            budget = (
                controller.child_budget(max_iterations=limit)
                if controller is not None
                else Budget(max_iterations=limit)
            )
            task = AgentTask(
                description=task_description,
                role=role,
                input_refs=tuple(input_files or ()),
                output_target=output_file,
                budget=budget,
                depth=parent.depth,
            )
            result = self.delegate(task, call_id=context.call_id, cancel=context.cancel)
            return ToolOutput(
                output=result.output,
                is_error=result.is_error,
                error_kind=result.error_kind,
                metadata=result.metadata,
            )

        return ToolDescriptor.from_model(
            self.tool_name, DelegateTaskInput, handler, takes_context=True
        )

    def seed_text(self, task: AgentTask) -> str:
        """Task description followed by the content of every resolvable ref."""
        sections = []
        for ref in task.input_refs:
            content = self._resolve(ref)
            if content is None:
                logger.warning("Skipping unresolvable input ref %s", ref)
                continue
            sections.append(f"--- {ref} ---\n{content}\n--- end ---\n")
        if not sections:
            return task.description
        return f"{task.description}\n\nReference materials:\n" + "\n".join(sections)

    # ------------------------------------------------------------------
    # Internal methods
    # ------------------------------------------------------------------

    def _resolve(self, ref: str) -> str | None:
        if self._ref_resolver is None:
            return None
        try:
            return self._ref_resolver(ref)
        except Exception:
            logger.warning("Input ref resolver failed for %s", ref, exc_info=True)
            return None

    def _model_for(self, task: AgentTask) -> ModelConfig:
        prompt = f"You are a {task.role}. Complete your task"
        if task.output_target:
            prompt += f" and write your output to {task.output_target}"
        return dataclasses.replace(self._model, system_prompt=prompt + ".")

    def _fold(self, call_id: str, task: AgentTask, outcome: Outcome) -> ToolResultBlock:
        metadata = {
            "status": outcome.status.value,
            "role": task.role,
            "depth": task.depth + 1,
            "iterations": outcome.iterations,
            "usage": (outcome.usage + Usage(delegated_runs=1)).model_dump(),
        }
        if outcome.status is LoopStatus.COMPLETED:
            output = outcome.content or (
                f"Output written to {task.output_target}"
                if task.output_target
                else f"Sub-agent ({task.role}) completed"
            )
            return ToolResultBlock(call_id=call_id, output=output, metadata=metadata)

        if outcome.status is LoopStatus.EXHAUSTED:
            kind = ErrorKind.BUDGET_EXHAUSTED
            detail = outcome.reason or "budget exhausted"
        elif outcome.status is LoopStatus.CANCELLED:
            kind = ErrorKind.CANCELLED
            detail = outcome.error.message if outcome.error else "cancelled"
        else:
            kind = outcome.error.kind if outcome.error else ErrorKind.GATEWAY_FATAL
            detail = outcome.error.message if outcome.error else "failed"
        output = f"Sub-agent ({task.role}) {outcome.status.value}: {detail}"
        if outcome.content:
            output += f"\nLast output:\n{outcome.content}"
        return ToolResultBlock(
            call_id=call_id, output=output, is_error=True, error_kind=kind, metadata=metadata
        )
