"""Tool descriptors, the per-run registry, and the concurrent dispatcher."""

from agentloop.toolkit.executor import DispatchReport, ToolDispatcher, error_result
from agentloop.toolkit.models import ToolContext, ToolDescriptor, ToolOutput, render_output
from agentloop.toolkit.registry import ToolRegistry
from agentloop.toolkit.schema import dump_input, model_from_schema

__all__ = [
    "DispatchReport",
    "ToolContext",
    "ToolDescriptor",
    "ToolDispatcher",
    "ToolOutput",
    "ToolRegistry",
    "error_result",
    "dump_input",
    "model_from_schema",
    "render_output",
]
