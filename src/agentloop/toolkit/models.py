"""Toolkit data models: tool descriptors and handler outputs."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ValidationError

from agentloop.exceptions import ErrorKind, RegistryError, SchemaValidationError
from agentloop.models.content import Risk
from agentloop.toolkit.schema import dump_input, model_from_schema

if TYPE_CHECKING:
    from agentloop.cancellation import CancellationToken

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolDescriptor:
    """A single tool: its schema, capability flags, and handler.

    Attributes:
        name: Tool name the model uses to call it.
        description: When and why the model should use the tool.
        input_schema: JSON Schema dict describing the tool's input object.
        handler: Callable invoked as ``handler(**validated_input)``.
        sensitive: Whether calls must pass the approval gate first.
        risk: Risk level reported in approval requests.
        reversible: Whether the action can be undone (reported in approvals).
        timeout: Per-tool timeout in seconds, overriding the loop default.
        takes_context: Whether the handler also receives a ``context``
            keyword argument holding the call's ToolContext.
    """

    name: str
    description: str
    input_schema: dict
    handler: Callable[..., object]
    sensitive: bool = False
    risk: Risk = Risk.MEDIUM
    reversible: bool = True
    timeout: float | None = None
    takes_context: bool = False
    input_model: type[BaseModel] | None = field(default=None, repr=False, compare=False)
    _compiled: bool = field(default=False, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.name:
            raise RegistryError("Tool name must not be empty")
        if self.input_model is None:
            object.__setattr__(
                self, "input_model", model_from_schema(f"{self.name}_input", self.input_schema)
            )
            object.__setattr__(self, "_compiled", True)

    @classmethod
    def from_model(
        cls,
        name: str,
        model: type[BaseModel],
        handler: Callable[..., object],
        *,
        description: str | None = None,
        **flags: Any,
    ) -> ToolDescriptor:
        """Build a descriptor whose schema is derived from a Pydantic model.

        The model's docstring is used as the description when none is given.
        """
        return cls(
            name=name,
            description=description or (model.__doc__ or "").strip(),
            input_schema=model.model_json_schema(),
            handler=handler,
            input_model=model,
            **flags,
        )

    def validate_input(self, arguments: dict) -> dict:
        """Validate raw arguments against the tool's input schema.

        Returns:
            The validated arguments, ready to pass as keyword arguments.

        Raises:
            SchemaValidationError: If the arguments do not match.
        """
        if not isinstance(arguments, dict):
            raise SchemaValidationError(
                self.name, f"expected an object, got {type(arguments).__name__}"
            )
        try:
            instance = self.input_model.model_validate(arguments)  # type: ignore[union-attr]
        except ValidationError as e:
            raise SchemaValidationError(self.name, _summarize(e)) from e
        if self._compiled:
            return dump_input(instance)
        return instance.model_dump()

    def to_openai(self) -> dict:
        """Convert to OpenAI function-calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }

    def to_anthropic(self) -> dict:
        """Convert to Anthropic tool-use format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


def _summarize(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item["loc"]) or "<root>"
        parts.append(f"{loc}: {item['msg']}")
    return "; ".join(parts)


@dataclass(frozen=True)
class ToolOutput:
    """Explicit handler result.

    Handlers normally return plain values; returning a ToolOutput lets a
    handler flag its own result as an error and attach metadata without
    raising.
    """

    output: Any = ""
    is_error: bool = False
    error_kind: ErrorKind | None = None
    metadata: dict = field(default_factory=dict)


def render_output(value: object) -> str:
    """Serialize a handler return value into ToolResult output text."""
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return str(value)


@dataclass(frozen=True)
class ToolContext:
    """Per-call information handed to handlers declared with ``takes_context``.

    Attributes:
        call_id: Id of the tool call being executed.
        cancel: Token cancelled when this call (or its whole batch) is
            cancelled. Long-running handlers should poll it.
    """

    call_id: str
    cancel: CancellationToken
