"""Model gateway protocol and the types exchanged across it.

The loop never talks to a model service directly. It hands a conversation
snapshot and the run's tool descriptors to a ``ModelGateway`` and gets back
a classified ``GatewayResponse``.
"""

from __future__ import annotations

import enum
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from agentloop.models.content import ContentBlock, TextBlock, ToolCallBlock, Turn
from agentloop.models.outcome import Usage

if TYPE_CHECKING:
    from agentloop.cancellation import CancellationToken
    from agentloop.conversation import ConversationSnapshot
    from agentloop.toolkit.models import ToolDescriptor


class Termination(str, enum.Enum):
    """How a gateway response ended.

    - ``FINAL``: the model considers the task finished.
    - ``TOOL_REQUESTED``: the response carries tool calls to dispatch.
    - ``PAUSED``: unfinished, but no tool requested; invoke again.
    """

    FINAL = "final"
    TOOL_REQUESTED = "tool_requested"
    PAUSED = "paused"


@dataclass
class ModelConfig:
    """Per-run model settings forwarded to the gateway.

    Mutable dataclass -- adjust between runs as needed.

    Attributes:
        model: Model identifier (None = gateway default).
        system_prompt: System prompt prepended to every request.
        temperature: Sampling temperature.
        max_tokens: Maximum tokens for each response.
        extra: Additional provider parameters (top_p, seed, etc.).
    """

    model: str | None = None
    system_prompt: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InvokeOptions:
    """Options for a single gateway invocation."""

    model: ModelConfig = field(default_factory=ModelConfig)
    streaming: bool = False


@dataclass(frozen=True)
class GatewayResponse:
    """A classified model response.

    Attributes:
        blocks: Content blocks of the agent turn (text and tool calls only).
        termination: How the response ended.
        usage: Token usage reported for this call.
    """

    blocks: tuple[ContentBlock, ...] = ()
    termination: Termination = Termination.FINAL
    usage: Usage = field(default_factory=Usage)

    @classmethod
    def final(cls, text: str, *, usage: Usage | None = None) -> GatewayResponse:
        return cls(
            blocks=(TextBlock(text=text),) if text else (),
            termination=Termination.FINAL,
            usage=usage or Usage(),
        )

    @classmethod
    def tool_request(
        cls, *calls: ToolCallBlock, text: str = "", usage: Usage | None = None
    ) -> GatewayResponse:
        blocks: tuple[ContentBlock, ...] = ((TextBlock(text=text),) if text else ()) + calls
        return cls(blocks=blocks, termination=Termination.TOOL_REQUESTED, usage=usage or Usage())

    @property
    def tool_calls(self) -> list[ToolCallBlock]:
        return [b for b in self.blocks if isinstance(b, ToolCallBlock)]

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.blocks if isinstance(b, TextBlock))

    def to_turn(self) -> Turn:
        return Turn(role="agent", blocks=self.blocks)


FragmentCallback = Callable[[str], None]


@runtime_checkable
class ModelGateway(Protocol):
    """Protocol for pluggable model gateways.

    Any object with an ``invoke()`` method matching this signature works.
    The built-in OpenAIGateway implements this protocol.

    When ``options.streaming`` is set and ``on_fragment`` is given, the
    gateway calls ``on_fragment(text)`` for each text delta as it arrives.
    The returned response must carry the same text as the fragments
    concatenated. Gateways should check ``cancel`` between chunks and raise
    ``CancelledByCallerError`` once it is set.
    """

    def invoke(
        self,
        snapshot: ConversationSnapshot,
        tools: Sequence[ToolDescriptor],
        options: InvokeOptions,
        *,
        on_fragment: FragmentCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> GatewayResponse:
        """Send the conversation, return the classified response."""
        ...
