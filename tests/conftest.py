"""Shared test fixtures for agentloop.

Provides a scripted mock gateway, tool/call builders, and registry and
checkpoint-store fixtures. No test reaches a network.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable

import pytest

from agentloop.conversation import ConversationSnapshot
from agentloop.llm.protocols import GatewayResponse, InvokeOptions, Termination
from agentloop.models.content import TextBlock, ToolCallBlock
from agentloop.models.outcome import Usage
from agentloop.storage.engine import create_store_engine
from agentloop.storage.sqlite import SqliteCheckpointStore
from agentloop.toolkit.models import ToolDescriptor
from agentloop.toolkit.registry import ToolRegistry


# ------------------------------------------------------------------
# Builders
# ------------------------------------------------------------------

def make_tool(
    name: str,
    handler: Callable[..., object] | None = None,
    *,
    properties: dict | None = None,
    required: tuple[str, ...] = (),
    description: str = "",
    **flags,
) -> ToolDescriptor:
    """Build a ToolDescriptor from a small object schema."""
    schema: dict = {"type": "object", "properties": properties or {}}
    if required:
        schema["required"] = list(required)
    return ToolDescriptor(
        name=name,
        description=description or f"The {name} tool",
        input_schema=schema,
        handler=handler or (lambda **kwargs: "ok"),
        **flags,
    )


def make_call(name: str, call_id: str | None = None, **arguments) -> ToolCallBlock:
    return ToolCallBlock(id=call_id or f"call_{uuid.uuid4().hex[:8]}", name=name, input=arguments)


def final(text: str = "done", **usage) -> GatewayResponse:
    return GatewayResponse.final(text, usage=Usage(**usage))


def tool_request(*calls: ToolCallBlock, text: str = "", **usage) -> GatewayResponse:
    return GatewayResponse.tool_request(*calls, text=text, usage=Usage(**usage))


def paused(text: str) -> GatewayResponse:
    return GatewayResponse(blocks=(TextBlock(text=text),), termination=Termination.PAUSED)


def echo_handler(text: str) -> str:
    return f"echo: {text}"


def echo_tool(**flags) -> ToolDescriptor:
    return make_tool(
        "echo",
        echo_handler,
        properties={"text": {"type": "string"}},
        required=("text",),
        **flags,
    )


# ------------------------------------------------------------------
# Mock gateway
# ------------------------------------------------------------------

class ScriptedGateway:
    """ModelGateway that replays a fixed script of responses.

    Each item is a GatewayResponse, an exception to raise, or a callable
    taking the snapshot and returning the response. With ``chunk_size`` set
    and streaming requested, response text is pushed in chunks first.
    """

    def __init__(
        self,
        script: list,
        *,
        default: GatewayResponse | None = None,
        chunk_size: int | None = None,
    ) -> None:
        self._script = list(script)
        self._default = default
        self._chunk_size = chunk_size
        self._lock = threading.Lock()
        self.snapshots: list[ConversationSnapshot] = []
        self.options: list[InvokeOptions] = []
        self.tools: list[list[str]] = []
        self.cancel_tokens: list = []

    @property
    def call_count(self) -> int:
        return len(self.snapshots)

    def invoke(self, snapshot, tools, options, *, on_fragment=None, cancel=None):
        with self._lock:
            index = len(self.snapshots)
            self.snapshots.append(snapshot)
            self.options.append(options)
            self.tools.append([t.name for t in tools])
            self.cancel_tokens.append(cancel)
            if index < len(self._script):
                item = self._script[index]
            elif self._default is not None:
                item = self._default
            else:
                raise RuntimeError(f"Script exhausted after {len(self._script)} response(s)")

        if isinstance(item, BaseException):
            raise item
        if callable(item):
            item = item(snapshot)
        if options.streaming and on_fragment is not None and self._chunk_size:
            text = item.text
            for start in range(0, len(text), self._chunk_size):
                on_fragment(text[start : start + self._chunk_size])
        return item


def blocking(release: threading.Event, response: GatewayResponse | None = None):
    """Script item that blocks until ``release`` is set."""

    def respond(snapshot):
        release.wait(5)
        return response or final("late")

    return respond


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------

@pytest.fixture
def registry() -> ToolRegistry:
    return ToolRegistry([echo_tool()])


@pytest.fixture
def release():
    """Event released at teardown so no abandoned worker outlives a test."""
    event = threading.Event()
    yield event
    event.set()


@pytest.fixture
def store_engine():
    """In-memory SQLite engine for the checkpoint store."""
    eng = create_store_engine(":memory:")
    yield eng
    eng.dispose()


@pytest.fixture
def store(store_engine) -> SqliteCheckpointStore:
    return SqliteCheckpointStore(store_engine)
