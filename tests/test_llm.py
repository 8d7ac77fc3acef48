"""Tests for the OpenAI-compatible gateway.

All HTTP traffic goes through httpx.MockTransport; nothing reaches a network.
"""

from __future__ import annotations

import json
import time

import httpx
import pytest

from agentloop.cancellation import CancellationToken
from agentloop.conversation import ConversationState
from agentloop.exceptions import CancelledByCallerError, ErrorKind, GatewayFatalError
from agentloop.llm import (
    LLMAuthError,
    LLMConfigError,
    LLMRateLimitError,
    LLMResponseError,
    ModelConfig,
    ModelGateway,
    OpenAIGateway,
    Termination,
    render_messages,
)
from agentloop.llm.protocols import InvokeOptions
from agentloop.models.content import (
    ApprovalDecisionBlock,
    ApprovalRequestBlock,
    TextBlock,
    ToolCallBlock,
    ToolResultBlock,
    Turn,
)
from agentloop.models.outcome import LoopStatus
from agentloop.orchestrator import AgentLoop
from tests.conftest import echo_tool


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def chat_response(content=None, tool_calls=None, finish_reason="stop", usage=None) -> dict:
    message: dict = {"role": "assistant", "content": content}
    if tool_calls is not None:
        message["tool_calls"] = tool_calls
    return {
        "choices": [{"index": 0, "message": message, "finish_reason": finish_reason}],
        "usage": usage or {"prompt_tokens": 10, "completion_tokens": 5},
    }


def sse(*chunks: dict) -> bytes:
    lines = [f"data: {json.dumps(chunk)}\n\n" for chunk in chunks]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


class Recorder:
    """MockTransport handler replaying canned responses and keeping requests."""

    def __init__(self, *responses: httpx.Response) -> None:
        self._responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self._responses) > 1:
            return self._responses.pop(0)
        return self._responses[0]

    def payload(self, index: int = 0) -> dict:
        return json.loads(self.requests[index].content)


def gateway_for(recorder: Recorder, **kwargs) -> OpenAIGateway:
    kwargs.setdefault("api_key", "sk-test")
    return OpenAIGateway(transport=httpx.MockTransport(recorder), **kwargs)


def snapshot_of(*turns: Turn):
    return ConversationState(turns).snapshot()


TASK = snapshot_of(Turn.user_text("What is 2+2?"))


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestConfiguration:
    def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("AGENTLOOP_OPENAI_API_KEY", raising=False)
        with pytest.raises(LLMConfigError):
            OpenAIGateway()

    def test_environment(self, monkeypatch):
        monkeypatch.setenv("AGENTLOOP_OPENAI_API_KEY", "sk-env")
        monkeypatch.setenv("AGENTLOOP_OPENAI_BASE_URL", "http://localhost:8080/v1/")
        recorder = Recorder(httpx.Response(200, json=chat_response("4")))
        with OpenAIGateway(transport=httpx.MockTransport(recorder)) as gateway:
            gateway.invoke(TASK, [], InvokeOptions())
        request = recorder.requests[0]
        assert str(request.url) == "http://localhost:8080/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-env"

    def test_satisfies_protocol(self):
        gateway = gateway_for(Recorder(httpx.Response(200, json=chat_response("x"))))
        assert isinstance(gateway, ModelGateway)
        gateway.close()


# ---------------------------------------------------------------------------
# Requests and classification
# ---------------------------------------------------------------------------


class TestInvoke:
    def test_payload(self):
        recorder = Recorder(httpx.Response(200, json=chat_response("4")))
        gateway = gateway_for(recorder, default_model="base-model")
        options = InvokeOptions(model=ModelConfig(
            system_prompt="Be brief.", temperature=0.2, max_tokens=50, extra={"seed": 7}
        ))
        gateway.invoke(TASK, [echo_tool()], options)

        payload = recorder.payload()
        assert payload["model"] == "base-model"
        assert payload["messages"] == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "What is 2+2?"},
        ]
        assert payload["tools"][0]["function"]["name"] == "echo"
        assert payload["temperature"] == 0.2
        assert payload["max_tokens"] == 50
        assert payload["seed"] == 7
        assert "stream" not in payload

    def test_model_override(self):
        recorder = Recorder(httpx.Response(200, json=chat_response("4")))
        gateway_for(recorder).invoke(TASK, [], InvokeOptions(model=ModelConfig(model="big")))
        payload = recorder.payload()
        assert payload["model"] == "big"
        assert "tools" not in payload

    def test_final(self):
        recorder = Recorder(httpx.Response(200, json=chat_response("4")))
        response = gateway_for(recorder).invoke(TASK, [], InvokeOptions())
        assert response.termination is Termination.FINAL
        assert response.text == "4"
        assert response.usage.input_tokens == 10
        assert response.usage.output_tokens == 5

    def test_tool_request(self):
        raw = [{
            "id": "call_abc",
            "type": "function",
            "function": {"name": "echo", "arguments": '{"text": "hi"}'},
        }]
        recorder = Recorder(httpx.Response(
            200, json=chat_response(None, tool_calls=raw, finish_reason="tool_calls")
        ))
        response = gateway_for(recorder).invoke(TASK, [echo_tool()], InvokeOptions())
        assert response.termination is Termination.TOOL_REQUESTED
        call = response.tool_calls[0]
        assert call.id == "call_abc"
        assert call.input == {"text": "hi"}
        assert response.text == ""

    def test_length_is_paused(self):
        recorder = Recorder(httpx.Response(200, json=chat_response("partial", finish_reason="length")))
        response = gateway_for(recorder).invoke(TASK, [], InvokeOptions())
        assert response.termination is Termination.PAUSED

    def test_malformed_arguments_become_empty_input(self):
        raw = [{"id": "c1", "function": {"name": "echo", "arguments": "{not json"}}]
        recorder = Recorder(httpx.Response(
            200, json=chat_response(None, tool_calls=raw, finish_reason="tool_calls")
        ))
        response = gateway_for(recorder).invoke(TASK, [], InvokeOptions())
        assert response.tool_calls[0].input == {}

    def test_non_json_body(self):
        recorder = Recorder(httpx.Response(200, text="<html>oops</html>"))
        with pytest.raises(LLMResponseError, match="not JSON"):
            gateway_for(recorder).invoke(TASK, [], InvokeOptions())

    def test_missing_choices(self):
        recorder = Recorder(httpx.Response(200, json={"id": "x"}))
        with pytest.raises(LLMResponseError, match="Unexpected response format"):
            gateway_for(recorder).invoke(TASK, [], InvokeOptions())


class TestErrors:
    def test_auth_error_not_retried(self):
        recorder = Recorder(httpx.Response(401, json={"error": "bad key"}))
        with pytest.raises(LLMAuthError):
            gateway_for(recorder, max_retries=3).invoke(TASK, [], InvokeOptions())
        assert len(recorder.requests) == 1

    def test_rate_limit_retried(self, monkeypatch):
        slept: list[float] = []
        monkeypatch.setattr(time, "sleep", slept.append)
        recorder = Recorder(
            httpx.Response(429, headers={"Retry-After": "2"}, json={"error": "slow down"}),
            httpx.Response(200, json=chat_response("ok")),
        )
        response = gateway_for(recorder, max_retries=2).invoke(TASK, [], InvokeOptions())
        assert response.text == "ok"
        assert len(recorder.requests) == 2
        assert len(slept) == 1 and slept[0] >= 1

    def test_rate_limit_exhausted(self):
        recorder = Recorder(httpx.Response(429, headers={"Retry-After": "3"}, json={}))
        with pytest.raises(LLMRateLimitError) as exc_info:
            gateway_for(recorder, max_retries=1).invoke(TASK, [], InvokeOptions())
        assert exc_info.value.retry_after == 3.0

    def test_bad_request_not_retried(self):
        recorder = Recorder(httpx.Response(400, json={"error": "bad"}))
        with pytest.raises(LLMResponseError, match="HTTP 400"):
            gateway_for(recorder, max_retries=3).invoke(TASK, [], InvokeOptions())
        assert len(recorder.requests) == 1

    def test_errors_are_gateway_fatal(self):
        assert issubclass(LLMResponseError, GatewayFatalError)
        assert LLMAuthError("x").kind is ErrorKind.GATEWAY_FATAL


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class TestStreaming:
    def test_text_fragments(self):
        body = sse(
            {"choices": [{"index": 0, "delta": {"role": "assistant", "content": "Hel"}}]},
            {"choices": [{"index": 0, "delta": {"content": "lo"}, "finish_reason": "stop"}]},
            {"choices": [], "usage": {"prompt_tokens": 8, "completion_tokens": 2}},
        )
        recorder = Recorder(httpx.Response(200, content=body))
        fragments: list[str] = []
        response = gateway_for(recorder).invoke(
            TASK, [], InvokeOptions(streaming=True), on_fragment=fragments.append
        )
        assert fragments == ["Hel", "lo"]
        assert response.text == "Hello"
        assert response.termination is Termination.FINAL
        assert response.usage.input_tokens == 8
        payload = recorder.payload()
        assert payload["stream"] is True
        assert payload["stream_options"] == {"include_usage": True}

    def test_tool_call_deltas(self):
        body = sse(
            {"choices": [{"index": 0, "delta": {"tool_calls": [
                {"index": 0, "id": "call_1", "function": {"name": "echo", "arguments": '{"te'}},
            ]}}]},
            {"choices": [{"index": 0, "delta": {"tool_calls": [
                {"index": 0, "function": {"arguments": 'xt": "hi"}'}},
            ]}, "finish_reason": "tool_calls"}]},
        )
        recorder = Recorder(httpx.Response(200, content=body))
        response = gateway_for(recorder).invoke(TASK, [echo_tool()], InvokeOptions(streaming=True))
        assert response.termination is Termination.TOOL_REQUESTED
        assert response.tool_calls == [ToolCallBlock(id="call_1", name="echo", input={"text": "hi"})]

    def test_cancelled_mid_stream(self):
        body = sse({"choices": [{"index": 0, "delta": {"content": "never"}}]})
        recorder = Recorder(httpx.Response(200, content=body))
        token = CancellationToken()
        token.cancel("stop streaming")
        with pytest.raises(CancelledByCallerError):
            gateway_for(recorder).invoke(
                TASK, [], InvokeOptions(streaming=True), cancel=token
            )

    def test_garbled_chunk(self):
        body = b'data: {"choices": [{"delta": {"content": "a"}}]}\n\ndata: {oops\n\n'
        recorder = Recorder(httpx.Response(200, content=body))
        with pytest.raises(LLMResponseError, match="Stream broke"):
            gateway_for(recorder).invoke(TASK, [], InvokeOptions(streaming=True))

    def test_stream_auth_error(self):
        recorder = Recorder(httpx.Response(403, json={"error": "forbidden"}))
        with pytest.raises(LLMAuthError):
            gateway_for(recorder).invoke(TASK, [], InvokeOptions(streaming=True))


# ---------------------------------------------------------------------------
# Message rendering
# ---------------------------------------------------------------------------


class TestRenderMessages:
    def test_full_exchange(self):
        snapshot = snapshot_of(
            Turn.user_text("clean up"),
            Turn(role="agent", blocks=(
                TextBlock(text="Deleting."),
                ToolCallBlock(id="c1", name="rm", input={"path": "/tmp/x"}),
            )),
            Turn(role="user", blocks=(
                ApprovalRequestBlock(id="r1", call_id="c1", tool_name="rm", action="rm()"),
                ApprovalDecisionBlock(request_id="r1", approved=False, reason="no"),
                ToolResultBlock(call_id="c1", output="Approval denied", is_error=True),
            )),
            Turn(role="agent", blocks=(TextBlock(text="Understood."),)),
        )
        messages = render_messages(snapshot, "sys")
        assert [m["role"] for m in messages] == ["system", "user", "assistant", "tool", "assistant"]
        assert messages[2]["tool_calls"][0]["function"] == {
            "name": "rm",
            "arguments": '{"path": "/tmp/x"}',
        }
        assert messages[3] == {
            "role": "tool",
            "tool_call_id": "c1",
            "content": "Error: Approval denied",
        }

    def test_agent_without_text(self):
        snapshot = snapshot_of(
            Turn.user_text("go"),
            Turn(role="agent", blocks=(ToolCallBlock(id="c1", name="ls"),)),
        )
        assert render_messages(snapshot)[1]["content"] is None


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------


def test_loop_over_http(registry):
    raw = [{"id": "call_1", "function": {"name": "echo", "arguments": '{"text": "ping"}'}}]
    recorder = Recorder(
        httpx.Response(200, json=chat_response(None, tool_calls=raw, finish_reason="tool_calls")),
        httpx.Response(200, json=chat_response("pong")),
    )
    with gateway_for(recorder) as gateway:
        outcome = AgentLoop(gateway, registry).run("ping please")

    assert outcome.status is LoopStatus.COMPLETED
    assert outcome.content == "pong"
    assert outcome.usage.input_tokens == 20
    second = recorder.payload(1)["messages"]
    assert second[-1] == {"role": "tool", "tool_call_id": "call_1", "content": "echo: ping"}
