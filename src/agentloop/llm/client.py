"""Built-in OpenAI-compatible gateway over httpx with tenacity retry.

Renders conversation snapshots into chat-completions messages, sends them
with the run's tools, and classifies the reply into a GatewayResponse.
Supports server-sent-event streaming with per-chunk cancellation checks.
Reads configuration from constructor arguments or environment variables.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import httpx
import tenacity

from agentloop.llm.errors import (
    LLMAuthError,
    LLMConfigError,
    LLMRateLimitError,
    LLMResponseError,
)
from agentloop.llm.protocols import (
    FragmentCallback,
    GatewayResponse,
    InvokeOptions,
    Termination,
)
from agentloop.models.content import (
    ContentBlock,
    TextBlock,
    ToolCallBlock,
)
from agentloop.models.outcome import Usage

if TYPE_CHECKING:
    from agentloop.cancellation import CancellationToken
    from agentloop.conversation import ConversationSnapshot
    from agentloop.toolkit.models import ToolDescriptor

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
_AUTH_ERROR_STATUS_CODES = {401, 403}


def _is_retryable(exc: BaseException) -> bool:
    """Check if an exception is retryable.

    Retryable: 429, 500, 502, 503, 504, connection errors.
    Not retryable: 401, 403, 400, other client errors, and any failure
    after streamed text has already reached the caller.
    """
    if isinstance(exc, LLMAuthError):
        return False
    if isinstance(exc, LLMRateLimitError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in _RETRYABLE_STATUS_CODES
    return isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout))


# ---------------------------------------------------------------------------
# Message rendering and response parsing
# ---------------------------------------------------------------------------


def render_messages(
    snapshot: ConversationSnapshot, system_prompt: str | None = None
) -> list[dict[str, Any]]:
    """Convert a conversation snapshot into chat-completions messages.

    Approval blocks are bookkeeping for the loop and are not sent; the
    model learns about a denial from the error result that follows it.
    """
    messages: list[dict[str, Any]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})

    for turn in snapshot:
        if turn.role == "agent":
            message: dict[str, Any] = {"role": "assistant", "content": turn.text or None}
            calls = turn.tool_calls
            if calls:
                message["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.input)},
                    }
                    for call in calls
                ]
            messages.append(message)
            continue

        # Tool messages must directly follow the assistant message.
        for result in turn.tool_results:
            messages.append({
                "role": "tool",
                "tool_call_id": result.call_id,
                "content": f"Error: {result.output}" if result.is_error else result.output,
            })
        text = turn.text
        if text:
            messages.append({"role": "user", "content": text})
    return messages


def parse_tool_calls(raw_calls: list[dict] | None) -> list[ToolCallBlock]:
    """Parse OpenAI-format tool calls into ToolCallBlocks.

    Malformed argument JSON becomes an empty input (logged as a warning),
    leaving schema validation to report the problem to the model.
    """
    result: list[ToolCallBlock] = []
    for raw in raw_calls or []:
        call_id = raw.get("id") or f"call_{uuid.uuid4().hex[:8]}"
        func = raw.get("function", {})
        name = func.get("name", "")
        try:
            arguments = json.loads(func.get("arguments") or "{}")
        except (json.JSONDecodeError, TypeError):
            arguments = {}
            logger.warning("Malformed JSON in tool call arguments for %s", name)
        if not isinstance(arguments, dict):
            logger.warning("Tool call arguments for %s are not an object", name)
            arguments = {}
        result.append(ToolCallBlock(id=call_id, name=name, input=arguments))
    return result


def classify(finish_reason: str | None, has_tool_calls: bool) -> Termination:
    """Map an OpenAI ``finish_reason`` onto a Termination."""
    if has_tool_calls or finish_reason == "tool_calls":
        return Termination.TOOL_REQUESTED
    if finish_reason == "length":
        return Termination.PAUSED
    return Termination.FINAL


def parse_usage(raw: dict | None) -> Usage:
    if not raw:
        return Usage()
    return Usage(
        input_tokens=raw.get("prompt_tokens") or 0,
        output_tokens=raw.get("completion_tokens") or 0,
    )


def _build_response(
    text: str, calls: list[ToolCallBlock], finish_reason: str | None, usage: Usage
) -> GatewayResponse:
    blocks: list[ContentBlock] = []
    if text:
        blocks.append(TextBlock(text=text))
    blocks.extend(calls)
    return GatewayResponse(
        blocks=tuple(blocks),
        termination=classify(finish_reason, bool(calls)),
        usage=usage,
    )


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class OpenAIGateway:
    """Sync httpx gateway for OpenAI-compatible chat completions.

    Implements the ModelGateway protocol. Supports retry with exponential
    backoff for transient errors (429, 5xx). Fails immediately on
    authentication errors (401, 403).

    Usage::

        with OpenAIGateway(api_key="sk-...") as gateway:
            outcome = run("Summarize notes.txt", gateway=gateway, registry=registry)
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        default_model: str = "gpt-4o-mini",
        timeout: float = 120.0,
        max_retries: int = 3,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the OpenAI-compatible gateway.

        Args:
            api_key: API key. Falls back to AGENTLOOP_OPENAI_API_KEY env var.
            base_url: API base URL. Falls back to AGENTLOOP_OPENAI_BASE_URL env
                var, then to https://api.openai.com/v1.
            default_model: Default model when the run's ModelConfig names none.
            timeout: Request timeout in seconds.
            max_retries: Maximum number of attempts for retryable errors.
            transport: Optional httpx transport (e.g. ``httpx.MockTransport``).

        Raises:
            LLMConfigError: If no API key is provided or found in environment.
        """
        self._api_key = api_key or os.environ.get("AGENTLOOP_OPENAI_API_KEY", "")
        if not self._api_key:
            raise LLMConfigError(
                "No API key provided. Pass api_key= or set AGENTLOOP_OPENAI_API_KEY "
                "environment variable."
            )
        self._base_url = (
            base_url
            or os.environ.get("AGENTLOOP_OPENAI_BASE_URL", "https://api.openai.com/v1")
        ).rstrip("/")
        self._default_model = default_model
        self._max_retries = max_retries
        self._client = httpx.Client(
            timeout=timeout,
            transport=transport,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._api_key}",
            },
        )

    def invoke(
        self,
        snapshot: ConversationSnapshot,
        tools: Sequence[ToolDescriptor],
        options: InvokeOptions,
        *,
        on_fragment: FragmentCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> GatewayResponse:
        """Send the conversation with retry and classify the reply.

        Uses tenacity.Retrying programmatically (not as decorator) so that
        max_retries is configurable per-instance.

        Raises:
            LLMAuthError: On 401/403 (no retry).
            LLMRateLimitError: On 429 after all retries exhausted.
            LLMResponseError: On unexpected response format, or when a
                stream breaks after text was delivered.
            GatewayFatalError: On other non-retryable HTTP errors.
            CancelledByCallerError: If ``cancel`` fires mid-stream.
        """
        payload = self._payload(snapshot, tools, options)
        retryer = tenacity.Retrying(
            retry=tenacity.retry_if_exception(_is_retryable),
            wait=(
                tenacity.wait_exponential(multiplier=1, min=1, max=30)
                + tenacity.wait_random(0, 2)
            ),
            stop=tenacity.stop_after_attempt(self._max_retries),
            before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            if options.streaming:
                return retryer(self._do_stream, payload, on_fragment, cancel)
            return retryer(self._do_chat, payload)
        except httpx.HTTPStatusError as exc:
            raise LLMResponseError(
                f"HTTP {exc.response.status_code} from model service"
            ) from exc
        except httpx.HTTPError as exc:
            raise LLMResponseError(f"Transport error: {type(exc).__name__}: {exc}") from exc

    def close(self) -> None:
        """Close the underlying httpx client."""
        self._client.close()

    def __enter__(self) -> OpenAIGateway:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Internal methods
    # ------------------------------------------------------------------

    def _payload(
        self,
        snapshot: ConversationSnapshot,
        tools: Sequence[ToolDescriptor],
        options: InvokeOptions,
    ) -> dict[str, Any]:
        config = options.model
        payload: dict[str, Any] = {
            "model": config.model or self._default_model,
            "messages": render_messages(snapshot, config.system_prompt),
        }
        if tools:
            payload["tools"] = [tool.to_openai() for tool in tools]
        if config.temperature is not None:
            payload["temperature"] = config.temperature
        if config.max_tokens is not None:
            payload["max_tokens"] = config.max_tokens
        payload.update(config.extra)
        return payload

    def _check_status(self, response: httpx.Response) -> None:
        # Check for auth errors before raise_for_status
        if response.status_code in _AUTH_ERROR_STATUS_CODES:
            raise LLMAuthError(
                f"Authentication failed: HTTP {response.status_code} - "
                f"{response.text}"
            )

        # Check for rate limiting
        if response.status_code == 429:
            retry_after_raw = response.headers.get("Retry-After")
            retry_after: float | None = None
            if retry_after_raw is not None:
                try:
                    retry_after = float(retry_after_raw)
                except (ValueError, TypeError):
                    pass
            raise LLMRateLimitError(
                f"Rate limited: HTTP 429 - {response.text}",
                retry_after=retry_after,
            )

        response.raise_for_status()

    def _do_chat(self, payload: dict[str, Any]) -> GatewayResponse:
        """Execute a single non-streaming request (no retry)."""
        response = self._client.post(f"{self._base_url}/chat/completions", json=payload)
        self._check_status(response)

        try:
            data = response.json()
        except json.JSONDecodeError as exc:
            raise LLMResponseError(f"Response is not JSON: {exc}") from exc
        try:
            choice = data["choices"][0]
            message = choice["message"]
        except (KeyError, IndexError, TypeError) as exc:
            raise LLMResponseError(
                f"Unexpected response format: {exc}. Response: {data}"
            ) from exc
        return _build_response(
            message.get("content") or "",
            parse_tool_calls(message.get("tool_calls")),
            choice.get("finish_reason"),
            parse_usage(data.get("usage")),
        )

    def _do_stream(
        self,
        payload: dict[str, Any],
        on_fragment: FragmentCallback | None,
        cancel: CancellationToken | None,
    ) -> GatewayResponse:
        """Execute a single streaming request (no retry once text was delivered)."""
        body = {**payload, "stream": True, "stream_options": {"include_usage": True}}
        text_parts: list[str] = []
        calls: dict[int, dict[str, Any]] = {}
        finish_reason: str | None = None
        usage = Usage()

        with self._client.stream(
            "POST", f"{self._base_url}/chat/completions", json=body
        ) as response:
            if response.status_code >= 400:
                response.read()
            self._check_status(response)
            try:
                for line in response.iter_lines():
                    if cancel is not None:
                        cancel.raise_if_cancelled()
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    chunk = json.loads(data)
                    if chunk.get("usage"):
                        usage = parse_usage(chunk["usage"])
                    for choice in chunk.get("choices") or []:
                        delta = choice.get("delta") or {}
                        content = delta.get("content")
                        if content:
                            text_parts.append(content)
                            if on_fragment is not None:
                                on_fragment(content)
                        for raw in delta.get("tool_calls") or []:
                            _merge_call_delta(calls, raw)
                        if choice.get("finish_reason"):
                            finish_reason = choice["finish_reason"]
            except (httpx.HTTPError, json.JSONDecodeError) as exc:
                if text_parts or isinstance(exc, json.JSONDecodeError):
                    raise LLMResponseError(
                        f"Stream broke: {type(exc).__name__}: {exc}"
                    ) from exc
                raise

        raw_calls = [
            {"id": c["id"], "function": {"name": c["name"], "arguments": c["arguments"]}}
            for _, c in sorted(calls.items())
        ]
        return _build_response(
            "".join(text_parts), parse_tool_calls(raw_calls), finish_reason, usage
        )


def _merge_call_delta(calls: dict[int, dict[str, Any]], raw: dict) -> None:
    index = raw.get("index", 0)
    entry = calls.setdefault(index, {"id": None, "name": "", "arguments": ""})
    if raw.get("id"):
        entry["id"] = raw["id"]
    func = raw.get("function") or {}
    if func.get("name"):
        entry["name"] += func["name"]
    if func.get("arguments"):
        entry["arguments"] += func["arguments"]
