"""Model gateway infrastructure for agentloop.

Provides the pluggable ModelGateway protocol, the response and option
types exchanged with it, and an OpenAI-compatible HTTP gateway.
"""

from agentloop.llm.client import OpenAIGateway, render_messages
from agentloop.llm.errors import (
    LLMAuthError,
    LLMClientError,
    LLMConfigError,
    LLMRateLimitError,
    LLMResponseError,
)
from agentloop.llm.protocols import (
    GatewayResponse,
    InvokeOptions,
    ModelConfig,
    ModelGateway,
    Termination,
)

__all__ = [
    "OpenAIGateway",
    "render_messages",
    "ModelGateway",
    "GatewayResponse",
    "InvokeOptions",
    "ModelConfig",
    "Termination",
    "LLMClientError",
    "LLMConfigError",
    "LLMRateLimitError",
    "LLMAuthError",
    "LLMResponseError",
]
