import json
from typing import Any, Dict, List, Optional, Protocol, Sequence

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from .config import API_KEY_ENV, ClientConfig, api_key_for
from .decoders import AnthropicStreamDecoder, OpenRouterStreamDecoder, StreamDecoder
from .errors import (
    MCPAuthError,
    MCPConfigError,
    MCPError,
    classify_error,
    is_retryable_status,
)
from .schema import Message, ToolDescriptor, ToolResult, ToolUseRequest

SYSTEM_PROMPT = """You are a helpful AI assistant using tools.
When you receive a tool result, do not call the same tool again with the same arguments unless the user explicitly asks for it or the context changes significantly.
Use the results provided by the tools to answer the user's query.
If you have already called a tool with the same arguments and received a result, reuse the result instead of calling the tool again.
When you receive a tool result, focus on interpreting and explaining the result to the user rather than making additional tool calls."""


class BackendClient(Protocol):
    """What the orchestrator needs from a model backend family."""

    name: str
    default_model: str

    async def open_stream(self, history: Sequence[Message], tools: Sequence[ToolDescriptor],
                          model: Optional[str] = None) -> Any: ...

    def decoder(self) -> StreamDecoder: ...

    def should_retry(self, error: BaseException) -> bool: ...

    def classify(self, error: Any) -> MCPError: ...

    def request_preview(self, history: Sequence[Message], tools: Sequence[ToolDescriptor],
                        model: Optional[str] = None) -> Dict[str, Any]: ...


def _require_key(provider: str, api_key: Optional[str]) -> str:
    key = api_key or api_key_for(provider)
    if not key:
        raise MCPAuthError(f"{API_KEY_ENV[provider]} environment variable is not set", provider=provider)
    return key


class AnthropicBackend:
    """Anthropic Messages API, streamed."""

    name = "anthropic"

    def __init__(self, cfg: ClientConfig, api_key: Optional[str] = None, client: Any = None):
        self.cfg = cfg
        self.default_model = cfg.default_model("anthropic")
        self.max_tokens = cfg.max_tokens
        self._client = client or AsyncAnthropic(api_key=_require_key(self.name, api_key))

    @staticmethod
    def convert_tools(tools: Sequence[ToolDescriptor]) -> List[Dict[str, Any]]:
        return [{"name": t.name, "description": t.description, "input_schema": t.input_schema}
                for t in tools]

    @staticmethod
    def convert_messages(history: Sequence[Message]) -> List[Dict[str, Any]]:
        out = []
        for msg in history:
            if msg.is_text:
                out.append({"role": msg.role if msg.role != "tool" else "user", "content": msg.content})
                continue
            blocks = []
            for item in msg.items():
                if isinstance(item, ToolUseRequest):
                    blocks.append({"type": "tool_use", "id": item.id, "name": item.name, "input": item.arguments})
                elif isinstance(item, ToolResult):
                    blocks.append({"type": "tool_result", "tool_use_id": item.tool_use_id, "content": item.content})
            out.append({"role": "assistant" if msg.role == "assistant" else "user", "content": blocks})
        return out

    def request_preview(self, history, tools, model=None) -> Dict[str, Any]:
        req = {
            "model": model or self.default_model,
            "messages": self.convert_messages(history),
            "max_tokens": self.max_tokens,
            "stream": True,
            "system": SYSTEM_PROMPT,
        }
        if tools:
            req["tools"] = self.convert_tools(tools)
        return req

    async def open_stream(self, history, tools, model=None):
        return await self._client.messages.create(**self.request_preview(history, tools, model))

    def decoder(self) -> StreamDecoder:
        return AnthropicStreamDecoder()

    def should_retry(self, error: BaseException) -> bool:
        return is_retryable_status(error)

    def classify(self, error: Any) -> MCPError:
        return classify_error(error, self.name)


class OpenRouterBackend:
    """OpenAI-compatible chat completions served by OpenRouter, streamed."""

    name = "openrouter"

    def __init__(self, cfg: ClientConfig, api_key: Optional[str] = None, client: Any = None):
        self.cfg = cfg
        self.default_model = cfg.default_model("openrouter")
        self.max_tokens = cfg.max_tokens
        self._client = client or AsyncOpenAI(
            api_key=_require_key(self.name, api_key),
            base_url=cfg.openrouter_base_url,
            default_headers=cfg.openrouter_headers,
        )

    @staticmethod
    def convert_tools(tools: Sequence[ToolDescriptor]) -> List[Dict[str, Any]]:
        return [{
            "type": "function",
            "function": {"name": t.name, "description": t.description, "parameters": t.input_schema},
        } for t in tools]

    @staticmethod
    def convert_messages(history: Sequence[Message]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = [{"role": "system", "content": SYSTEM_PROMPT}]
        for msg in history:
            if msg.is_text:
                out.append({"role": "assistant" if msg.role == "assistant" else "user", "content": msg.content})
                continue
            calls = []
            for item in msg.items():
                if isinstance(item, ToolUseRequest):
                    calls.append({
                        "id": item.id,
                        "type": "function",
                        "function": {"name": item.name, "arguments": json.dumps(item.arguments)},
                    })
                elif isinstance(item, ToolResult):
                    out.append({"role": "tool", "tool_call_id": item.tool_use_id, "content": item.content})
            if calls:
                out.append({"role": "assistant", "content": None, "tool_calls": calls})
        return out

    def request_preview(self, history, tools, model=None) -> Dict[str, Any]:
        req = {
            "model": model or self.default_model,
            "messages": self.convert_messages(history),
            "max_tokens": self.max_tokens,
            "stream": True,
        }
        if tools:
            req["tools"] = self.convert_tools(tools)
        return req

    async def open_stream(self, history, tools, model=None):
        return await self._client.chat.completions.create(**self.request_preview(history, tools, model))

    def decoder(self) -> StreamDecoder:
        return OpenRouterStreamDecoder()

    def should_retry(self, error: BaseException) -> bool:
        return is_retryable_status(error)

    def classify(self, error: Any) -> MCPError:
        return classify_error(error, self.name)


BACKENDS = {
    "anthropic": AnthropicBackend,
    "openrouter": OpenRouterBackend,
}


def create_backend(provider: str, cfg: ClientConfig, *, api_key: Optional[str] = None,
                   client: Any = None) -> BackendClient:
    """Build the backend for ``provider``; missing credentials raise MCPAuthError."""
    try:
        factory = BACKENDS[provider]
    except KeyError:
        raise MCPConfigError(f"Unsupported provider '{provider}'") from None
    try:
        return factory(cfg, api_key=api_key, client=client)
    except MCPError:
        raise
    except Exception as e:
        raise classify_error(e, provider) from e
