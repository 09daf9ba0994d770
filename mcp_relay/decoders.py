"""Per-backend decoders turning raw streaming chunks into normalized events.

Both decoders yield, in stream order, :class:`TextDelta` for every text
fragment, one :class:`TextBlock` per contiguous run of text,
:class:`ToolInvocation` once a tool call's arguments are complete, and a
single trailing :class:`TurnFinished`.

The Anthropic stream says explicitly when tool arguments are complete (a
``tool_use`` stop reason). The OpenAI-compatible stream served by OpenRouter
does not, so :class:`OpenRouterStreamDecoder` guesses: whenever a tool's
argument buffer ends with ``}`` it tries to parse it, and a parse failure
just means "keep buffering". This is best effort. A fragment boundary right
after a ``}`` inside a string value can still produce a valid-looking prefix
and fire early; that case is not guarded against.
"""
import json
import random
import string
from typing import Any, AsyncIterator, Dict, List, Optional

import structlog

from .errors import MCPToolError
from .schema import StreamEvent, TextBlock, TextDelta, ToolInvocation, TurnFinished

log = structlog.get_logger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits

# OpenAI-style finish reasons mapped onto the Anthropic vocabulary
FINISH_REASONS = {
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "tool_use": "tool_use",
    "stop": "end_turn",
    "end_turn": "end_turn",
    "length": "max_tokens",
    "max_tokens": "max_tokens",
    "stop_sequence": "stop_sequence",
}


def normalize_reason(reason: Optional[str]) -> str:
    if not reason:
        return "end_turn"
    return FINISH_REASONS.get(reason, reason)


def generate_tool_use_id() -> str:
    """Synthetic id in the ``toolu_...`` shape, used only for correlation."""
    return "toolu_" + "".join(random.choices(_ID_ALPHABET, k=26))


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _parse_arguments(buffer: str, tool_name: str) -> Dict[str, Any]:
    if not buffer.strip():
        return {}
    try:
        args = json.loads(buffer)
    except json.JSONDecodeError as e:
        raise MCPToolError(f"Malformed arguments for tool '{tool_name}': {e}", tool_name) from e
    if not isinstance(args, dict):
        raise MCPToolError(f"Arguments for tool '{tool_name}' are not an object", tool_name)
    return args


class StreamDecoder:
    """Common interface. One instance decodes exactly one backend turn."""

    def __init__(self):
        self.text = ""
        self.stop_reason: Optional[str] = None

    def decode(self, stream) -> AsyncIterator[StreamEvent]:
        raise NotImplementedError

    def _take_text_block(self) -> Optional[TextBlock]:
        if not self.text:
            return None
        block, self.text = TextBlock(self.text), ""
        return block


class _PendingTool:
    def __init__(self, id: str, name: str):
        self.id = id
        self.name = name
        self.buffer = ""
        self.emitted = False


class AnthropicStreamDecoder(StreamDecoder):
    """Decoder for Anthropic Messages API stream events."""

    def __init__(self):
        super().__init__()
        self.tools: List[_PendingTool] = []
        self._current: Optional[_PendingTool] = None

    async def decode(self, stream) -> AsyncIterator[StreamEvent]:
        async for event in stream:
            kind = _field(event, "type")

            if kind == "message_start":
                self.text = ""
            elif kind == "content_block_start":
                block = _field(event, "content_block")
                if _field(block, "type") == "tool_use":
                    self._current = _PendingTool(_field(block, "id") or generate_tool_use_id(),
                                                 _field(block, "name", ""))
                    self.tools.append(self._current)
            elif kind == "content_block_delta":
                delta = _field(event, "delta")
                delta_type = _field(delta, "type")
                if delta_type == "text_delta":
                    text = _field(delta, "text", "")
                    self.text += text
                    yield TextDelta(text)
                elif delta_type == "input_json_delta":
                    fragment = _field(delta, "partial_json", "")
                    if self._current is not None and fragment:
                        self._current.buffer += fragment
            elif kind == "content_block_stop":
                self._current = None
                block = self._take_text_block()
                if block:
                    yield block
            elif kind == "message_delta":
                reason = _field(_field(event, "delta"), "stop_reason")
                if reason:
                    self.stop_reason = reason
                if reason == "tool_use":
                    block = self._take_text_block()
                    if block:
                        yield block
                    for tool in self.tools:
                        if not tool.emitted:
                            tool.emitted = True
                            yield ToolInvocation(tool.id, tool.name, _parse_arguments(tool.buffer, tool.name))
            elif kind == "message_stop":
                block = self._take_text_block()
                if block:
                    yield block
            elif kind == "ping":
                continue
            elif kind == "error":
                log.warning("stream_error_event", error=str(_field(event, "error")))
            else:
                log.warning("unknown_stream_event", type=kind)

        block = self._take_text_block()
        if block:
            yield block
        yield TurnFinished(normalize_reason(self.stop_reason), self.stop_reason)


class OpenRouterStreamDecoder(StreamDecoder):
    """Decoder for OpenAI-compatible chat completion chunks."""

    def __init__(self):
        super().__init__()
        self.tools: Dict[int, _PendingTool] = {}

    @staticmethod
    def _looks_complete(buffer: str) -> bool:
        return buffer.rstrip().endswith("}")

    def _try_emit(self, tool: _PendingTool) -> Optional[ToolInvocation]:
        if tool.emitted or not tool.name or not self._looks_complete(tool.buffer):
            return None
        try:
            args = json.loads(tool.buffer)
        except json.JSONDecodeError:
            return None
        if not isinstance(args, dict):
            return None
        tool.emitted = True
        return ToolInvocation(tool.id, tool.name, args)

    async def decode(self, stream) -> AsyncIterator[StreamEvent]:
        async for chunk in stream:
            choices = _field(chunk, "choices") or []
            if not choices:
                continue
            choice = choices[0]
            delta = _field(choice, "delta")

            content = _field(delta, "content")
            if content:
                self.text += content
                yield TextDelta(content)

            for call in _field(delta, "tool_calls") or []:
                block = self._take_text_block()
                if block:
                    yield block
                index = _field(call, "index", 0) or 0
                tool = self.tools.get(index)
                if tool is None:
                    tool = self.tools[index] = _PendingTool(_field(call, "id") or generate_tool_use_id(), "")
                function = _field(call, "function")
                name = _field(function, "name")
                if name:
                    tool.name += name
                fragment = _field(function, "arguments")
                if fragment:
                    tool.buffer += fragment
                invocation = self._try_emit(tool)
                if invocation:
                    yield invocation

            reason = _field(choice, "finish_reason")
            if reason:
                self.stop_reason = reason

        block = self._take_text_block()
        if block:
            yield block
        for index in sorted(self.tools):
            tool = self.tools[index]
            if not tool.emitted and tool.name:
                tool.emitted = True
                yield ToolInvocation(tool.id, tool.name, _parse_arguments(tool.buffer, tool.name))
        yield TurnFinished(normalize_reason(self.stop_reason), self.stop_reason)
