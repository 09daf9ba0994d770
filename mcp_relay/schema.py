from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional, Tuple, Union

Role = Literal["user", "assistant", "tool"]


@dataclass(frozen=True)
class ToolUseRequest:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    tool_use_id: str
    content: str


ContentItem = Union[ToolUseRequest, ToolResult]


@dataclass(frozen=True)
class Message:
    role: Role
    content: Union[str, Tuple[ContentItem, ...]]

    @property
    def is_text(self) -> bool:
        return isinstance(self.content, str)

    def items(self) -> Tuple[ContentItem, ...]:
        return () if isinstance(self.content, str) else self.content


@dataclass
class ToolCallRecord:
    name: str
    arguments: Dict[str, Any]
    result: str
    tool_use_id: str


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


# ---------- normalized stream events ----------
@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class TextBlock:
    """A contiguous block of assistant text, committed once."""
    text: str


@dataclass(frozen=True)
class ToolInvocation:
    id: str
    name: str
    arguments: Dict[str, Any]


@dataclass(frozen=True)
class TurnFinished:
    reason: str                       # normalized: tool_use | end_turn | max_tokens | stop_sequence | ...
    raw_reason: Optional[str] = None

    @property
    def wants_tool(self) -> bool:
        return self.reason == "tool_use"


StreamEvent = Union[TextDelta, TextBlock, ToolInvocation, TurnFinished]
