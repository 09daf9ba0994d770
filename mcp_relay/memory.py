import json
from typing import Any, Dict, List, Optional

from .schema import Message, ToolCallRecord, ToolResult, ToolUseRequest


def tool_call_key(name: str, arguments: Dict[str, Any]) -> str:
    """Deterministic key for a (name, arguments) pair, independent of key order."""
    return json.dumps({"name": name, "args": arguments}, sort_keys=True,
                      separators=(",", ":"), ensure_ascii=False, default=str)


class ToolCallCache:
    """Memo of tool executions for one top-level query."""

    def __init__(self):
        self.records: List[ToolCallRecord] = []
        self._by_key: Dict[str, ToolCallRecord] = {}
        self.hits = 0
        self.misses = 0

    def get(self, name: str, arguments: Dict[str, Any]) -> Optional[ToolCallRecord]:
        record = self._by_key.get(tool_call_key(name, arguments))
        if record is None:
            self.misses += 1
        else:
            self.hits += 1
        return record

    def put(self, record: ToolCallRecord):
        self.records.append(record)
        self._by_key.setdefault(tool_call_key(record.name, record.arguments), record)

    def clear(self):
        self.records.clear()
        self._by_key.clear()
        self.hits = 0
        self.misses = 0

    def __len__(self):
        return len(self.records)


class History:
    """Append-only conversation history."""

    def __init__(self, messages: Optional[List[Message]] = None):
        self.messages: List[Message] = list(messages or [])

    def add_user(self, text: str):
        self.messages.append(Message(role="user", content=text))

    def add_assistant(self, text: str):
        self.messages.append(Message(role="assistant", content=text))

    def add_tool_use(self, request: ToolUseRequest):
        self.messages.append(Message(role="assistant", content=(request,)))

    def add_tool_result(self, result: ToolResult):
        self.messages.append(Message(role="user", content=(result,)))

    def pending_tool_use_ids(self) -> List[str]:
        """Tool-use ids that have no matching result yet."""
        pending: List[str] = []
        for msg in self.messages:
            for item in msg.items():
                if isinstance(item, ToolUseRequest):
                    pending.append(item.id)
                elif isinstance(item, ToolResult) and item.tool_use_id in pending:
                    pending.remove(item.tool_use_id)
        return pending

    def last_assistant_text(self) -> Optional[str]:
        for msg in reversed(self.messages):
            if msg.role == "assistant" and msg.is_text:
                return msg.content
        return None

    def __len__(self):
        return len(self.messages)

    def __iter__(self):
        return iter(self.messages)
