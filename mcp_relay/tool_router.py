import json
from typing import Any, Dict, List, Optional

import structlog

from .errors import MCPError, MCPToolError, describe, handle_mcp_error
from .memory import ToolCallCache
from .schema import ToolCallRecord, ToolDescriptor, ToolInvocation, ToolResult

log = structlog.get_logger(__name__)


def format_tool_call(name: str, arguments: Dict[str, Any]) -> str:
    return f"\n[{name}] {json.dumps(arguments, indent=2)}\n"


def format_tool_result(texts: List[str]) -> str:
    """Serialize the text blocks of a tool result as a JSON array of strings."""
    return json.dumps(texts, ensure_ascii=False)


class ToolRouter:
    """Executes tool invocations against the transport, at most once per (name, arguments)."""

    def __init__(self, transport, cache: Optional[ToolCallCache] = None, debug: bool = False):
        self.transport = transport
        self.cache = cache if cache is not None else ToolCallCache()
        self.tools: List[ToolDescriptor] = []
        self.debug = debug
        self.executions = 0

    async def refresh(self):
        if not self.transport:
            return
        self.tools = await self.transport.list_tools()
        log.info("tools_listed", count=len(self.tools), names=[t.name for t in self.tools])

    def reset(self):
        self.executions = 0
        self.cache.clear()

    def _trace(self, event: str, **kw):
        if self.debug:
            log.info(event, **kw)
        else:
            log.debug(event, **kw)

    async def dispatch(self, invocation: ToolInvocation) -> ToolResult:
        """Return the result for ``invocation``, from cache or by calling the tool."""
        name, args = invocation.name, invocation.arguments
        cached = self.cache.get(name, args)
        if cached is not None:
            self._trace("tool_cache_hit", tool=name, arguments=args, first_tool_use_id=cached.tool_use_id)
            return ToolResult(tool_use_id=invocation.id, content=cached.result)

        self._trace("tool_cache_miss", tool=name, arguments=args)
        self._trace("mcp_request", method="tools/call", call=format_tool_call(name, args))
        try:
            result = await self.transport.call_tool(name, args)
        except MCPError:
            raise
        except Exception as e:
            err = handle_mcp_error(e)
            log.error("tool_failed", tool=name, error=describe(e))
            raise MCPToolError(err.message, name, original=e) from e
        self.executions += 1
        self._trace("mcp_request_finished", tool=name, is_error=result.is_error)

        content = format_tool_result(result.texts())
        self.cache.put(ToolCallRecord(name=name, arguments=args, result=content,
                                      tool_use_id=invocation.id))
        return ToolResult(tool_use_id=invocation.id, content=content)
