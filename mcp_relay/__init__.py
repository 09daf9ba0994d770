from .config import ClientConfig, resolve_provider
from .errors import (
    MCPAuthError,
    MCPConfigError,
    MCPConnectionClosedError,
    MCPConnectionError,
    MCPError,
    MCPModelError,
    MCPRateLimitError,
    MCPServerError,
    MCPToolError,
)
from .mcp_client import ToolServerTransport
from .memory import History, ToolCallCache
from .orchestrator import MCPClient
from .retry import retry_with_backoff
from .schema import Message, ToolCallRecord, ToolDescriptor, ToolResult, ToolUseRequest

__all__ = [
    "ClientConfig",
    "resolve_provider",
    "MCPClient",
    "ToolServerTransport",
    "ToolCallCache",
    "History",
    "retry_with_backoff",
    "Message",
    "ToolUseRequest",
    "ToolResult",
    "ToolCallRecord",
    "ToolDescriptor",
    "MCPError",
    "MCPConnectionError",
    "MCPConnectionClosedError",
    "MCPAuthError",
    "MCPModelError",
    "MCPServerError",
    "MCPToolError",
    "MCPConfigError",
    "MCPRateLimitError",
]

__version__ = "0.1.0"
