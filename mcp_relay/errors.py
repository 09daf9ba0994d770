"""Error kinds raised by the MCP client and the helpers that map raw
backend / transport failures onto them.

Every failure that leaves :class:`mcp_relay.orchestrator.MCPClient` is an
:class:`MCPError`. Unrecognised failures become a plain ``MCPError`` carrying
the original message.
"""
from typing import Any, Optional

import httpx


class MCPError(Exception):
    """Generic error kind; base of the hierarchy."""

    kind = "error"
    hint: Optional[str] = None

    def __init__(self, message: str, *, provider: Optional[str] = None, original: Any = None):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.original = original


class MCPConnectionError(MCPError):
    kind = "connection"
    hint = "Please check if the MCP server is running and accessible."


class MCPConnectionClosedError(MCPConnectionError):
    """The tool server channel died mid-call.

    Usually a provider / server incompatibility rather than a network blip.
    """

    kind = "connection_closed"
    hint = "This is often due to compatibility issues between the provider and MCP server."

    def __init__(self, message: str, server_name: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.server_name = server_name


class MCPAuthError(MCPError):
    kind = "auth"
    hint = "Please check your API key (ANTHROPIC_API_KEY or OPENROUTER_API_KEY) in the environment or .env file."


class MCPModelError(MCPError):
    kind = "model"
    hint = "Please check the model name and ensure it is supported by the provider."

    def __init__(self, message: str, model: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.model = model


class MCPServerError(MCPError):
    kind = "server"
    hint = "Please try again later or check the MCP server logs."

    def __init__(self, message: str, code: Optional[Any] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.code = code


class MCPToolError(MCPError):
    kind = "tool"
    hint = "Please check if the tool exists and is properly configured."

    def __init__(self, message: str, tool_name: str, **kwargs):
        super().__init__(message, **kwargs)
        self.tool_name = tool_name


class MCPConfigError(MCPError):
    kind = "config"
    hint = "Please check your MCP configuration."


class MCPRateLimitError(MCPError):
    kind = "rate_limit"
    hint = "The provider is throttling requests. Please try again later."


CONNECTION_CLOSED_CODE = -32000


# ---------------------- helpers ----------------------
def status_of(error: Any) -> Optional[int]:
    """HTTP status of an SDK error (``status_code`` on anthropic/openai, ``status`` elsewhere)."""
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def _error_body(error: Any) -> dict:
    body = getattr(error, "body", None)
    if body is None:
        body = getattr(error, "error", None)
    if not isinstance(body, dict):
        return {}
    inner = body.get("error")
    return inner if isinstance(inner, dict) else body


def _request_url(error: Any) -> str:
    # httpx raises RuntimeError from .request when it was never set
    try:
        request = getattr(error, "request", None)
    except RuntimeError:
        return ""
    return str(getattr(request, "url", "") or "")


def _is_connection_closed(error: Any) -> bool:
    message = str(error)
    return "Connection closed" in message or getattr(error, "code", None) == CONNECTION_CLOSED_CODE


def _is_connect_failure(error: Any) -> bool:
    if isinstance(error, (httpx.ConnectError, ConnectionRefusedError)):
        return True
    if type(error).__name__ == "APIConnectionError":
        return True
    return "ECONNREFUSED" in str(error)


def describe(error: BaseException) -> str:
    """One-line description suitable for log fields."""
    text = str(error) or type(error).__name__
    text = text if len(text) < 1000 else text[:1000] + "..."
    return text.replace("\n", " ")


# ---------------------- classifiers ----------------------
def handle_openrouter_error(error: Any) -> MCPError:
    if isinstance(error, MCPError):
        return error
    status = status_of(error)
    body = _error_body(error)

    if status in (401, 403):
        return MCPAuthError(
            "Authentication failed with OpenRouter. Please check your API key.",
            provider="openrouter", original=error,
        )
    if status == 429:
        return MCPRateLimitError(
            "Rate limit exceeded with OpenRouter. Please try again later.",
            provider="openrouter", original=error,
        )
    if status == 404 and body.get("code") == "model_not_found":
        model = body.get("param")
        detail = body.get("message") or model or "unknown model"
        return MCPModelError(
            f"Model not found: {detail}. Please check the model name and try again.",
            model=model, provider="openrouter", original=error,
        )
    if _is_connection_closed(error):
        return MCPConnectionClosedError(
            "Connection to MCP server was closed unexpectedly. This may be due to compatibility "
            "issues between OpenRouter and this MCP server. Try using the Filesystem MCP server "
            "or switch to the Anthropic provider.",
            server_name=getattr(error, "server_name", None),
            provider="openrouter", original=error,
        )
    if status is not None and body:
        return MCPError(
            f"OpenRouter API error: {body.get('message') or 'Unknown error'}",
            provider="openrouter", original=error,
        )
    if status is not None and status >= 500:
        return MCPServerError(
            f"OpenRouter API error {status}: {describe(error)}", code=status,
            provider="openrouter", original=error,
        )
    return MCPError(
        f"Unexpected error with OpenRouter: {str(error) or 'Unknown error'}",
        provider="openrouter", original=error,
    )


def handle_mcp_error(error: Any) -> MCPError:
    if isinstance(error, MCPError):
        return error
    if not isinstance(error, BaseException):
        return MCPError("An unknown error occurred", original=error)

    message = str(error)
    lowered = message.lower()
    if "openrouter" in lowered or "openrouter.ai" in _request_url(error):
        return handle_openrouter_error(error)

    if _is_connection_closed(error):
        return MCPConnectionClosedError(
            "Connection to MCP server was closed unexpectedly. This may be due to server "
            "configuration issues or compatibility problems. Try using a different MCP server "
            "or check server logs for more details.",
            original=error,
        )
    if _is_connect_failure(error):
        return MCPConnectionError("Could not connect to MCP server. Is the server running?", original=error)

    status = status_of(error)
    if status in (401, 403) or "401" in message or "authentication" in lowered:
        return MCPAuthError("Authentication failed. Please check your API key.", original=error)
    if status == 429 or "rate limit" in lowered:
        return MCPRateLimitError("Rate limit exceeded. Please try again later.", original=error)
    if status == 500 or "500" in message:
        return MCPServerError("The MCP server encountered an internal error.", code=status, original=error)
    if "tool not found" in lowered or "unknown tool" in lowered:
        return MCPToolError("The requested tool was not found on the server.", "unknown", original=error)
    if "model" in lowered and ("not found" in lowered or "invalid" in lowered):
        words = message.split(" ")
        return MCPModelError(
            "The specified model is not valid or not available. Please check the model name and try again.",
            model=words[1] if len(words) > 1 else None, original=error,
        )
    return MCPError(message or type(error).__name__, original=error)


def classify_error(error: Any, provider: Optional[str] = None) -> MCPError:
    if provider == "openrouter":
        return handle_openrouter_error(error)
    return handle_mcp_error(error)


# ---------------------- retry predicates ----------------------
def is_connect_or_timeout(error: BaseException) -> bool:
    """Transport start-up predicate: only connect / timeout failures are retried."""
    message = str(error).lower()
    return "connect" in message or "timeout" in message


def is_retryable_status(error: BaseException) -> bool:
    """Backend predicate: HTTP 429 and 5xx are retried."""
    if isinstance(error, MCPRateLimitError):
        return True
    status = status_of(error)
    return status is not None and (status == 429 or 500 <= status < 600)
