# mcp_relay/mcp_client.py
import asyncio
import json
import sys
import subprocess
import itertools
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import (
    MCPConnectionClosedError,
    MCPConnectionError,
    MCPError,
    MCPServerError,
    MCPToolError,
    describe,
    is_connect_or_timeout,
)
from .retry import retry_with_backoff
from .schema import ToolDescriptor

log = structlog.get_logger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "cli-client", "version": "1.0.0"}

# Longest stdout line accepted from the server; tool results arrive as one line
DEFAULT_READ_LIMIT = 16 * 1024 * 1024


class JSONRPCError(Exception):
    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class PipeClosedError(JSONRPCError):
    """stdout of the tool server reached EOF while requests were pending."""


# ---------------------- wire models ----------------------
class WireTool(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    description: Optional[str] = ""
    input_schema: Dict[str, Any] = Field(default_factory=lambda: {"type": "object"}, alias="inputSchema")

    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(name=self.name, description=self.description or "",
                              input_schema=self.input_schema)


class ListToolsResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    tools: List[WireTool] = Field(default_factory=list)


class ContentBlock(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = "text"
    text: Optional[str] = None


class CallToolResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    content: List[ContentBlock] = Field(default_factory=list)
    is_error: bool = Field(default=False, alias="isError")

    def texts(self) -> List[str]:
        return [c.text for c in self.content if c.text is not None]


class ToolServerTransport:
    """Owns one tool server subprocess speaking line-delimited JSON-RPC on stdio."""

    def __init__(
        self,
        command: list[str],
        *,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
        start_timeout: float = 30.0,
        init_timeout: float = 30.0,
        call_timeout: float = 60.0,
        start_attempts: int = 3,
        start_base_delay_ms: float = 1000,
        read_limit: int = DEFAULT_READ_LIMIT,
    ):
        self.command = command
        self.env = env
        self.cwd = cwd
        self.proc: Optional[asyncio.subprocess.Process] = None
        self.pending: Dict[int, asyncio.Future] = {}
        self.reader_task: Optional[asyncio.Task] = None
        self.server_info: Dict[str, Any] = {}
        self._ids = itertools.count(1)
        self._eof = False

        self.start_timeout = start_timeout
        self.init_timeout = init_timeout
        self.call_timeout = call_timeout
        self.start_attempts = start_attempts
        self.start_base_delay_ms = start_base_delay_ms
        self.read_limit = read_limit

    @property
    def server_name(self) -> str:
        return self.server_info.get("name") or " ".join(self.command)

    @property
    def is_running(self) -> bool:
        return self.proc is not None and self.proc.returncode is None and not self._eof

    @property
    def pid(self) -> Optional[int]:
        return self.proc.pid if self.proc else None

    async def start(self):
        """Spawn the server and complete the initialize handshake."""
        if self.is_running:
            log.debug("mcp_already_running", pid=self.pid)
            return
        if self.proc is not None:
            # channel died earlier; reap the old process before respawning
            await self._teardown()
        if not self.command:
            raise MCPConnectionError("Empty MCP command")

        async def attempt():
            try:
                await self._spawn()
                await self._handshake()
            except BaseException:
                await self._teardown()
                raise

        try:
            await retry_with_backoff(attempt, self.start_attempts, self.start_base_delay_ms,
                                     is_connect_or_timeout)
        except MCPError:
            raise
        except Exception as e:
            raise MCPConnectionError(
                f"Failed to start MCP server {' '.join(self.command)}: {describe(e)}", original=e
            ) from e
        log.info("mcp_started", pid=self.pid, server=self.server_name)

    async def _spawn(self):
        # Windows: hide the child console window
        creationflags = 0
        if sys.platform.startswith("win"):
            creationflags |= subprocess.CREATE_NO_WINDOW

        try:
            self.proc = await asyncio.wait_for(
                asyncio.create_subprocess_exec(
                    *self.command,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=sys.stderr,
                    env=self.env,
                    cwd=self.cwd,
                    creationflags=creationflags,
                    limit=self.read_limit,
                ),
                timeout=self.start_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TimeoutError(f"MCP start timeout after {self.start_timeout}s: {self.command}") from e
        self._eof = False
        self.reader_task = asyncio.create_task(self._reader())

    async def _handshake(self):
        result = await self._call(
            "initialize",
            {"protocolVersion": PROTOCOL_VERSION, "capabilities": {}, "clientInfo": CLIENT_INFO},
            timeout=self.init_timeout,
        )
        self.server_info = (result or {}).get("serverInfo") or {}
        await self._notify("notifications/initialized")

    def _fail_pending(self, err: Exception):
        for fut in list(self.pending.values()):
            if not fut.done():
                fut.set_exception(err)
        self.pending.clear()

    def _abandon(self, err: Exception):
        """Mark the channel dead, fail waiters and stop the child; ``start()`` reaps and respawns."""
        self._eof = True
        self._fail_pending(err)
        if self.proc is not None and self.proc.returncode is None:
            try:
                self.proc.terminate()
            except ProcessLookupError:
                pass

    async def _reader(self):
        """Read stdout line by line; JSON lines are JSON-RPC, anything else is server log output."""
        assert self.proc and self.proc.stdout
        while True:
            try:
                line = await self.proc.stdout.readline()
            except Exception as e:
                log.error("mcp_reader_crashed", error=describe(e), read_limit=self.read_limit)
                self._abandon(PipeClosedError(f"Connection closed: MCP reader crashed: {e!r}"))
                return
            if not line:
                self._abandon(PipeClosedError("Connection closed: MCP process exited"))
                return

            raw = line.decode("utf-8", errors="ignore").strip()
            if not raw:
                continue
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                log.debug("mcp_server_log", line=raw)
                continue
            if not isinstance(msg, dict):
                continue

            if "id" in msg and ("result" in msg or "error" in msg):
                fut = self.pending.pop(msg["id"], None)
                if fut and not fut.done():
                    fut.set_result(msg)
                continue

            log.debug("mcp_notification", method=msg.get("method", "<notify>"), params=msg.get("params"))

    async def _write(self, payload: dict):
        if self._eof or not self.is_running or not self.proc.stdin:
            raise PipeClosedError("Connection closed: MCP process not running")
        try:
            self.proc.stdin.write((json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8"))
            await self.proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise PipeClosedError(f"Connection closed: failed to write to MCP stdin: {e!r}") from e

    async def _notify(self, method: str, params: Optional[dict] = None):
        payload = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            payload["params"] = params
        await self._write(payload)

    async def _call(self, method: str, params: Any | None = None, *, timeout: Optional[float] = None):
        """Send one request and wait for the response with the same id."""
        if not self.proc or not self.proc.stdin:
            raise JSONRPCError("MCP process not started")

        mid = next(self._ids)
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self.pending[mid] = fut
        try:
            await self._write({"jsonrpc": "2.0", "id": mid, "method": method, "params": params or {}})
        except Exception:
            self.pending.pop(mid, None)
            raise

        to = timeout or self.call_timeout
        try:
            resp = await asyncio.wait_for(fut, timeout=to)
        except asyncio.TimeoutError as e:
            self.pending.pop(mid, None)
            raise TimeoutError(f"MCP call timeout after {to}s: {method}") from e

        err_obj = resp.get("error")
        if err_obj is not None:
            if isinstance(err_obj, dict):
                raise JSONRPCError(f"{method} error: {err_obj.get('message', err_obj)}", err_obj.get("code"))
            raise JSONRPCError(f"{method} error: {err_obj}")
        return resp.get("result")

    async def list_tools(self) -> List[ToolDescriptor]:
        try:
            result = await self._call("tools/list", {})
            parsed = ListToolsResult.model_validate(result or {})
        except PipeClosedError as e:
            raise MCPConnectionClosedError(str(e), server_name=self.server_name, original=e) from e
        except JSONRPCError as e:
            raise MCPServerError(f"Failed to list tools: {e}", code=e.code, original=e) from e
        except (ValidationError, TimeoutError) as e:
            raise MCPServerError(f"Failed to list tools: {describe(e)}", original=e) from e
        return [t.descriptor() for t in parsed.tools]

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> CallToolResult:
        try:
            result = await self._call("tools/call", {"name": name, "arguments": arguments})
            return CallToolResult.model_validate(result or {})
        except PipeClosedError as e:
            raise MCPConnectionClosedError(str(e), server_name=self.server_name, original=e) from e
        except (JSONRPCError, ValidationError, TimeoutError) as e:
            raise MCPToolError(f"Tool '{name}' failed: {describe(e)}", name, original=e) from e

    async def _teardown(self):
        if self.reader_task and not self.reader_task.done():
            self.reader_task.cancel()
            try:
                await self.reader_task
            except asyncio.CancelledError:
                pass
        self.reader_task = None

        proc, self.proc = self.proc, None
        if proc is not None:
            if proc.stdin and not proc.stdin.is_closing():
                proc.stdin.close()
            if proc.returncode is None:
                try:
                    proc.terminate()
                except ProcessLookupError:
                    pass
                try:
                    await asyncio.wait_for(proc.wait(), timeout=5.0)
                except asyncio.TimeoutError:
                    log.warning("mcp_kill", pid=proc.pid)
                    proc.kill()
                    await proc.wait()
        self._fail_pending(PipeClosedError("Connection closed: MCP client stopped"))

    async def stop(self):
        """Close the channel and terminate the process. Never raises."""
        try:
            await self._teardown()
        except Exception as e:
            log.warning("mcp_stop_error", error=describe(e))
