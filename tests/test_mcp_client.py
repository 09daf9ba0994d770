"""Transport tests against the bundled file server running as a real subprocess."""

import pytest
import pytest_asyncio

from mcp_relay.errors import MCPConnectionClosedError, MCPConnectionError, MCPToolError
from mcp_relay.mcp_client import CallToolResult, ListToolsResult, ToolServerTransport


@pytest_asyncio.fixture
async def transport(file_server_command, file_server_env, tmp_path):
    (tmp_path / "notes.txt").write_text("hello from disk", encoding="utf-8")
    t = ToolServerTransport(file_server_command, env=file_server_env,
                            call_timeout=10, start_base_delay_ms=10)
    await t.start()
    yield t
    await t.stop()


@pytest.mark.asyncio
async def test_handshake_and_list_tools(transport):
    assert transport.is_running
    assert transport.server_name == "file-server"

    tools = await transport.list_tools()

    assert [t.name for t in tools] == ["read_dir", "read_file", "chunk"]
    assert tools[1].input_schema["required"] == ["path"]


@pytest.mark.asyncio
async def test_call_tool(transport):
    result = await transport.call_tool("read_file", {"path": "notes.txt"})

    assert result.texts() == ["hello from disk"]
    assert result.is_error is False


@pytest.mark.asyncio
async def test_tool_level_error_is_a_result(transport):
    result = await transport.call_tool("read_file", {"path": "missing.txt"})

    assert result.is_error is True
    assert "not a file" in result.texts()[0]


@pytest.mark.asyncio
async def test_unknown_tool(transport):
    with pytest.raises(MCPToolError) as info:
        await transport.call_tool("frobnicate", {})
    assert info.value.tool_name == "frobnicate"


@pytest.mark.asyncio
async def test_path_escape_is_refused(transport):
    with pytest.raises(MCPToolError, match="outside server root"):
        await transport.call_tool("read_file", {"path": "../../etc/passwd"})


@pytest.mark.asyncio
async def test_start_is_idempotent(transport):
    pid = transport.pid
    await transport.start()
    assert transport.pid == pid


@pytest.mark.asyncio
async def test_stop_twice_and_restart(transport):
    await transport.stop()
    await transport.stop()
    assert not transport.is_running

    await transport.start()
    assert transport.is_running
    assert len(await transport.list_tools()) == 3


@pytest.mark.asyncio
async def test_dead_server_reports_connection_closed(transport):
    transport.proc.kill()
    await transport.proc.wait()

    with pytest.raises(MCPConnectionClosedError):
        await transport.call_tool("read_file", {"path": "notes.txt"})


@pytest.mark.asyncio
async def test_unknown_command():
    t = ToolServerTransport(["definitely-not-a-real-mcp-server-binary"], start_base_delay_ms=1)
    with pytest.raises(MCPConnectionError, match="Failed to start MCP server"):
        await t.start()
    assert not t.is_running


def test_wire_models_accept_camel_case():
    tools = ListToolsResult.model_validate({"tools": [{"name": "x", "inputSchema": {"type": "object"}}]})
    assert tools.tools[0].descriptor().description == ""

    result = CallToolResult.model_validate({"content": [{"type": "text", "text": "a"},
                                                        {"type": "image", "data": "..."}],
                                            "isError": True})
    assert result.texts() == ["a"]
    assert result.is_error


@pytest.mark.asyncio
async def test_large_tool_result(transport, tmp_path):
    body = "0123456789abcdef\n" * 12500
    (tmp_path / "big.txt").write_text(body, encoding="utf-8")

    result = await transport.call_tool("read_file", {"path": "big.txt"})

    assert len(body) > 200_000
    assert result.texts() == [body]
    assert transport.is_running


@pytest.mark.asyncio
async def test_overlong_line_kills_channel_then_restart_recovers(file_server_command, file_server_env, tmp_path):
    (tmp_path / "big.txt").write_text("x" * 20_000, encoding="utf-8")
    (tmp_path / "notes.txt").write_text("small", encoding="utf-8")
    t = ToolServerTransport(file_server_command, env=file_server_env, call_timeout=10,
                            start_base_delay_ms=10, read_limit=4096)
    await t.start()
    try:
        old_pid = t.pid
        with pytest.raises(MCPConnectionClosedError):
            await t.call_tool("read_file", {"path": "big.txt"})
        assert not t.is_running

        await t.start()

        assert t.is_running
        assert t.pid != old_pid
        result = await t.call_tool("read_file", {"path": "notes.txt"})
        assert result.texts() == ["small"]
    finally:
        await t.stop()
