import asyncio
import shlex
import sys
from typing import List, Optional

import click
from rich.console import Console

from .config import ClientConfig, resolve_provider
from .errors import MCPConnectionClosedError, MCPError, MCPModelError, MCPServerError, MCPToolError
from .logsetup import setup_logging
from .memory import History
from .orchestrator import MCPClient

console = Console()
err_console = Console(stderr=True)


def render_error(error: MCPError) -> str:
    """Message plus the actionable hint for the error kind."""
    label = "Error" if error.kind == "error" else f"{error.kind.replace('_', ' ').capitalize()} error"
    text = f"{label}: {error.message}"
    if isinstance(error, MCPConnectionClosedError) and error.server_name:
        text += f" (Server: {error.server_name})"
    elif isinstance(error, MCPModelError) and error.model:
        text += f" (Model: {error.model})"
    elif isinstance(error, MCPServerError) and error.code is not None:
        text += f" (Code: {error.code})"
    elif isinstance(error, MCPToolError) and error.tool_name:
        text += f" (Tool: {error.tool_name})"
    if error.hint:
        text += f"\n{error.hint}"
    return text


async def run_query(cfg: ClientConfig, query: str, model: Optional[str], timeout: Optional[float],
                    stream: bool) -> str:
    on_text = (lambda t: console.print(t, end="", markup=False, highlight=False)) if stream else None
    client = MCPClient(cfg, on_text=on_text)
    try:
        await client.start(cfg.provider)
        messages = await asyncio.wait_for(
            client.process_query(query, cfg.provider, model), timeout=timeout
        )
    finally:
        await client.stop()
    return History(messages).last_assistant_text() or ""


@click.command("mcp-relay")
@click.argument("query")
@click.option("--server", "-s", "server", required=True,
              help='Tool server command line, e.g. "npx -y @modelcontextprotocol/server-filesystem ."')
@click.option("--provider", "-p", default=None, help="Backend family: anthropic or openrouter")
@click.option("--model", "-m", default=None, help="Model name (provider default if omitted)")
@click.option("--timeout", type=float, default=None, help="Wall-clock limit for the whole query, in seconds")
@click.option("--stream/--no-stream", default=False, help="Print text as it arrives")
@click.option("--debug", is_flag=True, help="Verbose per-step logging")
def main(query: str, server: str, provider: Optional[str], model: Optional[str],
         timeout: Optional[float], stream: bool, debug: bool):
    """Answer QUERY using the tools of a locally spawned MCP server."""
    setup_logging(debug)
    command: List[str] = shlex.split(server)
    cfg = ClientConfig(command=command, provider=resolve_provider(provider), debug=debug)
    try:
        answer = asyncio.run(run_query(cfg, query, model, timeout, stream))
    except MCPError as e:
        err_console.print(render_error(e), markup=False)
        sys.exit(1)
    except asyncio.TimeoutError:
        err_console.print(f"Timed out after {timeout}s", markup=False)
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(130)
    if stream:
        console.print()
    else:
        console.print(answer, markup=False)


if __name__ == "__main__":
    main()
