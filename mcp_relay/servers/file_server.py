# mcp_relay/servers/file_server.py
"""Small stdio tool server exposing read-only file tools.

Run with ``python -m mcp_relay.servers.file_server [ROOT]``. Speaks
newline-delimited JSON-RPC 2.0 on stdin/stdout.
"""
import sys, json
from pathlib import Path

SERVER_INFO = {"name": "file-server", "version": "0.2"}

TOOLS = [
    {
        "name": "read_dir",
        "description": "List files under a directory, optionally filtered by glob patterns.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "dir": {"type": "string", "description": "Directory relative to the server root"},
                "patterns": {"type": "array", "items": {"type": "string"}},
                "recursive": {"type": "boolean"},
                "limit": {"type": "integer"},
            },
        },
    },
    {
        "name": "read_file",
        "description": "Read a UTF-8 text file.",
        "inputSchema": {
            "type": "object",
            "properties": {"path": {"type": "string"}},
            "required": ["path"],
        },
    },
    {
        "name": "chunk",
        "description": "Split text into overlapping chunks.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "text": {"type": "string"},
                "chunk_size": {"type": "integer"},
                "chunk_overlap": {"type": "integer"},
            },
            "required": ["text"],
        },
    },
]

ROOT = Path(".").resolve()


def _send(result=None, id=None, error=None):
    msg = {"jsonrpc": "2.0", "id": id}
    if error is not None:
        msg["error"] = error
    else:
        msg["result"] = result or {}
    print(json.dumps(msg, ensure_ascii=False), flush=True)


def _text(*texts: str, is_error: bool = False) -> dict:
    return {"content": [{"type": "text", "text": t} for t in texts], "isError": is_error}


def _resolve(rel: str) -> Path:
    p = (ROOT / rel).resolve()
    if p != ROOT and ROOT not in p.parents:
        raise ValueError(f"path outside server root: {rel}")
    return p


def _read_dir(args: dict) -> dict:
    base = _resolve(args.get("dir", "."))
    patterns = args.get("patterns") or ["*"]
    recursive = bool(args.get("recursive", False))
    limit = args.get("limit")
    files = []
    for pat in patterns:
        glob_pat = f"**/{pat}" if recursive else pat
        files += sorted(str(p.relative_to(ROOT)) for p in base.glob(glob_pat) if p.is_file())
    if isinstance(limit, int):
        files = files[:limit]
    return _text(*files) if files else _text("(no files)")


def _read_file(args: dict) -> dict:
    p = _resolve(args["path"])
    if not p.is_file():
        return _text(f"not a file: {args['path']}", is_error=True)
    return _text(p.read_text("utf-8", errors="ignore"))


def _simple_split(text: str, size: int, overlap: int):
    size = max(1, int(size)); overlap = max(0, int(overlap))
    if overlap >= size: overlap = size - 1
    chunks, n, start, MAX = [], len(text), 0, 10000
    while start < n and len(chunks) < MAX:
        end = min(n, start + size)
        chunk = text[start:end].strip()
        if chunk: chunks.append(chunk)
        if end == n: break
        start = max(start + size - overlap, start + 1)
    return chunks


def _chunk(args: dict) -> dict:
    chunks = _simple_split(args.get("text", ""), args.get("chunk_size", 1000), args.get("chunk_overlap", 100))
    return _text(*chunks)


HANDLERS = {"read_dir": _read_dir, "read_file": _read_file, "chunk": _chunk}


def _handle_initialize(params, id):
    _send({"protocolVersion": params.get("protocolVersion", "2024-11-05"),
           "capabilities": {"tools": {}}, "serverInfo": SERVER_INFO}, id)


def _handle_tools_list(params, id):
    _send({"tools": TOOLS}, id)


def _handle_tools_call(params, id):
    name = params.get("name", "")
    args = params.get("arguments") or {}
    handler = HANDLERS.get(name)
    if handler is None:
        _send(None, id, error={"code": -32602, "message": f"unknown tool: {name}"})
        return
    try:
        _send(handler(args), id)
    except Exception as e:
        _send(None, id, error={"code": -32603, "message": str(e)})


def main(argv=None):
    global ROOT
    argv = sys.argv[1:] if argv is None else argv
    if argv:
        ROOT = Path(argv[0]).resolve()
    handlers = {
        "initialize": _handle_initialize,
        "tools/list": _handle_tools_list,
        "tools/call": _handle_tools_call,
    }
    print(f"[file-server] serving {ROOT}", file=sys.stderr, flush=True)
    for line in sys.stdin:
        raw = line.strip()
        if not raw:
            continue
        try:
            msg = json.loads(raw)
        except Exception:
            print(f"[file-server] non-JSON: {raw}", file=sys.stderr, flush=True)
            continue
        mid = msg.get("id")
        method = msg.get("method")
        params = msg.get("params") or {}
        if mid is None:
            # notification, e.g. notifications/initialized
            continue
        h = handlers.get(method)
        if not h:
            _send(None, mid, error={"code": -32601, "message": f"unknown method {method}"})
            continue
        h(params, mid)


if __name__ == "__main__":
    main()
