"""Shared fakes for the mcp_relay tests."""

import json
import os
import sys
from pathlib import Path

import pytest

from mcp_relay.config import ClientConfig
from mcp_relay.decoders import AnthropicStreamDecoder
from mcp_relay.errors import handle_mcp_error, is_retryable_status
from mcp_relay.mcp_client import CallToolResult
from mcp_relay.memory import History
from mcp_relay.orchestrator import MCPClient
from mcp_relay.schema import ToolDescriptor

REPO_ROOT = Path(__file__).resolve().parent.parent


async def aiter_list(items):
    for item in items:
        yield item


class Turns:
    """Builders for Anthropic stream event sequences (as plain dicts)."""

    @staticmethod
    def text(*fragments, stop_reason="end_turn"):
        events = [
            {"type": "message_start", "message": {"role": "assistant"}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        ]
        events += [{"type": "content_block_delta", "index": 0,
                    "delta": {"type": "text_delta", "text": f}} for f in fragments]
        events += [
            {"type": "content_block_stop", "index": 0},
            {"type": "message_delta", "delta": {"stop_reason": stop_reason}},
            {"type": "message_stop"},
        ]
        return events

    @staticmethod
    def tool(name, arguments, tool_id="toolu_test", fragments=2, preamble=None):
        payload = json.dumps(arguments)
        step = max(1, len(payload) // fragments)
        parts = [payload[i:i + step] for i in range(0, len(payload), step)]
        events = [{"type": "message_start", "message": {"role": "assistant"}}]
        index = 0
        if preamble:
            events += [
                {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
                {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": preamble}},
                {"type": "content_block_stop", "index": 0},
            ]
            index = 1
        block = {"type": "tool_use", "name": name, "input": {}}
        if tool_id:
            block["id"] = tool_id
        events.append({"type": "content_block_start", "index": index, "content_block": block})
        events += [{"type": "content_block_delta", "index": index,
                    "delta": {"type": "input_json_delta", "partial_json": p}} for p in parts]
        events += [
            {"type": "content_block_stop", "index": index},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}},
            {"type": "message_stop"},
        ]
        return events


class FakeStatusError(Exception):
    def __init__(self, status_code, message="api error", body=None):
        super().__init__(f"Error code: {status_code} - {message}")
        self.status_code = status_code
        self.body = body


class FakeBackend:
    """Scripted anthropic-shaped backend that records what it was sent."""

    name = "anthropic"
    default_model = "fake-model"

    def __init__(self, turns, failures=()):
        self.turns = list(turns)
        self.failures = list(failures)
        self.calls = 0
        self.sent = []          # history snapshots, one per backend call
        self.on_open = None

    async def open_stream(self, history, tools, model=None):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append(list(history))
        if self.on_open:
            self.on_open(history)
        return aiter_list(self.turns.pop(0))

    def decoder(self):
        return AnthropicStreamDecoder()

    def should_retry(self, error):
        return is_retryable_status(error)

    def classify(self, error):
        return handle_mcp_error(error)

    def request_preview(self, history, tools, model=None):
        return {"model": model or self.default_model}


class FakeTransport:
    def __init__(self, tools=None, error=None):
        self.tools = tools or [ToolDescriptor("search", "Search things",
                                              {"type": "object", "properties": {"q": {"type": "string"}}})]
        self.error = error
        self.calls = []
        self.started = 0
        self.stopped = 0

    async def start(self):
        self.started += 1

    async def list_tools(self):
        return list(self.tools)

    async def call_tool(self, name, arguments):
        self.calls.append((name, arguments))
        if self.error:
            raise self.error
        text = f"{name}:{json.dumps(arguments, sort_keys=True)}"
        return CallToolResult.model_validate({"content": [{"type": "text", "text": text}]})

    async def stop(self):
        self.stopped += 1


def pending_ids(messages):
    return History(messages).pending_tool_use_ids()


@pytest.fixture
def turns():
    return Turns


@pytest.fixture
def client_config():
    return ClientConfig(command=["fake-server"], provider="anthropic")


@pytest.fixture
def make_client(client_config):
    def _make(turns_, transport=None, failures=()):
        backend = FakeBackend(turns_, failures)
        transport = transport or FakeTransport()
        return MCPClient(client_config, backend=backend, transport=transport), backend, transport
    return _make


@pytest.fixture
def file_server_command(tmp_path):
    return [sys.executable, "-m", "mcp_relay.servers.file_server", str(tmp_path)]


@pytest.fixture
def file_server_env():
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(REPO_ROOT), env.get("PYTHONPATH")]))
    return env


@pytest.fixture
def status_error():
    return FakeStatusError


@pytest.fixture
def transport_factory():
    return FakeTransport


@pytest.fixture
def unpaired():
    return pending_ids
