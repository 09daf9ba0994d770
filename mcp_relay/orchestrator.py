from enum import Enum
from typing import Any, Callable, List, Optional

import structlog

from .config import ClientConfig
from .environment import environment_summary
from .errors import MCPError, MCPConfigError, describe
from .llm import BackendClient, create_backend
from .mcp_client import ToolServerTransport
from .memory import History, ToolCallCache
from .retry import retry_with_backoff
from .schema import Message, TextBlock, TextDelta, ToolInvocation, ToolUseRequest, TurnFinished
from .tool_router import ToolRouter

log = structlog.get_logger(__name__)

API_MAX_ATTEMPTS = 5
API_BASE_DELAY_MS = 1000


class State(str, Enum):
    AWAITING_BACKEND = "awaiting_backend"
    DISPATCHING_TOOL = "dispatching_tool"
    TERMINAL = "terminal"


def build_transport(cfg: ClientConfig) -> ToolServerTransport:
    return ToolServerTransport(
        cfg.command,
        env=cfg.env,
        cwd=cfg.cwd,
        start_timeout=cfg.start_timeout,
        init_timeout=cfg.init_timeout,
        call_timeout=cfg.call_timeout,
        read_limit=cfg.read_limit,
    )


class MCPClient:
    """Drives a conversation between a backend and a tool server.

    One transport and one backend are active at a time. ``update_config``
    replaces both rather than patching them.
    """

    def __init__(
        self,
        cfg: ClientConfig,
        *,
        backend: Optional[BackendClient] = None,
        transport: Optional[ToolServerTransport] = None,
        on_text: Optional[Callable[[str], Any]] = None,
    ):
        self.config = cfg.validate()
        self.debug = cfg.debug
        self.on_text = on_text
        self.backend: BackendClient = backend or create_backend(cfg.provider, cfg)
        self.transport = transport or build_transport(cfg)
        self.cache = ToolCallCache()
        self.router = ToolRouter(self.transport, self.cache, debug=self.debug)
        self.history = History()
        self.state = State.AWAITING_BACKEND

    @property
    def tools(self):
        return self.router.tools

    def _trace(self, event: str, **kw):
        if self.debug:
            log.info(event, **kw)
        else:
            log.debug(event, **kw)

    def _check_provider(self, provider: Optional[str]):
        if provider and provider != self.backend.name:
            raise MCPConfigError(
                f"Client was configured for provider '{self.backend.name}', not '{provider}'. "
                "Use update_config to switch providers.",
                provider=provider,
            )

    async def start(self, provider: Optional[str] = None):
        self._check_provider(provider)
        try:
            await self.transport.start()
            await self.router.refresh()
        except MCPError as e:
            log.error("mcp_client_start_failed", kind=e.kind, error=e.message)
            raise
        except Exception as e:
            err = self.backend.classify(e)
            log.error("mcp_client_start_failed", kind=err.kind, error=describe(e))
            raise err from e

    async def stop(self):
        await self.transport.stop()

    async def update_config(self, new_config: Optional[ClientConfig] = None, **changes):
        """Tear down the transport and rebuild transport and backend.

        Either pass a whole ``ClientConfig`` or field overrides merged into the
        current one. The client must be started again afterwards.
        """
        cfg = (new_config or self.config.merged(**changes)).validate()
        backend = create_backend(cfg.provider, cfg)
        await self.transport.stop()
        self.config = cfg
        self.debug = cfg.debug
        self.backend = backend
        self.transport = build_transport(cfg)
        self.router = ToolRouter(self.transport, self.cache, debug=self.debug)
        self.state = State.AWAITING_BACKEND

    async def _open_stream(self, model: Optional[str]):
        messages = list(self.history)
        self._trace("backend_request", provider=self.backend.name, model=model or self.backend.default_model,
                    messages=len(messages), tools=len(self.tools))
        return await retry_with_backoff(
            lambda: self.backend.open_stream(messages, self.tools, model),
            API_MAX_ATTEMPTS,
            API_BASE_DELAY_MS,
            self.backend.should_retry,
        )

    async def _run_turn(self, model: Optional[str]) -> TurnFinished:
        self.state = State.AWAITING_BACKEND
        stream = await self._open_stream(model)
        finished = TurnFinished("end_turn")
        async for event in self.backend.decoder().decode(stream):
            if isinstance(event, TextDelta):
                if self.on_text:
                    self.on_text(event.text)
            elif isinstance(event, TextBlock):
                self.history.add_assistant(event.text)
            elif isinstance(event, ToolInvocation):
                self.state = State.DISPATCHING_TOOL
                self._trace("tool_call_requested", tool=event.name, arguments=event.arguments, id=event.id)
                result = await self.router.dispatch(event)
                self.history.add_tool_use(ToolUseRequest(event.id, event.name, event.arguments))
                self.history.add_tool_result(result)
                self.state = State.AWAITING_BACKEND
            elif isinstance(event, TurnFinished):
                finished = event
        self._trace("turn_finished", reason=finished.reason, raw_reason=finished.raw_reason)
        return finished

    async def process_query(self, query: str, provider: Optional[str] = None,
                            model: Optional[str] = None) -> List[Message]:
        """Answer ``query``, running tools as requested; returns the history without the env message."""
        self._check_provider(provider)
        self.router.reset()
        self.history = History()
        self.history.add_user(environment_summary(self.config.env_allowlist))
        self.history.add_user(query)

        try:
            while True:
                finished = await self._run_turn(model)
                if not finished.wants_tool:
                    break
        except MCPError as e:
            log.error("query_failed", kind=e.kind, error=e.message)
            raise
        except Exception as e:
            err = self.backend.classify(e)
            log.error("query_failed", kind=err.kind, error=err.message)
            raise err from e
        finally:
            self.state = State.TERMINAL

        self._trace("query_done", messages=len(self.history), tool_executions=self.router.executions,
                    cache_hits=self.cache.hits)
        return self.history.messages[1:]
