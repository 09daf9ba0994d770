import os
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

import structlog
from dotenv import load_dotenv

from .errors import MCPConfigError

load_dotenv()

log = structlog.get_logger(__name__)

PROVIDERS = ("anthropic", "openrouter")

# Environment variable holding the credential for each backend family
API_KEY_ENV = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}

DEFAULT_ENV_ALLOWLIST = ("HOME", "LANG", "PATH", "PWD", "SHELL", "TERM", "TMPDIR", "USER")


def _split_env_list(value: str) -> tuple:
    return tuple(v.strip() for v in value.split(",") if v.strip())


class Settings:
    PROVIDER = os.getenv("MCP_RELAY_PROVIDER", "anthropic")
    MODEL = os.getenv("MCP_RELAY_MODEL", "")
    DEBUG = os.getenv("MCP_RELAY_DEBUG", "").lower() in ("1", "true", "yes")
    ENV_ALLOWLIST = _split_env_list(os.getenv("MCP_RELAY_ENV_ALLOWLIST", ""))
    CALL_TIMEOUT_SEC = float(os.getenv("MCP_RELAY_CALL_TIMEOUT_SEC", "60"))

settings = Settings()


# ---------- client ----------
@dataclass
class ClientConfig:
    # argv of the tool server, e.g. ["npx", "-y", "@modelcontextprotocol/server-filesystem", "."]
    command: List[str] = field(default_factory=list)
    env: Optional[Dict[str, str]] = None
    cwd: Optional[str] = None
    provider: str = "anthropic"
    debug: bool = field(default_factory=lambda: settings.DEBUG)

    start_timeout: float = 30.0
    init_timeout: float = 30.0
    call_timeout: float = field(default_factory=lambda: settings.CALL_TIMEOUT_SEC)
    # longest single JSON-RPC line read from the tool server
    read_limit: int = 16 * 1024 * 1024

    max_tokens: int = 8192
    anthropic_model: str = "claude-3-7-sonnet-latest"
    openrouter_model: str = "anthropic/claude-3.7-sonnet"
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_headers: Dict[str, str] = field(default_factory=lambda: {
        "HTTP-Referer": "http://cursor-tools.com",
        "X-Title": "cursor-tools",
    })

    env_allowlist: tuple = field(
        default_factory=lambda: DEFAULT_ENV_ALLOWLIST + settings.ENV_ALLOWLIST
    )

    def validate(self) -> "ClientConfig":
        if not self.command or not all(isinstance(a, str) and a for a in self.command):
            raise MCPConfigError("Tool server command must be a non-empty list of strings")
        if self.provider not in PROVIDERS:
            raise MCPConfigError(
                f"Unsupported provider '{self.provider}'. Supported providers are: {', '.join(PROVIDERS)}"
            )
        if self.read_limit <= 0:
            raise MCPConfigError("read_limit must be positive")
        if self.max_tokens <= 0:
            raise MCPConfigError("max_tokens must be positive")
        return self

    def default_model(self, provider: Optional[str] = None) -> str:
        provider = provider or self.provider
        if settings.MODEL:
            return settings.MODEL
        return self.openrouter_model if provider == "openrouter" else self.anthropic_model

    def merged(self, **changes) -> "ClientConfig":
        """Return a new config with ``changes`` applied; ``None`` values are ignored."""
        changes = {k: v for k, v in changes.items() if v is not None}
        return replace(self, **changes)


def api_key_for(provider: str) -> Optional[str]:
    return os.getenv(API_KEY_ENV[provider]) or None


def resolve_provider(hint: Optional[str]) -> str:
    """Pick the backend family for a user supplied hint.

    Unknown providers and ``openrouter`` without a key fall back to
    ``anthropic`` with a warning, mirroring what the command line accepts.
    """
    if not hint:
        hint = settings.PROVIDER or "anthropic"
    if hint not in PROVIDERS:
        log.warning("unsupported_provider", provider=hint, fallback="anthropic",
                    supported=list(PROVIDERS))
        return "anthropic"
    if hint == "openrouter" and not api_key_for("openrouter"):
        log.warning("missing_api_key", provider=hint, env=API_KEY_ENV[hint], fallback="anthropic")
        return "anthropic"
    return hint
