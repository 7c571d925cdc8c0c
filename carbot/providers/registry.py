"""
Provider registry: one static table instead of one class per provider.

Each entry says where a provider lives, which model to use by default,
how to authenticate, and which wire shape it speaks. The adapters and the
retry controller are driven entirely by this table.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace

from carbot.errors import UnknownProviderError

logger = logging.getLogger(__name__)

# Request/response shapes understood by carbot.providers.adapters
SHAPES = ("openai", "anthropic", "gemini", "qwen")

# Auth schemes
AUTH_BEARER = "bearer"
AUTH_NONE = "none"


@dataclass(frozen=True)
class ProviderConfig:
    """Immutable description of one hosted LLM provider."""
    id: str
    base_url: str
    default_model: str
    shape: str = "openai"               # request + response shape
    auth: str = AUTH_BEARER             # "bearer", "none", or a header name (e.g. "x-api-key")
    key_env: tuple[str, ...] = ()       # env vars checked for the API key, in order
    supports_functions: bool = False
    aliases: tuple[str, ...] = ()
    extra_headers: dict = field(default_factory=dict)
    display_name: str = ""

    @property
    def requires_key(self) -> bool:
        return self.auth != AUTH_NONE

    def auth_headers(self, api_key: str) -> dict:
        """Build auth headers for this provider."""
        headers = {"Content-Type": "application/json"}
        if self.auth == AUTH_BEARER:
            if api_key:
                headers["Authorization"] = f"Bearer {api_key}"
        elif self.auth != AUTH_NONE and api_key:
            headers[self.auth] = api_key
        headers.update(self.extra_headers)
        return headers


# Built-in providers. Endpoints and default models mirror what the
# assistant has always shipped with; override model/base_url in config.yaml.
DEFAULT_PROVIDERS: tuple[ProviderConfig, ...] = (
    ProviderConfig(
        id="openai",
        base_url="https://api.openai.com/v1",
        default_model="gpt-3.5-turbo",
        key_env=("OPENAI_API_KEY",),
        supports_functions=True,
        aliases=("chatgpt",),
        display_name="OpenAI GPT-3.5",
    ),
    ProviderConfig(
        id="groq",
        base_url="https://api.groq.com/openai/v1",
        default_model="llama3-8b-8192",
        key_env=("GROQ_API_KEY",),
        display_name="Groq",
    ),
    ProviderConfig(
        id="grok",
        base_url="https://api.x.ai/v1",
        default_model="grok-beta",
        key_env=("GROK_API_KEY", "XAI_API_KEY"),
        supports_functions=True,
        aliases=("xai",),
        display_name="Grok (X.AI)",
    ),
    ProviderConfig(
        id="together",
        base_url="https://api.together.xyz/v1",
        default_model="meta-llama/Llama-2-7b-chat-hf",
        key_env=("TOGETHER_API_KEY",),
        display_name="Together AI",
    ),
    ProviderConfig(
        id="perplexity",
        base_url="https://api.perplexity.ai",
        default_model="llama-3.1-sonar-small-128k-online",
        key_env=("PERPLEXITY_API_KEY",),
        display_name="Perplexity",
    ),
    ProviderConfig(
        id="cohere",
        base_url="https://api.cohere.ai/compatibility/v1",
        default_model="command-r-plus",
        key_env=("COHERE_API_KEY",),
        extra_headers={"X-Client-Name": "carbot"},
        display_name="Cohere",
    ),
    ProviderConfig(
        id="ollama",
        base_url="http://localhost:11434/v1",
        default_model="llama3",
        auth=AUTH_NONE,
        display_name="Ollama (Local)",
    ),
    ProviderConfig(
        id="anthropic",
        base_url="https://api.anthropic.com/v1",
        default_model="claude-3-haiku-20240307",
        shape="anthropic",
        auth="x-api-key",
        key_env=("ANTHROPIC_API_KEY",),
        aliases=("claude",),
        extra_headers={"anthropic-version": "2023-06-01"},
        display_name="Claude 3 Haiku",
    ),
    ProviderConfig(
        id="gemini",
        base_url="https://generativelanguage.googleapis.com/v1beta",
        default_model="gemini-1.5-flash",
        shape="gemini",
        auth="x-goog-api-key",
        key_env=("GOOGLE_AI_API_KEY", "GEMINI_API_KEY"),
        aliases=("google",),
        display_name="Google AI (Gemini)",
    ),
    ProviderConfig(
        id="qwen",
        base_url="https://dashscope.aliyuncs.com/api/v1",
        default_model="qwen-turbo",
        shape="qwen",
        key_env=("QWEN_API_KEY", "DASHSCOPE_API_KEY"),
        aliases=("dashscope",),
        display_name="Qwen (Alibaba Cloud)",
    ),
)


class ProviderRegistry:
    """
    Provider id → ProviderConfig.
    Populated at startup (built-ins + config overrides + test mocks),
    read-only afterwards.
    """

    def __init__(self, providers: tuple[ProviderConfig, ...] | list[ProviderConfig] = DEFAULT_PROVIDERS):
        self._providers: dict[str, ProviderConfig] = {}
        self._aliases: dict[str, str] = {}
        self._lock = threading.Lock()
        for provider in providers:
            self.register(provider)

    def register(self, provider: ProviderConfig) -> None:
        """Add or replace a provider. Meant for startup and tests only."""
        if provider.shape not in SHAPES:
            raise ValueError(f"Provider '{provider.id}' has unknown shape '{provider.shape}'")
        key = provider.id.lower()
        with self._lock:
            if key in self._providers:
                logger.debug("Replacing provider '%s'", key)
            self._providers[key] = provider
            for alias in provider.aliases:
                self._aliases[alias.lower()] = key

    def resolve_id(self, provider_id: str) -> str:
        """Canonical id for a provider id or alias."""
        key = (provider_id or "").strip().lower()
        key = self._aliases.get(key, key)
        if key not in self._providers:
            raise UnknownProviderError(provider_id)
        return key

    def get(self, provider_id: str) -> ProviderConfig:
        return self._providers[self.resolve_id(provider_id)]

    def override(self, provider_id: str, **changes) -> ProviderConfig:
        """Replace selected fields of a registered provider (config overrides)."""
        current = self.get(provider_id)
        updated = replace(current, **{k: v for k, v in changes.items() if v})
        self.register(updated)
        return updated

    def __contains__(self, provider_id: str) -> bool:
        try:
            self.resolve_id(provider_id)
        except UnknownProviderError:
            return False
        return True

    def ids(self) -> list[str]:
        return list(self._providers.keys())

    def list_providers(self) -> list[ProviderConfig]:
        return list(self._providers.values())
