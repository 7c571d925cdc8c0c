"""
Config loader for CarBot.
Reads config.yaml once at startup. All other modules import from here.

Precedence (lowest → highest):
    built-in defaults → config.yaml → environment variables (.env included)

${ENV_VAR} references inside config.yaml are resolved at load time.
"""

from __future__ import annotations

import copy
import logging
import os
import re
from pathlib import Path

import yaml
from dotenv import load_dotenv

from carbot.errors import ConfigError, UnknownProviderError
from carbot.providers.registry import AUTH_BEARER, ProviderConfig, ProviderRegistry

load_dotenv()

logger = logging.getLogger(__name__)

_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"

_config: dict | None = None

DEFAULTS: dict = {
    "server": {"host": "0.0.0.0", "port": 3000},
    "ai": {
        "provider": "openai",
        "fallback_providers": [],
        "model": "",
        "max_tokens": 150,
        "temperature": 0.4,
        "top_p": 0.9,
        "use_functions": True,
        "allow_offline": False,
        "system_prompt": "",
    },
    "resilience": {
        "timeout": 12.0,
        "max_retries": 3,
        "backoff_base": 1.0,
        "backoff_factor": 1.5,
        "backoff_max": 8.0,
        "jitter": 0.2,
        "breaker_threshold": 5,
        "breaker_cooldown": 60.0,
    },
    "cache": {"ttl_seconds": 300.0, "max_entries": 50},
    "context": {"max_turns": 10, "session_ttl_seconds": 1800.0},
    "events": {"queue_size": 100},
    "voice": {"speaker": "null"},
    "providers": {},
    "logging": {"level": "INFO", "file": ""},
}

# ENV var → (section, key, type)
ENV_OVERRIDES: dict[str, tuple[str, str, type]] = {
    "AI_PROVIDER": ("ai", "provider", str),
    "AI_FALLBACK_PROVIDERS": ("ai", "fallback_providers", list),
    "AI_MODEL": ("ai", "model", str),
    "REQUEST_TIMEOUT": ("resilience", "timeout", float),
    "MAX_RETRIES": ("resilience", "max_retries", int),
    "BREAKER_THRESHOLD": ("resilience", "breaker_threshold", int),
    "BREAKER_COOLDOWN": ("resilience", "breaker_cooldown", float),
    "CACHE_TTL": ("cache", "ttl_seconds", float),
    "CACHE_MAX_ENTRIES": ("cache", "max_entries", int),
    "MAX_CONTEXT_TURNS": ("context", "max_turns", int),
    "HOST": ("server", "host", str),
    "PORT": ("server", "port", int),
    "LOG_LEVEL": ("logging", "level", str),
}


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def _deep_merge(base: dict, override: dict) -> dict:
    """Merge override into a copy of base, recursing into nested dicts."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def apply_env_overrides(cfg: dict, environ=None) -> dict:
    """Layer the ENV_OVERRIDES variables over cfg. Bad numbers raise ConfigError."""
    environ = os.environ if environ is None else environ
    result = copy.deepcopy(cfg)
    for var, (section, key, kind) in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw.strip() == "":
            continue
        raw = raw.strip()
        if kind is list:
            value = [p.strip() for p in raw.split(",") if p.strip()]
        elif kind is str:
            value = raw
        else:
            try:
                value = kind(raw)
            except ValueError as e:
                raise ConfigError(f"{var}={raw!r} is not a valid {kind.__name__}") from e
        result.setdefault(section, {})[key] = value
    return result


def load_config(path: Path | None = None, environ=None) -> dict:
    """Load and cache config: defaults, then YAML, then environment."""
    global _config
    if _config is not None and path is None:
        return _config

    config_path = path or Path(os.environ.get("CARBOT_CONFIG", _CONFIG_PATH))
    raw: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ConfigError(f"{config_path} must contain a mapping at the top level")
    elif path is not None:
        raise FileNotFoundError(f"Config not found: {config_path}")
    else:
        logger.info("No config.yaml at %s, using defaults + environment", config_path)

    cfg = _deep_merge(DEFAULTS, _walk_and_resolve(raw))
    _config = apply_env_overrides(cfg, environ)
    return _config


def get_config() -> dict:
    """Return cached config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def reset_config() -> None:
    """Forget the cached config (tests, CLI --config)."""
    global _config
    _config = None


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

def build_registry(cfg: dict) -> ProviderRegistry:
    """
    Built-in providers plus the `providers:` section of config.

    An entry for a known provider overrides base_url / model.
    An entry for an unknown id defines a new provider and needs base_url + model.
    """
    registry = ProviderRegistry()
    for pid, entry in (cfg.get("providers") or {}).items():
        entry = entry or {}
        if pid in registry:
            registry.override(pid, base_url=entry.get("base_url"), default_model=entry.get("model"))
            continue
        if not entry.get("base_url") or not entry.get("model"):
            raise ConfigError(f"Custom provider '{pid}' needs base_url and model")
        registry.register(ProviderConfig(
            id=str(pid).strip().lower(),
            base_url=entry["base_url"].rstrip("/"),
            default_model=entry["model"],
            shape=entry.get("shape", "openai"),
            auth=entry.get("auth", AUTH_BEARER),
            key_env=tuple(entry.get("key_env", [])),
            supports_functions=bool(entry.get("supports_functions", False)),
            display_name=entry.get("display_name", pid),
        ))
        logger.info("Registered custom provider '%s' (%s)", pid, entry["base_url"])

    model = (cfg.get("ai") or {}).get("model")
    primary = (cfg.get("ai") or {}).get("provider")
    if model and primary and primary in registry:
        # Model override applies to the primary only; fallbacks keep their defaults
        registry.override(primary, default_model=model)
    return registry


def provider_chain(cfg: dict) -> list[str]:
    """Primary provider followed by the explicit fallback list, as configured."""
    ai = cfg.get("ai") or {}
    chain = []
    if ai.get("provider"):
        chain.append(ai["provider"])
    fallbacks = ai.get("fallback_providers") or []
    if isinstance(fallbacks, str):
        fallbacks = [p.strip() for p in fallbacks.split(",") if p.strip()]
    chain.extend(fallbacks)
    return chain


def resolve_api_keys(cfg: dict, registry: ProviderRegistry, environ=None) -> dict[str, str]:
    """provider id → API key. YAML `providers.<id>.api_key` first, then the provider's env vars."""
    environ = os.environ if environ is None else environ
    # YAML entries may use aliases or any case ("Claude", "google")
    provider_cfg: dict[str, dict] = {}
    for pid, entry in (cfg.get("providers") or {}).items():
        if pid in registry and entry:
            provider_cfg[registry.resolve_id(pid)] = entry
    keys: dict[str, str] = {}
    for provider in registry.list_providers():
        key = ((provider_cfg.get(provider.id) or {}).get("api_key") or "").strip()
        if not key:
            for var in provider.key_env:
                key = (environ.get(var) or "").strip()
                if key:
                    break
        if key:
            keys[provider.id] = key
    return keys


def validate_config(cfg: dict, registry: ProviderRegistry, api_keys: dict[str, str]) -> list[str]:
    """
    Check the provider chain before serving.

    - unknown provider id → ConfigError
    - fallback provider without a key → warning (returned and logged)
    - no provider in the chain has a usable key → ConfigError,
      unless ai.allow_offline is true (fallback-only mode)
    """
    warnings: list[str] = []
    chain = provider_chain(cfg)
    resolved = []
    for pid in chain:
        try:
            resolved.append(registry.resolve_id(pid))
        except UnknownProviderError as e:
            known = ", ".join(sorted(registry.ids()))
            raise ConfigError(f"Unknown provider '{pid}' (known: {known})") from e

    usable = []
    for i, pid in enumerate(resolved):
        provider = registry.get(pid)
        if provider.requires_key and not api_keys.get(pid):
            env_hint = " or ".join(provider.key_env) or f"providers.{pid}.api_key"
            msg = f"No API key for '{pid}' (set {env_hint})"
            if i == 0:
                msg = "Primary provider: " + msg
            warnings.append(msg)
            logger.warning(msg)
        else:
            usable.append(pid)

    if not usable:
        if (cfg.get("ai") or {}).get("allow_offline"):
            logger.warning("No usable AI provider; running in offline fallback mode")
        else:
            raise ConfigError(
                "No usable AI provider: configure an API key or set ai.allow_offline: true"
            )
    return warnings
