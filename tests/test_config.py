"""
Tests for config loading, env overrides and provider wiring.
Run with: pytest tests/test_config.py
"""

import pytest

from carbot import config as cfg_mod
from carbot.config import (
    DEFAULTS,
    _deep_merge,
    apply_env_overrides,
    build_registry,
    load_config,
    provider_chain,
    resolve_api_keys,
    validate_config,
)
from carbot.errors import ConfigError


@pytest.fixture(autouse=True)
def _fresh_config():
    cfg_mod.reset_config()
    yield
    cfg_mod.reset_config()


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def test_load_yaml_over_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("ai:\n  provider: groq\n  max_tokens: 80\nserver:\n  port: 8080\n")
    cfg = load_config(path, environ={})
    assert cfg["ai"]["provider"] == "groq"
    assert cfg["ai"]["max_tokens"] == 80
    assert cfg["ai"]["temperature"] == 0.4
    assert cfg["server"]["port"] == 8080
    assert cfg["cache"]["max_entries"] == 50


def test_env_var_references_resolved(tmp_path, monkeypatch):
    monkeypatch.setenv("MY_OPENAI_KEY", "sk-from-env")
    path = tmp_path / "config.yaml"
    path.write_text("providers:\n  openai:\n    api_key: ${MY_OPENAI_KEY}\n")
    cfg = load_config(path, environ={})
    assert cfg["providers"]["openai"]["api_key"] == "sk-from-env"


def test_explicit_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_non_mapping_yaml_rejected(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ConfigError):
        load_config(path, environ={})


def test_get_config_is_cached(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("ai:\n  provider: gemini\n")
    first = load_config(path, environ={})
    assert cfg_mod.get_config() is first


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------

def test_env_overrides_typed():
    cfg = apply_env_overrides(DEFAULTS, {
        "AI_PROVIDER": "claude",
        "AI_FALLBACK_PROVIDERS": "groq, ollama ,",
        "REQUEST_TIMEOUT": "5.5",
        "MAX_RETRIES": "2",
        "PORT": "9000",
    })
    assert cfg["ai"]["provider"] == "claude"
    assert cfg["ai"]["fallback_providers"] == ["groq", "ollama"]
    assert cfg["resilience"]["timeout"] == 5.5
    assert cfg["resilience"]["max_retries"] == 2
    assert cfg["server"]["port"] == 9000
    # Input untouched
    assert DEFAULTS["ai"]["provider"] == "openai"


def test_blank_env_values_ignored():
    cfg = apply_env_overrides(DEFAULTS, {"AI_PROVIDER": "  ", "PORT": ""})
    assert cfg["ai"]["provider"] == "openai"
    assert cfg["server"]["port"] == 3000


def test_bad_number_raises():
    with pytest.raises(ConfigError, match="MAX_RETRIES"):
        apply_env_overrides(DEFAULTS, {"MAX_RETRIES": "lots"})


# ---------------------------------------------------------------------------
# Provider wiring
# ---------------------------------------------------------------------------

def test_provider_chain_order():
    cfg = _deep_merge(DEFAULTS, {"ai": {"provider": "openai", "fallback_providers": ["groq", "ollama"]}})
    assert provider_chain(cfg) == ["openai", "groq", "ollama"]
    cfg["ai"]["fallback_providers"] = "groq,gemini"
    assert provider_chain(cfg) == ["openai", "groq", "gemini"]


def test_registry_overrides_known_provider():
    cfg = _deep_merge(DEFAULTS, {"providers": {"ollama": {"base_url": "http://car-pc:11434/v1", "model": "phi3"}}})
    registry = build_registry(cfg)
    ollama = registry.get("ollama")
    assert ollama.base_url == "http://car-pc:11434/v1"
    assert ollama.default_model == "phi3"


def test_ai_model_applies_to_primary_only():
    cfg = _deep_merge(DEFAULTS, {"ai": {"provider": "groq", "fallback_providers": ["openai"], "model": "llama3-70b-8192"}})
    registry = build_registry(cfg)
    assert registry.get("groq").default_model == "llama3-70b-8192"
    assert registry.get("openai").default_model == "gpt-3.5-turbo"


def test_custom_provider_registered():
    cfg = _deep_merge(DEFAULTS, {"providers": {"fleetllm": {
        "base_url": "https://llm.fleet.example/v1/",
        "model": "fleet-small",
        "key_env": ["FLEET_KEY"],
    }}})
    registry = build_registry(cfg)
    custom = registry.get("fleetllm")
    assert custom.base_url == "https://llm.fleet.example/v1"
    assert custom.shape == "openai"
    assert resolve_api_keys(cfg, registry, {"FLEET_KEY": "fk"})["fleetllm"] == "fk"


def test_custom_provider_needs_url_and_model():
    cfg = _deep_merge(DEFAULTS, {"providers": {"fleetllm": {"model": "fleet-small"}}})
    with pytest.raises(ConfigError):
        build_registry(cfg)


def test_yaml_key_wins_over_env():
    cfg = _deep_merge(DEFAULTS, {"providers": {"openai": {"api_key": "sk-yaml"}}})
    registry = build_registry(cfg)
    keys = resolve_api_keys(cfg, registry, {"OPENAI_API_KEY": "sk-env", "XAI_API_KEY": "xai"})
    assert keys["openai"] == "sk-yaml"
    # Second env var in key_env is consulted
    assert keys["grok"] == "xai"
    assert "anthropic" not in keys


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def test_validate_unknown_provider():
    cfg = _deep_merge(DEFAULTS, {"ai": {"provider": "skynet"}})
    registry = build_registry(cfg)
    with pytest.raises(ConfigError, match="skynet"):
        validate_config(cfg, registry, {})


def test_validate_missing_fallback_key_is_warning():
    cfg = _deep_merge(DEFAULTS, {"ai": {"provider": "openai", "fallback_providers": ["groq"]}})
    registry = build_registry(cfg)
    warnings = validate_config(cfg, registry, {"openai": "sk"})
    assert len(warnings) == 1
    assert "groq" in warnings[0]
    assert "GROQ_API_KEY" in warnings[0]


def test_validate_no_usable_provider():
    cfg = _deep_merge(DEFAULTS, {"ai": {"provider": "openai"}})
    registry = build_registry(cfg)
    with pytest.raises(ConfigError):
        validate_config(cfg, registry, {})


def test_validate_offline_mode_allowed():
    cfg = _deep_merge(DEFAULTS, {"ai": {"provider": "openai", "allow_offline": True}})
    registry = build_registry(cfg)
    warnings = validate_config(cfg, registry, {})
    assert warnings and warnings[0].startswith("Primary provider")


def test_validate_keyless_local_provider():
    cfg = _deep_merge(DEFAULTS, {"ai": {"provider": "ollama"}})
    registry = build_registry(cfg)
    assert validate_config(cfg, registry, {}) == []


# ---------------------------------------------------------------------------
# Provider id case and aliases
# ---------------------------------------------------------------------------

def test_custom_provider_with_capitals_is_usable():
    cfg = _deep_merge(DEFAULTS, {
        "ai": {"provider": "FleetLLM"},
        "providers": {"FleetLLM": {
            "base_url": "https://llm.fleet.example/v1",
            "model": "fleet-small",
            "api_key": "fk",
        }},
    })
    registry = build_registry(cfg)
    assert registry.get("fleetllm").id == "fleetllm"
    keys = resolve_api_keys(cfg, registry, {})
    assert keys == {"fleetllm": "fk"}
    assert validate_config(cfg, registry, keys) == []


def test_api_key_under_alias_is_used():
    cfg = _deep_merge(DEFAULTS, {
        "ai": {"provider": "claude"},
        "providers": {"claude": {"api_key": "sk-ant-yaml"}, "Google": {"api_key": "g-key"}},
    })
    registry = build_registry(cfg)
    keys = resolve_api_keys(cfg, registry, {})
    assert keys["anthropic"] == "sk-ant-yaml"
    assert keys["gemini"] == "g-key"
