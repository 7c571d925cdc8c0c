"""
Tests for request/response adapters.
Run with: pytest tests/test_adapters.py
"""

from dataclasses import replace

import pytest

from carbot.errors import AdapterError, MalformedResponseError
from carbot.models import GenerationOptions, Message, Role
from carbot.providers.adapters import build_request, parse_response
from carbot.providers.registry import ProviderRegistry


@pytest.fixture
def registry():
    return ProviderRegistry()


@pytest.fixture
def messages():
    return [
        Message(role=Role.SYSTEM, content="You are CarBot."),
        Message(role=Role.USER, content="Hi"),
        Message(role=Role.ASSISTANT, content="Hello!"),
        Message(role=Role.USER, content="Play jazz"),
    ]


# ---------------------------------------------------------------------------
# build_request
# ---------------------------------------------------------------------------

def test_openai_request_shape(registry, messages):
    opts = GenerationOptions(max_tokens=100, temperature=0.2)
    req = build_request(messages, opts, registry.get("openai"), "sk-1")
    assert req.url == "https://api.openai.com/v1/chat/completions"
    assert req.headers["Authorization"] == "Bearer sk-1"
    assert req.body["model"] == "gpt-3.5-turbo"
    assert req.body["max_tokens"] == 100
    assert req.body["temperature"] == 0.2
    assert [m["role"] for m in req.body["messages"]] == ["system", "user", "assistant", "user"]
    assert "functions" not in req.body


def test_openai_functions_only_when_supported(registry, messages):
    fn = [{"name": "control_music", "description": "", "parameters": {}}]
    opts = GenerationOptions(functions=fn)

    req = build_request(messages, opts, registry.get("openai"), "k")
    assert req.body["functions"] == fn
    assert req.body["function_call"] == "auto"

    req = build_request(messages, opts, registry.get("groq"), "k")
    assert "functions" not in req.body


def test_model_override(registry, messages):
    req = build_request(messages, GenerationOptions(model="gpt-4o-mini"), registry.get("openai"), "k")
    assert req.body["model"] == "gpt-4o-mini"


def test_anthropic_request_moves_system_out(registry, messages):
    req = build_request(messages, GenerationOptions(), registry.get("anthropic"), "sk-ant")
    assert req.url == "https://api.anthropic.com/v1/messages"
    assert req.body["system"] == "You are CarBot."
    assert all(m["role"] in ("user", "assistant") for m in req.body["messages"])
    assert req.body["messages"][-1] == {"role": "user", "content": "Play jazz"}


def test_gemini_request(registry, messages):
    req = build_request(messages, GenerationOptions(max_tokens=50), registry.get("gemini"), "g-key")
    assert req.url.endswith("/models/gemini-1.5-flash:generateContent")
    assert req.headers["x-goog-api-key"] == "g-key"
    roles = [c["role"] for c in req.body["contents"]]
    assert roles == ["user", "model", "user"]
    assert req.body["systemInstruction"]["parts"][0]["text"] == "You are CarBot."
    assert req.body["generationConfig"]["maxOutputTokens"] == 50


def test_qwen_request(registry, messages):
    req = build_request(messages, GenerationOptions(), registry.get("qwen"), "q-key")
    assert req.url.endswith("/services/aigc/text-generation/generation")
    assert req.body["model"] == "qwen-turbo"
    assert len(req.body["input"]["messages"]) == 4
    assert req.body["parameters"]["result_format"] == "message"


def test_build_request_rejects_empty_messages(registry):
    with pytest.raises(AdapterError):
        build_request([], GenerationOptions(), registry.get("openai"), "k")


def test_build_request_rejects_system_only(registry):
    with pytest.raises(AdapterError):
        build_request([Message(role="system", content="x")], GenerationOptions(), registry.get("openai"), "k")


def test_build_request_rejects_unknown_role(registry):
    with pytest.raises(AdapterError):
        build_request([{"role": "robot", "content": "beep"}], GenerationOptions(), registry.get("openai"), "k")


def test_build_request_rejects_missing_model(registry, messages):
    no_model = replace(registry.get("ollama"), default_model="")
    with pytest.raises(AdapterError):
        build_request(messages, GenerationOptions(), no_model)


# ---------------------------------------------------------------------------
# parse_response
# ---------------------------------------------------------------------------

def test_parse_openai(registry):
    payload = {
        "model": "gpt-3.5-turbo-0125",
        "choices": [{"message": {"role": "assistant", "content": "Playing jazz."}}],
        "usage": {"total_tokens": 12},
    }
    result = parse_response(payload, registry.get("openai"))
    assert result.content == "Playing jazz."
    assert result.provider_id == "openai"
    assert result.model_id == "gpt-3.5-turbo-0125"
    assert result.usage == {"total_tokens": 12}
    assert result.cached is False


def test_parse_openai_function_call(registry):
    payload = {"choices": [{"message": {
        "content": None,
        "function_call": {"name": "control_music", "arguments": "{\"action\": \"play\"}"},
    }}]}
    result = parse_response(payload, registry.get("openai"), "gpt-3.5-turbo")
    assert result.content == ""
    assert result.function_call["name"] == "control_music"


def test_parse_anthropic(registry):
    payload = {"content": [{"type": "text", "text": "Sure."}], "usage": {"input_tokens": 3}}
    result = parse_response(payload, registry.get("anthropic"))
    assert result.content == "Sure."
    assert result.model_id == "claude-3-haiku-20240307"


def test_parse_gemini(registry):
    payload = {"candidates": [{"content": {"parts": [{"text": "Sunny."}]}}]}
    assert parse_response(payload, registry.get("gemini")).content == "Sunny."


def test_parse_qwen_message_and_text_formats(registry):
    qwen = registry.get("qwen")
    as_message = {"output": {"choices": [{"message": {"content": "Ni hao"}}]}}
    as_text = {"output": {"text": "Ni hao"}}
    assert parse_response(as_message, qwen).content == "Ni hao"
    assert parse_response(as_text, qwen).content == "Ni hao"


@pytest.mark.parametrize("payload", [
    {},
    {"choices": []},
    {"choices": [{"message": {}}]},
    {"choices": [{"message": {"content": "   "}}]},
    ["not", "a", "dict"],
])
def test_parse_malformed(registry, payload):
    with pytest.raises(MalformedResponseError):
        parse_response(payload, registry.get("openai"))
