"""
Request/response adapters.

Translate a provider-agnostic message list + GenerationOptions into the
provider's wire request, and the provider's JSON envelope back into a
GenerationResult. One function per shape; the registry decides which.

Shapes:
    openai     POST {base}/chat/completions            choices[0].message.content
    anthropic  POST {base}/messages                    content[0].text
    gemini     POST {base}/models/{model}:generateContent
                                                       candidates[0].content.parts[0].text
    qwen       POST {base}/services/aigc/text-generation/generation
                                                       output.choices[0].message.content
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from carbot.errors import AdapterError, MalformedResponseError
from carbot.models import GenerationOptions, GenerationResult, Message
from carbot.providers.registry import ProviderConfig

logger = logging.getLogger(__name__)


@dataclass
class WireRequest:
    """Everything the transport needs for one POST."""
    url: str
    headers: dict = field(default_factory=dict)
    body: dict = field(default_factory=dict)


def _as_dicts(messages: list[Message | dict]) -> list[dict]:
    out = []
    for msg in messages:
        if isinstance(msg, Message):
            out.append(msg.to_dict())
        elif isinstance(msg, dict):
            out.append(dict(msg))
        else:
            raise AdapterError(f"Unsupported message type: {type(msg).__name__}")
    return out


def _split_system(messages: list[dict]) -> tuple[str, list[dict]]:
    """Pull system messages out (joined) and keep the rest in order."""
    system_parts = [m.get("content") or "" for m in messages if m.get("role") == "system"]
    rest = [m for m in messages if m.get("role") != "system"]
    return "\n\n".join(p for p in system_parts if p), rest


# ---------------------------------------------------------------------------
# Request builders
# ---------------------------------------------------------------------------

def _openai_request(provider: ProviderConfig, model: str, messages: list[dict],
                    options: GenerationOptions) -> tuple[str, dict]:
    body = {
        "model": model,
        "messages": messages,
        "max_tokens": options.max_tokens,
        "temperature": options.temperature,
        "top_p": options.top_p,
        "stream": False,
    }
    if options.functions:
        if provider.supports_functions:
            body["functions"] = options.functions
            body["function_call"] = "auto"
        else:
            logger.debug("Provider '%s' has no function calling, dropping functions", provider.id)
    return f"{provider.base_url}/chat/completions", body


def _anthropic_request(provider: ProviderConfig, model: str, messages: list[dict],
                       options: GenerationOptions) -> tuple[str, dict]:
    system, rest = _split_system(messages)
    body = {
        "model": model,
        "max_tokens": options.max_tokens,
        "temperature": options.temperature,
        "top_p": options.top_p,
        "messages": [
            # Claude has no function role, feed function output back as user text
            {"role": "assistant" if m["role"] == "assistant" else "user",
             "content": m.get("content") or ""}
            for m in rest
        ],
    }
    if system:
        body["system"] = system
    return f"{provider.base_url}/messages", body


def _gemini_request(provider: ProviderConfig, model: str, messages: list[dict],
                    options: GenerationOptions) -> tuple[str, dict]:
    system, rest = _split_system(messages)
    body = {
        "contents": [
            {
                "role": "model" if m["role"] == "assistant" else "user",
                "parts": [{"text": m.get("content") or ""}],
            }
            for m in rest
        ],
        "generationConfig": {
            "temperature": options.temperature,
            "maxOutputTokens": options.max_tokens,
            "topP": options.top_p,
        },
    }
    if system:
        body["systemInstruction"] = {"parts": [{"text": system}]}
    return f"{provider.base_url}/models/{model}:generateContent", body


def _qwen_request(provider: ProviderConfig, model: str, messages: list[dict],
                  options: GenerationOptions) -> tuple[str, dict]:
    body = {
        "model": model,
        "input": {
            "messages": [
                {"role": m["role"], "content": m.get("content") or ""}
                for m in messages
            ],
        },
        "parameters": {
            "result_format": "message",
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "top_p": options.top_p,
        },
    }
    return f"{provider.base_url}/services/aigc/text-generation/generation", body


_BUILDERS = {
    "openai": _openai_request,
    "anthropic": _anthropic_request,
    "gemini": _gemini_request,
    "qwen": _qwen_request,
}


def build_request(
    messages: list[Message | dict],
    options: GenerationOptions,
    provider: ProviderConfig,
    api_key: str = "",
) -> WireRequest:
    """
    Build the provider-specific wire request.
    Raises AdapterError if model or messages can't be populated.
    """
    model = options.model or provider.default_model
    if not model:
        raise AdapterError(f"No model configured for provider '{provider.id}'")

    msgs = _as_dicts(messages)
    if not msgs:
        raise AdapterError("Cannot build a request with no messages")
    if not any(m.get("role") != "system" for m in msgs):
        raise AdapterError("Request needs at least one non-system message")
    for m in msgs:
        if m.get("role") not in ("system", "user", "assistant", "function"):
            raise AdapterError(f"Unknown message role '{m.get('role')}'")

    builder = _BUILDERS.get(provider.shape)
    if builder is None:
        raise AdapterError(f"Unknown request shape '{provider.shape}' for '{provider.id}'")

    url, body = builder(provider, model, msgs, options)
    return WireRequest(url=url, headers=provider.auth_headers(api_key), body=body)


# ---------------------------------------------------------------------------
# Response parsers
# ---------------------------------------------------------------------------

def _dig(data, *path):
    """Walk nested dicts/lists; raise KeyError/IndexError/TypeError on a miss."""
    node = data
    for step in path:
        node = node[step]
    return node


def _openai_parse(data: dict) -> tuple[str, dict, dict | None]:
    message = _dig(data, "choices", 0, "message")
    function_call = message.get("function_call")
    content = message.get("content")
    if content is None and function_call:
        content = ""
    if not isinstance(content, str):
        raise KeyError("content")
    return content, data.get("usage") or {}, function_call


def _anthropic_parse(data: dict) -> tuple[str, dict, dict | None]:
    text = _dig(data, "content", 0, "text")
    return text, data.get("usage") or {}, None


def _gemini_parse(data: dict) -> tuple[str, dict, dict | None]:
    text = _dig(data, "candidates", 0, "content", "parts", 0, "text")
    return text, data.get("usageMetadata") or {}, None


def _qwen_parse(data: dict) -> tuple[str, dict, dict | None]:
    output = _dig(data, "output")
    if "choices" in output:
        text = _dig(output, "choices", 0, "message", "content")
    else:
        text = _dig(output, "text")
    return text, data.get("usage") or {}, None


_PARSERS = {
    "openai": _openai_parse,
    "anthropic": _anthropic_parse,
    "gemini": _gemini_parse,
    "qwen": _qwen_parse,
}


def parse_response(payload: dict, provider: ProviderConfig, model: str = "") -> GenerationResult:
    """
    Extract text + usage from a provider envelope.
    Raises MalformedResponseError when the text field is absent.
    """
    parser = _PARSERS.get(provider.shape)
    if parser is None:
        raise AdapterError(f"Unknown response shape '{provider.shape}' for '{provider.id}'")
    if not isinstance(payload, dict):
        raise MalformedResponseError(
            f"{provider.id}: expected a JSON object, got {type(payload).__name__}"
        )

    try:
        text, usage, function_call = parser(payload)
    except (KeyError, IndexError, TypeError) as e:
        raise MalformedResponseError(
            f"{provider.id}: response has no text field ({e!r})"
        ) from e

    if not isinstance(text, str):
        raise MalformedResponseError(f"{provider.id}: text field is not a string")
    if not text.strip() and not function_call:
        raise MalformedResponseError(f"{provider.id}: empty response text")

    return GenerationResult(
        content=text,
        provider_id=provider.id,
        model_id=payload.get("model") or model or provider.default_model,
        usage=usage if isinstance(usage, dict) else {},
        function_call=function_call,
    )
