"""
Value types shared across CarBot.
Messages, generation options/results, and the reply handed back to callers.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    FUNCTION = "function"


@dataclass
class Message:
    """One entry in a conversation. List order is turn order."""
    role: Role
    content: str | None
    timestamp: float = field(default_factory=time.time)
    name: str = ""                      # function name for role=function
    function_call: dict | None = None   # assistant message that invoked a function

    def __post_init__(self):
        self.role = Role(self.role)

    def to_dict(self) -> dict:
        """OpenAI-style dict (no timestamp)."""
        d: dict = {"role": self.role.value, "content": self.content}
        if self.name:
            d["name"] = self.name
        if self.function_call is not None:
            d["function_call"] = self.function_call
        return d


@dataclass
class GenerationOptions:
    """Per-call generation knobs. Defaults are tuned for short spoken answers."""
    max_tokens: int = 150
    temperature: float = 0.4
    top_p: float = 0.9
    model: str = ""                     # empty = provider default
    functions: list[dict] = field(default_factory=list)
    fresh: bool = False                 # True = bypass the response cache


@dataclass
class GenerationResult:
    """Normalized result of one logical generation call."""
    content: str
    provider_id: str
    model_id: str
    usage: dict = field(default_factory=dict)
    cached: bool = False
    attempts: int = 1
    latency_ms: float = 0.0
    function_call: dict | None = None

    def as_cached(self) -> "GenerationResult":
        return replace(self, cached=True, usage=dict(self.usage))


@dataclass
class AssistantReply:
    """What the front door returns for a command."""
    response: str
    intent: str
    actions: list[dict] = field(default_factory=list)
    provider: str = ""
    model: str = ""
    fallback: bool = False
    cached: bool = False
    fallback_reason: str = ""
    session_id: str = ""

    def to_json(self) -> dict:
        data = {
            "response": self.response,
            "intent": self.intent,
            "actions": self.actions,
            "provider": self.provider,
            "model": self.model,
            "fallback": self.fallback,
            "cached": self.cached,
            "sessionId": self.session_id,
        }
        if self.fallback_reason:
            data["fallbackReason"] = self.fallback_reason
        return data
