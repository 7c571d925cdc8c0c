"""
Fallback and intent router: deterministic replies without a remote model.

Two jobs:
  1. Emergency short-circuit. Emergency wording is answered locally, before
     any provider call, with a fixed response and a structured action list
     for downstream systems (dial emergency services, share location).
  2. Terminal fallback. When every provider failed, the breaker is open, or
     no provider is configured, pick a canned reply by keyword category.

Categories are checked in priority order; the first match wins:

    emergency → navigation → music → phone → weather → climate → news → help
    (no match) → conversation

The router never raises. Any input (empty, None, bytes, garbage) gets a
reply tagged fallback=True so callers can tell it from a real AI answer.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

EMERGENCY = "emergency"
CONVERSATION = "conversation"


def _pattern(*phrases: str) -> re.Pattern:
    """Case-insensitive match of any phrase as a whole word ("eta" != "beta")."""
    alternation = "|".join(re.escape(p) for p in phrases)
    return re.compile(r"(?<!\w)(?:" + alternation + r")(?!\w)", re.IGNORECASE)


EMERGENCY_PATTERN = _pattern(
    "emergency", "accident", "crash", "crashed", "collision",
    "on fire", "smoke", "medical", "police", "ambulance", "911", "112",
    "injured", "hurt", "bleeding", "heart attack", "stroke", "unconscious",
    "not breathing", "call for help", "sos", "mayday",
)

MEDICAL_PATTERN = _pattern(
    "medical", "ambulance", "injured", "hurt", "bleeding",
    "heart attack", "stroke", "unconscious", "not breathing",
)

# Ordered: first match wins. Emergency is checked separately, before these.
INTENT_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("navigation", _pattern(
        "navigate", "navigation", "directions", "route", "go to", "drive to",
        "take me to", "how far", "gas station", "parking", "eta",
    )),
    ("music", _pattern(
        "play", "music", "song", "songs", "album", "artist", "playlist",
        "radio", "pause", "skip", "spotify", "volume",
    )),
    ("phone", _pattern("call", "phone", "dial", "contact", "text message")),
    ("weather", _pattern("weather", "forecast", "rain", "snow", "sunny", "temperature outside")),
    ("climate", _pattern(
        "temperature", "ac", "a/c", "air conditioning", "heat", "heating",
        "cooling", "climate", "defrost", "fan",
    )),
    ("news", _pattern("news", "headlines")),
    ("help", _pattern("help", "assist", "what can you do")),
]

GREETING_PATTERN = _pattern("hello", "hi", "hey", "good morning", "good evening", "good afternoon")

EMERGENCY_RESPONSE = "Emergency detected. I'm contacting emergency services and sharing your location. Stay calm."

FALLBACK_RESPONSES = {
    "navigation": "I can help with navigation. Where would you like to go?",
    "music": "I can control your music. What would you like to listen to?",
    "phone": "I can help with phone calls. Who would you like to call?",
    "weather": "I can check the weather for you. What location?",
    "climate": "I can adjust the climate for you. What temperature would you like?",
    "news": "I can't reach the news right now. Please ask me again in a moment.",
    "help": "I'm CarBot, your car assistant. I can help with navigation, music, calls, weather, and more.",
    CONVERSATION: "I'm here to help. What can I do for you?",
}

GREETING_RESPONSE = "Hello! I'm CarBot, your driving assistant. How can I help you today?"


@dataclass
class FallbackReply:
    """A locally generated reply."""
    category: str
    response: str
    actions: list[dict] = field(default_factory=list)
    reason: str = ""
    fallback: bool = True


def normalize_text(text) -> str:
    """Coerce anything (None, bytes, objects) into a clean single-line string."""
    if text is None:
        return ""
    if isinstance(text, (bytes, bytearray)):
        text = bytes(text).decode("utf-8", errors="replace")
    elif not isinstance(text, str):
        text = str(text)
    # Drop control characters, keep ordinary whitespace
    text = "".join(ch if ch.isprintable() or ch in " \t\n" else " " for ch in text)
    return " ".join(text.split())


def is_emergency(text) -> bool:
    return bool(EMERGENCY_PATTERN.search(normalize_text(text)))


def detect_intent(text) -> str:
    """First matching category in priority order, else 'conversation'."""
    clean = normalize_text(text)
    if not clean:
        return CONVERSATION
    if EMERGENCY_PATTERN.search(clean):
        return EMERGENCY
    for name, pattern in INTENT_PATTERNS:
        if pattern.search(clean):
            return name
    return CONVERSATION


def emergency_actions(text) -> list[dict]:
    actions = [
        {"type": "emergency", "action": "contact_emergency_services"},
        {"type": "location", "action": "share_location"},
    ]
    if MEDICAL_PATTERN.search(normalize_text(text)):
        actions.append({"type": "navigation", "action": "find_hospital"})
    return actions


def emergency_reply(text) -> FallbackReply:
    """Fixed emergency response. Needs nothing remote, so it cannot fail."""
    return FallbackReply(
        category=EMERGENCY,
        response=EMERGENCY_RESPONSE,
        actions=emergency_actions(text),
        reason="emergency",
    )


def extract_actions(response: str) -> list[dict]:
    """UI actions implied by an AI reply ("Starting navigation to ..." etc.)."""
    lowered = (response or "").lower()
    actions = []
    if "starting navigation" in lowered or "calculating route" in lowered or "navigation started" in lowered:
        actions.append({"type": "navigation", "action": "start"})
    if "playing" in lowered or "starting playlist" in lowered:
        actions.append({"type": "music", "action": "play"})
    if "calling" in lowered or "dialing" in lowered:
        actions.append({"type": "phone", "action": "call"})
    return actions


class FallbackRouter:
    """Terminal fallback. `route()` always returns a FallbackReply."""

    def __init__(self, responses: dict[str, str] | None = None, greeting: str = GREETING_RESPONSE):
        self.responses = {**FALLBACK_RESPONSES, **(responses or {})}
        self.greeting = greeting

    def route(self, text, reason: str = "") -> FallbackReply:
        try:
            clean = normalize_text(text)
            category = detect_intent(clean)
            if category == EMERGENCY:
                reply = emergency_reply(clean)
                reply.reason = reason or reply.reason
                return reply
            if category == CONVERSATION and GREETING_PATTERN.search(clean):
                response = self.greeting
            else:
                response = self.responses.get(category, self.responses[CONVERSATION])
            return FallbackReply(category=category, response=response, reason=reason)
        except Exception:
            # Last line of defence: this path must always produce an answer
            logger.exception("Fallback routing failed, using generic reply")
            return FallbackReply(
                category=CONVERSATION,
                response=FALLBACK_RESPONSES[CONVERSATION],
                reason=reason,
            )
