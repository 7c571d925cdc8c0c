"""
Voice output helpers.
Replies are read aloud, so markdown and line layout are flattened into plain
sentences before they leave the orchestrator.
"""

from __future__ import annotations

import abc
import logging
import re

logger = logging.getLogger(__name__)

_BOLD = re.compile(r"\*\*([^*]+)\*\*")
_ITALIC = re.compile(r"(?<!\*)\*([^*\n]+)\*(?!\*)")
_UNDERSCORE = re.compile(r"(?<!\w)_([^_]+)_(?!\w)")
_CODE_BLOCK = re.compile(r"```(?:[\w+-]*\n)?(.*?)```", re.DOTALL)
_CODE = re.compile(r"`([^`]+)`")
_HEADING = re.compile(r"^\s{0,3}#{1,6}\s*", re.MULTILINE)
_BULLET = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+", re.MULTILINE)
_NEWLINES = re.compile(r"\s*\n+\s*")
_SPACES = re.compile(r"[ \t]+")
_DOUBLE_STOP = re.compile(r"([.!?:;])\s*\.")


def optimize_for_voice(text: str | None) -> str:
    """Strip markdown emphasis/code, turn line breaks into sentence breaks, collapse whitespace."""
    if not text:
        return ""
    out = _CODE_BLOCK.sub(r"\1", text)
    out = _CODE.sub(r"\1", out)
    out = _HEADING.sub("", out)
    out = _BULLET.sub("", out)
    out = _BOLD.sub(r"\1", out)
    out = _ITALIC.sub(r"\1", out)
    out = _UNDERSCORE.sub(r"\1", out)
    out = _NEWLINES.sub(". ", out.strip())
    out = _SPACES.sub(" ", out)
    out = _DOUBLE_STOP.sub(r"\1", out)
    return out.strip()


class Speaker(abc.ABC):
    """Text-to-speech collaborator. The orchestrator never waits for playback."""

    @abc.abstractmethod
    async def speak(self, text: str) -> None:
        ...


class NullSpeaker(Speaker):
    """No audio output (server deployments, tests)."""

    async def speak(self, text: str) -> None:
        return None


class LogSpeaker(Speaker):
    """Logs what would have been spoken. Handy when running headless."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    async def speak(self, text: str) -> None:
        logger.log(self.level, "SPEAK: %s", text)
