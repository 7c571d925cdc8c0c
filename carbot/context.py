"""
Conversation context: bounded turn history, car state, and prompt assembly.

Every provider request is built the same way:

    [system: base prompt + current car context]
    [history: last K user/assistant turns]
    [user: the new command]

Exactly one system message, always first. Sessions are kept in memory only
and dropped after an idle timeout.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import asdict, dataclass, field, fields, replace

from carbot.models import Message, Role

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = """You are CarBot, an intelligent voice assistant built into the car. You are helpful, concise, and safety-focused.

Key guidelines:
- Keep responses short and clear for safe driving
- Prioritize safety-related information
- Be conversational but professional
- Understand car-specific contexts (navigation, music, calls, climate)
- Respond to commands and questions about car features

Your answers are read aloud, so never use markdown, lists, or code."""

MOVING_HINT = "- The vehicle is moving: answer in one or two short sentences."


class Conversation:
    """Ordered message history bounded to the last `max_turns` user/assistant turns."""

    def __init__(self, max_turns: int = 10):
        self.max_turns = max(1, max_turns)
        self._messages: list[Message] = []

    def append(self, role: Role | str, content: str, **extra) -> Message:
        msg = Message(role=role, content=content, **extra)
        self._messages.append(msg)
        self._truncate()
        return msg

    def add_turn(self, user_text: str, assistant_text: str) -> None:
        self.append(Role.USER, user_text)
        self.append(Role.ASSISTANT, assistant_text)

    def _truncate(self) -> None:
        # One turn = user + assistant
        limit = self.max_turns * 2
        if len(self._messages) > limit:
            self._messages = self._messages[-limit:]

    def snapshot(self) -> list[Message]:
        return list(self._messages)

    def clear(self) -> None:
        self._messages.clear()

    def __len__(self) -> int:
        return len(self._messages)


# camelCase (Android/JS clients) → field name
_CAMEL_KEYS = {
    "navigationActive": "navigation_active",
    "musicPlaying": "music_playing",
    "currentSong": "current_song",
}


@dataclass
class CarState:
    """What the car reports about itself. Every field is optional."""
    speed: float | None = None
    location: str | None = None
    destination: str | None = None
    route: str | None = None
    navigation_active: bool = False
    music_playing: bool = False
    current_song: str | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> "CarState":
        """Build from a client payload. Accepts camelCase or snake_case; ignores unknown keys."""
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise TypeError(f"car context must be an object, got {type(data).__name__}")
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            name = _CAMEL_KEYS.get(key, key)
            if name in known:
                kwargs[name] = value
        if "speed" in kwargs and kwargs["speed"] is not None:
            try:
                kwargs["speed"] = float(kwargs["speed"])
            except (TypeError, ValueError):
                logger.debug("Ignoring non-numeric speed %r", kwargs["speed"])
                kwargs["speed"] = None
        return cls(**kwargs)

    def merge(self, update: "CarState | dict | None") -> "CarState":
        """
        New state with the update layered over this one.
        A dict only touches the keys it carries; a CarState overwrites every non-None field.
        """
        if not update:
            return self
        if isinstance(update, CarState):
            changes = {k: v for k, v in asdict(update).items() if v is not None}
        else:
            parsed = CarState.from_dict(update)
            present = {_CAMEL_KEYS.get(k, k) for k in update}
            changes = {
                f.name: getattr(parsed, f.name)
                for f in fields(CarState)
                if f.name in present and getattr(parsed, f.name) is not None
            }
        return replace(self, **changes)

    @property
    def is_moving(self) -> bool:
        return bool(self.speed and self.speed > 0)

    def to_dict(self) -> dict:
        return asdict(self)


def build_system_prompt(base_prompt: str = DEFAULT_SYSTEM_PROMPT, car_state: CarState | None = None) -> str:
    """Base prompt plus a 'Current car context' block listing only present fields."""
    state = car_state or CarState()
    lines = []
    if state.is_moving:
        lines.append(f"- Vehicle speed: {state.speed:g} mph")
    if state.location:
        lines.append(f"- Current location: {state.location}")
    if state.destination:
        lines.append(f"- Destination: {state.destination}")
    if state.navigation_active:
        lines.append("- Navigation is active")
    if state.music_playing:
        lines.append(f"- Music playing: {state.current_song or 'Unknown'}")
    if state.is_moving:
        lines.append(MOVING_HINT)
    if not lines:
        return base_prompt
    return base_prompt + "\n\nCurrent car context:\n" + "\n".join(lines)


def build_messages(
    conversation: Conversation | None,
    user_text: str,
    car_state: CarState | None = None,
    base_prompt: str = DEFAULT_SYSTEM_PROMPT,
) -> list[Message]:
    """System message, then history (system entries dropped), then the new user message."""
    history = conversation.snapshot() if conversation is not None else []
    messages = [Message(role=Role.SYSTEM, content=build_system_prompt(base_prompt, car_state))]
    messages.extend(m for m in history if m.role != Role.SYSTEM)
    messages.append(Message(role=Role.USER, content=user_text))
    return messages


@dataclass
class Session:
    id: str
    conversation: Conversation
    car_state: CarState = field(default_factory=CarState)
    last_seen: float = 0.0


class SessionStore:
    """
    Session id → Session. In-memory only.
    Thread-safe; sessions idle longer than `ttl_seconds` are evicted.
    """

    def __init__(self, ttl_seconds: float = 1800.0, max_turns: int = 10,
                 max_sessions: int = 1000, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_turns = max_turns
        self.max_sessions = max(1, max_sessions)
        self._clock = clock
        self._sessions: OrderedDict[str, Session] = OrderedDict()
        self._lock = threading.Lock()

    def get_or_create(self, session_id: str | None = None) -> Session:
        """Existing live session, or a fresh one (new id when none given)."""
        self.evict_idle()
        sid = session_id or uuid.uuid4().hex
        now = self._clock()
        with self._lock:
            session = self._sessions.get(sid)
            if session is None:
                while len(self._sessions) >= self.max_sessions:
                    self._sessions.popitem(last=False)
                session = Session(id=sid, conversation=Conversation(self.max_turns))
                self._sessions[sid] = session
                logger.debug("Session %s created", sid)
            session.last_seen = now
            self._sessions.move_to_end(sid)
            return session

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def clear(self, session_id: str) -> bool:
        """Forget a session's history and car state. Returns False if unknown."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        logger.info("Session %s cleared", session_id)
        return True

    def evict_idle(self) -> int:
        cutoff = self._clock() - self.ttl_seconds
        with self._lock:
            stale = [sid for sid, s in self._sessions.items() if s.last_seen < cutoff]
            for sid in stale:
                del self._sessions[sid]
        if stale:
            logger.debug("Evicted %d idle sessions", len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
