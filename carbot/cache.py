"""
Response cache: short-TTL, size-bounded, keyed on a prompt fingerprint.

Drivers repeat themselves ("what's the weather", "what's the weather?").
Repeats inside the TTL window are answered from memory instead of hitting
the provider again.

Thread-safe LRU: OrderedDict + lock, oldest entry evicted when full.
"""

from __future__ import annotations

import hashlib
import logging
import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass

from carbot.models import GenerationResult

logger = logging.getLogger(__name__)

_WS = re.compile(r"\s+")


def make_key(last_user_message: str, temperature: float, provider_id: str) -> str:
    """Fingerprint of (last user message, temperature, provider)."""
    text = _WS.sub(" ", (last_user_message or "").strip().lower())
    raw = f"{provider_id.lower()}\x1f{float(temperature):.3f}\x1f{text}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    key: str
    value: GenerationResult
    inserted_at: float


class ResponseCache:
    """In-memory TTL + LRU cache of GenerationResults."""

    def __init__(self, ttl_seconds: float = 300.0, max_entries: int = 50, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> GenerationResult | None:
        """Return the stored result, or None on miss/expiry."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if now - entry.inserted_at >= self.ttl_seconds:
                del self._entries[key]
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return entry.value

    def put(self, key: str, result: GenerationResult) -> None:
        now = self._clock()
        with self._lock:
            self._entries[key] = CacheEntry(key=key, value=result, inserted_at=now)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Response cache evicted %s", evicted[:12])

    def evict_expired(self) -> int:
        """Drop everything past its TTL. Returns number removed."""
        cutoff = self._clock() - self.ttl_seconds
        with self._lock:
            stale = [k for k, e in self._entries.items() if e.inserted_at <= cutoff]
            for k in stale:
                del self._entries[k]
        if stale:
            logger.debug("Response cache expired %d entries", len(stale))
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict:
        with self._lock:
            size = len(self._entries)
        return {
            "size": size,
            "max_entries": self.max_entries,
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
        }
