"""
Retry + circuit breaker around a single logical generation call.

Retry policy (per logical call):
- up to max_retries attempts
- retryable: timeouts, connection errors, HTTP 429/500/502/503/504
- not retried: malformed responses, auth failures, other 4xx
- backoff between attempts: base * 1.5^(attempt-1), capped, + up to 20% jitter

Circuit breaker (one per provider):
- every failed logical call bumps consecutive_failures; success resets it
- at `threshold` consecutive failures the breaker opens
- while open and inside the cooldown, calls fail fast with CircuitOpenError
- after the cooldown one probe call is let through; success closes the
  breaker, failure re-opens it for another full cooldown
- outcomes of calls admitted before the breaker opened never close or
  re-open it; only the probe decides

Breaker locks only guard in-memory state and are never held across network I/O.
"""

from __future__ import annotations

import asyncio
import logging
import random
import threading
import time
from dataclasses import asdict, dataclass

from carbot.errors import (
    CircuitOpenError,
    MalformedResponseError,
    ProviderExhaustedError,
    ProviderRequestError,
)
from carbot.models import GenerationOptions, GenerationResult, Message
from carbot.providers.adapters import build_request, parse_response
from carbot.providers.client import ProviderClient
from carbot.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base: float = 1.0, factor: float = 1.5, cap: float = 8.0) -> float:
    """Delay (seconds) after failed attempt N, before jitter. Non-decreasing, never above cap."""
    if attempt < 1:
        attempt = 1
    return min(base * factor ** (attempt - 1), cap)


def jittered(delay: float, jitter: float = 0.2, rand=random.random) -> float:
    """Add up to `jitter` (fraction) random extra delay."""
    return delay + rand() * jitter * delay


@dataclass
class CircuitBreakerState:
    consecutive_failures: int = 0
    last_failure_time: float | None = None
    opened_at: float | None = None
    is_open: bool = False
    probing: bool = False


class CircuitBreaker:
    """Per-provider failure isolation. Thread-safe."""

    def __init__(self, provider_id: str, threshold: int = 5, cooldown: float = 60.0, clock=time.monotonic):
        self.provider_id = provider_id
        self.threshold = max(1, threshold)
        self.cooldown = cooldown
        self._clock = clock
        self._state = CircuitBreakerState()
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._state.is_open

    @property
    def consecutive_failures(self) -> int:
        return self._state.consecutive_failures

    def before_call(self) -> bool:
        """
        Gate a call. Raises CircuitOpenError if the provider must be skipped.
        Returns True when this call is the half-open probe; pass that flag back
        to record_success / record_failure / release_probe.
        """
        with self._lock:
            st = self._state
            if not st.is_open:
                return False
            elapsed = self._clock() - (st.opened_at or 0.0)
            if elapsed < self.cooldown:
                raise CircuitOpenError(self.provider_id, self.cooldown - elapsed)
            if st.probing:
                # One probe at a time; everybody else keeps failing fast
                raise CircuitOpenError(self.provider_id, 0.0)
            st.probing = True
        logger.info("Circuit for '%s' cooled down, sending probe", self.provider_id)
        return True

    def record_success(self, probe: bool = False) -> None:
        with self._lock:
            st = self._state
            if st.is_open and not probe:
                # Admitted before the breaker opened; only the probe may close it
                stale = True
            else:
                stale = False
                was_open = st.is_open
                st.consecutive_failures = 0
                st.is_open = False
                st.opened_at = None
                st.probing = False
        if stale:
            logger.debug("Late success from '%s' ignored, circuit stays open", self.provider_id)
        elif was_open:
            logger.info("Circuit for '%s' closed after successful probe", self.provider_id)

    def record_failure(self, probe: bool = False) -> None:
        now = self._clock()
        with self._lock:
            st = self._state
            st.consecutive_failures += 1
            st.last_failure_time = now
            reopened = opened = False
            if probe and st.is_open:
                st.probing = False
                st.opened_at = now
                reopened = True
            elif not st.is_open and st.consecutive_failures >= self.threshold:
                st.is_open = True
                st.opened_at = now
                opened = True
            failures = st.consecutive_failures
        if reopened:
            logger.warning("Probe to '%s' failed, circuit re-opened", self.provider_id)
        elif opened:
            logger.warning(
                "Circuit for '%s' opened after %d consecutive failures (cooldown %.0fs)",
                self.provider_id, failures, self.cooldown,
            )

    def release_probe(self, probe: bool = True) -> None:
        """Give back a probe slot without an outcome (cancelled call)."""
        if not probe:
            return
        with self._lock:
            self._state.probing = False

    def snapshot(self) -> dict:
        with self._lock:
            data = asdict(self._state)
        data["state"] = "open" if data["is_open"] else "closed"
        return data


class RetryController:
    """
    `call(provider_id, messages, options)` → GenerationResult, or raises one of
    CircuitOpenError / ProviderExhaustedError / AdapterError / UnknownProviderError.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        client: ProviderClient | None = None,
        api_keys: dict[str, str] | None = None,
        max_retries: int = 3,
        timeout: float = 12.0,
        backoff_base: float = 1.0,
        backoff_factor: float = 1.5,
        backoff_max: float = 8.0,
        jitter: float = 0.2,
        failure_threshold: int = 5,
        cooldown: float = 60.0,
        clock=time.monotonic,
        sleep=asyncio.sleep,
        rand=random.random,
    ):
        self.registry = registry
        self.client = client or ProviderClient(timeout=timeout)
        self.api_keys = dict(api_keys or {})
        self.max_retries = max(1, max_retries)
        self.timeout = timeout
        self.backoff_base = backoff_base
        self.backoff_factor = backoff_factor
        self.backoff_max = backoff_max
        self.jitter = jitter
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self._clock = clock
        self._sleep = sleep
        self._rand = rand
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def breaker(self, provider_id: str) -> CircuitBreaker:
        """Get or create the breaker for a provider (exactly one per provider)."""
        pid = self.registry.resolve_id(provider_id)
        with self._lock:
            breaker = self._breakers.get(pid)
            if breaker is None:
                breaker = CircuitBreaker(
                    pid,
                    threshold=self.failure_threshold,
                    cooldown=self.cooldown,
                    clock=self._clock,
                )
                self._breakers[pid] = breaker
            return breaker

    def breakers(self) -> dict[str, dict]:
        with self._lock:
            items = list(self._breakers.items())
        return {pid: b.snapshot() for pid, b in items}

    def backoff_seconds(self, attempt: int) -> float:
        delay = backoff_delay(attempt, self.backoff_base, self.backoff_factor, self.backoff_max)
        return jittered(delay, self.jitter, self._rand)

    async def call(
        self,
        provider_id: str,
        messages: list[Message | dict],
        options: GenerationOptions | None = None,
    ) -> GenerationResult:
        options = options or GenerationOptions()
        provider = self.registry.get(provider_id)
        model = options.model or provider.default_model

        # Local bug, not the provider's fault: AdapterError, breaker untouched
        request = build_request(messages, options, provider, self.api_keys.get(provider.id, ""))

        breaker = self.breaker(provider.id)
        probe = breaker.before_call()

        errors: list[Exception] = []
        t0 = self._clock()
        try:
            for attempt in range(1, self.max_retries + 1):
                try:
                    payload = await self.client.send(request, timeout=self.timeout)
                    result = parse_response(payload, provider, model)
                except (ProviderRequestError, MalformedResponseError) as e:
                    errors.append(e)
                    if not getattr(e, "retryable", False):
                        logger.warning(
                            "Provider '%s' non-retryable failure on attempt %d: %s",
                            provider.id, attempt, e,
                        )
                        break
                    if attempt < self.max_retries:
                        delay = self.backoff_seconds(attempt)
                        logger.warning(
                            "Provider '%s' transient failure, retry in %.2fs (%d/%d): %s",
                            provider.id, delay, attempt, self.max_retries, e,
                        )
                        await self._sleep(delay)
                    continue

                breaker.record_success(probe)
                result.attempts = attempt
                result.latency_ms = (self._clock() - t0) * 1000
                logger.info(
                    "Provider '%s' answered with model '%s' (attempt %d)",
                    provider.id, result.model_id, attempt,
                )
                return result
        except asyncio.CancelledError:
            # Abandoned session: no outcome to record
            breaker.release_probe(probe)
            raise
        except Exception as e:
            logger.exception("Unexpected error calling provider '%s'", provider.id)
            errors.append(e)
            breaker.record_failure(probe)
            raise ProviderExhaustedError(provider.id, errors) from e

        breaker.record_failure(probe)
        logger.error(
            "Provider '%s' exhausted after %d attempt(s): %s",
            provider.id, len(errors), errors[-1] if errors else "no attempts",
        )
        raise ProviderExhaustedError(provider.id, errors)
