"""
Tests for retry policy and circuit breakers.
Clock, sleep and jitter are injected so every test is deterministic.
Run with: pytest tests/test_resilience.py
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from carbot.errors import (
    AdapterError,
    CircuitOpenError,
    MalformedResponseError,
    ProviderExhaustedError,
    ProviderRequestError,
)
from carbot.models import Message, Role
from carbot.providers.registry import ProviderRegistry
from carbot.resilience import CircuitBreaker, RetryController, backoff_delay, jittered

OK_PAYLOAD = {"model": "gpt-3.5-turbo", "choices": [{"message": {"content": "OK"}}]}
MESSAGES = [Message(role=Role.USER, content="Hello")]

class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

def _timeout():
    return ProviderRequestError("Timeout after 12s", retryable=True)

def _controller(client, clock=None, **kwargs):
    return RetryController(
        ProviderRegistry(),
        client=client,
        api_keys={"openai": "sk-test"},
        clock=clock or FakeClock(),
        sleep=AsyncMock(),
        rand=lambda: 0.0,
        **kwargs,
    )

# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------

def test_backoff_is_non_decreasing_and_capped():
    delays = [backoff_delay(n, base=1.0, factor=1.5, cap=8.0) for n in range(1, 25)]
    assert delays[0] == 1.0
    assert delays[1] == 1.5
    assert all(a <= b for a, b in zip(delays, delays[1:]))
    assert max(delays) == 8.0

def test_jitter_bounds():
    assert jittered(2.0, 0.2, rand=lambda: 0.0) == 2.0
    assert jittered(2.0, 0.2, rand=lambda: 1.0) == pytest.approx(2.4)

# ---------------------------------------------------------------------------
# CircuitBreaker
# ---------------------------------------------------------------------------

def test_breaker_opens_at_threshold():
    clock = FakeClock()
    b = CircuitBreaker("openai", threshold=3, cooldown=60, clock=clock)
    b.record_failure()
    b.record_failure()
    b.before_call()  # still closed
    b.record_failure()
    assert b.is_open
    with pytest.raises(CircuitOpenError) as exc:
        b.before_call()
    assert exc.value.retry_after == pytest.approx(60)

def test_breaker_success_resets_counter():
    b = CircuitBreaker("openai", threshold=3, clock=FakeClock())
    b.record_failure()
    b.record_failure()
    b.record_success()
    assert b.consecutive_failures == 0
    b.record_failure()
    b.record_failure()
    assert not b.is_open

def test_breaker_half_open_single_probe():
    clock = FakeClock()
    b = CircuitBreaker("openai", threshold=1, cooldown=60, clock=clock)
    assert b.before_call() is False  # closed: ordinary call
    b.record_failure()
    clock.advance(61)
    probe = b.before_call()
    assert probe is True
    with pytest.raises(CircuitOpenError):
        b.before_call()  # second caller while probe in flight
    b.record_success(probe)
    assert not b.is_open
    assert b.snapshot()["state"] == "closed"

def test_breaker_failed_probe_reopens_for_full_cooldown():
    clock = FakeClock()
    b = CircuitBreaker("openai", threshold=1, cooldown=60, clock=clock)
    b.record_failure()
    clock.advance(61)
    probe = b.before_call()
    b.record_failure(probe)
    assert b.is_open
    clock.advance(30)
    with pytest.raises(CircuitOpenError):
        b.before_call()

def test_late_success_does_not_close_open_breaker():
    clock = FakeClock()
    b = CircuitBreaker("openai", threshold=1, cooldown=60, clock=clock)
    slow = b.before_call()  # admitted while closed
    b.record_failure()      # another call opens the breaker
    b.record_success(slow)
    assert b.is_open
    with pytest.raises(CircuitOpenError):
        b.before_call()

def test_late_failure_does_not_hijack_probe():
    clock = FakeClock()
    b = CircuitBreaker("openai", threshold=1, cooldown=60, clock=clock)
    slow = b.before_call()
    b.record_failure()
    clock.advance(61)
    probe = b.before_call()
    b.record_failure(slow)  # the old call finally fails
    # Probe still owns the half-open slot and cooldown was not restarted
    assert b.snapshot()["probing"] is True
    b.record_success(probe)
    assert not b.is_open

# ---------------------------------------------------------------------------
# RetryController
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_two_timeouts_then_success():
    client = MagicMock()
    client.send = AsyncMock(side_effect=[_timeout(), _timeout(), OK_PAYLOAD])
    ctl = _controller(client, max_retries=3)

    result = await ctl.call("openai", MESSAGES)

    assert result.content == "OK"
    assert result.cached is False
    assert result.provider_id == "openai"
    assert result.attempts == 3
    assert ctl.breaker("openai").consecutive_failures == 0
    assert client.send.await_count == 3
    delays = [c.args[0] for c in ctl._sleep.await_args_list]
    assert delays == [1.0, 1.5]

@pytest.mark.asyncio
async def test_exhausted_after_max_retries():
    client = MagicMock()
    client.send = AsyncMock(side_effect=_timeout())
    ctl = _controller(client, max_retries=3)

    with pytest.raises(ProviderExhaustedError) as exc:
        await ctl.call("openai", MESSAGES)

    assert len(exc.value.errors) == 3
    assert isinstance(exc.value.last_error, ProviderRequestError)
    assert ctl.breaker("openai").consecutive_failures == 1
    # No sleep after the final attempt
    assert ctl._sleep.await_count == 2

@pytest.mark.asyncio
async def test_breaker_rejects_without_network_after_threshold():
    """Five failing calls with threshold 3: calls 4 and 5 never reach the network."""
    client = MagicMock()
    client.send = AsyncMock(side_effect=ProviderRequestError("HTTP 500", status_code=500))
    ctl = _controller(client, max_retries=1, failure_threshold=3, cooldown=60)

    for _ in range(3):
        with pytest.raises(ProviderExhaustedError):
            await ctl.call("openai", MESSAGES)
    for _ in range(2):
        with pytest.raises(CircuitOpenError):
            await ctl.call("openai", MESSAGES)

    assert client.send.await_count == 3
    assert ctl.breakers()["openai"]["state"] == "open"

@pytest.mark.asyncio
async def test_non_retryable_status_stops_immediately():
    client = MagicMock()
    client.send = AsyncMock(side_effect=ProviderRequestError("HTTP 401", status_code=401, retryable=False))
    ctl = _controller(client, max_retries=3)

    with pytest.raises(ProviderExhaustedError):
        await ctl.call("openai", MESSAGES)

    assert client.send.await_count == 1
    assert ctl._sleep.await_count == 0
    assert ctl.breaker("openai").consecutive_failures == 1

@pytest.mark.asyncio
async def test_malformed_response_not_retried():
    client = MagicMock()
    client.send = AsyncMock(return_value={"choices": []})
    ctl = _controller(client, max_retries=3)

    with pytest.raises(ProviderExhaustedError) as exc:
        await ctl.call("openai", MESSAGES)

    assert isinstance(exc.value.last_error, MalformedResponseError)
    assert client.send.await_count == 1

@pytest.mark.asyncio
async def test_adapter_error_leaves_breaker_alone():
    client = MagicMock()
    client.send = AsyncMock(return_value=OK_PAYLOAD)
    ctl = _controller(client)

    with pytest.raises(AdapterError):
        await ctl.call("openai", [])

    assert client.send.await_count == 0
    assert ctl.breaker("openai").consecutive_failures == 0

@pytest.mark.asyncio
async def test_breakers_are_per_provider():
    client = MagicMock()
    client.send = AsyncMock(side_effect=_timeout())
    ctl = _controller(client, max_retries=1, failure_threshold=1)

    with pytest.raises(ProviderExhaustedError):
        await ctl.call("openai", MESSAGES)

    assert ctl.breaker("openai").is_open
    assert not ctl.breaker("groq").is_open
    assert ctl.breaker("chatgpt") is ctl.breaker("openai")

@pytest.mark.asyncio
async def test_probe_after_cooldown_closes_breaker():
    clock = FakeClock()
    client = MagicMock()
    client.send = AsyncMock(side_effect=[_timeout(), OK_PAYLOAD])
    ctl = _controller(client, clock=clock, max_retries=1, failure_threshold=1, cooldown=60)

    with pytest.raises(ProviderExhaustedError):
        await ctl.call("openai", MESSAGES)
    with pytest.raises(CircuitOpenError):
        await ctl.call("openai", MESSAGES)

    clock.advance(60)
    result = await ctl.call("openai", MESSAGES)
    assert result.content == "OK"
    assert not ctl.breaker("openai").is_open

@pytest.mark.asyncio
async def test_cancelled_call_releases_probe():
    clock = FakeClock()
    client = MagicMock()
    client.send = AsyncMock(side_effect=[_timeout(), asyncio.CancelledError(), OK_PAYLOAD])
    ctl = _controller(client, clock=clock, max_retries=1, failure_threshold=1, cooldown=60)

    with pytest.raises(ProviderExhaustedError):
        await ctl.call("openai", MESSAGES)
    clock.advance(60)
    with pytest.raises(asyncio.CancelledError):
        await ctl.call("openai", MESSAGES)

    # Probe slot is free again
    result = await ctl.call("openai", MESSAGES)
    assert result.content == "OK"


class GatedClient:
    """First call waits for `release`, then succeeds; later calls fail with 401."""

    def __init__(self):
        self.release = asyncio.Event()
        self.calls = 0

    async def send(self, request, timeout=None):
        self.calls += 1
        if self.calls == 1:
            await self.release.wait()
            return OK_PAYLOAD
        raise ProviderRequestError("HTTP 401", status_code=401, retryable=False)


@pytest.mark.asyncio
async def test_in_flight_success_does_not_close_breaker_opened_meanwhile():
    clock = FakeClock()
    client = GatedClient()
    ctl = _controller(client, clock=clock, max_retries=1, failure_threshold=1, cooldown=60)

    slow = asyncio.create_task(ctl.call("openai", MESSAGES))
    await asyncio.sleep(0)  # slow call is now waiting on the network

    with pytest.raises(ProviderExhaustedError):
        await ctl.call("openai", MESSAGES)
    assert ctl.breaker("openai").is_open

    client.release.set()
    result = await slow
    assert result.content == "OK"

    # Still inside the cooldown: the late success must not have closed it
    assert ctl.breaker("openai").is_open
    with pytest.raises(CircuitOpenError):
        await ctl.call("openai", MESSAGES)
    assert client.calls == 2
