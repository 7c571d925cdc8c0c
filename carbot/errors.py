"""
Error taxonomy for CarBot.

Every failure on the provider path is one of these. The retry controller
either returns a result or raises one of them; only the fallback router
is allowed to turn an error into a (degraded) reply.
"""

from __future__ import annotations


class CarBotError(Exception):
    """Base class for all CarBot errors."""


class ConfigError(CarBotError):
    """Configuration is unusable (unknown provider, no API key at all, ...)."""


class UnknownProviderError(CarBotError):
    """Provider id is not in the registry."""

    def __init__(self, provider_id: str):
        super().__init__(f"Unknown provider '{provider_id}'")
        self.provider_id = provider_id


class AdapterError(CarBotError):
    """A wire request could not be built. Never retried, it is a config bug."""


class ProviderRequestError(CarBotError):
    """
    Network or HTTP-level failure talking to a provider.
    `retryable` decides whether the retry loop keeps going.
    """

    def __init__(self, message: str, status_code: int | None = None, retryable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class MalformedResponseError(CarBotError):
    """Provider answered 2xx but the body has no usable text. Not retried."""

    retryable = False


class CircuitOpenError(CarBotError):
    """Provider skipped on purpose: its breaker is open."""

    def __init__(self, provider_id: str, retry_after: float = 0.0):
        super().__init__(
            f"Circuit open for '{provider_id}' (retry in {retry_after:.1f}s)"
        )
        self.provider_id = provider_id
        self.retry_after = retry_after


class ProviderExhaustedError(CarBotError):
    """All attempts against a provider failed. Carries every attempt error."""

    def __init__(self, provider_id: str, errors: list[Exception]):
        last = errors[-1] if errors else None
        super().__init__(
            f"Provider '{provider_id}' failed after {len(errors)} attempt(s): {last}"
        )
        self.provider_id = provider_id
        self.errors = list(errors)

    @property
    def last_error(self) -> Exception | None:
        return self.errors[-1] if self.errors else None


class FunctionCallError(CarBotError):
    """A model-requested car function is unknown, got bad arguments, or failed."""

    def __init__(self, name: str, message: str):
        super().__init__(f"Function '{name}': {message}")
        self.name = name
