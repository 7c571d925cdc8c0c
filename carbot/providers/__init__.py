"""
Hosted LLM providers for CarBot.
Static registry, per-shape request/response adapters, and the HTTP transport.
"""
from carbot.providers.registry import DEFAULT_PROVIDERS, ProviderConfig, ProviderRegistry
from carbot.providers.adapters import WireRequest, build_request, parse_response
from carbot.providers.client import ProviderClient, is_retryable_status

__all__ = [
    "DEFAULT_PROVIDERS",
    "ProviderConfig",
    "ProviderRegistry",
    "WireRequest",
    "build_request",
    "parse_response",
    "ProviderClient",
    "is_retryable_status",
]
