"""
CarAssistant: turns one spoken command into one spoken reply.

Flow per command:
  1. Emergency wording → fixed local reply + emergency_activated event.
     No provider is contacted.
  2. No usable provider (none configured, no keys) → fallback router.
  3. Build [system + car context, history, user] messages.
  4. For each provider in the configured chain (primary, then the explicit
     fallback_providers list): serve from cache if possible, otherwise call
     through the RetryController. An open breaker, an exhausted provider, or
     an adapter failure moves on to the next provider. Once a car function
     has run, the chain stops: if the follow-up round fails, the function
     result itself is spoken.
  5. Everything failed → fallback router, reply tagged fallback=True.
  6. Success → voice-optimise, cache, remember the turn, derive UI actions,
     publish reply_ready, hand the text to the speaker (not awaited).

One instance is built at startup and shared by all request handlers.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import replace

from carbot.cache import ResponseCache, make_key
from carbot.config import build_registry, provider_chain, resolve_api_keys, validate_config
from carbot.context import DEFAULT_SYSTEM_PROMPT, Session, SessionStore, build_messages
from carbot.errors import (
    AdapterError,
    CarBotError,
    CircuitOpenError,
    FunctionCallError,
    ProviderExhaustedError,
)
from carbot.events import (
    EMERGENCY_ACTIVATED,
    MUSIC_STATE_CHANGED,
    NAVIGATION_STARTED,
    REPLY_READY,
    EventBus,
)
from carbot.fallback import FallbackRouter, detect_intent, emergency_reply, extract_actions, is_emergency, normalize_text
from carbot.functions import FunctionRegistry, functions_for_intent
from carbot.models import AssistantReply, GenerationOptions, GenerationResult, Message, Role
from carbot.providers.client import ProviderClient
from carbot.resilience import RetryController
from carbot.voice import LogSpeaker, NullSpeaker, Speaker, optimize_for_voice

logger = logging.getLogger(__name__)


class CarAssistant:
    """Orchestrates context, cache, providers, functions and fallback for one command."""

    def __init__(
        self,
        controller: RetryController,
        provider_chain: list[str] | None = None,
        cache: ResponseCache | None = None,
        sessions: SessionStore | None = None,
        fallback: FallbackRouter | None = None,
        events: EventBus | None = None,
        functions: FunctionRegistry | None = None,
        speaker: Speaker | None = None,
        options: GenerationOptions | None = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        use_functions: bool = True,
    ):
        self.controller = controller
        self.registry = controller.registry
        self.provider_chain: list[str] = []
        for pid in provider_chain or []:
            canonical = self.registry.resolve_id(pid)
            if canonical not in self.provider_chain:
                self.provider_chain.append(canonical)
        self.cache = cache if cache is not None else ResponseCache()
        self.sessions = sessions if sessions is not None else SessionStore()
        self.fallback = fallback or FallbackRouter()
        self.events = events or EventBus()
        self.functions = functions if functions is not None else FunctionRegistry()
        self.speaker = speaker or NullSpeaker()
        self.options = options or GenerationOptions()
        self.system_prompt = system_prompt
        self.use_functions = use_functions

        self._speech_tasks: set[asyncio.Task] = set()
        self._stats = {
            "requests": 0,
            "successes": 0,
            "failures": 0,
            "fallbacks": 0,
            "emergencies": 0,
            "cache_hits": 0,
        }
        self._latency_total_ms = 0.0

        logger.info(
            "CarAssistant ready: providers %s",
            " → ".join(self.provider_chain) or "(none, fallback only)",
        )

    # ------------------------------------------------------------------
    # Provider selection
    # ------------------------------------------------------------------

    def usable_providers(self) -> list[str]:
        """Chain members that can actually be called (key present or not needed)."""
        usable = []
        for pid in self.provider_chain:
            provider = self.registry.get(pid)
            if provider.requires_key and not self.controller.api_keys.get(pid):
                continue
            usable.append(pid)
        return usable

    @property
    def primary(self) -> str | None:
        return self.provider_chain[0] if self.provider_chain else None

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def handle(
        self,
        text,
        car_context: dict | None = None,
        session_id: str | None = None,
        fresh: bool = False,
    ) -> AssistantReply:
        t0 = time.monotonic()
        self._stats["requests"] += 1
        text = normalize_text(text)

        session = self.sessions.get_or_create(session_id)
        if car_context:
            session.car_state = session.car_state.merge(car_context)

        if is_emergency(text):
            return self._emergency(text, session)

        providers = self.usable_providers()
        if not text:
            return self._fallback(text, session, "empty_input")
        if not providers:
            return self._fallback(text, session, "no_provider")

        intent = detect_intent(text)
        messages = build_messages(session.conversation, text, session.car_state, self.system_prompt)
        options = replace(self.options, fresh=fresh)

        errors: list[CarBotError] = []
        for pid in providers:
            key = make_key(text, options.temperature, pid)
            if not options.fresh:
                hit = self.cache.get(key)
                if hit is not None:
                    self._stats["cache_hits"] += 1
                    logger.debug("Cache hit for provider '%s'", pid)
                    return self._success(text, session, intent, hit.as_cached(), extract_actions(hit.content), t0)

            try:
                result, actions = await self._generate(pid, messages, options, intent)
            except (CircuitOpenError, ProviderExhaustedError, AdapterError) as e:
                self._stats["failures"] += 1
                errors.append(e)
                logger.warning("Provider '%s' unavailable, moving on: %s", pid, e)
                continue
            except FunctionCallError as e:
                self._stats["failures"] += 1
                logger.warning("Car function failed via '%s': %s", pid, e)
                return self._fallback(text, session, "function_error")

            result = replace(result, content=optimize_for_voice(result.content))
            if not actions:
                # Function-driven replies have side effects and are never replayed
                self.cache.put(key, result)
                actions = extract_actions(result.content)
            return self._success(text, session, intent, result, actions, t0)

        if errors and all(isinstance(e, CircuitOpenError) for e in errors):
            reason = "circuit_open"
        else:
            reason = "all_providers_failed"
        return self._fallback(text, session, reason)

    async def _generate(
        self,
        provider_id: str,
        messages: list[Message],
        options: GenerationOptions,
        intent: str,
    ) -> tuple[GenerationResult, list[dict]]:
        """One provider round, plus a follow-up round if the model asked for a car function."""
        provider = self.registry.get(provider_id)
        names = functions_for_intent(intent) if self.use_functions and provider.supports_functions else []
        call_options = replace(options, functions=self.functions.schemas(names)) if names else options

        result = await self.controller.call(provider_id, messages, call_options)
        if not result.function_call:
            return result, []

        call = result.function_call
        name = call.get("name", "") if isinstance(call, dict) else ""
        outcome = self.functions.call(name, call.get("arguments") if isinstance(call, dict) else None)
        action = outcome.get("action")
        self._publish_action(action)

        spoken_outcome = {k: v for k, v in outcome.items() if k != "action"}
        followup = list(messages) + [
            Message(role=Role.ASSISTANT, content=result.content or None, function_call=call),
            Message(role=Role.FUNCTION, content=json.dumps(spoken_outcome), name=name),
        ]
        try:
            final = await self.controller.call(provider_id, followup, replace(options, functions=[]))
        except (CircuitOpenError, ProviderExhaustedError, AdapterError) as e:
            # The function already ran; another provider would run it again
            logger.warning(
                "Follow-up to '%s' after %s failed, answering from the function result: %s",
                provider_id, name, e,
            )
            final = replace(result, content="", attempts=0, latency_ms=0.0)
        if not final.content.strip():
            final = replace(final, content=str(outcome.get("message", "")))
        final = replace(final, attempts=result.attempts + final.attempts,
                        latency_ms=result.latency_ms + final.latency_ms, function_call=None)
        return final, [action] if action else []

    # ------------------------------------------------------------------
    # Reply paths
    # ------------------------------------------------------------------

    def _success(self, text: str, session: Session, intent: str, result: GenerationResult,
                 actions: list[dict], t0: float) -> AssistantReply:
        latency = (time.monotonic() - t0) * 1000
        self._stats["successes"] += 1
        self._latency_total_ms += latency
        session.conversation.add_turn(text, result.content)

        reply = AssistantReply(
            response=result.content,
            intent=intent,
            actions=actions,
            provider=result.provider_id,
            model=result.model_id,
            fallback=False,
            cached=result.cached,
            session_id=session.id,
        )
        logger.info(
            "Reply via '%s' (intent=%s, cached=%s, %.0fms)",
            reply.provider, intent, reply.cached, latency,
        )
        self.events.publish(
            REPLY_READY, session_id=session.id, intent=intent,
            provider=reply.provider, fallback=False,
        )
        self._speak(reply.response)
        return reply

    def _emergency(self, text: str, session: Session) -> AssistantReply:
        self._stats["emergencies"] += 1
        local = emergency_reply(text)
        logger.warning("Emergency command detected, answering locally")
        self.events.publish(
            EMERGENCY_ACTIVATED, text=text, actions=local.actions,
            location=session.car_state.location,
        )
        reply = AssistantReply(
            response=local.response,
            intent=local.category,
            actions=local.actions,
            fallback=True,
            fallback_reason=local.reason,
            session_id=session.id,
        )
        self._speak(reply.response)
        return reply

    def _fallback(self, text: str, session: Session, reason: str) -> AssistantReply:
        self._stats["fallbacks"] += 1
        local = self.fallback.route(text, reason)
        logger.info("Fallback reply (reason=%s, intent=%s)", reason, local.category)
        reply = AssistantReply(
            response=local.response,
            intent=local.category,
            actions=local.actions,
            fallback=True,
            fallback_reason=reason,
            session_id=session.id,
        )
        self.events.publish(
            REPLY_READY, session_id=session.id, intent=reply.intent,
            provider="", fallback=True,
        )
        self._speak(reply.response)
        return reply

    def _publish_action(self, action: dict | None) -> None:
        if not action:
            return
        if action.get("type") == "navigation" and action.get("action") == "start":
            self.events.publish(NAVIGATION_STARTED, destination=action.get("destination", ""))
        elif action.get("type") == "music":
            self.events.publish(MUSIC_STATE_CHANGED, action=action.get("action", ""), query=action.get("query", ""))

    # ------------------------------------------------------------------
    # Speech (fire-and-forget)
    # ------------------------------------------------------------------

    def _speak(self, text: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._speak_safely(text))
        self._speech_tasks.add(task)
        task.add_done_callback(self._speech_tasks.discard)

    async def _speak_safely(self, text: str) -> None:
        try:
            await self.speaker.speak(text)
        except Exception as e:
            # Playback problems never affect the reply already returned
            logger.warning("Speaker failed: %s", e)

    async def close(self) -> None:
        """Cancel pending speech. Called on shutdown."""
        tasks = list(self._speech_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def clear_session(self, session_id: str) -> bool:
        return self.sessions.clear(session_id)

    def stats(self) -> dict:
        successes = self._stats["successes"]
        requests = self._stats["requests"]
        return {
            **self._stats,
            "success_rate": round(successes / requests, 3) if requests else 0.0,
            "avg_latency_ms": round(self._latency_total_ms / successes, 1) if successes else 0.0,
            "providers": list(self.provider_chain),
            "breakers": self.controller.breakers(),
            "cache": self.cache.stats(),
            "sessions": len(self.sessions),
            "event_subscribers": self.events.subscriber_count,
        }

    async def test_connection(self) -> dict:
        """One short generation against the primary provider."""
        pid = self.primary
        if pid is None:
            return {"success": False, "provider": None, "error": "no provider configured"}
        messages = [Message(role=Role.USER, content="Hello, respond with just OK")]
        options = replace(self.options, max_tokens=10, functions=[])
        try:
            result = await self.controller.call(pid, messages, options)
        except CarBotError as e:
            return {"success": False, "provider": pid, "error": str(e)}
        return {
            "success": True,
            "provider": pid,
            "model": result.model_id,
            "latency_ms": round(result.latency_ms, 1),
            "response": result.content,
        }


def build_speaker(name: str) -> Speaker:
    if name == "log":
        return LogSpeaker()
    return NullSpeaker()


def build_assistant(cfg: dict, client: ProviderClient | None = None,
                    speaker: Speaker | None = None, environ=None) -> CarAssistant:
    """Wire a CarAssistant from a loaded config dict. Raises ConfigError if unusable."""
    registry = build_registry(cfg)
    api_keys = resolve_api_keys(cfg, registry, environ)
    validate_config(cfg, registry, api_keys)

    res = cfg.get("resilience", {})
    ai = cfg.get("ai", {})
    ctx = cfg.get("context", {})
    cache_cfg = cfg.get("cache", {})

    controller = RetryController(
        registry,
        client=client,
        api_keys=api_keys,
        max_retries=res.get("max_retries", 3),
        timeout=res.get("timeout", 12.0),
        backoff_base=res.get("backoff_base", 1.0),
        backoff_factor=res.get("backoff_factor", 1.5),
        backoff_max=res.get("backoff_max", 8.0),
        jitter=res.get("jitter", 0.2),
        failure_threshold=res.get("breaker_threshold", 5),
        cooldown=res.get("breaker_cooldown", 60.0),
    )
    return CarAssistant(
        controller,
        provider_chain=provider_chain(cfg),
        cache=ResponseCache(
            ttl_seconds=cache_cfg.get("ttl_seconds", 300.0),
            max_entries=cache_cfg.get("max_entries", 50),
        ),
        sessions=SessionStore(
            ttl_seconds=ctx.get("session_ttl_seconds", 1800.0),
            max_turns=ctx.get("max_turns", 10),
        ),
        events=EventBus(queue_size=cfg.get("events", {}).get("queue_size", 100)),
        speaker=speaker or build_speaker(cfg.get("voice", {}).get("speaker", "null")),
        options=GenerationOptions(
            max_tokens=ai.get("max_tokens", 150),
            temperature=ai.get("temperature", 0.4),
            top_p=ai.get("top_p", 0.9),
        ),
        system_prompt=ai.get("system_prompt") or DEFAULT_SYSTEM_PROMPT,
        use_functions=ai.get("use_functions", True),
    )
