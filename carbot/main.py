"""
FastAPI application: the CarBot entry point.

Endpoints used by the car head unit and the Android client:
  POST   /api/command          text command → spoken reply
  POST   /api/voice            same contract, Android voice path
  POST   /api/wake-word        manual wake word trigger
  DELETE /api/sessions/{id}    forget a conversation
  GET    /api/events           server-sent events from the event channel
  GET    /api/stats            orchestrator counters, breakers, cache
  GET    /api/providers        provider registry and key status
  GET    /health               liveness
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from carbot import __version__
from carbot.assistant import CarAssistant, build_assistant
from carbot.config import get_config
from carbot.events import VOICE_ACTIVATED

logger = logging.getLogger(__name__)

# Seconds between SSE keepalive comments
_SSE_KEEPALIVE = 15.0


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        from pathlib import Path
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    cfg = get_config()
    _setup_logging(cfg)

    # Tests may install their own assistant before startup
    if getattr(app.state, "assistant", None) is None:
        app.state.assistant = build_assistant(cfg)
    assistant: CarAssistant = app.state.assistant

    logger.info(
        "CarBot started: listening on %s:%s, providers %s",
        cfg["server"]["host"],
        cfg["server"]["port"],
        " → ".join(assistant.provider_chain) or "(offline)",
    )

    yield

    await assistant.close()
    logger.info("CarBot shutting down")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="CarBot",
    description="Voice assistant backend for the car.",
    version=__version__,
    lifespan=lifespan,
)


def _assistant(request: Request) -> CarAssistant:
    return request.app.state.assistant


def _error(message: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


async def _run_command(request: Request) -> JSONResponse:
    """Shared body of /api/command and /api/voice."""
    try:
        body = await request.json()
    except ValueError:
        return _error("invalid JSON")
    if not isinstance(body, dict):
        return _error("request body must be a JSON object")

    command = body.get("command")
    if not isinstance(command, str) or not command.strip():
        return _error("command is required")

    car_context = body.get("carContext")
    if car_context is not None and not isinstance(car_context, dict):
        return _error("carContext must be an object")
    session_id = body.get("sessionId")
    if session_id is not None and not isinstance(session_id, str):
        return _error("sessionId must be a string")

    try:
        reply = await _assistant(request).handle(
            command,
            car_context=car_context,
            session_id=session_id,
            fresh=bool(body.get("fresh", False)),
        )
    except Exception:
        logger.exception("Command handling failed")
        return _error("internal error", status_code=500)
    return JSONResponse(reply.to_json())


# ---------------------------------------------------------------------------
# Command endpoints
# ---------------------------------------------------------------------------

@app.post("/api/command")
async def api_command(request: Request):
    """
    Body: {command, carContext?, sessionId?, fresh?}
    Returns: {response, intent, actions, provider, model, fallback, cached, sessionId}
    """
    return await _run_command(request)


@app.post("/api/voice")
async def api_voice(request: Request):
    """Android voice path. Body: {command, type: "voice", ...}; same reply as /api/command."""
    return await _run_command(request)


@app.post("/api/wake-word")
async def api_wake_word(request: Request):
    """Manual wake word trigger (testing, or when no acoustic detector runs)."""
    # Body is optional
    try:
        body = await request.json()
    except ValueError:
        body = None
    source = "api"
    if isinstance(body, dict) and isinstance(body.get("source"), str):
        source = body["source"]
    _assistant(request).events.publish(VOICE_ACTIVATED, source=source)
    return JSONResponse({
        "success": True,
        "message": "Wake word triggered",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })


@app.delete("/api/sessions/{session_id}")
async def api_clear_session(session_id: str, request: Request):
    if not _assistant(request).clear_session(session_id):
        return _error("session not found", status_code=404)
    return JSONResponse({"cleared": session_id})


# ---------------------------------------------------------------------------
# Events, stats, providers
# ---------------------------------------------------------------------------

@app.get("/api/events")
async def api_events(request: Request):
    """
    Server-sent events: one `data: {type, payload, timestamp}` frame per event.
    Keepalive comments are sent while idle.
    """
    bus = _assistant(request).events
    queue = bus.subscribe()

    async def _event_stream():
        try:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=_SSE_KEEPALIVE)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {json.dumps(event.to_dict())}\n\n"
        finally:
            bus.unsubscribe(queue)

    return StreamingResponse(
        _event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@app.get("/api/stats")
async def api_stats(request: Request):
    return JSONResponse(_assistant(request).stats())


@app.get("/api/providers")
async def api_providers(request: Request):
    """Registry listing with key status and position in the configured chain."""
    assistant = _assistant(request)
    chain = assistant.provider_chain
    breakers = assistant.controller.breakers()
    providers = []
    for p in assistant.registry.list_providers():
        providers.append({
            "id": p.id,
            "name": p.display_name or p.id,
            "model": p.default_model,
            "shape": p.shape,
            "supports_functions": p.supports_functions,
            "has_key": (not p.requires_key) or bool(assistant.controller.api_keys.get(p.id)),
            "chain_position": chain.index(p.id) if p.id in chain else None,
            "breaker": breakers.get(p.id, {}).get("state", "closed"),
        })
    return JSONResponse({"primary": assistant.primary, "providers": providers})


@app.get("/health")
async def health():
    """Health check."""
    return JSONResponse({
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
    })
