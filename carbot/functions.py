"""
Car function calling.

Providers that support OpenAI-style function calling get a short list of
car functions relevant to the detected intent. When the model answers with
a function_call, the orchestrator runs the handler here and feeds the
result back so the model can phrase the final spoken answer.

Handlers are local stand-ins for the head unit integration: they validate
arguments and return a structured result plus the UI action to trigger.
New functions are added with FunctionRegistry.register(). Nothing else changes.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Callable

from carbot.errors import FunctionCallError

logger = logging.getLogger(__name__)


@dataclass
class CarFunction:
    name: str
    description: str
    parameters: dict
    handler: Callable[[dict], dict]

    def schema(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


class FunctionRegistry:
    """Name → CarFunction."""

    def __init__(self, with_defaults: bool = True):
        self._functions: dict[str, CarFunction] = {}
        if with_defaults:
            register_default_functions(self)

    def register(self, name: str, description: str, parameters: dict, handler: Callable[[dict], dict]) -> None:
        self._functions[name] = CarFunction(name, description, parameters, handler)

    def get(self, name: str) -> CarFunction | None:
        return self._functions.get(name)

    def names(self) -> list[str]:
        return list(self._functions.keys())

    def schemas(self, names: list[str] | None = None) -> list[dict]:
        """Function schemas for the request body. Unknown names are skipped."""
        wanted = names if names is not None else self.names()
        return [self._functions[n].schema() for n in wanted if n in self._functions]

    def call(self, name: str, arguments) -> dict:
        """
        Run a function. `arguments` is the JSON string the model sent (or a dict).
        Raises FunctionCallError for unknown names, bad JSON, missing required
        arguments, or a failing handler.
        """
        func = self._functions.get(name)
        if func is None:
            raise FunctionCallError(name, "unknown function")

        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError as e:
                raise FunctionCallError(name, f"arguments are not valid JSON ({e})") from e
        arguments = arguments or {}
        if not isinstance(arguments, dict):
            raise FunctionCallError(name, "arguments must be an object")

        missing = [p for p in func.parameters.get("required", []) if p not in arguments]
        if missing:
            raise FunctionCallError(name, f"missing required argument(s): {', '.join(missing)}")

        try:
            result = func.handler(arguments)
        except Exception as e:
            raise FunctionCallError(name, f"handler failed: {e}") from e

        logger.info("Car function '%s' executed", name)
        return result


# Intent → functions offered to the model
INTENT_FUNCTIONS = {
    "navigation": ["navigate_to_destination"],
    "music": ["control_music"],
    "phone": ["make_phone_call"],
    "weather": ["get_weather"],
    "climate": ["control_climate"],
}


def functions_for_intent(intent: str) -> list[str]:
    return list(INTENT_FUNCTIONS.get(intent, []))


# ---------------------------------------------------------------------------
# Default car functions
# ---------------------------------------------------------------------------

def _navigate(args: dict) -> dict:
    destination = str(args["destination"]).strip()
    preference = args.get("route_preference", "fastest")
    return {
        "success": True,
        "message": f"Starting navigation to {destination}",
        "route_preference": preference,
        "action": {"type": "navigation", "action": "start", "destination": destination},
    }


def _control_music(args: dict) -> dict:
    action = args["action"]
    query = args.get("query") or ""
    if action == "search" and not query:
        raise ValueError("search needs a query")
    if action == "search":
        message = f'Playing "{query}"'
    elif action == "play" and query:
        message = f'Playing "{query}"'
    else:
        message = f"Music {action}"
    result = {
        "success": True,
        "message": message,
        "action": {"type": "music", "action": "play" if action == "search" else action, "query": query},
    }
    if "volume" in args:
        result["volume"] = max(0, min(100, int(args["volume"])))
    return result


def _make_call(args: dict) -> dict:
    contact = str(args["contact"]).strip()
    call_type = args.get("call_type", "voice")
    return {
        "success": True,
        "message": f"Calling {contact}",
        "call_type": call_type,
        "action": {"type": "phone", "action": "call", "contact": contact},
    }


def _get_weather(args: dict) -> dict:
    # No weather service wired in; the model is told so and answers accordingly
    return {
        "success": False,
        "location": args["location"],
        "message": f"Live weather for {args['location']} is not available right now",
        "action": {"type": "weather", "action": "show", "location": args["location"]},
    }


def _control_climate(args: dict) -> dict:
    result = {"success": True, "action": {"type": "climate", "action": "set"}}
    parts = []
    if "temperature" in args:
        temp = max(16.0, min(30.0, float(args["temperature"])))
        result["temperature"] = temp
        result["action"]["temperature"] = temp
        parts.append(f"{temp:g}°C")
    if "mode" in args:
        result["mode"] = args["mode"]
        result["action"]["mode"] = args["mode"]
        parts.append(f"{args['mode']} mode")
    if "fan_speed" in args:
        speed = max(1, min(5, int(args["fan_speed"])))
        result["fan_speed"] = speed
        result["action"]["fan_speed"] = speed
        parts.append(f"fan {speed}")
    result["message"] = "Climate set to " + ", ".join(parts) if parts else "Climate unchanged"
    return result


def register_default_functions(registry: FunctionRegistry) -> None:
    registry.register(
        "navigate_to_destination",
        "Navigate to a specific destination using GPS",
        {
            "type": "object",
            "properties": {
                "destination": {"type": "string", "description": "The destination address or location name"},
                "route_preference": {
                    "type": "string",
                    "enum": ["fastest", "shortest", "eco"],
                    "description": "Preferred route type",
                },
            },
            "required": ["destination"],
        },
        _navigate,
    )
    registry.register(
        "control_music",
        "Control music playback (play, pause, skip, search)",
        {
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "enum": ["play", "pause", "skip", "previous", "search"],
                    "description": "Music control action",
                },
                "query": {"type": "string", "description": "Song, artist, or album to search for"},
                "volume": {"type": "number", "minimum": 0, "maximum": 100, "description": "Volume level (0-100)"},
            },
            "required": ["action"],
        },
        _control_music,
    )
    registry.register(
        "make_phone_call",
        "Make a phone call to a contact or number",
        {
            "type": "object",
            "properties": {
                "contact": {"type": "string", "description": "Contact name or phone number"},
                "call_type": {"type": "string", "enum": ["voice", "video"], "description": "Type of call"},
            },
            "required": ["contact"],
        },
        _make_call,
    )
    registry.register(
        "get_weather",
        "Get current weather information for a location",
        {
            "type": "object",
            "properties": {
                "location": {"type": "string", "description": "City or location for weather information"},
                "include_forecast": {"type": "boolean", "description": "Include extended forecast"},
            },
            "required": ["location"],
        },
        _get_weather,
    )
    registry.register(
        "control_climate",
        "Control car climate settings (temperature, AC, heating)",
        {
            "type": "object",
            "properties": {
                "temperature": {
                    "type": "number", "minimum": 16, "maximum": 30,
                    "description": "Desired temperature in Celsius",
                },
                "mode": {"type": "string", "enum": ["auto", "heat", "cool", "fan"], "description": "Climate mode"},
                "fan_speed": {"type": "integer", "minimum": 1, "maximum": 5, "description": "Fan speed (1-5)"},
            },
        },
        _control_climate,
    )
