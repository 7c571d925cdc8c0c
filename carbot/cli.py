#!/usr/bin/env python3
"""
CarBot CLI.

Every command has a short name and standard aliases:

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    serve           start, up       Start the CarBot API server
    ask             say, query      Send one command through the assistant
    providers       list            List providers and API key status
    check           validate        Validate configuration and ping the primary
    status          ping, health    Ping a running instance
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

from carbot import __version__


def _load(args) -> dict:
    from carbot.config import load_config, reset_config

    if getattr(args, "config", None):
        reset_config()
        return load_config(Path(args.config))
    return load_config()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the CarBot API server."""
    import uvicorn

    cfg = _load(args)
    host = args.host or cfg["server"]["host"]
    port = args.port or cfg["server"]["port"]
    ai = cfg["ai"]
    if getattr(args, "config", None):
        # The app (and any --reload worker process) loads config from here
        os.environ["CARBOT_CONFIG"] = str(Path(args.config).resolve())

    print(f"  CarBot v{__version__}")
    print(f"  Listening on {host}:{port}")
    print(f"  Provider: {ai['provider']}", end="")
    if ai.get("fallback_providers"):
        print(f" (fallback: {', '.join(ai['fallback_providers'])})")
    else:
        print()
    print()

    uvicorn.run(
        "carbot.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level=str(cfg["logging"].get("level", "info")).lower(),
    )


def cmd_ask(args):
    """Send one command through the assistant and print the reply."""
    from carbot.assistant import build_assistant
    from carbot.errors import ConfigError

    cfg = _load(args)
    text = " ".join(args.text)
    try:
        assistant = build_assistant(cfg)
    except ConfigError as e:
        print(f"  ✗  {e}")
        sys.exit(2)

    reply = asyncio.run(assistant.handle(text, fresh=True))
    print(f"  {reply.response}")
    source = "fallback" if reply.fallback else f"{reply.provider}/{reply.model}"
    print(f"  [intent={reply.intent} via {source}]")
    for action in reply.actions:
        print(f"  → {action}")


def cmd_providers(args):
    """List providers and whether a key is configured."""
    from carbot.config import build_registry, provider_chain, resolve_api_keys

    cfg = _load(args)
    registry = build_registry(cfg)
    keys = resolve_api_keys(cfg, registry)
    chain = []
    for pid in provider_chain(cfg):
        if pid in registry:
            chain.append(registry.resolve_id(pid))

    print(f"  {'ID':<12} {'MODEL':<36} {'KEY':<5} CHAIN")
    for p in registry.list_providers():
        has_key = (not p.requires_key) or p.id in keys
        position = ""
        if p.id in chain:
            position = "primary" if chain.index(p.id) == 0 else f"fallback #{chain.index(p.id)}"
        print(f"  {p.id:<12} {p.default_model:<36} {'yes' if has_key else 'no':<5} {position}")


def cmd_check(args):
    """Validate configuration; optionally ping the primary provider."""
    from carbot.assistant import build_assistant
    from carbot.config import build_registry, resolve_api_keys, validate_config
    from carbot.errors import ConfigError

    cfg = _load(args)
    try:
        registry = build_registry(cfg)
        warnings = validate_config(cfg, registry, resolve_api_keys(cfg, registry))
    except ConfigError as e:
        print(f"  ✗  {e}")
        sys.exit(2)

    for w in warnings:
        print(f"  !  {w}")
    print("  ✓  Configuration OK")

    if args.ping:
        result = asyncio.run(build_assistant(cfg).test_connection())
        if result["success"]:
            print(f"  ✓  {result['provider']} answered in {result['latency_ms']:.0f}ms")
        else:
            print(f"  ✗  {result['provider']}: {result['error']}")
            sys.exit(1)


def cmd_status(args):
    """Ping a running CarBot instance."""
    import httpx

    cfg = _load(args)
    url = args.url or f"http://localhost:{cfg['server']['port']}"
    try:
        resp = httpx.get(f"{url}/health", timeout=5)
        if resp.status_code != 200:
            print(f"  ✗  No answer, got HTTP {resp.status_code}")
            sys.exit(1)
        print(f"  ✓  {url} is UP (v{resp.json().get('version', '?')})")

        stats = httpx.get(f"{url}/api/stats", timeout=5).json()
        print(f"  Requests: {stats.get('requests', 0)} "
              f"(ok {stats.get('successes', 0)}, fallback {stats.get('fallbacks', 0)}, "
              f"emergency {stats.get('emergencies', 0)})")
        print(f"  Avg latency: {stats.get('avg_latency_ms', 0)}ms")
        for pid, breaker in stats.get("breakers", {}).items():
            print(f"  Breaker {pid}: {breaker.get('state')} ({breaker.get('consecutive_failures', 0)} failures)")
    except httpx.ConnectError:
        print(f"  ✗  Nothing listening at {url}")
        sys.exit(1)


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    # Also accepted after the command name; SUPPRESS keeps a top-level -c intact
    p.add_argument("--config", "-c", default=argparse.SUPPRESS, help="Path to config.yaml")
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="carbot",
        description="CarBot: voice assistant backend for the car.",
        epilog="Run 'carbot <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", "-V", action="version", version=f"carbot {__version__}")
    parser.add_argument("--config", "-c", default=None, help="Path to config.yaml")

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_serve(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["serve", "start", "up"], "Start the CarBot API server", cmd_serve, setup_serve)

    def setup_ask(p):
        p.add_argument("text", nargs="+", help="What to say to CarBot")

    _add_command(sub, ["ask", "say", "query"], "Send one command through the assistant", cmd_ask, setup_ask)

    _add_command(sub, ["providers", "list"], "List providers and API key status", cmd_providers)

    def setup_check(p):
        p.add_argument("--ping", action="store_true", help="Also send a test prompt to the primary provider")

    _add_command(sub, ["check", "validate"], "Validate configuration", cmd_check, setup_check)

    def setup_status(p):
        p.add_argument("--url", "-u", default=None, help="CarBot URL (default: http://localhost:<port>)")

    _add_command(sub, ["status", "ping", "health"], "Ping a running CarBot instance", cmd_status, setup_status)
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
