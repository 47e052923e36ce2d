"""CLI entry point: ccp start | ccp config ... | ccp version."""

import argparse
import asyncio
import logging
import logging.handlers
import signal
import sys

from dotenv import load_dotenv

from . import config as cfg

# Load .env early so env vars (API_KEY, CLAUDE_PATH, ...) are visible to config resolution
load_dotenv()

logger = logging.getLogger("claude_proxy")

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s  %(message)s"
LOG_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="ccp",
        description="OpenAI-compatible API proxy for the Claude Code CLI",
    )
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    sub = parser.add_subparsers(dest="command")

    start = sub.add_parser("start", help="Start the proxy server")
    start.add_argument("--host", default=None, help="Bind address (default: HOST or 127.0.0.1)")
    start.add_argument("--port", type=int, default=None, help="HTTP port (default: PORT or 8888)")
    start.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    conf = sub.add_parser("config", help="Read or change the saved configuration")
    conf_sub = conf.add_subparsers(dest="config_command")
    conf_set = conf_sub.add_parser("set", help="Set a config value")
    conf_set.add_argument("key")
    conf_set.add_argument("value", nargs="+")
    conf_get = conf_sub.add_parser("get", help="Get a config value")
    conf_get.add_argument("key")
    conf_sub.add_parser("list", help="List all config values")
    conf_reset = conf_sub.add_parser("reset", help="Reset a config value to its default")
    conf_reset.add_argument("key")
    conf_sub.add_parser("path", help="Show config file path")
    conf_sub.add_parser("help", help="Show available config keys")

    sub.add_parser("version", help="Show version")
    return parser.parse_args(argv)


def _version() -> str:
    from importlib.metadata import version as pkg_version

    try:
        return pkg_version("claude-proxy")
    except Exception:
        return "dev"


def _mask(value: str) -> str:
    return value[:4] + "*" * max(0, len(value) - 4)


# ----------------------------------------------------------------------
# ccp config ...
# ----------------------------------------------------------------------


def _config_command(args: argparse.Namespace) -> int:
    command = args.config_command
    if command == "set":
        value = " ".join(args.value)
        try:
            cfg.set_value(args.key, value)
        except cfg.ConfigError as exc:
            print(f"  {exc}", file=sys.stderr)
            return 1
        print(f"  {args.key.upper()} = {value}")
        return 0

    if command == "get":
        value = cfg.get_value(args.key)
        if value is None:
            print(f'  Key "{args.key.upper()}" not found.', file=sys.stderr)
            return 1
        print(f"  {args.key.upper()} = {value}")
        return 0

    if command == "list":
        values = cfg.load_file()
        for key in sorted(values):
            marker = "" if values[key] == cfg.DEFAULTS.get(key) else "  (custom)"
            shown = _mask(values[key]) if key == "API_KEY" and values[key] else values[key]
            print(f"  {key} = {shown}{marker}")
        return 0

    if command == "reset":
        cfg.reset_value(args.key)
        print(f"  {args.key.upper()} reset to default")
        return 0

    if command == "path":
        print(f"  {cfg.config_file()}")
        return 0

    for key, meta in cfg.CONFIG_SCHEMA.items():
        allowed = f"  [{' | '.join(meta['values'])}]" if meta.get("values") else ""
        print(f"  {key:<24} {meta['description']} (default: {meta['default'] or '-'}){allowed}")
    return 0


# ----------------------------------------------------------------------
# ccp start
# ----------------------------------------------------------------------


def _configure_logging(config: cfg.ProxyConfig, verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else LOG_LEVELS.get(config.log_level, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%H:%M:%S")
    if config.log_file:
        handler = logging.handlers.RotatingFileHandler(
            config.log_file,
            maxBytes=config.log_max_bytes,
            backupCount=config.log_max_files,
            encoding="utf-8",
        )
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)


async def _run(config: cfg.ProxyConfig) -> None:
    from .invocation import cleanup_temp_images
    from .server import ProxyServer
    from .sessions import SessionStore

    sessions = SessionStore(ttl=config.session_ttl_s, persist_path=config.session_file or None)
    sessions.load()
    sessions.start()

    server = ProxyServer(config=config, sessions=sessions)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _signal_handler():
        logger.info("Received shutdown signal")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    await server.start()
    logger.info("  Claude path:       %s", config.claude_path)
    logger.info("  Working dir:       %s", config.working_dir)
    logger.info("  Permission mode:   %s", config.permission_mode)
    logger.info("  Max turns:         %s", config.max_turns)
    logger.info("  Timeout:           %.0fs", config.timeout_s)
    logger.info("  Default model:     %s", config.default_model)
    logger.info("  API key:           %s", _mask(config.api_key) if config.api_key else "off")
    logger.info("  Session TTL:       %.0fs", config.session_ttl_s)
    logger.info("  Session file:      %s", config.session_file or "disabled (in-memory only)")
    logger.info("  CORS origin:       %s", config.cors_origin)

    await stop_event.wait()

    logger.info("Shutting down...")
    await server.stop()
    await sessions.close()
    cleanup_temp_images()


def _start(args: argparse.Namespace) -> int:
    from .invocation import AgentSpawnError, validate_agent_binary

    overrides = {"HOST": args.host, "PORT": str(args.port) if args.port is not None else None}
    try:
        config = cfg.ProxyConfig.load(overrides)
    except cfg.ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    _configure_logging(config, verbose=args.verbose)

    if config.permission_mode == "bypassPermissions":
        logger.warning("Permission mode is set to 'bypassPermissions'. Claude CLI safety checks are DISABLED.")
        logger.warning("Set CLAUDE_PERMISSION_MODE to a safer mode in production environments.")

    try:
        validate_agent_binary(config.claude_path)
    except AgentSpawnError as exc:
        logger.error("%s", exc)
        return 1

    asyncio.run(_run(config))
    return 0


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)

    if args.version or args.command == "version":
        print(f"ccp {_version()}")
        return

    if args.command == "start":
        sys.exit(_start(args))
    if args.command == "config":
        sys.exit(_config_command(args))

    _parse_args(["--help"])


if __name__ == "__main__":
    main()
