"""CLI entry point for the natter command."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .config import AppConfig, LogConfig, _get_config_path, load_config
from .errors import NatterError

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _print_setup_guide(config_path: Path) -> None:
    print(
        f"\nTo get started, create {config_path} with:\n\n"
        "backend:\n"
        '  default_model: "gpt-4o-mini"\n'
        "  connections:\n"
        "    - kind: openai\n"
        '      api_key: "your-api-key"\n'
        "    - kind: gemini\n"
        '      api_key: "your-api-key"\n'
        "\nOr set environment variables:\n"
        "  OPENAI_API_KEY=your-api-key\n"
        "  GEMINI_API_KEY=your-api-key\n"
        "  NATTER_MODEL=gpt-4o-mini\n",
        file=sys.stderr,
    )


def setup_logging(log_config: LogConfig) -> None:
    """Send logs to the configured file so they never disturb the terminal UI."""
    log_config.file_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_config.file_path, mode="a" if log_config.append else "w", encoding="utf-8")
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    level = logging.getLevelName(log_config.level.upper())
    root.setLevel(level if isinstance(level, int) else logging.INFO)

    # Keep HTTP client chatter out of debug logs
    for noisy in ("httpx", "httpcore", "openai"):
        logging.getLogger(noisy).setLevel(max(root.level, logging.WARNING))


def _load_config_or_exit(config_arg: str | None) -> tuple[Path, AppConfig]:
    config_path = Path(config_arg).expanduser() if config_arg else _get_config_path()
    if not config_path.exists():
        print(f"No configuration file found at {config_path}", file=sys.stderr)
        _print_setup_guide(config_path)
        sys.exit(1)
    try:
        config = load_config(config_path)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        _print_setup_guide(config_path)
        sys.exit(1)
    return config_path, config


async def _start_mcp(config: AppConfig):
    from .services.mcp_manager import McpManager

    servers = [s for s in config.backend.mcp.servers if s.enabled]
    if not servers:
        return None
    mcp_manager = McpManager(servers)
    await mcp_manager.startup()
    return mcp_manager


async def _test_connection(config: AppConfig) -> None:
    from .services.manager import _BACKENDS

    print("Config:")
    print(f"  Default model: {config.backend.default_model or '(none)'}")
    print(f"  Timeout:       {config.backend.timeout_secs}s")

    failed = False
    seen: set[str] = set()
    for i, connection in enumerate(c for c in config.backend.connections if c.enabled):
        backend = _BACKENDS[connection.kind](
            connection,
            backend_config=config.backend,
            truncation=config.context.truncation,
        )
        print(f"\n{i + 1}. {backend.name()} ({connection.kind}) at {backend.endpoint}")
        if backend.name() in seen:
            print(f"   FAILED - connection {backend.name()} already exists")
            failed = True
            continue
        seen.add(backend.name())
        try:
            models = await backend.list_models()
        except Exception as e:
            print(f"   FAILED - {e}")
            failed = True
            continue
        print(f"   OK - {len(models)} model(s) available")
        for m in models[:10]:
            print(f"     - {m.id}")

    if failed:
        sys.exit(1)
    print("\nAll checks passed.")


async def _list_models(config: AppConfig) -> None:
    from .services.manager import new_manager

    manager = await new_manager(config.backend, config.context)
    for model in await manager.list_models():
        print(f"{model.id}\t{model.provider}")


async def _run(config: AppConfig, args: argparse.Namespace) -> None:
    from .cli.repl import run_cli
    from .db import init_db
    from .services.compressor import Compressor
    from .services.manager import new_manager
    from .services.storage import SqliteStorage

    mcp = await _start_mcp(config)
    storage = SqliteStorage(init_db(config.storage.sqlite_path))
    try:
        manager = await new_manager(config.backend, config.context, mcp=mcp)
        compressor = Compressor.from_config(manager, config.context.compression)
        await run_cli(
            config,
            manager,
            storage,
            compressor=compressor,
            mcp=mcp,
            model=args.model,
            prompt=args.prompt,
            continue_last=args.continue_last,
            conversation_id=args.conversation,
        )
    finally:
        if mcp is not None:
            await mcp.shutdown()
        storage.close()


def main() -> None:
    parser = argparse.ArgumentParser(prog="natter", description="natter - chat with LLMs from your terminal")
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--model", help="Model to chat with")
    parser.add_argument("--test", action="store_true", help="Test connection settings and exit")
    parser.add_argument("--list-models", action="store_true", help="List available models and exit")
    parser.add_argument(
        "-c", "--continue", dest="continue_last", action="store_true", help="Continue the latest conversation"
    )
    parser.add_argument("--conversation", help="Resume the conversation with this id")
    parser.add_argument("-p", "--prompt", help="Send a single prompt and exit")
    args = parser.parse_args()

    config_path, config = _load_config_or_exit(args.config)
    setup_logging(config.log)
    logger.info("Config loaded from %s", config_path)

    if args.test:
        asyncio.run(_test_connection(config))
        return

    try:
        if args.list_models:
            asyncio.run(_list_models(config))
        else:
            asyncio.run(_run(config, args))
    except NatterError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
