"""CLI entry point for shop-agent."""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

from shop_agent.app import ShopAgentApp
from shop_agent.config import AppConfig, load_config
from shop_agent.errors import ShopAgentError
from shop_agent.log import setup_logging
from shop_agent.routing.domains import DOMAINS
from shop_agent.routing.seeder import load_seed_file, seed_from_config, validate_seed_config


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to config file")
    parser.add_argument("-e", "--env", default=".env", help="Path to .env file")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="shop-agent",
        description="Store admin chat agent with embedding tool routing and human approval of writes",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    _add_config_args(subparsers.add_parser("start", help="Run the approval channel and expiry sweeper"))
    _add_config_args(subparsers.add_parser("config-check", help="Validate configuration"))

    chat_parser = subparsers.add_parser("chat", help="Chat with the agent in the terminal")
    _add_config_args(chat_parser)
    chat_parser.add_argument("--owner", default="admin", help="Admin identity for the session")

    seed_parser = subparsers.add_parser("seed", help="Seed tool examples from a YAML file")
    _add_config_args(seed_parser)
    seed_parser.add_argument("path", help="Tool examples YAML file")
    seed_parser.add_argument(
        "--clear", action="store_true", help="Delete curated examples first (learned ones are kept)"
    )

    _add_config_args(subparsers.add_parser("sweep", help="Expire stale approval requests once"))
    _add_config_args(subparsers.add_parser("stats", help="Show tool example counts per domain"))

    args = parser.parse_args()

    if args.command is None:
        # Default to start
        args.command = "start"
        args.config = "config.yaml"
        args.env = ".env"

    if args.command == "config-check":
        _check_config(args.config, args.env)
        return

    config = _load(args.config, args.env)
    setup_logging(config.log_level, json=config.log_json)
    try:
        if args.command == "start":
            asyncio.run(_serve(config))
        elif args.command == "chat":
            asyncio.run(_chat(config, args.owner))
        elif args.command == "seed":
            asyncio.run(_seed(config, args.path, args.clear))
        elif args.command == "sweep":
            asyncio.run(_sweep(config))
        elif args.command == "stats":
            asyncio.run(_stats(config))
    except ShopAgentError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def _load(config_path: str, env_path: str) -> AppConfig:
    try:
        return load_config(config_path, env_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Run 'python install.py' first or copy config.example.yaml to config.yaml")
        sys.exit(1)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _check_config(config_path: str, env_path: str) -> None:
    """Validate configuration and print summary."""
    config = _load(config_path, env_path)
    print(f"Configuration valid: {config_path}")
    print(f"  Storage: {config.storage.db_path}")
    print(f"  Model: {config.anthropic.model}")
    print(f"  Embeddings: {config.embeddings.model} ({config.embeddings.dimensions} dims)")
    print(
        f"  Router: threshold={config.router.threshold} margin={config.router.margin} "
        f"top_k={config.router.top_k} learning={config.router.learning}"
    )
    print(
        f"  Approvals: {config.notification.backend}, ttl={config.action_queue.ttl_seconds}s, "
        f"sweep every {config.action_queue.sweep_interval_seconds}s"
    )
    mutating = config.tools.mutating
    print(f"  Mutating tools: {', '.join(mutating) if mutating else '(tool defaults)'}")


async def _serve(config: AppConfig) -> None:
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            signal.signal(sig, lambda s, f: stop_event.set())

    app = ShopAgentApp(config)
    await app.start()
    try:
        await stop_event.wait()
    finally:
        await app.stop()


async def _chat(config: AppConfig, owner: str) -> None:
    """Interactive admin chat in the terminal, with the approval services running."""
    app = ShopAgentApp(config)
    await app.start()
    loop = asyncio.get_running_loop()
    try:
        session_id: int | None = None
        print("Empty line or Ctrl-D to quit.")
        while True:
            try:
                text = await loop.run_in_executor(None, input, "> ")
            except EOFError:
                break
            if not text.strip():
                break
            outcome = await app.orchestrator.handle_user_message(session_id, owner, text)
            if session_id is None:
                session_id = outcome.session_id
                print(f"(chat session {session_id})")
            print(outcome.text)
    finally:
        await app.stop()


async def _seed(config: AppConfig, path: str, clear: bool) -> None:
    app = ShopAgentApp(config)
    await app.open()
    try:
        seed_config = load_seed_file(path)
        problems = validate_seed_config(seed_config, app.tool_registry.names())
        if problems:
            for problem in problems:
                print(f"  - {problem}", file=sys.stderr)
            sys.exit(1)
        result = await seed_from_config(app.embedding_store, app.embedder, seed_config, clear)
        print(
            f"Seeded {result.inserted} examples ({result.skipped} already present) "
            f"for {result.tools_processed} tools"
        )
        for tool_name, error in result.errors:
            print(f"  ! {tool_name}: {error}", file=sys.stderr)
    finally:
        await app.stop()


async def _sweep(config: AppConfig) -> None:
    app = ShopAgentApp(config)
    await app.open()
    try:
        count = await app.sweeper.run_once()
        print(f"Expired {count} pending action(s)")
    finally:
        await app.stop()


async def _stats(config: AppConfig) -> None:
    app = ShopAgentApp(config)
    await app.open()
    try:
        counts = {c.domain: c.count for c in await app.embedding_store.domain_counts()}
        total = await app.embedding_store.total_count()
        print("Tool examples per domain")
        print("=" * 32)
        for domain in sorted(set(DOMAINS) | set(counts)):
            print(f"  {domain:<16} {counts.get(domain, 0):>6}")
        print(f"  {'total':<16} {total:>6}")
    finally:
        await app.stop()


if __name__ == "__main__":
    main()
