"""CLI interface for IntroFlow."""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

import uvicorn
import yaml
from dotenv import load_dotenv

from introflow.api.app import attach_engine, create_app
from introflow.core.config import Config, load_config
from introflow.core.logging import setup_logging
from introflow.db.database import init_db_manager
from introflow.runtime.engine import CoordinationEngine

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

DEFAULT_CONFIG = Path("config.yaml")


def resolve_config(args: argparse.Namespace) -> Config:
    """Load the config file (if any) and apply command-line overrides."""
    path = args.config
    if path is None and DEFAULT_CONFIG.exists():
        path = DEFAULT_CONFIG
    config = load_config(path)

    if args.db_path:
        config = config.model_copy(update={"db_path": args.db_path})
    if getattr(args, "api_host", None):
        config.api.host = args.api_host
    if getattr(args, "api_port", None):
        config.api.port = args.api_port
    return config


def install_stop_handlers(stop_event: asyncio.Event) -> None:
    """Set ``stop_event`` on SIGINT or SIGTERM."""

    def signal_handler() -> None:
        stop_event.set()

    loop = asyncio.get_event_loop()
    loop.add_signal_handler(signal.SIGINT, signal_handler)
    loop.add_signal_handler(signal.SIGTERM, signal_handler)


async def run_migrate(args: argparse.Namespace, config: Config) -> None:
    """Handle database migration commands."""
    if not args.init:
        logger.error("No migration action specified. Use --init")
        sys.exit(1)

    logger.info("Initializing database...")
    db_manager = init_db_manager(config.db_path)
    try:
        await db_manager.init_db()
        logger.info(f"Database initialized successfully at {config.db_path}")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        sys.exit(1)
    finally:
        await db_manager.close()


async def run_worker(config: Config) -> None:
    """Run the polling engine until a shutdown signal arrives."""
    db_manager = init_db_manager(config.db_path)
    await db_manager.init_db()
    engine = CoordinationEngine(db_manager, config)

    stop_event = asyncio.Event()
    install_stop_handlers(stop_event)

    await engine.start()
    try:
        await stop_event.wait()
        logger.info("Shutdown signal received, stopping...")
    finally:
        await engine.stop()
        await db_manager.close()


async def run_api_server(args: argparse.Namespace, config: Config) -> None:
    """Start the FastAPI server, optionally with the polling engine."""
    app = create_app(config)

    uvicorn_config = uvicorn.Config(
        app,
        host=config.api.host,
        port=config.api.port,
        log_level="info" if not args.verbose else "debug",
    )
    server = uvicorn.Server(uvicorn_config)

    stop_event = asyncio.Event()
    install_stop_handlers(stop_event)

    # The engine gets its own manager; the app's lifespan owns the API one
    engine = None
    engine_db = None
    if args.with_worker:
        engine_db = init_db_manager(config.db_path)
        await engine_db.init_db()
        engine = CoordinationEngine(engine_db, config)
        attach_engine(app, engine)
        await engine.start()

    server_task = asyncio.create_task(server.serve())

    try:
        await stop_event.wait()
        logger.info("Shutdown signal received, stopping...")
    finally:
        if engine:
            await engine.stop()
        if engine_db:
            await engine_db.close()

        server.should_exit = True
        await server_task


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(description="IntroFlow - introduction coordination engine")
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        help="Path to configuration file (default: config.yaml if present)",
    )
    parser.add_argument(
        "--db-path",
        type=str,
        help="Path to SQLite database (overrides config)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    migrate_parser = subparsers.add_parser("migrate", help="Database migration commands")
    migrate_parser.add_argument(
        "--init",
        action="store_true",
        help="Initialize the database (create tables)",
    )

    subparsers.add_parser("worker", help="Run the event, task and message polling loops")

    serve_parser = subparsers.add_parser("serve", help="Start the operator API server")
    serve_parser.add_argument(
        "--with-worker",
        action="store_true",
        help="Also run the polling loops in this process",
    )
    serve_parser.add_argument("--api-host", type=str, help="API server host (overrides config)")
    serve_parser.add_argument("--api-port", type=int, help="API server port (overrides config)")

    return parser


async def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.error("A command is required: migrate, worker or serve")

    load_dotenv()
    config = resolve_config(args)

    if args.command == "migrate":
        await run_migrate(args, config)
        return

    setup_logging(config.logging, verbose=args.verbose)

    if args.command == "worker":
        await run_worker(config)
    elif args.command == "serve":
        await run_api_server(args, config)


def run() -> None:
    """Entry point for the introflow console script.

    Startup errors are reported as one line on stderr with exit code 1.
    """
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except yaml.YAMLError as e:
        print(f"Invalid YAML in configuration: {e}", file=sys.stderr)
        sys.exit(1)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Startup failed: {e} (run with -v for details)", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    run()
