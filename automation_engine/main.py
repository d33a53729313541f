"""Command line entry point for the automation engine."""

import argparse
import json
import sys
from typing import List, Optional

from .config import AppConfig, LogLevel, load_config, validate_config
from .core.logging import get_logger, setup_logging
from .factory import create_app


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        description="Automation Engine - event-driven workflow automation"
    )
    parser.add_argument("--config", help="Path to a .env configuration file")
    parser.add_argument("--host", help="Host to bind the server to")
    parser.add_argument("--port", type=int, help="Port to bind the server to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument("--database-url", help="Database connection URL")
    parser.add_argument(
        "--log-level",
        choices=[level.value for level in LogLevel],
        help="Logging level"
    )
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")
    subparsers.add_parser("run", help="Run the engine server (default)")

    db_parser = subparsers.add_parser("db", help="Database management commands")
    db_subparsers = db_parser.add_subparsers(dest="db_command", help="Database commands")
    db_subparsers.add_parser("init", help="Create tables and indexes")
    db_subparsers.add_parser("reset", help="Drop and recreate all tables")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("validate", help="Validate configuration")

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Environment configuration with command line overrides applied."""
    config = load_config(args.config)

    overrides = {
        "host": args.host,
        "port": args.port,
        "database_url": args.database_url,
        "log_level": LogLevel(args.log_level) if args.log_level else None,
        "log_file": args.log_file,
        "reload": args.reload or None,
        "debug": args.debug or None,
    }
    overrides = {key: value for key, value in overrides.items() if value is not None}
    if overrides:
        config = config.model_copy(update=overrides)
    return config


def run_server(config: AppConfig) -> None:
    import uvicorn

    app = create_app(config)
    uvicorn.run(app, **config.get_uvicorn_config())


def run_database_command(command: Optional[str], config: AppConfig) -> int:
    from .storage.database import configure_database, create_tables, drop_tables
    from .storage.migrations import run_migrations

    logger = get_logger(__name__)
    configure_database(config.database_url, echo=config.database_echo)

    if command == "init":
        create_tables()
        run_migrations()
        logger.info("Database initialized")
    elif command == "reset":
        drop_tables()
        create_tables()
        run_migrations()
        logger.warning("Database reset: all workflows and runs were removed")
    else:
        logger.error("Unknown database command; use 'init' or 'reset'")
        return 1
    return 0


def run_config_command(command: Optional[str], config: AppConfig) -> int:
    if command == "show":
        print(json.dumps(config.model_dump(mode="json"), indent=2))
        return 0
    if command == "validate":
        try:
            validate_config(config)
        except ValueError as e:
            print(str(e), file=sys.stderr)
            return 1
        print("Configuration is valid")
        return 0
    print("Unknown config command; use 'show' or 'validate'", file=sys.stderr)
    return 1


def main(argv: Optional[List[str]] = None) -> int:
    args = create_argument_parser().parse_args(argv)
    config = load_configuration(args)

    setup_logging(
        level=config.log_level.value,
        log_file=config.log_file,
        log_format=config.log_format,
        structured=config.log_structured,
        max_size=config.log_max_size,
        backup_count=config.log_backup_count,
    )

    if args.command == "db":
        return run_database_command(args.db_command, config)
    if args.command == "config":
        return run_config_command(args.config_command, config)

    run_server(config)
    return 0


# Served by ``uvicorn automation_engine.main:app``; configured from the environment
app = create_app()


if __name__ == "__main__":
    sys.exit(main())
