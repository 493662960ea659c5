"""
ArcVault - Command Line

Usage:
    arcvault                              # serve the API
    arcvault --config arcvault.json --debug --logfile arcvault.log
    arcvault --export --output backup.json [--store 3]
    arcvault --import backup.json

--export and --import run against the configured backend and exit without
starting the server. Environment variables may also come from a .env file
in the working directory.
"""

from typing import List, Optional
import argparse
import sys

from dotenv import load_dotenv
import structlog

from arcvault import __version__
from arcvault.config import ArcVaultConfig, set_config
from arcvault.core.errors import ArcVaultError
from arcvault.core.repository import Repository
from arcvault.core.transfer import TransferCoordinator
from arcvault.logging_setup import configure_logging
from arcvault.storage import create_gateway_from_config

logger = structlog.get_logger()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="arcvault",
        description="ArcVault record vault daemon"
    )
    parser.add_argument("--config", help="JSON configuration file")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--logfile", help="Write logs to this file instead of stderr")
    parser.add_argument("--console-log", action="store_true",
                        help="Human readable logs instead of JSON lines")
    parser.add_argument("--no-auth", action="store_true",
                        help="Disable the access gate (every request is unrestricted)")
    parser.add_argument("--export", action="store_true",
                        help="Export stores to --output and exit")
    parser.add_argument("--store", type=int, help="Export only this store id")
    parser.add_argument("--output", default="arc.json", help="Export file (default: arc.json)")
    parser.add_argument("--import", dest="import_file", metavar="FILE",
                        help="Import stores from FILE and exit")
    parser.add_argument("--host", help="Listen address (overrides HOST)")
    parser.add_argument("--port", type=int, help="Listen port (overrides PORT)")
    parser.add_argument("--version", action="version", version=f"arcvault {__version__}")
    return parser


def load_config(args: argparse.Namespace) -> ArcVaultConfig:
    """Environment (+ optional JSON file), then command line overrides."""
    config = ArcVaultConfig.from_file(args.config) if args.config else ArcVaultConfig.from_env()

    if args.no_auth:
        config.auth.mode = "disabled"
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port

    return config


def run_transfer(config: ArcVaultConfig, args: argparse.Namespace) -> int:
    """Run --import / --export against the configured backend."""
    gateway = create_gateway_from_config(config.database)
    try:
        gateway.setup()
        transfer = TransferCoordinator(Repository(gateway))

        if args.import_file:
            stores = transfer.import_from_file(args.import_file)
            logger.info("cli.import.done", input=args.import_file, stores=len(stores))

        if args.export:
            path = transfer.export_to_file(args.output, store_id=args.store)
            logger.info("cli.export.done", output=str(path), store_id=args.store)
    except ArcVaultError as e:
        logger.error("cli.transfer.failed", code=e.code, error=str(e))
        return 1
    finally:
        gateway.close()

    return 0


def main(argv: Optional[List[str]] = None) -> None:
    load_dotenv()

    parser = build_parser()
    args = parser.parse_args(argv)

    if args.store is not None and not args.export:
        parser.error("--store requires --export")

    configure_logging(
        debug=args.debug,
        logfile=args.logfile,
        json_output=not args.console_log
    )

    try:
        config = set_config(load_config(args))
    except ValueError as e:
        logger.error("cli.config.invalid", error=str(e))
        sys.exit(2)

    if args.export or args.import_file:
        sys.exit(run_transfer(config, args))

    import uvicorn

    from arcvault.api.main import create_app

    logger.info(
        "cli.serve",
        host=config.server.host,
        port=config.server.port,
        backend=config.database.backend
    )
    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_config=None
    )


if __name__ == "__main__":
    main()
