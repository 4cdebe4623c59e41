"""
Command line interface for missao-sync

    missao-sync relay                 run the relay server
    missao-sync snapshot [--full]     print the current document
    missao-sync watch                 print every replacement as it happens
    missao-sync commit ...            record a commitment
    missao-sync reset --yes           restore the default document
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from .core.config_manager import ConfigurationManager
from .core.errors import ConfigurationError, MissaoSyncError, ValidationError
from .core.logging_setup import setup_logging
from .core.reconciliation import Origin
from .model import CommitmentKind, Document
from .relay.server import RelayServer
from .services.sync_application import SyncApplication

logger = logging.getLogger('missao_sync.cli')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="missao-sync", description="Shared mission counter synchronization")
    parser.add_argument("--base-path", default=None, help="Directory holding config/ and .env")
    parser.add_argument("--storage-dir", default=None, help="Local snapshot directory")
    parser.add_argument("--remote-url", default=None, help="Relay server base URL")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR or CRITICAL")

    commands = parser.add_subparsers(dest="command", required=True)

    relay = commands.add_parser("relay", help="Run the relay server")
    relay.add_argument("--host", default=None)
    relay.add_argument("--port", type=int, default=None)
    relay.add_argument("--database", default=None, help="SQLite database path")

    snapshot = commands.add_parser("snapshot", help="Print the current document")
    snapshot.add_argument("--full", action="store_true", help="Print the whole document, not just totals")

    commands.add_parser("watch", help="Print every replacement until interrupted")

    commit = commands.add_parser("commit", help="Record a commitment")
    commit.add_argument("--kind", choices=[kind.value for kind in CommitmentKind], default=CommitmentKind.DISCIPLES.value)
    commit.add_argument("--location", type=int, required=True, help="Location id")
    commit.add_argument("--amount", type=int, required=True)
    commit.add_argument("--name", required=True, help="Who committed")

    reset = commands.add_parser("reset", help="Restore the default document")
    reset.add_argument("--yes", action="store_true", help="Confirm the reset")

    return parser


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    overrides = {
        'storage_dir': args.storage_dir,
        'remote_url': args.remote_url,
        'log_level': args.log_level,
    }
    if args.command == "relay":
        overrides.update({
            'relay_host': args.host,
            'relay_port': args.port,
            'relay_database_path': args.database,
        })
    return overrides


def _print_json(data: Any):
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


async def _snapshot(app: SyncApplication, full: bool) -> int:
    document = await app.start()
    try:
        _print_json(document.to_dict() if full else document.summary())
    finally:
        await app.shutdown()
    return 0


async def _watch(app: SyncApplication) -> int:
    def on_change(document: Document, origin: Origin):
        _print_json({'origin': origin.value, **document.summary()})

    app.engine.subscribe(on_change)
    await app.start()
    try:
        await asyncio.Event().wait()
    finally:
        await app.shutdown()
    return 0


async def _commit(app: SyncApplication, args: argparse.Namespace) -> int:
    await app.start()
    try:
        document = app.mutations.add_commitment(args.kind, args.location, args.amount, args.name)
        _print_json(document.summary())
    finally:
        await app.shutdown()
    return 0


async def _reset(app: SyncApplication) -> int:
    await app.start()
    try:
        _print_json(app.mutations.reset().summary())
    finally:
        await app.shutdown()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = ConfigurationManager(args.base_path).load_configuration(_overrides(args))
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    setup_logging(config)

    if args.command == "reset" and not args.yes:
        print("Refusing to reset without --yes", file=sys.stderr)
        return 2

    try:
        if args.command == "relay":
            asyncio.run(RelayServer(config).serve())
            return 0

        app = SyncApplication(config)
        if args.command == "snapshot":
            return asyncio.run(_snapshot(app, args.full))
        if args.command == "watch":
            return asyncio.run(_watch(app))
        if args.command == "commit":
            return asyncio.run(_commit(app, args))
        return asyncio.run(_reset(app))

    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0
    except ValidationError as e:
        print(f"Invalid request: {e}", file=sys.stderr)
        return 2
    except MissaoSyncError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
