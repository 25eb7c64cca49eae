"""Command line interface for change-tracking setup and watermark maintenance."""

from __future__ import annotations

import argparse
import sys
from typing import Optional

from .cdc.checkpoint import PersistentWatermarkStore
from .config import load_settings
from .db import connect_from_settings
from .db.change_log import ChangeTrackingInstaller, build_install_statements
from .db.registry import TrackedTableRegistry


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="POS CDC bridge administration")
    subparsers = parser.add_subparsers(dest="command", required=True)

    install_parser = subparsers.add_parser(
        "install-tracking", help="Create the change log and row triggers"
    )
    install_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the DDL that would run without executing it",
    )

    show_parser = subparsers.add_parser("show-watermarks", help="Print stored watermarks")
    show_parser.add_argument("--path", default=None, help="Watermark file to read")

    reset_parser = subparsers.add_parser(
        "reset-watermark", help="Rewind or clear one table's watermark"
    )
    reset_parser.add_argument("table", help="Logical table name, e.g. TicketEvents")
    reset_parser.add_argument(
        "--expected", type=int, default=None, help="Current stored version"
    )
    reset_parser.add_argument(
        "--to", dest="new_version", type=int, default=None, help="Version to rewind to"
    )
    reset_parser.add_argument(
        "--force", action="store_true", help="Skip the expected-version guard"
    )
    reset_parser.add_argument("--path", default=None, help="Watermark file to update")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    settings = load_settings()

    if args.command == "install-tracking":
        registry = TrackedTableRegistry(settings.db_schema)
        if args.dry_run:
            for statement in build_install_statements(registry):
                print(statement.strip() + ";")
            return 0
        conn = connect_from_settings(settings)
        try:
            ChangeTrackingInstaller(registry).install(conn)
            registry.validate(conn)
        finally:
            conn.close()
        print(f"Change tracking installed in schema {registry.schema}")
        return 0

    path = args.path or settings.watermark_path
    store = PersistentWatermarkStore(path, fsync=settings.watermark_fsync)

    if args.command == "show-watermarks":
        registry = TrackedTableRegistry(settings.db_schema)
        for name in registry.names():
            version = store.load(name)
            print(f"{name}: {'<unset>' if version is None else version}")
        return 0

    if args.command == "reset-watermark":
        try:
            store.reset(
                args.table,
                expected_version=args.expected,
                new_version=args.new_version,
                force=args.force,
            )
        except ValueError as exc:
            print(f"Refusing to reset {args.table}: {exc}", file=sys.stderr)
            return 2
        print(f"Watermark for {args.table} is now {store.load(args.table)}")
        return 0

    parser.error("Unknown command")
    return 1


if __name__ == "__main__":
    sys.exit(main())
