#!/usr/bin/env python3
"""
Import entrypoint.

A run consists of:

1. Reading store and import settings from the environment, then applying
   command-line overrides.
2. Collecting the files to import (one file, or a recursive directory scan).
3. Opening and pinging the store, then creating (or, with ``--clear``,
   recreating) its tables.
4. Importing the files with bounded concurrency.
5. Reporting the totals.

Connection parameters come from ``PGHOST``, ``PGPORT``, ``PGUSER``,
``PGPASSWORD``, ``PGDATABASE`` or ``LOGIMPORT_DB_DSN``.
"""

import argparse
import sys
from dataclasses import replace
from typing import List, Optional

from .config import SUPPORTED_DRIVERS, load_import_config, load_store_config
from .discovery import find_log_files
from .errors import LogImportError
from .importer import import_logs
from .logger import setup_logger
from .store import open_store


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="logimport",
        description="Import HTTP access logs (plain or gzip) into a relational store.",
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--logfile", help="The log file to import")
    source.add_argument(
        "--logdir",
        help="The directory containing log files to import, which will be recursively scanned",
    )
    parser.add_argument(
        "--pattern",
        help="Only import files whose name contains this text (default: access_log)",
    )
    parser.add_argument(
        "--dbdriver",
        choices=SUPPORTED_DRIVERS,
        help="The type of database to use as a log store (default: postgres)",
    )
    parser.add_argument(
        "--dbconnection",
        help="PostgreSQL DSN, or the database file path for sqlite",
    )
    parser.add_argument(
        "--cpu",
        type=int,
        help="The number of files to import simultaneously (default: 4)",
    )
    parser.add_argument(
        "--clear",
        action="store_true",
        help="Drop and recreate all tables before importing",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--log-dir", default=".logs", help="Directory for the run's log file")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Execute the full import workflow.

    :param argv: Command-line arguments, ``sys.argv[1:]`` when omitted.
    :return: Process exit status.
    """
    args = build_parser().parse_args(argv)
    logger = setup_logger("logimport", verbose=args.verbose, log_dir=args.log_dir)

    try:
        store_config = load_store_config()
        import_config = load_import_config()

        if args.dbdriver:
            store_config = replace(store_config, driver=args.dbdriver)
        store_config = store_config.with_connection(args.dbconnection)

        if args.cpu is not None:
            if args.cpu < 1:
                raise LogImportError(f"--cpu must be at least 1, got {args.cpu}")
            import_config = replace(import_config, concurrency=args.cpu)
        if args.pattern:
            import_config = replace(import_config, pattern=args.pattern)

        # One pooled connection per concurrently imported file.
        if store_config.pool_size < import_config.concurrency:
            store_config = replace(store_config, pool_size=import_config.concurrency)
    except LogImportError as exc:
        logger.error(f"Invalid configuration: {exc}")
        return 1

    logger.info("=== IMPORT START ===")

    paths = find_log_files(args.logfile, args.logdir, import_config.pattern)
    if not paths:
        logger.warning("No log files to import")

    logger.info("Opening logstore...")
    try:
        store = open_store(store_config)
    except LogImportError as exc:
        logger.error(f"Failed to open logstore: {exc}")
        return 1

    try:
        if args.clear:
            logger.info("Removing existing tables...")
            store.clear()
        else:
            store.init()
        logger.info("Initialization complete")

        logger.info(f"Max workers: {import_config.concurrency}")
        totals = import_logs(store, paths, import_config.concurrency)
    except LogImportError as exc:
        logger.error(f"Failed to initialize logstore: {exc}")
        return 1
    finally:
        store.close()

    logger.info(
        f"Files: {totals.files} ({totals.skipped_files} skipped, {totals.failed_files} failed); "
        f"lines: {totals.lines}"
    )
    logger.info(f"Total inserted {totals.inserted}; total errors {totals.errors}")
    logger.info("=== IMPORT COMPLETE ===")
    return 0


if __name__ == "__main__":
    sys.exit(main())
