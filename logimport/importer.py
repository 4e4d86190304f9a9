"""
Incremental, concurrent import of access-log files.

Each file is one unit of work: stat it, ask the store whether it changed
since the last run, then scan, parse and write its lines in on-disk order.
Up to ``concurrency`` files run at once on a thread pool; per-file failures
are counted and never abort the other files.
"""

import gzip
import logging
import os
import time
import zlib
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import BinaryIO, Iterator, List, Optional, Sequence

from .config import GZIP_MAGIC
from .errors import StoreError
from .parser import parse_line
from .store import LogStore, WriteResult
from .timestamps import file_modified_at

logger = logging.getLogger(__name__)

FILE_ERRORS = (OSError, EOFError, zlib.error, StoreError)


@dataclass
class FileStats:
    """Counters for one file."""

    path: str
    lines: int = 0
    inserted: int = 0
    duplicates: int = 0
    parse_errors: int = 0
    store_errors: int = 0
    skipped: bool = False
    failed: bool = False
    elapsed: float = 0.0

    @property
    def errors(self) -> int:
        return self.parse_errors + self.store_errors + (1 if self.failed else 0)


@dataclass
class ImportTotals:
    """Counters folded over every file of a run."""

    files: int = 0
    skipped_files: int = 0
    failed_files: int = 0
    lines: int = 0
    inserted: int = 0
    duplicates: int = 0
    errors: int = 0
    per_file: List[FileStats] = field(default_factory=list)

    def add(self, stats: FileStats) -> None:
        self.files += 1
        self.skipped_files += int(stats.skipped)
        self.failed_files += int(stats.failed)
        self.lines += stats.lines
        self.inserted += stats.inserted
        self.duplicates += stats.duplicates
        self.errors += stats.errors
        self.per_file.append(stats)


def is_gzip(stream: BinaryIO) -> bool:
    """
    Sniff the gzip magic bytes and rewind.

    :param stream: Seekable binary stream positioned at its start.
    :return: True if the stream starts with ``1F 8B``.
    """
    head = stream.read(len(GZIP_MAGIC))
    stream.seek(0)
    return head == GZIP_MAGIC


@contextmanager
def open_log_stream(path: str) -> Iterator[BinaryIO]:
    """
    Open a log file for binary line reading, decompressing gzip transparently.

    Both the file handle and the decompressor are closed on exit.

    :param path: File to open.
    :return: Context manager yielding a binary stream.
    """
    with open(path, "rb") as raw:
        if is_gzip(raw):
            logger.debug(f"{path} is gzip-compressed")
            with gzip.GzipFile(fileobj=raw, mode="rb") as decompressed:
                yield decompressed
        else:
            yield raw


def iter_lines(stream: BinaryIO) -> Iterator[bytes]:
    """Yield lines without their ``\\n`` or ``\\r\\n`` terminator."""
    for line in stream:
        yield line.rstrip(b"\r\n")


def scan_stream(
    store: LogStore,
    stream: BinaryIO,
    stats: FileStats,
    modified_at: datetime,
    file_id: Optional[int] = None,
) -> None:
    """
    Parse and write every line of ``stream``.

    Parse errors and store errors are logged and counted; the scan always
    continues with the next line.
    """
    path = stats.path
    for line_no, raw in enumerate(iter_lines(stream), 1):
        stats.lines += 1
        if not raw.strip():
            continue

        entry = parse_line(raw)
        if entry.is_parse_error:
            stats.parse_errors += 1
            logger.warning(f"Error parsing line {line_no} in {path}: {entry.error}")
            logger.warning(raw.decode("utf-8", errors="replace"))
            continue

        entry.set_source(path, modified_at, file_id)
        try:
            result = store.write_fact_entry(entry)
        except StoreError as exc:
            stats.store_errors += 1
            logger.error(f"Error adding line {line_no} of {path} to store: {exc}")
            continue

        if result is WriteResult.INSERTED:
            stats.inserted += 1
        elif result is WriteResult.DUPLICATE:
            stats.duplicates += 1
            logger.debug(f"Line {line_no} of {path} already stored")


def import_file(store: LogStore, path: str) -> FileStats:
    """
    Run the per-file pipeline.

    Steps:
      1. Stat the file.
      2. Ask the store for its remembered modification time.
      3. Skip when the stored time is not older than the on-disk one.
      4. Open it, sniffing gzip.
      5. Scan, parse and write each line.
      6. If the scan failed or lost lines to store errors, put the stored
         time back so the next run reads the file again.

    :param store: Opened store.
    :param path: Log file path.
    :return: Counters for this file.
    """
    stats = FileStats(path=path)
    start = time.monotonic()
    logger.info(f"Processing: {path}")

    file_id = None
    try:
        modified_at = file_modified_at(os.stat(path).st_mtime)
        file_id, stored = store.lookup_or_create_log_file(path, modified_at)

        if stored >= modified_at:
            stats.skipped = True
            logger.info(f"Skipping {path}: unchanged since last import")
            return stats

        with open_log_stream(path) as stream:
            scan_stream(store, stream, stats, modified_at, file_id)
    except FILE_ERRORS as exc:
        stats.failed = True
        logger.error(f"Failed to import {path}: {exc}")
    finally:
        stats.elapsed = time.monotonic() - start

    if file_id is not None and (stats.failed or stats.store_errors):
        try:
            store.revert_log_file(path, file_id, modified_at, stored)
            logger.warning(f"{path} was not fully imported and will be read again next run")
        except StoreError as exc:
            logger.error(f"Failed to reset {path} for the next run: {exc}")

    log = logger.info if stats.inserted else logger.debug
    log(
        f"Parsed {stats.lines} lines in {path} taking {stats.elapsed:.2f}s; "
        f"inserted {stats.inserted}; duplicates {stats.duplicates}; errors {stats.errors}"
    )
    return stats


def import_logs(store: LogStore, paths: Sequence[str], concurrency: int = 4) -> ImportTotals:
    """
    Import every file in ``paths`` with at most ``concurrency`` in flight.

    A worker pool drains the file list, so a slow file only occupies its own
    slot. Returns once every file has finished.

    :param store: Opened store shared by all workers.
    :param paths: Candidate files, in the order they should be started.
    :param concurrency: Maximum number of files processed at once.
    :return: Totals over the run.
    """
    if concurrency < 1:
        raise ValueError(f"concurrency must be at least 1, got {concurrency}")

    totals = ImportTotals()
    logger.info(f"Importing {len(paths)} files with up to {concurrency} workers")

    with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="import") as executor:
        futures = {executor.submit(import_file, store, path): path for path in paths}

        for future in as_completed(futures):
            path = futures[future]
            try:
                stats = future.result()
            except Exception as exc:
                # Don't raise errors, just count them
                logger.exception(f"Unexpected error importing {path}: {exc}")
                stats = FileStats(path=path, failed=True)
            totals.add(stats)

    logger.info(
        f"Total inserted {totals.inserted}; total duplicates {totals.duplicates}; "
        f"total errors {totals.errors}"
    )
    return totals
