import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, Optional, Tuple

from ..config import (
    DROP_ORDER,
    ENTRY_FIELDS,
    IP_ADDRESS_TABLE,
    LOG_ENTRY_TABLE,
    LOG_FILE_TABLE,
    REFERRER_TABLE,
    URI_TABLE,
    StoreConfig,
)
from ..errors import StoreError
from .base import LogStore, SerializationConflict, logger

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
MICROSECOND = timedelta(microseconds=1)

IDENTITY = "id INTEGER PRIMARY KEY AUTOINCREMENT"
CREATED = "created TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP"

DDL = [
    f"""
    CREATE TABLE IF NOT EXISTS {LOG_FILE_TABLE} (
        {IDENTITY},
        filename TEXT NOT NULL UNIQUE,
        modified INTEGER NOT NULL,
        {CREATED}
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {IP_ADDRESS_TABLE} (
        {IDENTITY},
        address TEXT NOT NULL UNIQUE,
        hostname TEXT,
        {CREATED}
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {URI_TABLE} (
        {IDENTITY},
        uri TEXT NOT NULL UNIQUE,
        {CREATED}
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {REFERRER_TABLE} (
        {IDENTITY},
        referrer TEXT NOT NULL UNIQUE,
        {CREATED}
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {LOG_ENTRY_TABLE} (
        id BLOB PRIMARY KEY,
        logfile_id INTEGER REFERENCES {LOG_FILE_TABLE}(id),
        ipaddress_id INTEGER REFERENCES {IP_ADDRESS_TABLE}(id),
        uri_id INTEGER REFERENCES {URI_TABLE}(id),
        referrer_id INTEGER REFERENCES {REFERRER_TABLE}(id),
        clientident TEXT,
        clientauth TEXT,
        clientversion TEXT,
        requestmethod TEXT,
        requestparams TEXT,
        requestprotocol TEXT,
        logtime TEXT,
        status INTEGER,
        size INTEGER,
        {CREATED}
    )
    """,
]

INSERT_ENTRY_SQL = (
    f"INSERT INTO {LOG_ENTRY_TABLE} ({', '.join(ENTRY_FIELDS)}) "
    f"VALUES ({', '.join(['?'] * len(ENTRY_FIELDS))})"
)


def to_micros(value: datetime) -> int:
    """Exact microseconds since the epoch for an aware datetime."""
    return (value - EPOCH) // MICROSECOND


def from_micros(value: int) -> datetime:
    return EPOCH + timedelta(microseconds=value)


class SQLiteLogStore(LogStore):
    """
    SQLite backend for single-host runs and tests.

    One connection is shared by all import threads and every statement group
    runs under the store lock. SQLite serializes writers, so ``BEGIN
    IMMEDIATE`` is its strongest isolation. Modification times are stored as
    integer microseconds so the incremental gate compares exactly.
    """

    def __init__(self, config: StoreConfig) -> None:
        super().__init__(config)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------
    def open(self) -> None:
        path = self.config.sqlite_path
        logger.info(f"Opening SQLite database {path}...")
        try:
            if path != ":memory:" and os.path.dirname(path):
                os.makedirs(os.path.dirname(path), exist_ok=True)
            self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
            self._conn.execute("PRAGMA foreign_keys = ON")
        except (OSError, sqlite3.Error) as exc:
            raise StoreError(f"Failed to open SQLite database {path}: {exc}") from exc

    def ping(self) -> None:
        with self._transaction("Ping") as cur:
            cur.execute("SELECT 1")
            cur.fetchone()

    def init(self) -> None:
        logger.info("Creating table structure...")
        with self._transaction("Create tables") as cur:
            for statement in DDL:
                cur.execute(statement)

    def _drop_tables(self) -> None:
        with self._transaction("Drop tables") as cur:
            for table in DROP_ORDER:
                cur.execute(f"DROP TABLE IF EXISTS {table}")

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.info(f"Closed SQLite database; cache sizes {self.cache.sizes()}")
        self.cache.clear()

    @contextmanager
    def _transaction(self, action: str) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            if self._conn is None:
                raise StoreError(f"{action} failed: store is not open")
            cur = self._conn.cursor()
            try:
                cur.execute("BEGIN IMMEDIATE")
                yield cur
                cur.execute("COMMIT")
            except BaseException as exc:
                if self._conn.in_transaction:
                    self._conn.rollback()
                if isinstance(exc, sqlite3.OperationalError) and "locked" in str(exc):
                    raise SerializationConflict(f"{action} conflicted: {exc}") from exc
                if isinstance(exc, sqlite3.Error):
                    raise StoreError(f"{action} failed: {exc}") from exc
                raise
            finally:
                cur.close()

    # ------------------------------------------------------------
    # Dimension rows
    # ------------------------------------------------------------
    def _select_dimension(self, table: str, column: str, value: str) -> Optional[int]:
        with self._transaction(f"Look up {table}") as cur:
            cur.execute(f"SELECT id FROM {table} WHERE {column} = ?", (value,))
            row = cur.fetchone()
        return row[0] if row else None

    def _insert_dimension(
        self, table: str, column: str, value: str, extra: Dict[str, Any]
    ) -> Optional[int]:
        columns = [column, *extra]
        placeholders = ", ".join(["?"] * len(columns))
        with self._transaction(f"Insert {table}") as cur:
            cur.execute(
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
                f"ON CONFLICT ({column}) DO NOTHING",
                (value, *extra.values()),
            )
            created = cur.lastrowid if cur.rowcount == 1 else None
        return created

    def _select_log_file(self, filename: str) -> Optional[Tuple[int, datetime]]:
        with self._transaction(f"Look up {LOG_FILE_TABLE}") as cur:
            cur.execute(
                f"SELECT id, modified FROM {LOG_FILE_TABLE} WHERE filename = ?",
                (filename,),
            )
            row = cur.fetchone()
        return (row[0], from_micros(row[1])) if row else None

    def _insert_log_file(self, filename: str, modified: datetime) -> Optional[int]:
        with self._transaction(f"Insert {LOG_FILE_TABLE}") as cur:
            cur.execute(
                f"INSERT INTO {LOG_FILE_TABLE} (filename, modified) VALUES (?, ?) "
                "ON CONFLICT (filename) DO NOTHING",
                (filename, to_micros(modified)),
            )
            created = cur.lastrowid if cur.rowcount == 1 else None
        return created

    def _advance_log_file(self, file_id: int, modified: datetime) -> None:
        micros = to_micros(modified)
        with self._transaction(f"Update {LOG_FILE_TABLE}") as cur:
            cur.execute(
                f"UPDATE {LOG_FILE_TABLE} SET modified = ? WHERE id = ? AND modified < ?",
                (micros, file_id, micros),
            )

    def _reset_log_file(self, file_id: int, expected: datetime, previous: datetime) -> bool:
        with self._transaction(f"Reset {LOG_FILE_TABLE}") as cur:
            cur.execute(
                f"UPDATE {LOG_FILE_TABLE} SET modified = ? WHERE id = ? AND modified = ?",
                (to_micros(previous), file_id, to_micros(expected)),
            )
            reset = cur.rowcount == 1
        return reset

    # ------------------------------------------------------------
    # Fact rows
    # ------------------------------------------------------------
    def _insert_fact(self, row: Dict[str, Any]) -> bool:
        values = tuple(
            row[field].isoformat() if field == "logtime" and row[field] is not None else row[field]
            for field in ENTRY_FIELDS
        )
        try:
            with self._transaction(f"Insert {LOG_ENTRY_TABLE} {row['id'].hex()}") as cur:
                cur.execute(INSERT_ENTRY_SQL, values)
        except StoreError as exc:
            cause = exc.__cause__
            if isinstance(cause, sqlite3.IntegrityError) and f"{LOG_ENTRY_TABLE}.id" in str(cause):
                return False
            raise
        return True

    def count(self, table: str) -> int:
        """Number of rows in ``table``."""
        with self._transaction(f"Count {table}") as cur:
            cur.execute(f"SELECT COUNT(*) FROM {table}")
            return cur.fetchone()[0]
