from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, Optional, Tuple

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2.pool import ThreadedConnectionPool

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

IDENTITY = "id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY"
CREATED = "created TIMESTAMPTZ NOT NULL DEFAULT now()"

DDL = [
    f"""
    CREATE TABLE IF NOT EXISTS {LOG_FILE_TABLE} (
        {IDENTITY},
        filename TEXT NOT NULL UNIQUE,
        modified TIMESTAMPTZ NOT NULL,
        {CREATED}
    );
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {IP_ADDRESS_TABLE} (
        {IDENTITY},
        address TEXT NOT NULL UNIQUE,
        hostname TEXT,
        {CREATED}
    );
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {URI_TABLE} (
        {IDENTITY},
        uri TEXT NOT NULL UNIQUE,
        {CREATED}
    );
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {REFERRER_TABLE} (
        {IDENTITY},
        referrer TEXT NOT NULL UNIQUE,
        {CREATED}
    );
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {LOG_ENTRY_TABLE} (
        id BYTEA PRIMARY KEY,
        logfile_id BIGINT REFERENCES {LOG_FILE_TABLE}(id),
        ipaddress_id BIGINT REFERENCES {IP_ADDRESS_TABLE}(id),
        uri_id BIGINT REFERENCES {URI_TABLE}(id),
        referrer_id BIGINT REFERENCES {REFERRER_TABLE}(id),
        clientident TEXT,
        clientauth TEXT,
        clientversion TEXT,
        requestmethod TEXT,
        requestparams TEXT,
        requestprotocol TEXT,
        logtime TIMESTAMPTZ,
        status INTEGER,
        size BIGINT,
        {CREATED}
    );
    """,
]

INSERT_ENTRY_SQL = f"""
    INSERT INTO {LOG_ENTRY_TABLE} (
        {", ".join(ENTRY_FIELDS)}
    )
    VALUES ({", ".join(["%s"] * len(ENTRY_FIELDS))});
"""

RETRYABLE = (pg_errors.SerializationFailure, pg_errors.DeadlockDetected)


class PostgresLogStore(LogStore):
    """
    PostgreSQL backend built on a psycopg2 ``ThreadedConnectionPool``.

    Every operation borrows one connection for one transaction and returns it
    to the pool, so concurrent import threads never share a connection.
    """

    def __init__(self, config: StoreConfig) -> None:
        super().__init__(config)
        self._pool: Optional[ThreadedConnectionPool] = None

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------
    def open(self) -> None:
        logger.info("Connecting to PostgreSQL...")
        try:
            self._pool = ThreadedConnectionPool(
                1, self.config.pool_size, **self.config.connection_kwargs()
            )
        except psycopg2.Error as exc:
            raise StoreError(f"Failed to connect to DB: {exc}") from exc
        logger.info(f"DB connection OK (pool size {self.config.pool_size}).")

    def ping(self) -> None:
        with self._transaction("Ping") as cur:
            cur.execute("SELECT 1;")
            cur.fetchone()

    def init(self) -> None:
        logger.info("Creating table structure...")
        with self._transaction("Create tables") as cur:
            for statement in DDL:
                cur.execute(statement)

    def _drop_tables(self) -> None:
        with self._transaction("Drop tables") as cur:
            for table in DROP_ORDER:
                cur.execute(f"DROP TABLE IF EXISTS {table};")

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
            logger.info(f"Closed PostgreSQL pool; cache sizes {self.cache.sizes()}")
        self.cache.clear()

    @contextmanager
    def _transaction(self, action: str, isolation: Optional[str] = None) -> Iterator[Any]:
        """
        Borrow a pooled connection for one transaction.

        Parameters
        ----------
        action : str
            Description used in error messages.
        isolation : str, optional
            Isolation level applied to this transaction only.

        Yields
        ------
        cursor
            Cursor whose work is committed on success, rolled back on error.
        """
        if self._pool is None:
            raise StoreError(f"{action} failed: store is not open")

        try:
            conn = self._pool.getconn()
        except psycopg2.Error as exc:
            raise StoreError(f"{action} failed: no connection available: {exc}") from exc

        try:
            with conn:
                with conn.cursor() as cur:
                    if isolation:
                        cur.execute(f"SET TRANSACTION ISOLATION LEVEL {isolation};")
                    yield cur
        except RETRYABLE as exc:
            raise SerializationConflict(f"{action} conflicted: {exc}") from exc
        except psycopg2.Error as exc:
            raise StoreError(f"{action} failed: {exc}") from exc
        finally:
            self._pool.putconn(conn, close=bool(conn.closed))

    # ------------------------------------------------------------
    # Dimension rows
    # ------------------------------------------------------------
    def _select_dimension(self, table: str, column: str, value: str) -> Optional[int]:
        with self._transaction(f"Look up {table}") as cur:
            cur.execute(f"SELECT id FROM {table} WHERE {column} = %s;", (value,))
            row = cur.fetchone()
        return row[0] if row else None

    def _insert_dimension(
        self, table: str, column: str, value: str, extra: Dict[str, Any]
    ) -> Optional[int]:
        columns = [column, *extra]
        placeholders = ", ".join(["%s"] * len(columns))
        with self._transaction(f"Insert {table}") as cur:
            cur.execute(
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
                f"ON CONFLICT ({column}) DO NOTHING RETURNING id;",
                (value, *extra.values()),
            )
            row = cur.fetchone()
        return row[0] if row else None

    def _select_log_file(self, filename: str) -> Optional[Tuple[int, datetime]]:
        with self._transaction(f"Look up {LOG_FILE_TABLE}") as cur:
            cur.execute(
                f"SELECT id, modified FROM {LOG_FILE_TABLE} WHERE filename = %s;",
                (filename,),
            )
            row = cur.fetchone()
        return (row[0], row[1]) if row else None

    def _insert_log_file(self, filename: str, modified: datetime) -> Optional[int]:
        with self._transaction(f"Insert {LOG_FILE_TABLE}") as cur:
            cur.execute(
                f"INSERT INTO {LOG_FILE_TABLE} (filename, modified) VALUES (%s, %s) "
                "ON CONFLICT (filename) DO NOTHING RETURNING id;",
                (filename, modified),
            )
            row = cur.fetchone()
        return row[0] if row else None

    def _advance_log_file(self, file_id: int, modified: datetime) -> None:
        with self._transaction(f"Update {LOG_FILE_TABLE}") as cur:
            cur.execute(
                f"UPDATE {LOG_FILE_TABLE} SET modified = %s WHERE id = %s AND modified < %s;",
                (modified, file_id, modified),
            )

    def _reset_log_file(self, file_id: int, expected: datetime, previous: datetime) -> bool:
        with self._transaction(f"Reset {LOG_FILE_TABLE}") as cur:
            cur.execute(
                f"UPDATE {LOG_FILE_TABLE} SET modified = %s WHERE id = %s AND modified = %s;",
                (previous, file_id, expected),
            )
            reset = cur.rowcount == 1
        return reset

    # ------------------------------------------------------------
    # Fact rows
    # ------------------------------------------------------------
    def _insert_fact(self, row: Dict[str, Any]) -> bool:
        values = tuple(row[field] for field in ENTRY_FIELDS)
        with self._transaction(
            f"Insert {LOG_ENTRY_TABLE} {row['id'].hex()}", isolation="SERIALIZABLE"
        ) as cur:
            try:
                cur.execute(INSERT_ENTRY_SQL, values)
            except pg_errors.UniqueViolation:
                cur.connection.rollback()
                return False
        return True
