"""
Store contract shared by every backend.

The base class owns the dimension cache and the lookup-or-create logic;
backends only supply the SQL for selecting, inserting and advancing rows.
"""

import logging
import socket
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from ..config import (
    FIRST_SIGHT_OFFSET,
    IP_ADDRESS_TABLE,
    REFERRER_TABLE,
    URI_TABLE,
    StoreConfig,
)
from ..entry import LogEntry
from ..errors import StoreError
from ..parser import ABSENT
from ..timestamps import utc_now
from . import cache

logger = logging.getLogger(__name__)

# dimension -> (table, natural key column)
DIMENSION_TABLES = {
    cache.IP: (IP_ADDRESS_TABLE, "address"),
    cache.URI: (URI_TABLE, "uri"),
    cache.REFERRER: (REFERRER_TABLE, "referrer"),
}


class WriteResult(str, Enum):
    """Outcome of ``LogStore.write_fact_entry``."""

    INSERTED = "INSERTED"
    DUPLICATE = "DUPLICATE"
    SKIPPED = "SKIPPED"


class SerializationConflict(StoreError):
    """A fact transaction lost to a concurrent one and may be retried."""


class LogStore(ABC):
    """
    Relational log store: four dimension tables plus one fact table.

    Usable as a context manager, which opens on enter and closes on exit.
    """

    def __init__(self, config: StoreConfig) -> None:
        self.config = config
        self.cache = cache.DimensionCache()

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------
    @abstractmethod
    def open(self) -> None:
        """Connect to the backing database."""

    @abstractmethod
    def ping(self) -> None:
        """Round-trip a trivial statement; raises ``StoreError`` on failure."""

    @abstractmethod
    def init(self) -> None:
        """Create the tables if they do not exist."""

    @abstractmethod
    def _drop_tables(self) -> None:
        """Drop every table, fact table first."""

    @abstractmethod
    def close(self) -> None:
        """Release connections. Safe to call more than once."""

    def clear(self) -> None:
        """Drop and recreate all tables. Destroys every imported row."""
        logger.warning("Dropping all logimport tables")
        self._drop_tables()
        self.cache.clear()
        self.init()

    def __enter__(self) -> "LogStore":
        self.open()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------
    @abstractmethod
    def _select_dimension(self, table: str, column: str, value: str) -> Optional[int]:
        """Return the id of the row whose ``column`` equals ``value``."""

    @abstractmethod
    def _insert_dimension(
        self, table: str, column: str, value: str, extra: Dict[str, Any]
    ) -> Optional[int]:
        """Insert a dimension row; ``None`` when the natural key already exists."""

    @abstractmethod
    def _select_log_file(self, filename: str) -> Optional[Tuple[int, datetime]]:
        """Return ``(id, modified)`` for ``filename``."""

    @abstractmethod
    def _insert_log_file(self, filename: str, modified: datetime) -> Optional[int]:
        """Insert a log_file row; ``None`` when the filename already exists."""

    @abstractmethod
    def _advance_log_file(self, file_id: int, modified: datetime) -> None:
        """Move ``modified`` forward; never moves it backwards."""

    @abstractmethod
    def _reset_log_file(self, file_id: int, expected: datetime, previous: datetime) -> bool:
        """Set ``modified`` back to ``previous`` if it still equals ``expected``."""

    @abstractmethod
    def _insert_fact(self, row: Dict[str, Any]) -> bool:
        """
        Insert one fact row in a serializable transaction.

        Returns False when a row with the same id already exists. Raises
        ``SerializationConflict`` when the transaction should be retried.
        """

    # ------------------------------------------------------------
    # Lookup-or-create
    # ------------------------------------------------------------
    def lookup_or_create_log_file(
        self, filename: str, observed: datetime
    ) -> Tuple[int, datetime]:
        """
        Resolve a log file and report its previously stored modification time.

        A filename seen for the first time is recorded with ``observed`` and
        reported as modified one day before ``min(now, observed)``, so the
        caller always processes it once. Otherwise the stored time is advanced
        to ``observed`` when that is strictly newer, and the old value is
        returned.

        :param filename: Path the file was read from.
        :param observed: On-disk modification time (aware).
        :return: ``(file_id, stored_modified)``.
        """
        with self.cache.locked(cache.FILE) as files:
            known = files.get(filename)
            if known is None:
                known = self._select_log_file(filename)

            if known is None:
                file_id = self._insert_log_file(filename, observed)
                if file_id is not None:
                    files[filename] = (file_id, observed)
                    logger.debug(f"Registered new log file {filename} -> id {file_id}")
                    return file_id, min(utc_now(), observed) - FIRST_SIGHT_OFFSET

                known = self._select_log_file(filename)
                if known is None:
                    raise StoreError(f"log_file row for {filename} vanished after insert conflict")

            file_id, stored = known
            if observed > stored:
                self._advance_log_file(file_id, observed)
                files[filename] = (file_id, observed)
            else:
                files[filename] = known
            return file_id, stored

    def revert_log_file(
        self, filename: str, file_id: int, observed: datetime, previous: datetime
    ) -> None:
        """
        Undo the advance made by ``lookup_or_create_log_file`` for a failed import.

        The row goes back to ``previous`` only if it still holds ``observed``,
        so a newer mark from another run is kept. The next lookup then reports
        the file as changed and it is read again.

        :param filename: Path the file was read from.
        :param file_id: Id returned by the lookup.
        :param observed: Modification time passed to the lookup.
        :param previous: Stored time the lookup reported.
        """
        with self.cache.locked(cache.FILE) as files:
            files.pop(filename, None)
            if self._reset_log_file(file_id, observed, previous):
                logger.debug(f"Reverted {filename} to {previous.isoformat()}")

    def _lookup_or_create(self, dimension: str, value: str) -> Optional[int]:
        if not value or value == ABSENT:
            return None

        table, column = DIMENSION_TABLES[dimension]

        def load(key: str) -> int:
            found = self._select_dimension(table, column, key)
            if found is not None:
                return found

            extra = self._dimension_extra(dimension, key)
            created = self._insert_dimension(table, column, key, extra)
            if created is not None:
                logger.debug(f"Created new {table}: {key} -> id {created}")
                return created

            # Lost an insert race; the winner's row is authoritative.
            found = self._select_dimension(table, column, key)
            if found is None:
                raise StoreError(f"{table} row for {key!r} vanished after insert conflict")
            return found

        return self.cache.get_or_load(dimension, value, load)

    def lookup_or_create_ip(self, address: str) -> Optional[int]:
        return self._lookup_or_create(cache.IP, address)

    def lookup_or_create_uri(self, uri: str) -> Optional[int]:
        return self._lookup_or_create(cache.URI, uri)

    def lookup_or_create_referrer(self, referrer: str) -> Optional[int]:
        return self._lookup_or_create(cache.REFERRER, referrer)

    def _dimension_extra(self, dimension: str, value: str) -> Dict[str, Any]:
        if dimension == cache.IP and self.config.resolve_hostnames:
            return {"hostname": resolve_hostname(value)}
        return {}

    # ------------------------------------------------------------
    # Facts
    # ------------------------------------------------------------
    def fact_row(self, entry: LogEntry) -> Dict[str, Any]:
        """
        Resolve every dimension of ``entry`` and build its fact row.

        Dimension rows are committed as they are created, independently of
        the fact transaction that follows. An entry that already carries its
        log file id is not looked up again.

        :raises StoreError: If the entry names a source file but not its
            modification time.
        """
        logfile_id = entry.source_file_id
        if logfile_id is None and entry.source_file:
            if entry.source_file_modified_at is None:
                raise StoreError(f"No modification time given for {entry.source_file}")
            logfile_id, _ = self.lookup_or_create_log_file(
                entry.source_file, entry.source_file_modified_at
            )

        row = {
            "id": entry.content_hash,
            "logfile_id": logfile_id,
            "ipaddress_id": self.lookup_or_create_ip(entry.ip_address),
            "uri_id": self.lookup_or_create_uri(entry.request_uri),
            "referrer_id": self.lookup_or_create_referrer(entry.referrer),
            "clientident": entry.client_ident,
            "clientauth": entry.client_auth,
            "clientversion": entry.client_version,
            "requestmethod": entry.request_method,
            "requestparams": entry.request_params,
            "requestprotocol": entry.request_protocol,
            "logtime": entry.timestamp,
            "status": entry.status,
            "size": entry.size,
        }
        return row

    def write_fact_entry(self, entry: LogEntry) -> WriteResult:
        """
        Persist one parsed entry as a fact row.

        Parse errors are skipped. A row whose content hash is already stored
        is reported as ``DUPLICATE``, not as an error.

        :param entry: Entry produced by the parser, provenance attached.
        :return: What happened to the entry.
        :raises StoreError: If a dimension lookup or the insert fails.
        """
        if entry.is_parse_error:
            return WriteResult.SKIPPED

        row = self.fact_row(entry)
        attempts = max(1, self.config.write_retries)
        attempt = 1

        while True:
            try:
                inserted = self._insert_fact(row)
            except SerializationConflict:
                if attempt >= attempts:
                    raise
                logger.debug(
                    f"Serialization conflict on {entry.content_hash.hex()}, "
                    f"retrying ({attempt}/{attempts})"
                )
                attempt += 1
                continue
            return WriteResult.INSERTED if inserted else WriteResult.DUPLICATE


def resolve_hostname(address: str) -> Optional[str]:
    """
    Reverse-resolve an IP address.

    :param address: Textual IPv4/IPv6 address.
    :return: Host name, or ``None`` when there is no PTR record.
    """
    try:
        return socket.gethostbyaddr(address)[0]
    except (socket.herror, socket.gaierror, OSError) as exc:
        logger.debug(f"No reverse DNS for {address}: {exc}")
        return None
