import os
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any, Dict, Optional

from .errors import ConfigError

LOG_FILE_TABLE = "log_file"
IP_ADDRESS_TABLE = "ip_address"
URI_TABLE = "uri"
REFERRER_TABLE = "referrer"
LOG_ENTRY_TABLE = "log_entry"

# Fact table first: it references every dimension.
DROP_ORDER = [
    LOG_ENTRY_TABLE,
    LOG_FILE_TABLE,
    IP_ADDRESS_TABLE,
    URI_TABLE,
    REFERRER_TABLE,
]

ENTRY_FIELDS = [
    "id",
    "logfile_id",
    "ipaddress_id",
    "uri_id",
    "referrer_id",
    "clientident",
    "clientauth",
    "clientversion",
    "requestmethod",
    "requestparams",
    "requestprotocol",
    "logtime",
    "status",
    "size",
]

GZIP_MAGIC = b"\x1f\x8b"

# Reported as the stored modification time of a file seen for the first time.
FIRST_SIGHT_OFFSET = timedelta(days=1)

DEFAULT_PATTERN = "access_log"

SUPPORTED_DRIVERS = ("postgres", "sqlite")


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


def _parse_positive_int(name: str, value: str) -> int:
    try:
        parsed = int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None
    if parsed < 1:
        raise ConfigError(f"{name} must be at least 1, got {parsed}")
    return parsed


@dataclass(frozen=True)
class StoreConfig:
    driver: str = "postgres"
    dsn: Optional[str] = None
    database: str = "logdb"
    user: str = "admin"
    password: str = ""
    host: str = "localhost"
    port: str = "5432"
    sqlite_path: str = "logimport.db"
    pool_size: int = 8
    write_retries: int = 3
    resolve_hostnames: bool = False

    def __post_init__(self) -> None:
        if self.driver not in SUPPORTED_DRIVERS:
            raise ConfigError(
                f"Unsupported store driver {self.driver!r}; "
                f"expected one of {', '.join(SUPPORTED_DRIVERS)}"
            )

    def connection_kwargs(self) -> Dict[str, Any]:
        """
        Keyword arguments for ``psycopg2.connect`` and its pools.

        An explicit DSN wins over the individual connection fields.

        :return: Mapping suitable for ``**`` expansion.
        """
        if self.dsn:
            return {"dsn": self.dsn}
        return {
            "dbname": self.database,
            "user": self.user,
            "password": self.password,
            "host": self.host,
            "port": self.port,
        }

    def with_connection(self, connection: Optional[str]) -> "StoreConfig":
        """
        Apply a command-line connection string.

        For PostgreSQL it is a libpq DSN, for SQLite a database path.
        """
        if not connection:
            return self
        if self.driver == "sqlite":
            return replace(self, sqlite_path=connection)
        return replace(self, dsn=connection)


@dataclass(frozen=True)
class ImportConfig:
    concurrency: int = 4
    pattern: str = DEFAULT_PATTERN


def load_store_config() -> StoreConfig:
    return StoreConfig(
        driver=os.getenv("LOGIMPORT_DB_DRIVER", StoreConfig.driver).strip().lower(),
        dsn=os.getenv("LOGIMPORT_DB_DSN") or None,
        database=os.getenv("PGDATABASE", StoreConfig.database),
        user=os.getenv("PGUSER", StoreConfig.user),
        password=os.getenv("PGPASSWORD", StoreConfig.password),
        host=os.getenv("PGHOST", StoreConfig.host),
        port=os.getenv("PGPORT", StoreConfig.port),
        sqlite_path=os.getenv("LOGIMPORT_SQLITE_PATH", StoreConfig.sqlite_path),
        pool_size=_parse_positive_int(
            "LOGIMPORT_POOL_SIZE",
            os.getenv("LOGIMPORT_POOL_SIZE", str(StoreConfig.pool_size)),
        ),
        write_retries=_parse_positive_int(
            "LOGIMPORT_WRITE_RETRIES",
            os.getenv("LOGIMPORT_WRITE_RETRIES", str(StoreConfig.write_retries)),
        ),
        resolve_hostnames=_parse_bool(os.getenv("LOGIMPORT_RESOLVE_HOSTNAMES", "false")),
    )


def load_import_config() -> ImportConfig:
    return ImportConfig(
        concurrency=_parse_positive_int(
            "LOGIMPORT_CPU",
            os.getenv("LOGIMPORT_CPU", str(ImportConfig.concurrency)),
        ),
        pattern=os.getenv("LOGIMPORT_PATTERN", ImportConfig.pattern),
    )
