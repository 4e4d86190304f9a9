import gzip
import os
import sqlite3

import pytest

from logimport.config import StoreConfig
from logimport.store.sqlite import SQLiteLogStore

ENV_VARS = [
    "LOGIMPORT_DB_DRIVER",
    "LOGIMPORT_DB_DSN",
    "LOGIMPORT_SQLITE_PATH",
    "LOGIMPORT_POOL_SIZE",
    "LOGIMPORT_WRITE_RETRIES",
    "LOGIMPORT_RESOLVE_HOSTNAMES",
    "LOGIMPORT_CPU",
    "LOGIMPORT_PATTERN",
    "PGDATABASE",
    "PGUSER",
    "PGPASSWORD",
    "PGHOST",
    "PGPORT",
]

SAMPLE_LINE = (
    '1.2.3.4 - - [10/Oct/2023:13:55:36 -0700] "GET /x?y=1 HTTP/1.1" '
    '200 512 "http://ref" "agent/1.0"'
)


def make_line(
    ip: str = "10.0.0.1",
    uri: str = "/index.html",
    status: str = "200",
    size: str = "1024",
    referrer: str = "-",
    second: int = 0,
) -> str:
    return (
        f'{ip} - - [10/Oct/2023:13:55:{second:02d} +0000] "GET {uri} HTTP/1.1" '
        f'{status} {size} "{referrer}" "curl/8.0"'
    )


def write_log(path, lines, compress: bool = False, mtime: float = None) -> str:
    data = "".join(line + "\n" for line in lines).encode("utf-8")
    if compress:
        data = gzip.compress(data)
    with open(path, "wb") as f:
        f.write(data)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return str(path)


def query(db_path, sql, params=()):
    conn = sqlite3.connect(str(db_path))
    try:
        return conn.execute(sql, params).fetchall()
    finally:
        conn.close()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "logs.db"


@pytest.fixture
def store(db_path):
    s = SQLiteLogStore(StoreConfig(driver="sqlite", sqlite_path=str(db_path)))
    s.open()
    s.init()
    yield s
    s.close()
