import pytest

from logimport.config import (
    ImportConfig,
    StoreConfig,
    load_import_config,
    load_store_config,
)
from logimport.errors import ConfigError


def test_defaults():
    store = load_store_config()
    assert store.driver == "postgres"
    assert store.dsn is None
    assert store.write_retries == 3
    assert store.resolve_hostnames is False
    assert load_import_config() == ImportConfig(concurrency=4, pattern="access_log")


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("LOGIMPORT_DB_DRIVER", " SQLite ")
    monkeypatch.setenv("LOGIMPORT_SQLITE_PATH", "/tmp/x.db")
    monkeypatch.setenv("LOGIMPORT_POOL_SIZE", "16")
    monkeypatch.setenv("LOGIMPORT_RESOLVE_HOSTNAMES", "yes")
    monkeypatch.setenv("LOGIMPORT_CPU", "2")
    monkeypatch.setenv("LOGIMPORT_PATTERN", "ssl_access")

    store = load_store_config()
    assert (store.driver, store.sqlite_path, store.pool_size) == ("sqlite", "/tmp/x.db", 16)
    assert store.resolve_hostnames is True
    assert load_import_config() == ImportConfig(concurrency=2, pattern="ssl_access")


def test_pg_variables_build_connection_kwargs(monkeypatch):
    monkeypatch.setenv("PGHOST", "db.internal")
    monkeypatch.setenv("PGPORT", "6432")
    monkeypatch.setenv("PGUSER", "loader")
    monkeypatch.setenv("PGPASSWORD", "secret")
    monkeypatch.setenv("PGDATABASE", "weblogs")

    assert load_store_config().connection_kwargs() == {
        "dbname": "weblogs",
        "user": "loader",
        "password": "secret",
        "host": "db.internal",
        "port": "6432",
    }


def test_dsn_wins(monkeypatch):
    monkeypatch.setenv("LOGIMPORT_DB_DSN", "postgresql://u@h/db")
    monkeypatch.setenv("PGHOST", "ignored")
    assert load_store_config().connection_kwargs() == {"dsn": "postgresql://u@h/db"}


@pytest.mark.parametrize(
    "name, value",
    [
        ("LOGIMPORT_CPU", "0"),
        ("LOGIMPORT_CPU", "many"),
        ("LOGIMPORT_POOL_SIZE", "-1"),
        ("LOGIMPORT_WRITE_RETRIES", "1.5"),
    ],
)
def test_invalid_numbers(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ConfigError):
        load_store_config()
        load_import_config()


def test_unknown_driver():
    with pytest.raises(ConfigError):
        StoreConfig(driver="mysql")


def test_with_connection():
    assert StoreConfig().with_connection(None) == StoreConfig()
    assert StoreConfig().with_connection("host=db").dsn == "host=db"
    sqlite = StoreConfig(driver="sqlite").with_connection("/data/logs.db")
    assert sqlite.sqlite_path == "/data/logs.db"
    assert sqlite.dsn is None
