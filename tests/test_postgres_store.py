from datetime import datetime, timezone
from unittest import mock

import psycopg2
import pytest
from psycopg2 import errors as pg_errors

from conftest import SAMPLE_LINE
from logimport.config import ENTRY_FIELDS, StoreConfig
from logimport.errors import StoreError
from logimport.parser import parse_line
from logimport.store import WriteResult, create_store
from logimport.store.base import SerializationConflict
from logimport.store.postgres import PostgresLogStore

T1 = datetime(2023, 10, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def pool_cls():
    with mock.patch("logimport.store.postgres.ThreadedConnectionPool") as cls:
        yield cls


@pytest.fixture
def conn(pool_cls):
    connection = pool_cls.return_value.getconn.return_value
    connection.closed = 0
    return connection


@pytest.fixture
def cursor(conn):
    return conn.cursor.return_value.__enter__.return_value


@pytest.fixture
def pg_store(pool_cls):
    store = PostgresLogStore(StoreConfig(dsn="postgresql://u@db/logs", pool_size=4))
    store.open()
    yield store
    store.close()


def executed(cursor):
    return [c.args[0] for c in cursor.execute.call_args_list]


def test_create_store_defaults_to_postgres():
    assert isinstance(create_store(StoreConfig()), PostgresLogStore)


def test_open_builds_pool_from_config(pool_cls, pg_store):
    pool_cls.assert_called_once_with(1, 4, dsn="postgresql://u@db/logs")


def test_open_failure_is_store_error(pool_cls):
    pool_cls.side_effect = psycopg2.OperationalError("connection refused")
    store = PostgresLogStore(StoreConfig())
    with pytest.raises(StoreError) as excinfo:
        store.open()
    assert isinstance(excinfo.value.__cause__, psycopg2.OperationalError)


def test_not_open_is_store_error():
    store = PostgresLogStore(StoreConfig())
    with pytest.raises(StoreError):
        store.ping()


def test_connection_returned_to_pool(pg_store, pool_cls, conn, cursor):
    pg_store.ping()
    pool_cls.return_value.putconn.assert_called_once_with(conn, close=False)


def test_init_creates_every_table(pg_store, cursor):
    pg_store.init()
    statements = " ".join(executed(cursor))
    for table in ("log_file", "ip_address", "uri", "referrer", "log_entry"):
        assert f"CREATE TABLE IF NOT EXISTS {table}" in statements


def test_clear_drops_fact_table_first(pg_store, cursor):
    pg_store.clear()
    drops = [sql for sql in executed(cursor) if sql.startswith("DROP")]
    assert drops[0] == "DROP TABLE IF EXISTS log_entry;"
    assert len(drops) == 5


def test_driver_error_becomes_store_error(pg_store, cursor):
    cursor.execute.side_effect = psycopg2.OperationalError("server closed the connection")
    with pytest.raises(StoreError):
        pg_store.ping()


class TestDimensions:
    def test_insert_on_miss_then_cached(self, pg_store, cursor):
        cursor.fetchone.side_effect = [None, (17,)]
        assert pg_store.lookup_or_create_uri("/index.html") == 17
        assert pg_store.lookup_or_create_uri("/index.html") == 17

        statements = executed(cursor)
        assert len(statements) == 2
        assert statements[0].startswith("SELECT id FROM uri")
        assert "ON CONFLICT (uri) DO NOTHING RETURNING id" in statements[1]

    def test_existing_row_is_selected(self, pg_store, cursor):
        cursor.fetchone.return_value = (5,)
        assert pg_store.lookup_or_create_ip("10.0.0.1") == 5
        assert len(executed(cursor)) == 1

    def test_lost_race_reselects(self, pg_store, cursor):
        cursor.fetchone.side_effect = [None, None, (9,)]
        assert pg_store.lookup_or_create_referrer("http://ref") == 9

    def test_vanished_row_is_store_error(self, pg_store, cursor):
        cursor.fetchone.side_effect = [None, None, None]
        with pytest.raises(StoreError):
            pg_store.lookup_or_create_referrer("http://ref")


class TestLogFile:
    def test_new_file(self, pg_store, cursor):
        cursor.fetchone.side_effect = [None, (3,)]
        file_id, stored = pg_store.lookup_or_create_log_file("/logs/access_log", T1)
        assert file_id == 3
        assert stored < T1

    def test_advance_uses_guarded_update(self, pg_store, cursor):
        later = T1.replace(hour=13)
        cursor.fetchone.return_value = (3, T1)
        assert pg_store.lookup_or_create_log_file("/logs/access_log", later) == (3, T1)

        update = cursor.execute.call_args_list[-1]
        assert "modified < %s" in update.args[0]
        assert update.args[1] == (later, 3, later)

    def test_revert_is_compare_and_set(self, pg_store, cursor):
        later = T1.replace(hour=13)
        cursor.rowcount = 1
        pg_store.revert_log_file("/logs/access_log", 3, later, T1)

        reset = cursor.execute.call_args_list[-1]
        assert "SET modified = %s WHERE id = %s AND modified = %s" in reset.args[0]
        assert reset.args[1] == (T1, 3, later)


class TestFacts:
    def test_insert_is_serializable(self, pg_store, cursor):
        row = {field: None for field in ENTRY_FIELDS}
        row.update({"id": b"\x00" * 20, "status": 200, "size": 1})

        assert pg_store._insert_fact(row) is True
        statements = executed(cursor)
        assert statements[0] == "SET TRANSACTION ISOLATION LEVEL SERIALIZABLE;"
        assert "INSERT INTO log_entry" in statements[1]

    def test_unique_violation_is_duplicate(self, pg_store, cursor):
        cursor.execute.side_effect = [None, pg_errors.UniqueViolation("duplicate key")]
        row = {field: None for field in ENTRY_FIELDS}
        row["id"] = b"\x01" * 20

        assert pg_store._insert_fact(row) is False
        cursor.connection.rollback.assert_called_once()

    def test_serialization_failure_is_conflict(self, pg_store, cursor):
        cursor.execute.side_effect = [None, pg_errors.SerializationFailure("could not serialize")]
        row = {field: None for field in ENTRY_FIELDS}
        row["id"] = b"\x02" * 20

        with pytest.raises(SerializationConflict):
            pg_store._insert_fact(row)

    def test_write_retries_conflicts(self, pg_store):
        entry = parse_line(SAMPLE_LINE)
        with mock.patch.object(pg_store, "fact_row", return_value={"id": entry.content_hash}), \
                mock.patch.object(
                    pg_store, "_insert_fact", side_effect=[SerializationConflict("retry"), True]
                ) as insert:
            assert pg_store.write_fact_entry(entry) is WriteResult.INSERTED
        assert insert.call_count == 2

    def test_write_gives_up_after_retries(self, pool_cls):
        store = PostgresLogStore(StoreConfig(write_retries=2))
        store.open()
        entry = parse_line(SAMPLE_LINE)
        with mock.patch.object(store, "fact_row", return_value={"id": entry.content_hash}), \
                mock.patch.object(
                    store, "_insert_fact", side_effect=SerializationConflict("retry")
                ) as insert:
            with pytest.raises(SerializationConflict):
                store.write_fact_entry(entry)
        assert insert.call_count == 2
        store.close()

