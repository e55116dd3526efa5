"""
Tests for the pattern store database layer

Covers lock retry, quiet writes, the connection pool and transactions.
"""

from __future__ import annotations

import sqlite3

import pytest

from opspilot.infrastructure import database as database_module
from opspilot.infrastructure.database import (
    Database,
    get_db_path,
    retry_on_db_lock,
    write_quietly,
)
from opspilot.infrastructure.database_schema import validate_schema
from opspilot.observability.telemetry import get_counter


def test_retry_decorator_recovers_from_lock():
    """Retry decorator recovers from database lock errors"""
    call_count = [0]

    @retry_on_db_lock(max_retries=3, base_delay=0.01, max_delay=0.05)
    def flaky_operation():
        call_count[0] += 1
        if call_count[0] < 3:
            raise sqlite3.OperationalError("database is locked")
        return "success"

    assert flaky_operation() == "success"
    assert call_count[0] == 3, "Should retry twice before success"


def test_retry_decorator_fails_after_max_retries():
    """Retry decorator gives up after max retries"""
    call_count = [0]

    @retry_on_db_lock(max_retries=2, base_delay=0.01)
    def always_fails():
        call_count[0] += 1
        raise sqlite3.OperationalError("database is locked")

    with pytest.raises(sqlite3.OperationalError, match="database is locked"):
        always_fails()

    assert call_count[0] == 3, "Should try 3 times (initial + 2 retries)"
    assert get_counter("database.lock_retry_exhausted") == 1


def test_retry_decorator_ignores_non_lock_errors():
    """Retry decorator doesn't retry non-lock errors"""
    call_count = [0]

    @retry_on_db_lock(max_retries=3, base_delay=0.01)
    def schema_error():
        call_count[0] += 1
        raise sqlite3.OperationalError("no such table: foo")

    with pytest.raises(sqlite3.OperationalError, match="no such table"):
        schema_error()

    assert call_count[0] == 1, "Should not retry non-lock errors"


def test_write_quietly_swallows_persistence_errors():
    def broken_insert(row):
        raise sqlite3.OperationalError("disk I/O error")

    assert write_quietly("audit", broken_insert, {"id": 1}) is None
    assert write_quietly("audit", lambda row: row["id"], {"id": 1}) == 1
    assert get_counter("persistence.write_failed") == 1


def test_write_quietly_propagates_programming_errors():
    with pytest.raises(KeyError):
        write_quietly("audit", lambda row: row["missing"], {})


def test_schema_is_complete(database):
    with database.connection() as conn:
        assert validate_schema(conn)


def test_transaction_rolls_back_on_error(database):
    """Transaction scope rolls back on error"""
    with pytest.raises(ValueError):
        with database.transaction() as conn:
            conn.execute(
                "INSERT INTO event_log (kind, created_at) VALUES ('booking', '2024-01-01T00:00:00')"
            )
            raise ValueError("Intentional error")

    with database.connection() as conn:
        assert conn.execute("SELECT COUNT(*) FROM event_log").fetchone()[0] == 0


def test_connection_pool_lifecycle(database):
    """Connections leave and return to the pool"""
    initial = database.pool.stats()

    with database.connection():
        during = database.pool.stats()
        assert during["available"] == initial["available"] - 1
        assert during["in_use"] == initial["in_use"] + 1

    assert database.pool.stats() == initial


def test_exhausted_pool_hands_out_temporary_connection(tmp_path, monkeypatch):
    """Past the pool size a temporary connection is opened, then closed on return"""
    monkeypatch.setattr(database_module, "DB_POOL_TIMEOUT", 0.01)
    db = Database(tmp_path / "small.db", pool_size=1)
    try:
        with db.connection():
            with db.connection() as temp:
                assert db.pool.temp_conn_count == 1
                temp.execute("SELECT 1")
            assert db.pool.temp_conn_count == 0
            with pytest.raises(sqlite3.ProgrammingError):
                temp.execute("SELECT 1")
        assert db.pool.stats()["available"] == 1
    finally:
        db.close()


def test_temporary_connection_limit(tmp_path, monkeypatch):
    monkeypatch.setattr(database_module, "DB_POOL_TIMEOUT", 0.01)
    db = Database(tmp_path / "tiny.db", pool_size=1)
    db.pool.temp_conn_max = 0
    try:
        with db.connection():
            with pytest.raises(RuntimeError, match="temporary connection limit"):
                db.pool.get_connection()
    finally:
        db.close()


def test_closed_pool_refuses_connections(tmp_path):
    db = Database(tmp_path / "closed.db", pool_size=1)
    db.close()
    with pytest.raises(RuntimeError, match="closed"):
        db.pool.get_connection()


def test_db_path_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("OPSPILOT_DB_PATH", str(tmp_path / "env.db"))
    assert get_db_path() == tmp_path / "env.db"


def test_checkpoint_wal(database):
    busy, log_pages, checkpointed = database.checkpoint_wal()
    assert busy == 0
    assert checkpointed <= log_pages or log_pages == -1
