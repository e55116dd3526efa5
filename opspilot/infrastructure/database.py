"""SQLite access for the pattern store

Provides:
- Thread-safe connection pooling (suggestion timers write from their own threads)
- Lock-contention retry with exponential backoff and jitter
- Commit-or-rollback transaction scope
- Environment-aware default database path

Each Database instance owns its pool. Engines are constructed with an explicit
Database, so tests and multi-tenant hosts can run several stores side by side.
"""

from __future__ import annotations

import atexit
import os
import random
import sqlite3
import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from functools import wraps
from pathlib import Path
from queue import Empty, Full, Queue
from threading import Lock
from typing import Any, TypeVar

from opspilot.config import (
    DB_CONNECT_TIMEOUT,
    DB_POOL_SIZE,
    DB_POOL_TIMEOUT,
    DB_RETRY_BASE_DELAY,
    DB_RETRY_JITTER,
    DB_RETRY_MAX,
    DB_RETRY_MAX_DELAY,
    DB_TEMP_CONN_MAX,
)
from opspilot.observability.logging import get_logger
from opspilot.observability.telemetry import counter, log_event

F = TypeVar("F", bound=Callable[..., Any])

DB_PATH = Path(__file__).parent.parent / "data" / "opspilot.db"

logger = get_logger(__name__)


def retry_on_db_lock(
    max_retries: int = DB_RETRY_MAX,
    base_delay: float = DB_RETRY_BASE_DELAY,
    max_delay: float = DB_RETRY_MAX_DELAY,
) -> Callable[[F], F]:
    """
    Retry a database operation on SQLITE_BUSY / "database is locked"

    Pattern-stat increments and queue decisions can collide when a suggestion
    timer fires while a human is acting on the approval queue.

    Usage:
        @retry_on_db_lock()
        def record(self, ...):
            with self.db.transaction() as conn:
                conn.execute("UPDATE patterns ...")

    Side Effects:
        - Sleeps between retries (exponential backoff with jitter)
        - Logs a warning per retry and an error when retries are exhausted
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except sqlite3.OperationalError as e:
                    message = str(e).lower()
                    if "locked" not in message and "busy" not in message:
                        raise

                    if attempt >= max_retries:
                        logger.error(
                            "Database lock retry exhausted after %d attempts: %s",
                            max_retries,
                            e,
                        )
                        counter("database.lock_retry_exhausted")
                        raise

                    delay = min(base_delay * (2**attempt), max_delay)
                    sleep_time = delay + random.uniform(0, delay * DB_RETRY_JITTER)
                    logger.warning(
                        "Database locked (attempt %d/%d), retrying in %.2fs: %s",
                        attempt + 1,
                        max_retries,
                        sleep_time,
                        e,
                    )
                    time.sleep(sleep_time)
            raise AssertionError("unreachable")

        return wrapper  # type: ignore[return-value]

    return decorator


# Errors a store write can raise once retries are exhausted or the pool is gone
PERSISTENCE_ERRORS: tuple[type[BaseException], ...] = (sqlite3.Error, OSError, RuntimeError)


def write_quietly(label: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """
    Run a store write whose failure must not change the decision already made.

    Returns:
        The write's return value, or None when it failed

    Side Effects:
        - Logs a warning and increments persistence.write_failed on failure
    """
    try:
        return func(*args, **kwargs)
    except PERSISTENCE_ERRORS as e:
        counter("persistence.write_failed")
        logger.warning("Persistence write %s failed: %s", label, e)
        return None


class DatabaseConnectionPool:
    """
    Thread-safe connection pool for SQLite

    Connections are opened with WAL journaling and sqlite3.Row rows. When the
    pool is exhausted a bounded number of temporary connections is handed out.
    """

    def __init__(self, db_path: Path, pool_size: int = DB_POOL_SIZE) -> None:
        self.db_path = db_path
        self.pool_size = pool_size
        self.pool: Queue[sqlite3.Connection] = Queue(maxsize=pool_size)
        self.lock = Lock()
        self.closed = False
        self.temp_conn_count = 0
        self.temp_conn_max = DB_TEMP_CONN_MAX
        # ids of connections handed out past the pool size
        self._temporary: set[int] = set()
        self._initialize_pool()
        atexit.register(self.close_all)

    def _create_connection(self) -> sqlite3.Connection:
        """
        Open a configured connection

        Raises:
            RuntimeError: If the integrity quick check fails
        """
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=DB_CONNECT_TIMEOUT,
            check_same_thread=False,
        )

        try:
            result = conn.execute("PRAGMA quick_check(1)").fetchone()
        except sqlite3.DatabaseError as e:
            conn.close()
            logger.critical("Database corruption or error during integrity check: %s", e)
            counter("database.corruption_detected")
            raise RuntimeError(f"Database corruption detected: {e}") from e
        if result[0] != "ok":
            conn.close()
            logger.critical("Database corruption detected: %s", result[0])
            counter("database.corruption_detected")
            raise RuntimeError(f"Database corruption detected: {result[0]}")

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        return conn

    def _initialize_pool(self) -> None:
        for _ in range(self.pool_size):
            try:
                self.pool.put(self._create_connection())
            except (sqlite3.Error, RuntimeError) as e:
                logger.warning("Failed to create pooled connection: %s", e)

    def get_connection(self) -> sqlite3.Connection:
        """
        Take a connection from the pool, or a temporary one if the pool is empty

        Raises:
            RuntimeError: If the pool is closed or the temporary limit is reached
        """
        if self.closed:
            raise RuntimeError("Connection pool has been closed")

        try:
            return self.pool.get(block=True, timeout=DB_POOL_TIMEOUT)
        except Empty:
            with self.lock:
                if self.temp_conn_count >= self.temp_conn_max:
                    logger.critical(
                        "Temporary connection limit reached: %d/%d (pool_size=%d)",
                        self.temp_conn_count,
                        self.temp_conn_max,
                        self.pool_size,
                    )
                    raise RuntimeError(
                        "Database connection pool exhausted and temporary connection "
                        f"limit reached (pool_size={self.pool_size}, "
                        f"temp_conn_max={self.temp_conn_max})"
                    ) from None
                self.temp_conn_count += 1
                temp_count = self.temp_conn_count

            logger.error(
                "Connection pool exhausted (pool_size=%d), creating temporary connection %d/%d",
                self.pool_size,
                temp_count,
                self.temp_conn_max,
            )
            log_event("database.pool_exhausted", pool_size=self.pool_size, temp_conn_count=temp_count)

            conn = self._create_connection()
            with self.lock:
                self._temporary.add(id(conn))
            return conn

    def return_connection(self, conn: sqlite3.Connection) -> None:
        with self.lock:
            is_temp = id(conn) in self._temporary
            self._temporary.discard(id(conn))

        if self.closed or is_temp:
            conn.close()
            if is_temp:
                with self.lock:
                    self.temp_conn_count -= 1
            return

        try:
            self.pool.put_nowait(conn)
        except Full:
            logger.warning("Failed to return connection to pool (pool full), closing")
            conn.close()

    def close_all(self) -> None:
        self.closed = True
        while True:
            try:
                self.pool.get_nowait().close()
            except Empty:
                break

    def stats(self) -> dict[str, Any]:
        available = self.pool.qsize()
        in_use = self.pool_size - available
        return {
            "pool_size": self.pool_size,
            "available": available,
            "in_use": in_use,
            "usage_percent": round((in_use / self.pool_size) * 100, 1) if self.pool_size else 0,
            "closed": self.closed,
        }


def get_db_path() -> Path:
    """
    Get database path (environment-aware)

    Checks OPSPILOT_DB_PATH first, falls back to opspilot/data/opspilot.db.
    """
    if env_path := os.getenv("OPSPILOT_DB_PATH"):
        return Path(env_path)
    return DB_PATH


class Database:
    """A pooled SQLite database with an initialized schema."""

    def __init__(self, db_path: Path | str | None = None, pool_size: int = DB_POOL_SIZE) -> None:
        from opspilot.infrastructure.database_schema import init_database

        self.db_path = Path(db_path) if db_path is not None else get_db_path()
        init_database(self.db_path)
        self.pool = DatabaseConnectionPool(self.db_path, pool_size=pool_size)

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Pooled connection (context manager)

        Usage:
            with db.connection() as conn:
                rows = conn.execute("SELECT * FROM patterns").fetchall()
        """
        conn = self.pool.get_connection()
        try:
            yield conn
        finally:
            self.pool.return_connection(conn)

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Commit on success, roll back on error

        Side Effects:
            - Commits or rolls back the transaction on the pooled connection
        """
        with self.connection() as conn:
            try:
                yield conn
                conn.commit()
            except BaseException:
                conn.rollback()
                raise

    def close(self) -> None:
        self.pool.close_all()

    def checkpoint_wal(self) -> tuple[int, int, int]:
        """Force a WAL checkpoint; returns (busy, log_pages, checkpointed_pages)."""
        with self.connection() as conn:
            row = conn.execute("PRAGMA wal_checkpoint(TRUNCATE)").fetchone()
        busy, log_pages, checkpointed = tuple(row) if row else (0, 0, 0)
        logger.info("WAL checkpoint completed (%d/%d pages)", checkpointed, log_pages)
        return busy, log_pages, checkpointed
