"""SQLite repository adapter for local storage and tests.

Implements FeedRepositoryProtocol with an SQLite backend. Write transactions
take the database write lock up front (``BEGIN IMMEDIATE``), which serializes
every (feed, group) recomputation without an explicit advisory lock.
"""

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from threading import RLock
from typing import Final

from feed_engine.adapters.sql_feed_store import (
    SCHEMA_STATEMENTS,
    SqlDialect,
    SqlFeedTransaction,
)
from feed_engine.config.logging_config import get_logger
from feed_engine.domain.exceptions import (
    FeedEngineError,
    RepositoryError,
    TransientStoreError,
)

logger = get_logger(__name__)

IN_MEMORY_PATH: Final[str] = ":memory:"
_TRANSIENT_MESSAGES: Final[tuple[str, ...]] = ("database is locked", "database is busy")


def translate_sqlite_error(exc: Exception) -> FeedEngineError | None:
    """Map sqlite3 exceptions onto the engine's error taxonomy."""
    if not isinstance(exc, sqlite3.Error):
        return None
    message = str(exc).lower()
    if isinstance(exc, sqlite3.OperationalError) and any(
        fragment in message for fragment in _TRANSIENT_MESSAGES
    ):
        return TransientStoreError(f"SQLite busy: {exc}")
    return RepositoryError(f"SQLite error: {exc}")


SQLITE_DIALECT: Final[SqlDialect] = SqlDialect(
    name="sqlite",
    placeholder="?",
    translate_error=translate_sqlite_error,
)


class SQLiteRepository:
    """SQLite-based feed repository."""

    def __init__(self, db_path: str, *, busy_timeout_seconds: float = 5.0) -> None:
        """Initialize repository and ensure schema.

        Args:
            db_path: Path to SQLite database file, or ``:memory:``
            busy_timeout_seconds: How long a writer waits for the lock
        """
        self.db_path = db_path
        self._busy_timeout_seconds = busy_timeout_seconds
        self._shared_conn: sqlite3.Connection | None = None
        self._shared_lock = RLock()

        if db_path == IN_MEMORY_PATH:
            # Every new connection would see a fresh, empty database
            self._shared_conn = self._open_connection()
        else:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._create_schema()

    def _open_connection(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=self._busy_timeout_seconds,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            raise RepositoryError(f"Cannot open SQLite database: {exc}") from exc
        conn.row_factory = sqlite3.Row
        if self.db_path != IN_MEMORY_PATH:
            conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        if self._shared_conn is not None:
            with self._shared_lock:
                yield self._shared_conn
            return

        conn = self._open_connection()
        try:
            yield conn
        finally:
            conn.close()

    def _create_schema(self) -> None:
        """Create database schema if not exists."""
        logger.info("sqlite_schema_creation_started", db_path=str(self.db_path))
        with self._connection() as conn:
            try:
                for statement in SCHEMA_STATEMENTS:
                    conn.execute(statement)
            except sqlite3.Error as exc:
                raise RepositoryError(f"Failed to create schema: {exc}") from exc
        logger.info("sqlite_schema_created", db_path=str(self.db_path))

    @contextmanager
    def transaction(self, *, read_only: bool = False) -> Iterator[SqlFeedTransaction]:
        """Open a transaction that commits on success and rolls back on error."""
        with self._connection() as conn:
            try:
                conn.execute("BEGIN" if read_only else "BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                translated = translate_sqlite_error(exc)
                raise (translated or RepositoryError(str(exc))) from exc

            try:
                yield SqlFeedTransaction(conn, SQLITE_DIALECT)
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

            try:
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                translated = translate_sqlite_error(exc)
                raise (translated or RepositoryError(str(exc))) from exc

    def close(self) -> None:
        """Release the shared in-memory connection, if any."""
        if self._shared_conn is not None:
            with self._shared_lock:
                self._shared_conn.close()
                self._shared_conn = None
