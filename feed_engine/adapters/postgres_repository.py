"""PostgreSQL repository adapter.

Implements FeedRepositoryProtocol on a psycopg2 connection pool. Writers of one
(feed, group) pair are serialized with a transaction-scoped advisory lock so
concurrent membership changes cannot interleave their grouped-row
recomputations. The schema itself is managed by Alembic.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from threading import Lock
from time import sleep
from typing import TYPE_CHECKING, Any, Final

from psycopg2 import Error as PsycopgError
from psycopg2 import OperationalError as PsycopgOperationalError
from psycopg2 import errors as psycopg_errors
from psycopg2 import extensions
from psycopg2 import pool as psycopg2_pool
from psycopg2.extras import RealDictCursor

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

if TYPE_CHECKING:
    from feed_engine.config.settings import Settings

DEFAULT_POOL_MIN_CONNECTIONS: Final[int] = 1
DEFAULT_POOL_MAX_CONNECTIONS: Final[int] = 10
POOL_ACQUIRE_MAX_ATTEMPTS_DEFAULT: Final[int] = 5
POOL_ACQUIRE_BASE_DELAY_SECONDS: Final[float] = 0.1
POOL_ACQUIRE_MAX_DELAY_SECONDS: Final[float] = 2.0

logger = get_logger(__name__)


def translate_postgres_error(exc: Exception) -> FeedEngineError | None:
    """Map psycopg2 exceptions onto the engine's error taxonomy."""
    if not isinstance(exc, PsycopgError):
        return None
    if isinstance(
        exc,
        PsycopgOperationalError
        | psycopg_errors.SerializationFailure
        | psycopg_errors.DeadlockDetected
        | psycopg_errors.LockNotAvailable,
    ):
        return TransientStoreError(f"PostgreSQL transient failure: {exc}")
    return RepositoryError(f"PostgreSQL error: {exc}")


POSTGRES_DIALECT: Final[SqlDialect] = SqlDialect(
    name="postgres",
    placeholder="%s",
    translate_error=translate_postgres_error,
    lock_statement="SELECT pg_advisory_xact_lock(hashtext(?))",
)


class PostgresRepository:
    """PostgreSQL feed repository backed by a connection pool."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str | None,
        settings: "Settings | None" = None,
        *,
        ensure_schema: bool = False,
    ):
        """Initialize PostgreSQL repository with pooled connections.

        Args:
            ensure_schema: Run CREATE IF NOT EXISTS statements on startup.
                Production deployments rely on Alembic instead.
        """
        self._host = host
        self._port = port
        self._database = database
        self._user = user
        self._password = password
        self._statement_timeout_ms = (
            settings.postgres_statement_timeout_ms if settings else 10_000
        )
        self._connect_timeout_seconds = (
            settings.postgres_connect_timeout_seconds if settings else 10
        )
        self._application_name = (
            settings.postgres_application_name if settings else "event_feed_engine"
        )
        self._pool_min_connections = (
            settings.postgres_min_connections if settings else DEFAULT_POOL_MIN_CONNECTIONS
        )
        self._pool_max_connections = (
            settings.postgres_max_connections if settings else DEFAULT_POOL_MAX_CONNECTIONS
        )
        self._pool_acquire_max_attempts = POOL_ACQUIRE_MAX_ATTEMPTS_DEFAULT
        self._pool_acquire_base_delay_seconds = POOL_ACQUIRE_BASE_DELAY_SECONDS
        self._pool_acquire_max_delay_seconds = POOL_ACQUIRE_MAX_DELAY_SECONDS
        self._pool_in_use_count = 0
        self._pool_lock = Lock()

        if self._pool_max_connections < self._pool_min_connections:
            raise RepositoryError(
                "postgres_max_connections must be greater than or equal to postgres_min_connections"
            )

        self._pool = self._create_pool()
        if ensure_schema:
            self._create_schema()

    def _create_pool(self) -> psycopg2_pool.ThreadedConnectionPool:
        """Create a PostgreSQL connection pool with validation."""
        conn_kwargs: dict[str, Any] = {
            "host": self._host,
            "port": self._port,
            "database": self._database,
            "user": self._user,
            "password": self._password,
            "connect_timeout": self._connect_timeout_seconds,
            "options": (
                f"-c statement_timeout={self._statement_timeout_ms} "
                f"-c application_name={self._application_name}"
            ),
        }

        try:
            pool = psycopg2_pool.ThreadedConnectionPool(
                self._pool_min_connections,
                self._pool_max_connections,
                **conn_kwargs,
            )
        except PsycopgError as exc:
            raise RepositoryError(f"Failed to initialize PostgreSQL pool: {exc}") from exc

        logger.info(
            "postgres_pool_initialized",
            host=self._host,
            port=self._port,
            database=self._database,
            min_connections=self._pool_min_connections,
            max_connections=self._pool_max_connections,
        )
        return pool

    def _create_schema(self) -> None:
        with self.transaction() as tx:
            for statement in SCHEMA_STATEMENTS:
                tx._execute(statement).close()
        logger.info("postgres_schema_ensured", database=self._database)

    def _acquire_connection_with_retry(self) -> extensions.connection:
        """Acquire a connection from the pool with exponential backoff."""
        attempt = 0
        delay = self._pool_acquire_base_delay_seconds
        while True:
            attempt += 1
            try:
                conn = self._pool.getconn()
            except psycopg2_pool.PoolError as exc:
                if attempt >= self._pool_acquire_max_attempts:
                    logger.error(
                        "postgres_pool_acquire_failed",
                        attempts=attempt,
                        max_connections=self._pool_max_connections,
                        in_use=self._pool_in_use_count,
                    )
                    raise TransientStoreError(
                        "Failed to acquire PostgreSQL connection from pool"
                    ) from exc

                logger.warning(
                    "postgres_pool_exhausted_retry",
                    attempt=attempt,
                    wait_seconds=delay,
                    in_use=self._pool_in_use_count,
                )
                sleep(delay)
                delay = min(delay * 2, self._pool_acquire_max_delay_seconds)
                continue

            with self._pool_lock:
                self._pool_in_use_count += 1
            return conn

    def _release_connection(self, conn: extensions.connection, *, close: bool) -> None:
        try:
            self._pool.putconn(conn, close=close)
        except PsycopgError:
            logger.warning("postgres_putconn_failed", close=close, exc_info=True)
        finally:
            with self._pool_lock:
                if self._pool_in_use_count > 0:
                    self._pool_in_use_count -= 1

    @contextmanager
    def transaction(self, *, read_only: bool = False) -> Iterator[SqlFeedTransaction]:
        """Open a transaction that commits on success and rolls back on error."""
        conn = self._acquire_connection_with_retry()
        broken = False
        try:
            if read_only:
                with conn.cursor() as cur:
                    cur.execute("SET TRANSACTION READ ONLY")
            yield SqlFeedTransaction(
                conn,
                POSTGRES_DIALECT,
                cursor_factory=lambda c: c.cursor(cursor_factory=RealDictCursor),
            )
            conn.commit()
        except PsycopgError as exc:
            broken = bool(conn.closed)
            if not broken:
                conn.rollback()
            translated = translate_postgres_error(exc)
            raise (translated or RepositoryError(str(exc))) from exc
        except BaseException:
            broken = bool(conn.closed)
            if not broken:
                conn.rollback()
            raise
        finally:
            self._release_connection(conn, close=broken)

    def close(self) -> None:
        """Close all connections in the pool."""
        self._pool.closeall()
        with self._pool_lock:
            self._pool_in_use_count = 0
        logger.info("postgres_pool_closed", database=self._database)
