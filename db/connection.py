"""
db/connection.py
----------------
Manages the PostgreSQL connection pool.
Uses psycopg2's SimpleConnectionPool for efficient connection reuse.

The pool lives in a `Database` object that the caller constructs and passes
to repositories and the drift detector; there is no process-wide state.
"""

from contextlib import contextmanager
from typing import Iterator, Optional

import psycopg2
from psycopg2 import extras, pool

import config
from db.exceptions import ConfigurationError, TransportError
from utils.logger import get_logger

logger = get_logger(__name__)

# Errors meaning the connection itself is unusable, as opposed to a failed statement.
_TRANSPORT_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError, pool.PoolError)


class Database:
    """
    Connection context for one store.

    Args:
        dsn: libpq connection string or URL.
        min_conn: Minimum number of connections to keep open.
        max_conn: Maximum number of connections allowed.
    """

    def __init__(self, dsn: str, min_conn: int = 1, max_conn: int = 5):
        self.dsn = dsn
        self.min_conn = min_conn
        self.max_conn = max_conn
        self._pool: pool.SimpleConnectionPool | None = None

    @classmethod
    def from_environment(cls, testing: bool = False) -> "Database":
        """
        Build a Database from the environment (see `config`).

        Args:
            testing: Use database `TEST_DB_NAME` on the `TEST_DB_URL` server,
                the store reserved for tests.

        Raises:
            ConfigurationError: If `testing` is set and `TEST_DB_URL` is empty.
        """
        if testing:
            if not config.TEST_DB_URL:
                raise ConfigurationError("TEST_DB_URL was not set")
            dsn = f"{config.TEST_DB_URL.rstrip('/')}/{config.TEST_DB_NAME}"
        else:
            dsn = config.DATABASE_URL
        return cls(dsn, config.DB_POOL_MIN, config.DB_POOL_MAX)

    @property
    def is_open(self) -> bool:
        return self._pool is not None

    def open(self) -> "Database":
        """
        Initialize the connection pool. Calling it twice is a no-op.

        Raises:
            TransportError: If the database is unreachable.
        """
        if self._pool is not None:
            return self
        try:
            self._pool = pool.SimpleConnectionPool(self.min_conn, self.max_conn, self.dsn)
            logger.info("Database connection pool initialized successfully.")
        except psycopg2.OperationalError as e:
            logger.error(f"Failed to initialize database pool: {e}")
            raise TransportError(f"Could not establish connection: {e}") from e
        return self

    def close(self) -> None:
        """Close all connections in the pool."""
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
            logger.info("Database connection pool closed.")

    def __enter__(self) -> "Database":
        return self.open()

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    @contextmanager
    def connection(self) -> Iterator["psycopg2.extensions.connection"]:
        """
        Borrow a connection for the duration of one operation.

        Commits when the block exits normally, rolls back when it raises,
        and always returns the connection to the pool.

        Raises:
            RuntimeError: If the pool has not been opened.
            TransportError: If the connection is lost.
        """
        if self._pool is None:
            raise RuntimeError("Database pool not initialized. Call open() first.")
        try:
            conn = self._pool.getconn()
        except _TRANSPORT_ERRORS as e:
            logger.error(f"Failed to acquire a connection: {e}")
            raise TransportError(f"Could not acquire a connection: {e}") from e

        broken = False
        try:
            yield conn
            conn.commit()
        except _TRANSPORT_ERRORS as e:
            broken = True
            _rollback(conn)
            raise TransportError(f"Connection failed: {e}") from e
        except BaseException:
            _rollback(conn)
            raise
        finally:
            self._pool.putconn(conn, close=broken or bool(conn.closed))

    @contextmanager
    def cursor(self, dict_rows: bool = True) -> Iterator["psycopg2.extensions.cursor"]:
        """
        Cursor on a borrowed connection; same transaction rules as `connection()`.

        Args:
            dict_rows: Return rows as dicts keyed by column name.
        """
        factory: Optional[type] = extras.RealDictCursor if dict_rows else None
        with self.connection() as conn:
            with conn.cursor(cursor_factory=factory) as cur:
                yield cur


def _rollback(conn) -> None:
    if conn.closed:
        return
    try:
        conn.rollback()
    except _TRANSPORT_ERRORS as e:
        logger.error(f"Rollback failed: {e}")
