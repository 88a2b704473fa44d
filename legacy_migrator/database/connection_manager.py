"""
Connection Manager - pooled access to the source and target stores.

Each store gets a bounded pool of pyodbc connections opened with explicit
transaction control. Connections are acquired through context managers so
they are released on every exit path, and closing the manager is idempotent.
"""

import logging
import re
import threading
import time

from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional, Sequence

import pyodbc

from ..config.config_manager import DatabaseConfig
from ..config.processing_defaults import ProcessingDefaults
from ..exceptions import DatabaseConnectionError


SOURCE = 'source'
TARGET = 'target'

# SQLSTATE class 08 is "connection exception"; HYT00/HYT01 are driver timeouts
_CONNECTION_SQLSTATE_CLASS = '08'
_TIMEOUT_SQLSTATES = ('HYT00', 'HYT01')
_SQLSTATE = re.compile(r'^[0-9A-Z]{5}$')
_LEADING_SQLSTATE = re.compile(r'^\[([0-9A-Z]{5})\]')


def sqlstate_of(error: Exception) -> Optional[str]:
    """
    Return the SQLSTATE carried by a pyodbc error.

    pyodbc raises errors as (sqlstate, message) where the message itself starts
    with "[sqlstate]"; either form is accepted.
    """
    args = getattr(error, 'args', ())
    if args and isinstance(args[0], str) and _SQLSTATE.match(args[0]):
        return args[0]
    if args and isinstance(args[-1], str):
        match = _LEADING_SQLSTATE.match(args[-1])
        if match:
            return match.group(1)
    return None


def is_connection_error(error: Exception) -> bool:
    """
    Decide whether a pyodbc error means the store is unreachable.

    Classification is by SQLSTATE only. Driver messages all carry the
    "[SQL Server]" prefix, so message text cannot tell a lost link from a
    truncated value.
    """
    if isinstance(error, DatabaseConnectionError):
        return True
    state = sqlstate_of(error)
    if state is None:
        return False
    return state.startswith(_CONNECTION_SQLSTATE_CLASS) or state in _TIMEOUT_SQLSTATES


class ConnectionPool:
    """Bounded pool of connections to one store."""

    def __init__(self, store: str, connection_string: str, max_size: int = ProcessingDefaults.POOL_SIZE,
                 connect_factory: Optional[Callable] = None,
                 max_retry_attempts: int = ProcessingDefaults.MAX_RETRY_ATTEMPTS,
                 retry_delay_seconds: float = ProcessingDefaults.RETRY_DELAY_SECONDS,
                 connection_timeout: int = ProcessingDefaults.CONNECTION_TIMEOUT,
                 sleep: Callable[[float], None] = time.sleep):
        if max_size < 1:
            raise ValueError("max_size must be positive")
        self.store = store
        self.connection_string = connection_string
        self.max_size = max_size
        self.max_retry_attempts = max(1, max_retry_attempts)
        self.retry_delay_seconds = retry_delay_seconds
        self.connection_timeout = connection_timeout
        self._connect = connect_factory or pyodbc.connect
        self._sleep = sleep
        self._idle: List[Any] = []
        self._lock = threading.Lock()
        self._slots = threading.BoundedSemaphore(max_size)
        self._closed = False
        self.logger = logging.getLogger(__name__)

    @contextmanager
    def acquire(self):
        """
        Borrow a connection for the duration of the block.

        Yields:
            pyodbc.Connection: Active connection with autocommit disabled

        Raises:
            DatabaseConnectionError: If the store is unreachable or the pool is closed
        """
        if self._closed:
            raise DatabaseConnectionError(f"Connection pool for {self.store} is closed", store=self.store)
        if not self._slots.acquire(timeout=self.connection_timeout):
            raise DatabaseConnectionError(
                f"Timed out waiting for a {self.store} connection (pool size {self.max_size})",
                store=self.store
            )

        connection = None
        reusable = True
        try:
            connection = self._take_idle() or self._open_with_retry()
            yield connection
        except pyodbc.Error as e:
            if is_connection_error(e):
                reusable = False
                self.logger.error(f"{self.store} connection failed: {e}")
                raise DatabaseConnectionError(f"Lost connection to {self.store} store: {e}",
                                              store=self.store) from e
            # Let data/constraint errors bubble up to be handled by the caller
            raise
        finally:
            if connection is not None:
                self._release(connection, reusable)
            self._slots.release()

    def _take_idle(self):
        with self._lock:
            return self._idle.pop() if self._idle else None

    def _release(self, connection, reusable: bool) -> None:
        with self._lock:
            if reusable and not self._closed:
                self._idle.append(connection)
                return
        self._close_quietly(connection)

    def _open_with_retry(self):
        """Open a new connection, retrying with exponential backoff (1s, 2s, 4s, ...)."""
        last_error = None
        for attempt in range(1, self.max_retry_attempts + 1):
            try:
                connection = self._connect(
                    self.connection_string,
                    autocommit=False,  # Explicit transaction control for atomic batches
                    timeout=self.connection_timeout
                )
                connection.setdecoding(pyodbc.SQL_CHAR, encoding='utf-8')
                connection.setdecoding(pyodbc.SQL_WCHAR, encoding='utf-8')
                connection.setencoding(encoding='utf-8')
                if attempt > 1:
                    self.logger.info(f"Connected to {self.store} store on attempt {attempt}")
                return connection
            except pyodbc.Error as e:
                last_error = e
                if attempt < self.max_retry_attempts:
                    delay = self.retry_delay_seconds * (2 ** (attempt - 1))
                    self.logger.warning(f"Connection to {self.store} failed (attempt {attempt}/"
                                        f"{self.max_retry_attempts}), retrying in {delay}s: {e}")
                    self._sleep(delay)

        self.logger.error(f"Database connection to {self.store} failed after "
                          f"{self.max_retry_attempts} attempts: {last_error}")
        raise DatabaseConnectionError(
            f"Failed to connect to {self.store} store after {self.max_retry_attempts} attempts: {last_error}",
            store=self.store
        ) from last_error

    def close(self) -> None:
        """Close idle connections. Safe to call more than once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            idle, self._idle = self._idle, []
        for connection in idle:
            self._close_quietly(connection)

    def _close_quietly(self, connection) -> None:
        try:
            connection.close()
        except pyodbc.Error as e:
            self.logger.debug(f"Ignoring error while closing {self.store} connection: {e}")


class ConnectionManager:
    """
    Owns the source and target connection pools for a run.

    Usage:
        with ConnectionManager(source_config, target_config) as connections:
            rows = connections.execute(SOURCE, "SELECT ...", (param,))
            with connections.transaction(TARGET) as cursor:
                cursor.executemany(sql, batch)
    """

    def __init__(self, source_config: DatabaseConfig, target_config: DatabaseConfig,
                 pool_size: int = ProcessingDefaults.POOL_SIZE,
                 max_retry_attempts: int = ProcessingDefaults.MAX_RETRY_ATTEMPTS,
                 retry_delay_seconds: float = ProcessingDefaults.RETRY_DELAY_SECONDS,
                 connect_factory: Optional[Callable] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.logger = logging.getLogger(__name__)
        self._pools: Dict[str, ConnectionPool] = {
            config_role: ConnectionPool(
                store=config_role,
                connection_string=config.connection_string,
                max_size=pool_size,
                connect_factory=connect_factory,
                max_retry_attempts=max_retry_attempts,
                retry_delay_seconds=retry_delay_seconds,
                connection_timeout=config.connection_timeout,
                sleep=sleep
            )
            for config_role, config in ((SOURCE, source_config), (TARGET, target_config))
        }
        self._closed = False

    def __enter__(self) -> 'ConnectionManager':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _pool(self, store: str) -> ConnectionPool:
        try:
            return self._pools[store]
        except KeyError:
            raise ValueError(f"Unknown store '{store}', expected '{SOURCE}' or '{TARGET}'")

    @contextmanager
    def connection(self, store: str):
        """Scoped acquisition of a pooled connection."""
        with self._pool(store).acquire() as connection:
            yield connection

    def execute(self, store: str, statement: str, params: Optional[Sequence] = None) -> List[Dict[str, Any]]:
        """
        Execute one parameterized statement and commit.

        Args:
            store: SOURCE or TARGET
            statement: SQL with ? placeholders
            params: Parameter values

        Returns:
            Result rows as dicts keyed by column name (empty for statements without a result set)

        Raises:
            DatabaseConnectionError: If the store is unreachable
            pyodbc.Error: For any other database error
        """
        with self.connection(store) as connection:
            cursor = connection.cursor()
            try:
                if self.logger.isEnabledFor(logging.DEBUG):
                    self.logger.debug(f"[{store}] SQL: {statement} params={params}")
                if params:
                    cursor.execute(statement, tuple(params))
                else:
                    cursor.execute(statement)
                rows = self._fetch_dicts(cursor)
                connection.commit()
                return rows
            except pyodbc.Error:
                self._rollback_quietly(connection, store)
                raise
            finally:
                cursor.close()

    @contextmanager
    def transaction(self, store: str = TARGET):
        """
        Context manager for one atomic unit of work.

        Yields:
            Cursor bound to a pooled connection; committed on success, rolled back on error
        """
        with self.connection(store) as connection:
            cursor = connection.cursor()
            try:
                yield cursor
                connection.commit()
                self.logger.debug(f"[{store}] transaction committed")
            except Exception as e:
                try:
                    connection.rollback()
                    self.logger.debug(f"[{store}] transaction rolled back: {str(e)[:200]}")
                except pyodbc.Error as rollback_error:
                    self.logger.critical(f"ROLLBACK FAILED - {store} may hold a partial batch: {rollback_error}")
                raise
            finally:
                cursor.close()

    def test_connection(self, store: str) -> bool:
        """Run a trivial query against a store; raises DatabaseConnectionError if unreachable."""
        self.execute(store, "SELECT 1 AS ok")
        self.logger.info(f"{store} store connection OK")
        return True

    def close(self) -> None:
        """Close both pools. Idempotent."""
        if self._closed:
            return
        self._closed = True
        for pool in self._pools.values():
            pool.close()
        self.logger.debug("Connection pools closed")

    @staticmethod
    def _fetch_dicts(cursor) -> List[Dict[str, Any]]:
        if cursor.description is None:
            return []
        columns = [column[0] for column in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]

    def _rollback_quietly(self, connection, store: str) -> None:
        try:
            connection.rollback()
        except pyodbc.Error as e:
            self.logger.warning(f"[{store}] rollback after failed statement also failed: {e}")
