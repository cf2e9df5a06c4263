"""Bounded SQLite connection pool shared by the request handlers."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Queue
from typing import Generator

logger = logging.getLogger(__name__)


class SQLiteConnectionPool:
    """Thread-safe pool handing out one connection per caller at a time."""

    def __init__(self, database: str, max_connections: int = 5, timeout: float = 30.0):
        self.database = database
        self.max_connections = max(1, int(max_connections))
        self.timeout = timeout
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=self.max_connections)
        self._lock = threading.Lock()
        self._created_connections = 0

    def _create_connection(self) -> sqlite3.Connection:
        # Handlers run on worker threads; the pool guarantees exclusive use.
        conn = sqlite3.connect(self.database, timeout=self.timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @property
    def created_connections(self) -> int:
        return self._created_connections

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Borrow a connection; uncommitted work is rolled back on return."""
        connection = None
        try:
            connection = self._pool.get(block=False)
        except Empty:
            with self._lock:
                if self._created_connections < self.max_connections:
                    connection = self._create_connection()
                    self._created_connections += 1
                    logger.debug(
                        "Opened SQLite connection %d/%d to %s",
                        self._created_connections,
                        self.max_connections,
                        self.database,
                    )
            if connection is None:
                connection = self._pool.get(block=True)

        try:
            yield connection
        finally:
            try:
                connection.rollback()
                self._pool.put(connection)
            except sqlite3.Error as exc:
                logger.error("Dropping broken SQLite connection: %s", exc)
                try:
                    connection.close()
                except sqlite3.Error:
                    pass
                with self._lock:
                    self._created_connections -= 1

    def close_all(self) -> None:
        """Close every idle connection held by the pool."""
        while True:
            try:
                connection = self._pool.get(block=False)
            except Empty:
                break
            try:
                connection.close()
            except sqlite3.Error as exc:
                logger.warning("Failed to close SQLite connection: %s", exc)
            with self._lock:
                self._created_connections -= 1
