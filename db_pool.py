"""SQLite connection pool shared by the persistence helpers."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Full, Queue
from typing import Generator, List

logger = logging.getLogger(__name__)


class SQLiteConnectionPool:
    """Thread-safe, bounded SQLite connection pool.

    Connections are handed out across the worker threads of the web server,
    so they are opened with ``check_same_thread=False`` and are only ever
    used by one borrower at a time.
    """

    def __init__(self, database: str, max_connections: int = 5, timeout: float = 5.0):
        if max_connections <= 0:
            raise ValueError("max_connections must be positive")
        self.database = database
        self.max_connections = max_connections
        self.timeout = timeout
        self._idle: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._all: List[sqlite3.Connection] = []
        self._lock = threading.Lock()

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database, timeout=self.timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute(f"PRAGMA busy_timeout = {int(self.timeout * 1000)}")
        return conn

    def _acquire(self) -> sqlite3.Connection:
        try:
            return self._idle.get(block=False)
        except Empty:
            pass
        with self._lock:
            if len(self._all) < self.max_connections:
                conn = self._create_connection()
                self._all.append(conn)
                logger.debug("Opened SQLite connection %s/%s for %s", len(self._all), self.max_connections, self.database)
                return conn
        # Pool exhausted; wait for a borrower to give one back.
        try:
            return self._idle.get(block=True, timeout=self.timeout)
        except Empty:
            raise sqlite3.OperationalError(
                f"no pooled connection for {self.database} became free within {self.timeout}s"
            ) from None

    def _discard(self, conn: sqlite3.Connection) -> None:
        with self._lock:
            if conn in self._all:
                self._all.remove(conn)
        try:
            conn.close()
        except sqlite3.Error:
            logger.debug("Ignoring error while closing a broken connection", exc_info=True)

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Borrow a connection; uncommitted work is rolled back on return."""
        connection = self._acquire()
        try:
            yield connection
        finally:
            try:
                connection.rollback()
                self._idle.put(connection, block=False)
            except (sqlite3.Error, Full) as exc:
                logger.error("Error returning connection to pool: %s", exc)
                self._discard(connection)

    def close_all(self) -> None:
        """Close every connection the pool has opened."""
        with self._lock:
            connections, self._all = self._all, []
        while True:
            try:
                self._idle.get(block=False)
            except Empty:
                break
        for conn in connections:
            try:
                conn.close()
            except sqlite3.Error:
                logger.debug("Ignoring error while closing pooled connection", exc_info=True)
