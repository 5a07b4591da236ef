"""SQLite connection and initialization utilities."""

import sqlite3
import threading
from pathlib import Path

from .schema import get_init_schema
from ..core.exceptions import StoreError


class DatabaseConnection:
    """Manage per-thread SQLite connections and schema init.

    The local store runs its queries on worker threads, so each thread gets
    its own connection; ``close`` closes all of them.
    """

    __slots__ = ("db_path", "_local", "_lock", "_initialized", "_connections")

    def __init__(self, db_path="./trove.db"):
        """Initialize connection state."""
        self.db_path = Path(db_path)
        self._local = threading.local()
        self._lock = threading.RLock()
        self._initialized = False
        self._connections = []

    def initialize(self):
        """Initialize schema if not already initialized."""
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)

                conn = self._get_connection()
                for statement in get_init_schema():
                    conn.execute(statement)

                self._initialized = True

            except sqlite3.Error as e:
                raise StoreError(f"Failed to initialize database: {e}")

    def _get_connection(self):
        """Get or create a thread-local SQLite connection."""
        conn = getattr(self._local, "connection", None)
        if conn is None:
            conn = sqlite3.connect(
                str(self.db_path), check_same_thread=False, isolation_level=None, timeout=30.0
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            self._local.connection = conn
            with self._lock:
                self._connections.append(conn)
        return conn

    def get_transaction_context(self):
        """Return a write transaction context manager (BEGIN IMMEDIATE/COMMIT/ROLLBACK)."""
        return TransactionContext(self._get_connection())

    def execute(self, query, params=()):
        """Execute a single statement and return the affected row count."""
        cursor = self._get_connection().cursor()
        try:
            cursor.execute(query, params)
            return cursor.rowcount
        finally:
            cursor.close()

    def fetch_one(self, query, params=()):
        """Fetch a single row as a dict or None."""
        cursor = self._get_connection().cursor()
        try:
            cursor.execute(query, params)
            row = cursor.fetchone()
            return dict(row) if row else None
        finally:
            cursor.close()

    def fetch_all(self, query, params=()):
        """Fetch all rows as a list of dicts."""
        cursor = self._get_connection().cursor()
        try:
            cursor.execute(query, params)
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def get_version(self):
        """Return current schema version number."""
        try:
            result = self.fetch_one("SELECT MAX(version) as version FROM schema_version")
            return result["version"] if result and result["version"] else 0
        except sqlite3.Error:
            return 0

    def close(self):
        """Close every connection opened through this object."""
        with self._lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            conn.close()
        self._local = threading.local()
        self._initialized = False


class TransactionContext:
    """Context manager for transactions (BEGIN IMMEDIATE/COMMIT/ROLLBACK)."""

    __slots__ = ("connection", "cursor")

    def __init__(self, connection):
        """Initialize with a SQLite connection."""
        self.connection = connection
        self.cursor = None

    def __enter__(self):
        """Begin a write transaction and return a cursor."""
        self.cursor = self.connection.cursor()
        self.cursor.execute("BEGIN IMMEDIATE")
        return self.cursor

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Commit on success, rollback on error, then close cursor."""
        try:
            if exc_type is None:
                self.connection.execute("COMMIT")
            else:
                self.connection.execute("ROLLBACK")
        finally:
            if self.cursor:
                self.cursor.close()
