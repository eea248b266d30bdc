"""SQLite connection layer with sqlite-vec extension."""

from __future__ import annotations

import atexit
import sqlite3
from pathlib import Path

import sqlite_vec

# Seconds a connection waits for another instance's write lock.
_BUSY_TIMEOUT = 30.0


class Database:
    """Pipeline store handle: one SQLite file with sqlite-vec vector search.

    Constructed explicitly and passed to every stage; nothing in the package
    holds a module-level connection.
    """

    def __init__(self, db_path: Path | str, timeout: float = _BUSY_TIMEOUT) -> None:
        """Store the database path. Call open() or connect() to get a connection.

        Args:
            db_path: Path to the SQLite database file (created if missing).
            timeout: Seconds to wait on a locked database before failing.
        """
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> sqlite3.Connection:
        """Open a new connection, load sqlite-vec, and return the connection."""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        conn.enable_load_extension(True)
        sqlite_vec.load(conn)
        conn.enable_load_extension(False)
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    def open(self) -> sqlite3.Connection:
        """Open the handle's connection and apply pending migrations (idempotent)."""
        from threadrag.db.schema import initialize

        if self._conn is None:
            self._conn = self.connect()
            initialize(self._conn)
        return self._conn

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError(f"Database '{self.db_path}' is not open. Call open() first.")
        return self._conn

    def close(self) -> None:
        """Close the handle's connection if it is open."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def close_on_shutdown(self) -> None:
        """Close the connection at interpreter exit."""
        atexit.register(self.close)

    def __enter__(self) -> sqlite3.Connection:
        """Open the database and return the connection (context manager support)."""
        return self.open()

    def __exit__(self, *args: object) -> None:
        """Close the connection when leaving the context manager."""
        self.close()
