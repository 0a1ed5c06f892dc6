"""
BLOCKWATCH — Database Layer

SQLite behind a small handle. All queries go through a Database instance so
tests (and a future server-grade backend) can point it anywhere.

Writes that must not interleave per account (tier changes, quota-gated usage
appends) run inside transaction(immediate=True), which takes the SQLite write
lock up front with BEGIN IMMEDIATE.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Union

from blockwatch.server.errors import StorageError

log = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"
BUSY_TIMEOUT_MS = 5000


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Database:
    """Connection factory for one SQLite file."""

    def __init__(self, path: Union[str, Path]):
        self.path = str(path)

    def connect(self) -> sqlite3.Connection:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None: transactions are opened explicitly below.
        conn = sqlite3.connect(self.path, timeout=BUSY_TIMEOUT_MS / 1000, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Autocommit connection for single-statement reads."""
        try:
            conn = self.connect()
        except sqlite3.Error as e:
            log.error("Cannot open database %s: %s", self.path, e)
            raise StorageError(f"Cannot open database: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            log.error("Database read failed: %s", e)
            raise StorageError(str(e)) from e
        finally:
            conn.close()

    @contextmanager
    def transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """All-or-nothing unit of work.

        Commits on normal exit, rolls back on any exception. sqlite3 errors
        surface as StorageError; everything else propagates unchanged.
        """
        try:
            conn = self.connect()
        except sqlite3.Error as e:
            log.error("Cannot open database %s: %s", self.path, e)
            raise StorageError(f"Cannot open database: {e}") from e
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            _rollback(conn)
            log.error("Transaction rolled back: %s", e)
            raise StorageError(str(e)) from e
        except BaseException:
            _rollback(conn)
            raise
        finally:
            conn.close()

    def init_schema(self) -> None:
        """Apply schema.sql. Safe to run on every boot."""
        schema_sql = SCHEMA_PATH.read_text()
        with self.connection() as conn:
            conn.executescript(schema_sql)
        log.info("Database schema ready at %s", self.path)

    def ping(self) -> bool:
        with self.connection() as conn:
            return conn.execute("SELECT 1").fetchone()[0] == 1


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            log.warning("Rollback failed: %s", e)
