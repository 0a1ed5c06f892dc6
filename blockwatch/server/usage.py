"""
BLOCKWATCH — Usage Ledger

Append-only log of metered actions (table api_usage). The quota counter is
COUNT(*) over (account_id, action_kind); there is no mutable counter column.
No update or delete exists here, and schema triggers reject both, so a bug
can only ever make the count larger.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from blockwatch.db.database import Database, now_iso

log = logging.getLogger(__name__)

_COUNT_SQL = "SELECT COUNT(*) FROM api_usage WHERE account_id = ? AND action_kind = ?"


class UsageLedger:
    def __init__(self, db: Database):
        self.db = db

    def record(self, account_id: int, action_kind: str, subject: Optional[str] = None) -> None:
        """Append one row. Storage failure surfaces as StorageError."""
        with self.db.transaction() as conn:
            _append(conn, account_id, action_kind, subject)
        log.debug("Usage recorded: account=%s kind=%s", account_id, action_kind)

    def record_within_limit(self, account_id: int, action_kind: str,
                            subject: Optional[str], limit: int) -> tuple[bool, int]:
        """Conditional append: insert only while the count is below limit.

        Check and insert are one statement under BEGIN IMMEDIATE, so no two
        writers can both see room for the last unit. Returns (appended,
        count_after).
        """
        with self.db.transaction(immediate=True) as conn:
            cur = conn.execute(
                "INSERT INTO api_usage (account_id, action_kind, subject, created_at) "
                f"SELECT ?, ?, ?, ? WHERE ({_COUNT_SQL}) < ?",
                [account_id, action_kind, subject, now_iso(), account_id, action_kind, limit],
            )
            appended = cur.rowcount == 1
            count = conn.execute(_COUNT_SQL, [account_id, action_kind]).fetchone()[0]
        if not appended:
            log.info("Usage append refused at limit: account=%s kind=%s count=%d limit=%d",
                     account_id, action_kind, count, limit)
        return appended, count

    def count_for(self, account_id: int, action_kind: str) -> int:
        with self.db.connection() as conn:
            return conn.execute(_COUNT_SQL, [account_id, action_kind]).fetchone()[0]

    def recent(self, account_id: int, limit: int = 20) -> list[dict]:
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT action_kind, subject, created_at FROM api_usage "
                "WHERE account_id = ? ORDER BY id DESC LIMIT ?",
                [account_id, limit],
            ).fetchall()
        return [dict(r) for r in rows]


def _append(conn: sqlite3.Connection, account_id: int, action_kind: str,
            subject: Optional[str]) -> None:
    conn.execute(
        "INSERT INTO api_usage (account_id, action_kind, subject, created_at) VALUES (?, ?, ?, ?)",
        [account_id, action_kind, subject, now_iso()],
    )
