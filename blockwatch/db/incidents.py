"""
BLOCKWATCH — Incident lookup

Flat keyed read over the incidents table: given a postal code, every
incident recorded for it, newest first.
"""

from __future__ import annotations

import re

from blockwatch.db.database import Database

_WS = re.compile(r"\s+")


def normalize_key(value: str) -> str:
    return _WS.sub(" ", str(value or "")).strip()


def find_incidents(db: Database, postal_code: str) -> list[dict]:
    key = normalize_key(postal_code)
    if not key:
        return []
    with db.connection() as conn:
        rows = conn.execute(
            "SELECT id, postal_code, block, location, date_reported, incident_summary, source_url "
            "FROM incidents WHERE postal_code = ? ORDER BY date_reported DESC, id DESC",
            [key],
        ).fetchall()
    return [dict(r) for r in rows]
