#!/usr/bin/env python3
"""
BLOCKWATCH — Incident CSV import

Replaces the incidents table with the contents of a CSV export.

Expected header:
    postal_code,block,location,date_reported,incident_summary,source_url

Rows with an empty postal_code are skipped. The swap happens in one
transaction: readers see the old data or the new data, never a mix.

Usage:
    python -m blockwatch.ops.import_incidents incidents.csv [--db PATH]
"""

from __future__ import annotations

import argparse
import csv
import logging
import os
import sys
from pathlib import Path
from typing import Iterable

from blockwatch.db.database import Database
from blockwatch.db.incidents import normalize_key

log = logging.getLogger("import_incidents")


def read_rows(lines: Iterable[str]) -> tuple[list[tuple], int]:
    """Parse CSV lines into insertable tuples. Returns (rows, skipped)."""
    reader = csv.DictReader(lines)
    if "postal_code" not in (reader.fieldnames or []):
        raise ValueError("CSV missing required column: postal_code")

    rows: list[tuple] = []
    skipped = 0
    for raw in reader:
        key = normalize_key(raw.get("postal_code") or "")
        if not key:
            skipped += 1
            continue
        rows.append((
            key,
            (raw.get("block") or "").strip(),
            (raw.get("location") or "").strip(),
            (raw.get("date_reported") or "").strip(),
            (raw.get("incident_summary") or "").strip(),
            (raw.get("source_url") or "").strip(),
        ))
    return rows, skipped


def replace_incidents(db: Database, rows: list[tuple]) -> int:
    with db.transaction(immediate=True) as conn:
        conn.execute("DELETE FROM incidents")
        conn.executemany(
            "INSERT INTO incidents (postal_code, block, location, date_reported, "
            "incident_summary, source_url) VALUES (?, ?, ?, ?, ?, ?)",
            rows,
        )
    return len(rows)


def import_csv(db: Database, csv_path: Path) -> int:
    with open(csv_path, newline="", encoding="utf-8-sig") as f:
        rows, skipped = read_rows(f)
    if skipped:
        log.warning("Skipped %d rows with no postal_code", skipped)
    count = replace_incidents(db, rows)
    log.info("Imported %d incidents from %s", count, csv_path)
    return count


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    parser = argparse.ArgumentParser(description="Replace the incidents table from a CSV file")
    parser.add_argument("csv", type=Path, help="CSV file to import")
    parser.add_argument("--db", default=os.getenv("BLOCKWATCH_DB_PATH", ""),
                        help="SQLite path (default: $BLOCKWATCH_DB_PATH)")
    args = parser.parse_args(argv)

    if not args.db:
        log.error("FATAL: no database path. Pass --db or set BLOCKWATCH_DB_PATH.")
        return 1
    if not args.csv.exists():
        log.error("CSV not found: %s", args.csv)
        return 1

    db = Database(args.db)
    db.init_schema()
    try:
        import_csv(db, args.csv)
    except ValueError as e:
        log.error("%s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
