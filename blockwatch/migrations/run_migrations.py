#!/usr/bin/env python3
"""
BLOCKWATCH Migration Runner

Brings databases created by older releases up to date, then applies
schema.sql idempotently:
  - users: add missing Stripe / timestamp columns (safe ALTER ADD)
  - users: fill missing tiers, normalize stored emails (trim + lowercase);
    refuses to continue if that would collide two accounts
  - users: clear subscription refs on free-tier rows
  - api_usage: legacy (user_id, endpoint, postal_code, timestamp) table is
    set aside, then every row is carried into the append-only table as a
    lookup, so no account regains a spent free lookup
  - password_reset_tokens: legacy plaintext tokens are discarded

Order matters: schema.sql indexes reference the new columns, so the legacy
tables are moved out of the way before it runs. The carry-over and the
drop of the set-aside table share one transaction; a rerun after an
interruption resumes from wherever the previous run stopped.

Usage:
    python -m blockwatch.migrations.run_migrations [--db PATH]
"""

from __future__ import annotations

import argparse
import logging
import os
import sqlite3
import sys

from blockwatch.db.database import Database, now_iso
from blockwatch.server.pricing import ACTION_LOOKUP, TIER_FREE

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
log = logging.getLogger("migrate")

DEFAULT_DB = os.getenv("BLOCKWATCH_DB_PATH", "")

LEGACY_USAGE_TABLE = "api_usage_legacy"


def _get_tables(conn: sqlite3.Connection) -> set[str]:
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    return {r[0] for r in rows}


def _get_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {r[1] for r in rows}


# ── users ────────────────────────────────────────────────────────────

def evolve_users(conn: sqlite3.Connection) -> None:
    """Add missing columns to users."""
    existing = _get_columns(conn, "users")
    additions = {
        "stripe_customer_id": "TEXT",
        "stripe_subscription_id": "TEXT",
        "created_at": "TEXT",
        "updated_at": "TEXT",
    }
    for col, typedef in additions.items():
        if col not in existing:
            log.info("  ADD COLUMN users.%s %s", col, typedef)
            conn.execute(f"ALTER TABLE users ADD COLUMN {col} {typedef}")

    now = now_iso()
    filled = conn.execute(
        "UPDATE users SET created_at = COALESCE(created_at, ?), updated_at = COALESCE(updated_at, ?) "
        "WHERE created_at IS NULL OR updated_at IS NULL",
        [now, now],
    ).rowcount
    if filled:
        log.info("  Backfilled timestamps for %d users", filled)

    tiers = conn.execute(
        "UPDATE users SET subscription_tier = ? WHERE subscription_tier IS NULL", [TIER_FREE]
    ).rowcount
    if tiers:
        log.info("  Set missing tier to free for %d users", tiers)


def normalize_emails(conn: sqlite3.Connection) -> None:
    clashes = conn.execute(
        "SELECT LOWER(TRIM(email)) AS e, COUNT(*) AS n FROM users "
        "GROUP BY LOWER(TRIM(email)) HAVING n > 1"
    ).fetchall()
    if clashes:
        for row in clashes:
            log.error("  Duplicate accounts after normalization: %s (%d rows)", row[0], row[1])
        raise RuntimeError("Resolve duplicate emails before migrating.")
    changed = conn.execute(
        "UPDATE users SET email = LOWER(TRIM(email)) WHERE email != LOWER(TRIM(email))"
    ).rowcount
    if changed:
        log.info("  Normalized %d emails", changed)


def clear_orphan_subscriptions(conn: sqlite3.Connection) -> None:
    cleared = conn.execute(
        "UPDATE users SET stripe_subscription_id = NULL "
        "WHERE subscription_tier != 'paid' AND stripe_subscription_id IS NOT NULL"
    ).rowcount
    if cleared:
        log.info("  Cleared subscription refs on %d free-tier users", cleared)


# ── api_usage ────────────────────────────────────────────────────────

def set_aside_legacy_usage(conn: sqlite3.Connection) -> None:
    """Rename a user_id/endpoint-shaped api_usage so schema.sql can create the new one."""
    if "api_usage" not in _get_tables(conn):
        return
    if "account_id" in _get_columns(conn, "api_usage"):
        return
    log.info("  RENAME api_usage → %s", LEGACY_USAGE_TABLE)
    conn.execute(f"ALTER TABLE api_usage RENAME TO {LEGACY_USAGE_TABLE}")


def carry_over_usage(conn: sqlite3.Connection) -> None:
    """Copy set-aside usage rows into the append-only ledger, then drop them.

    Every legacy row counts as a lookup: the lookup was the only metered
    endpoint, and over-counting errs toward the free limit, never past it.
    """
    if LEGACY_USAGE_TABLE not in _get_tables(conn):
        return
    total = conn.execute(f"SELECT COUNT(*) FROM {LEGACY_USAGE_TABLE}").fetchone()[0]
    copied = conn.execute(
        "INSERT INTO api_usage (account_id, action_kind, subject, created_at) "
        "SELECT user_id, ?, postal_code, "
        "COALESCE(REPLACE(timestamp, ' ', 'T') || '+00:00', ?) "
        f"FROM {LEGACY_USAGE_TABLE} WHERE user_id IN (SELECT id FROM users) ORDER BY id",
        [ACTION_LOOKUP, now_iso()],
    ).rowcount
    if copied != total:
        log.warning("  %d legacy usage rows reference missing users; not carried over", total - copied)
    conn.execute(f"DROP TABLE {LEGACY_USAGE_TABLE}")
    log.info("  Carried over %d usage rows", copied)


# ── password_reset_tokens ────────────────────────────────────────────

def discard_legacy_reset_tokens(conn: sqlite3.Connection) -> None:
    """Legacy tokens were stored in plaintext. Drop them; users can request new ones."""
    if "password_reset_tokens" not in _get_tables(conn):
        return
    if "token_hash" in _get_columns(conn, "password_reset_tokens"):
        return
    dropped = conn.execute("SELECT COUNT(*) FROM password_reset_tokens").fetchone()[0]
    conn.execute("DROP TABLE password_reset_tokens")
    log.info("  Dropped legacy password_reset_tokens (%d plaintext tokens discarded)", dropped)


# ── Runner ───────────────────────────────────────────────────────────

def migrate(db_path: str) -> None:
    db = Database(db_path)
    with db.connection() as conn:
        tables = _get_tables(conn)

    if tables & {"users", "api_usage", "password_reset_tokens"}:
        log.info("Evolving existing tables ...")
        with db.transaction(immediate=True) as conn:
            if "users" in tables:
                evolve_users(conn)
                normalize_emails(conn)
                clear_orphan_subscriptions(conn)
            set_aside_legacy_usage(conn)
            discard_legacy_reset_tokens(conn)

    log.info("Applying schema.sql ...")
    db.init_schema()

    with db.transaction(immediate=True) as conn:
        carry_over_usage(conn)
    log.info("Migration complete: %s", db_path)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Apply Blockwatch schema migrations")
    parser.add_argument("--db", default=DEFAULT_DB, help="SQLite path (default: $BLOCKWATCH_DB_PATH)")
    args = parser.parse_args(argv)
    if not args.db:
        log.error("FATAL: no database path. Pass --db or set BLOCKWATCH_DB_PATH.")
        return 1
    migrate(args.db)
    return 0


if __name__ == "__main__":
    sys.exit(main())
