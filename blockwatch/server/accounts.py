"""
BLOCKWATCH — Credential Store

Account records: bcrypt password hashes, tier, Stripe references.

  - Emails are normalized (trim + lowercase) before every read and write;
    uniqueness is enforced by the UNIQUE constraint on users.email.
  - Passwords are hashed with bcrypt; comparison is bcrypt.checkpw.
  - Tier writes run under BEGIN IMMEDIATE so concurrent writers for the same
    account serialize; each write sets an absolute state (last write wins).
"""

from __future__ import annotations

import logging
import re
import sqlite3
from typing import Optional

import bcrypt

from blockwatch.db.database import Database, now_iso
from blockwatch.server.errors import (
    DuplicateEmail,
    InvalidCredentials,
    InvalidEmailFormat,
    WeakPassword,
)
from blockwatch.server.models import Account
from blockwatch.server.pricing import TIER_FREE, TIER_PAID, TIERS

log = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_BYTES = 72  # bcrypt input limit
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


# ── Password hashing ────────────────────────────────────────────────

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    encoded = password.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        return False
    try:
        return bcrypt.checkpw(encoded, hashed.encode("utf-8"))
    except ValueError:
        # Corrupt hash in storage.
        log.warning("Unreadable password hash encountered")
        return False


# Compared against when the email is unknown so both paths cost one bcrypt round.
_DUMMY_HASH = hash_password("blockwatch-timing-equalizer")


# ── Validation ───────────────────────────────────────────────────────

def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def validate_email(email: str) -> str:
    normalized = normalize_email(email)
    if not EMAIL_RE.match(normalized):
        raise InvalidEmailFormat()
    return normalized


def validate_password(password: str) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise WeakPassword()
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise WeakPassword(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")


# ── Store ────────────────────────────────────────────────────────────

class AccountStore:
    def __init__(self, db: Database):
        self.db = db

    def create(self, email: str, password: str) -> Account:
        """Register a new free-tier account.

        Raises InvalidEmailFormat, WeakPassword or DuplicateEmail.
        """
        normalized = validate_email(email)
        validate_password(password)
        password_hashed = hash_password(password)
        now = now_iso()

        with self.db.transaction() as conn:
            try:
                cur = conn.execute(
                    "INSERT INTO users (email, password_hash, subscription_tier, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    [normalized, password_hashed, TIER_FREE, now, now],
                )
            except sqlite3.IntegrityError:
                raise DuplicateEmail()
            row = conn.execute("SELECT * FROM users WHERE id = ?", [cur.lastrowid]).fetchone()

        log.info("Account created: id=%s", row["id"])
        return Account.from_row(row)

    def verify(self, email: str, password: str) -> Account:
        """Check a login. Raises InvalidCredentials on any mismatch."""
        account = self.get_by_email(email)
        if account is None:
            verify_password(password or "", _DUMMY_HASH)
            raise InvalidCredentials()
        if not verify_password(password or "", account.password_hash):
            raise InvalidCredentials()
        return account

    # ── Reads ────────────────────────────────────────────────────────

    def get(self, account_id: int) -> Optional[Account]:
        with self.db.connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", [account_id]).fetchone()
        return Account.from_row(row) if row else None

    def get_by_email(self, email: str) -> Optional[Account]:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ?", [normalize_email(email)]
            ).fetchone()
        return Account.from_row(row) if row else None

    def get_by_subscription(self, subscription_ref: str) -> Optional[Account]:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE stripe_subscription_id = ?", [subscription_ref]
            ).fetchone()
        return Account.from_row(row) if row else None

    # ── Writes ───────────────────────────────────────────────────────

    def set_tier(self, account_id: int, tier: str,
                 subscription_ref: Optional[str] = None,
                 customer_ref: Optional[str] = None) -> Optional[Account]:
        """Set an absolute tier state. Idempotent; returns None if no such account.

        Downgrading to free always clears the subscription reference. A
        customer_ref, when given, is written in the same statement.
        """
        if tier not in TIERS:
            raise ValueError(f"Unknown tier: {tier}")
        if tier == TIER_FREE:
            subscription_ref = None

        with self.db.transaction(immediate=True) as conn:
            cur = conn.execute(
                "UPDATE users SET subscription_tier = ?, stripe_subscription_id = ?, "
                "stripe_customer_id = COALESCE(?, stripe_customer_id), updated_at = ? "
                "WHERE id = ?",
                [tier, subscription_ref, customer_ref, now_iso(), account_id],
            )
            if cur.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM users WHERE id = ?", [account_id]).fetchone()
        return Account.from_row(row)

    def set_tier_by_subscription(self, subscription_ref: str, tier: str) -> Optional[Account]:
        """Resolve the account owning subscription_ref and set its tier, atomically.

        Returns None when no account holds that reference.
        """
        if tier not in TIERS:
            raise ValueError(f"Unknown tier: {tier}")
        new_ref = subscription_ref if tier == TIER_PAID else None

        with self.db.transaction(immediate=True) as conn:
            row = conn.execute(
                "SELECT id FROM users WHERE stripe_subscription_id = ?", [subscription_ref]
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                "UPDATE users SET subscription_tier = ?, stripe_subscription_id = ?, updated_at = ? "
                "WHERE id = ?",
                [tier, new_ref, now_iso(), row["id"]],
            )
            updated = conn.execute("SELECT * FROM users WHERE id = ?", [row["id"]]).fetchone()
        return Account.from_row(updated)

    def set_customer_ref(self, account_id: int, customer_ref: str) -> None:
        with self.db.transaction(immediate=True) as conn:
            conn.execute(
                "UPDATE users SET stripe_customer_id = ?, updated_at = ? WHERE id = ?",
                [customer_ref, now_iso(), account_id],
            )

    def set_password(self, conn: sqlite3.Connection, account_id: int, password: str) -> None:
        """Replace the password hash inside a caller-owned transaction."""
        validate_password(password)
        conn.execute(
            "UPDATE users SET password_hash = ?, updated_at = ? WHERE id = ?",
            [hash_password(password), now_iso(), account_id],
        )
