"""
BLOCKWATCH — Password reset tokens

Short-lived, single-use. Only the sha256 of a token is stored; the raw token
exists in the outbound email and nowhere else.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from blockwatch.db.database import Database, now_iso
from blockwatch.server.accounts import AccountStore, validate_password
from blockwatch.server.errors import InvalidResetToken
from blockwatch.server.models import Account

log = logging.getLogger(__name__)

RESET_TOKEN_TTL = timedelta(hours=1)


def _token_hash(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class ResetTokens:
    def __init__(self, db: Database, store: AccountStore, ttl: timedelta = RESET_TOKEN_TTL):
        self.db = db
        self.store = store
        self.ttl = ttl

    def issue(self, email: str) -> Optional[str]:
        """Create a token for the account with this email. None if unknown."""
        account = self.store.get_by_email(email)
        if account is None:
            return None
        token = secrets.token_urlsafe(32)
        expires = datetime.now(timezone.utc) + self.ttl
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO password_reset_tokens (account_id, token_hash, expires_at, used, created_at) "
                "VALUES (?, ?, ?, 0, ?)",
                [account.id, _token_hash(token), expires.isoformat(), now_iso()],
            )
        log.info("Password reset token issued: account=%s", account.id)
        return token

    def redeem(self, token: str, new_password: str) -> Account:
        """Spend a token and set the new password in one transaction."""
        if not token:
            raise InvalidResetToken()
        validate_password(new_password)

        with self.db.transaction(immediate=True) as conn:
            row = conn.execute(
                "SELECT id, account_id, expires_at, used FROM password_reset_tokens "
                "WHERE token_hash = ?",
                [_token_hash(token)],
            ).fetchone()
            if row is None or row["used"]:
                raise InvalidResetToken()
            if datetime.fromisoformat(row["expires_at"]) <= datetime.now(timezone.utc):
                raise InvalidResetToken()

            conn.execute("UPDATE password_reset_tokens SET used = 1 WHERE id = ?", [row["id"]])
            self.store.set_password(conn, row["account_id"], new_password)
            account_id = row["account_id"]

        log.info("Password reset completed: account=%s", account_id)
        return self.store.get(account_id)
