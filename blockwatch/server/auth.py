"""
BLOCKWATCH — Session Issuer

HS256 JWT session credentials carrying {sub, email, tier, iat, exp}.
Nothing is stored server-side: a credential is valid iff its signature checks
out against the configured secret and it has not expired.

The tier claim is a snapshot taken at mint time. Anything that gates on tier
must re-read the account (the Entitlement Gate does).
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import jwt

from blockwatch.server.errors import (
    AUTH_BAD_SIGNATURE,
    AUTH_EXPIRED,
    AUTH_MALFORMED,
    AUTH_MISSING,
    AuthRequired,
)
from blockwatch.server.models import (
    Account,
    Anonymous,
    Authenticated,
    Identity,
    Rejected,
    SessionResult,
)
from blockwatch.server.pricing import TIERS

log = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
DEFAULT_TTL = timedelta(days=7)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionIssuer:
    """Mints and verifies session credentials with a server-held secret."""

    def __init__(self, secret: str, ttl: timedelta = DEFAULT_TTL,
                 clock: Callable[[], datetime] = _utcnow):
        if not secret:
            raise ValueError("Session signing secret must not be empty")
        self._secret = secret
        self.ttl = ttl
        self._clock = clock

    def mint(self, account: Account) -> str:
        now = self._clock()
        payload = {
            "sub": str(account.id),
            "email": account.email,
            "tier": account.tier,
            "iat": now,
            "exp": now + self.ttl,
        }
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)

    def verify(self, token: Optional[str]) -> Identity:
        """Decode a credential. Raises AuthRequired with the failure reason."""
        if not token:
            raise AuthRequired(AUTH_MISSING)
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                options={"require": ["sub", "exp", "iat"]},
            )
        except jwt.ExpiredSignatureError:
            raise AuthRequired(AUTH_EXPIRED, "Token expired. Please log in again.")
        except jwt.InvalidSignatureError:
            log.warning("Session credential with bad signature rejected")
            raise AuthRequired(AUTH_BAD_SIGNATURE)
        except jwt.InvalidTokenError:
            raise AuthRequired(AUTH_MALFORMED)

        try:
            account_id = int(payload["sub"])
        except (TypeError, ValueError):
            raise AuthRequired(AUTH_MALFORMED)
        email = payload.get("email")
        tier = payload.get("tier")
        if not isinstance(email, str) or tier not in TIERS:
            raise AuthRequired(AUTH_MALFORMED)
        return Identity(account_id=account_id, email=email, tier=tier)

    # ── Entry points for the transport layer ────────────────────────

    def require_session(self, token: Optional[str]) -> SessionResult:
        """Required mode: absence or failure is a rejection."""
        try:
            return Authenticated(self.verify(token))
        except AuthRequired as e:
            return Rejected(e.reason)

    def attach_optional_session(self, token: Optional[str]) -> SessionResult:
        """Optional mode: absence or failure proceeds as anonymous."""
        if not token:
            return Anonymous()
        try:
            return Authenticated(self.verify(token))
        except AuthRequired as e:
            log.debug("Optional session ignored: %s", e.reason)
            return Anonymous()
