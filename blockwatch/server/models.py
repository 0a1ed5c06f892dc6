"""
BLOCKWATCH — Records

Account is the persisted entity (pydantic, built from sqlite rows).
Identity and the session/gate outcomes are small immutable values passed
between the engine's components.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Optional, Union

from pydantic import BaseModel

from blockwatch.server.pricing import TIER_FREE, TIER_PAID


# ── Account ──────────────────────────────────────────────────────────

class Account(BaseModel):
    """A users row. password_hash never leaves the server (see public())."""

    id: int
    email: str
    password_hash: str
    tier: str = TIER_FREE
    billing_customer_ref: Optional[str] = None
    billing_subscription_ref: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_paid(self) -> bool:
        return self.tier == TIER_PAID

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Account:
        return cls(
            id=row["id"],
            email=row["email"],
            password_hash=row["password_hash"],
            tier=row["subscription_tier"] or TIER_FREE,
            billing_customer_ref=row["stripe_customer_id"],
            billing_subscription_ref=row["stripe_subscription_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def public(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "tier": self.tier,
            "subscribed": self.billing_subscription_ref is not None,
            "created_at": self.created_at,
        }


# ── Session identity ─────────────────────────────────────────────────

@dataclass(frozen=True)
class Identity:
    """Claims carried by a session credential. tier is a mint-time snapshot."""

    account_id: int
    email: str
    tier: str


@dataclass(frozen=True)
class Authenticated:
    identity: Identity


@dataclass(frozen=True)
class Anonymous:
    pass


@dataclass(frozen=True)
class Rejected:
    reason: str


SessionResult = Union[Authenticated, Anonymous, Rejected]


# ── Entitlement decisions ────────────────────────────────────────────

@dataclass(frozen=True)
class Allow:
    tier: str
    current_count: int
    limit: Optional[int]  # None = unlimited


@dataclass(frozen=True)
class Deny:
    reason: str
    current_count: int
    limit: int


Decision = Union[Allow, Deny]
