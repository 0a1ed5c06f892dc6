"""
BLOCKWATCH — Tiers & quota policy

Single source of truth for tier names and the free allowance.
Import from here — never hardcode tier constants elsewhere.
"""

from __future__ import annotations

from typing import Optional

TIER_FREE = "free"
TIER_PAID = "paid"
TIERS: frozenset[str] = frozenset({TIER_FREE, TIER_PAID})

# Metered action kinds (api_usage.action_kind)
ACTION_LOOKUP = "lookup"

# Free tier: one lookup, ever. Paid tier: unlimited.
FREE_LOOKUP_LIMIT = 1

# Stripe subscription status → target tier. Statuses not listed are no-ops.
STATUS_TO_TIER: dict[str, str] = {
    "active": TIER_PAID,
    "canceled": TIER_FREE,
    "unpaid": TIER_FREE,
    "past_due": TIER_FREE,
}


def get_limit(tier: str, action_kind: str = ACTION_LOOKUP,
              free_limit: int = FREE_LOOKUP_LIMIT) -> Optional[int]:
    """Quota for a tier/action pair. None = unlimited.

    Anything that is not paid is metered at the free limit.
    """
    if tier == TIER_PAID:
        return None
    return free_limit
