"""
BLOCKWATCH — Entitlement Gate

Answers "may this account perform this metered action?" and, once the action
has succeeded, charges it to the Usage Ledger.

Policy:
  paid  → always allowed
  free  → allowed while count_for(account, kind) < limit

Double-spend: authorize + action + record for one account run under a
per-account lock, and the free-tier append itself is a conditional insert
(UsageLedger.record_within_limit). The lock covers threads in this process;
the conditional insert covers every other writer on the same database. A
lookup that loses the storage race is reported as QuotaExceeded and its
result is discarded, so successful free actions never exceed the limit.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from blockwatch.server.accounts import AccountStore
from blockwatch.server.errors import AUTH_UNKNOWN_ACCOUNT, AuthRequired, QuotaExceeded
from blockwatch.server.models import Allow, Decision, Deny
from blockwatch.server.pricing import ACTION_LOOKUP, FREE_LOOKUP_LIMIT, get_limit
from blockwatch.server.usage import UsageLedger

log = logging.getLogger(__name__)

LOCK_STRIPES = 64


class EntitlementGate:
    def __init__(self, store: AccountStore, ledger: UsageLedger,
                 free_limit: int = FREE_LOOKUP_LIMIT):
        self.store = store
        self.ledger = ledger
        self.free_limit = free_limit
        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

    def authorize(self, account_id: int, action_kind: str = ACTION_LOOKUP) -> Decision:
        """Pure read. Tier comes from the store, never from the session claim."""
        account = self.store.get(account_id)
        if account is None:
            raise AuthRequired(AUTH_UNKNOWN_ACCOUNT, "Account no longer exists.")

        limit = get_limit(account.tier, action_kind, self.free_limit)
        count = self.ledger.count_for(account_id, action_kind)
        if limit is None or count < limit:
            return Allow(tier=account.tier, current_count=count, limit=limit)
        return Deny(reason="free_limit_reached", current_count=count, limit=limit)

    def charge(self, account_id: int, action_kind: str, subject: Optional[str],
               decision: Allow) -> int:
        """Record a completed action. Returns the count after recording.

        Raises QuotaExceeded if another writer consumed the last free unit
        after authorize() ran.
        """
        if decision.limit is None:
            self.ledger.record(account_id, action_kind, subject)
            return decision.current_count + 1

        appended, count = self.ledger.record_within_limit(
            account_id, action_kind, subject, decision.limit
        )
        if not appended:
            raise QuotaExceeded(count, decision.limit, action_kind)
        return count

    @contextmanager
    def metered(self, account_id: int, action_kind: str = ACTION_LOOKUP,
                subject: Optional[str] = None) -> Iterator[Allow]:
        """Gate a block of work:

            with gate.metered(account.id, "lookup", key):
                results = do_lookup(key)

        Raises QuotaExceeded before the block runs on Deny. Usage is recorded
        only if the block exits normally.
        """
        with self._lock_for(account_id):
            decision = self.authorize(account_id, action_kind)
            if isinstance(decision, Deny):
                log.info("Denied: account=%s kind=%s count=%d limit=%d",
                         account_id, action_kind, decision.current_count, decision.limit)
                raise QuotaExceeded(decision.current_count, decision.limit, action_kind)
            yield decision
            self.charge(account_id, action_kind, subject, decision)

    def _lock_for(self, account_id: int) -> threading.Lock:
        return self._locks[hash(account_id) % LOCK_STRIPES]
