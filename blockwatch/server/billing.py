"""
BLOCKWATCH — Stripe Billing Integration

Manages the subscription lifecycle:
  - Outbound: customer creation, checkout session, cancellation
  - Inbound:  signed webhook events → Subscription State Machine

State machine (keyed by subscription_ref):
  checkout.session.completed (mode=subscription) → account_ref  → paid, store ref
  customer.subscription.created/updated  active  → ref owner    → paid
      canceled | unpaid | past_due               → ref owner    → free, clear ref
  customer.subscription.deleted                  → ref owner    → free, clear ref

Every transition sets an absolute target state, so redelivery of the same
event is harmless. Events are applied in arrival order with no sequence
comparison: a stale "active" redelivered after a "canceled" will restore
paid. Resolving that needs a per-subscription event sequence that the
payloads do not reliably carry.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional

import stripe

from blockwatch.server.accounts import AccountStore
from blockwatch.server.errors import ProviderError, SignatureInvalid
from blockwatch.server.models import Account
from blockwatch.server.pricing import STATUS_TO_TIER, TIER_FREE, TIER_PAID

log = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300

EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_SUBSCRIPTION_CREATED = "customer.subscription.created"
EVENT_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
EVENT_SUBSCRIPTION_DELETED = "customer.subscription.deleted"

# Outcomes returned by SubscriptionStateMachine.apply()
APPLIED = "applied"
IGNORED = "ignored"
UNMATCHED = "unmatched"


@dataclass(frozen=True)
class BillingEvent:
    event_type: str
    subscription_ref: Optional[str] = None
    account_ref: Optional[str] = None
    status: Optional[str] = None
    customer_ref: Optional[str] = None
    event_id: str = ""
    mode: Optional[str] = None

    @classmethod
    def from_stripe(cls, event: dict) -> BillingEvent:
        """Normalize a decoded Stripe event dict."""
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}

        if event_type == EVENT_CHECKOUT_COMPLETED:
            return cls(
                event_type=event_type,
                subscription_ref=obj.get("subscription"),
                account_ref=obj.get("client_reference_id") or metadata.get("account_id"),
                status=obj.get("status"),
                customer_ref=obj.get("customer"),
                event_id=event.get("id", ""),
                mode=obj.get("mode"),
            )
        if event_type in (EVENT_SUBSCRIPTION_CREATED, EVENT_SUBSCRIPTION_UPDATED,
                          EVENT_SUBSCRIPTION_DELETED):
            return cls(
                event_type=event_type,
                subscription_ref=obj.get("id"),
                account_ref=metadata.get("account_id"),
                status=obj.get("status"),
                customer_ref=obj.get("customer"),
                event_id=event.get("id", ""),
            )
        return cls(event_type=event_type, event_id=event.get("id", ""))


def parse_event(payload: bytes, sig_header: str, secret: str,
                tolerance: int = SIGNATURE_TOLERANCE_SECONDS) -> BillingEvent:
    """Verify the Stripe-Signature header over the raw payload, then decode.

    Raises SignatureInvalid without touching any state on failure.
    """
    if not secret:
        log.error("Webhook rejected: no signing secret configured")
        raise SignatureInvalid("Webhook signing secret not configured.")
    if isinstance(payload, bytes):
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise SignatureInvalid("Invalid payload.")
    else:
        text = payload

    try:
        stripe.WebhookSignature.verify_header(text, sig_header or "", secret, tolerance)
    except stripe.SignatureVerificationError as e:
        log.warning("SECURITY: webhook signature rejected: %s", e)
        raise SignatureInvalid()

    try:
        event = json.loads(text)
    except json.JSONDecodeError:
        raise SignatureInvalid("Invalid payload.")
    if not isinstance(event, dict):
        raise SignatureInvalid("Invalid payload.")
    return BillingEvent.from_stripe(event)


# ── State machine ────────────────────────────────────────────────────

class SubscriptionStateMachine:
    def __init__(self, store: AccountStore, webhook_secret: str = ""):
        self.store = store
        self.webhook_secret = webhook_secret

    def handle_webhook(self, payload: bytes, sig_header: str) -> str:
        event = parse_event(payload, sig_header, self.webhook_secret)
        return self.apply(event)

    def apply(self, event: BillingEvent) -> str:
        """Apply one event. Safe to call any number of times with the same event."""
        if event.event_type == EVENT_CHECKOUT_COMPLETED:
            return self._checkout_completed(event)
        if event.event_type in (EVENT_SUBSCRIPTION_CREATED, EVENT_SUBSCRIPTION_UPDATED):
            return self._status_changed(event)
        if event.event_type == EVENT_SUBSCRIPTION_DELETED:
            return self._set_by_subscription(event, TIER_FREE)
        log.debug("Unhandled Stripe event: %s", event.event_type)
        return IGNORED

    def _checkout_completed(self, event: BillingEvent) -> str:
        if event.mode != "subscription" or not event.subscription_ref:
            log.info("Checkout %s ignored: mode=%s", event.event_id, event.mode)
            return IGNORED
        try:
            account_id = int(event.account_ref)
        except (TypeError, ValueError):
            log.warning("Checkout %s has no usable account reference", event.event_id)
            return UNMATCHED

        account = self.store.set_tier(
            account_id, TIER_PAID,
            subscription_ref=event.subscription_ref,
            customer_ref=event.customer_ref,
        )
        if account is None:
            log.warning("Checkout %s: no account %s (other environment?)",
                        event.event_id, account_id)
            return UNMATCHED
        log.info("Subscription activated: account=%s subscription=%s",
                 account.id, event.subscription_ref)
        return APPLIED

    def _status_changed(self, event: BillingEvent) -> str:
        target = STATUS_TO_TIER.get(event.status or "")
        if target is None:
            log.info("Subscription %s status %s: no tier change",
                     event.subscription_ref, event.status)
            return IGNORED
        return self._set_by_subscription(event, target)

    def _set_by_subscription(self, event: BillingEvent, tier: str) -> str:
        if not event.subscription_ref:
            log.warning("%s %s carries no subscription id", event.event_type, event.event_id)
            return IGNORED
        account = self.store.set_tier_by_subscription(event.subscription_ref, tier)
        if account is None:
            log.info("%s: subscription %s matches no account; skipped",
                     event.event_type, event.subscription_ref)
            return UNMATCHED
        log.info("Subscription %s → account=%s tier=%s (%s)",
                 event.subscription_ref, account.id, tier, event.event_type)
        return APPLIED


# ── Outbound provider calls ──────────────────────────────────────────

class StripeProvider:
    """Thin wrapper over the Stripe API. Every failure becomes ProviderError."""

    def __init__(self, api_key: str, price_id: str, base_url: str):
        self.api_key = api_key
        self.price_id = price_id
        self.base_url = base_url.rstrip("/")

    def _require_configured(self) -> None:
        if not self.api_key:
            raise ProviderError("Stripe not configured. Set STRIPE_SECRET_KEY.")

    def ensure_customer(self, account: Account) -> str:
        if account.billing_customer_ref:
            return account.billing_customer_ref
        self._require_configured()
        try:
            customer = stripe.Customer.create(
                api_key=self.api_key,
                email=account.email,
                metadata={"account_id": str(account.id)},
            )
        except stripe.StripeError as e:
            log.error("Stripe customer create failed: %s", e)
            raise ProviderError()
        return customer.id

    def create_checkout(self, account: Account, customer_ref: str) -> str:
        """Create a subscription Checkout session. Returns its URL.

        The paid tier is granted later, by the checkout.session.completed
        webhook, never by this call.
        """
        self._require_configured()
        if not self.price_id:
            raise ProviderError("No Stripe price configured for the paid tier.")
        try:
            session = stripe.checkout.Session.create(
                api_key=self.api_key,
                mode="subscription",
                customer=customer_ref,
                client_reference_id=str(account.id),
                metadata={"account_id": str(account.id)},
                subscription_data={"metadata": {"account_id": str(account.id)}},
                line_items=[{"price": self.price_id, "quantity": 1}],
                success_url=f"{self.base_url}/?checkout=success",
                cancel_url=f"{self.base_url}/?checkout=cancel",
            )
        except stripe.StripeError as e:
            log.error("Stripe checkout create failed: %s", e)
            raise ProviderError()
        return session.url

    def cancel_subscription(self, subscription_ref: str) -> None:
        self._require_configured()
        try:
            stripe.Subscription.cancel(subscription_ref, api_key=self.api_key)
        except stripe.StripeError as e:
            log.error("Stripe cancel failed for %s: %s", subscription_ref, e)
            raise ProviderError()
