"""
BLOCKWATCH — Product API

Transport around the entitlement engine:

  request → Session Issuer → Entitlement Gate → incident lookup → Usage Ledger
  Stripe  → signature check → Subscription State Machine → Credential Store

Status mapping: 401 no/invalid credential, 429 quota exceeded (with reason,
current and limit), 503 billing provider unavailable, 400 bad webhook.

Run:
    export BLOCKWATCH_DB_PATH=/path/to/blockwatch.db BLOCKWATCH_JWT_SECRET=...
    python -m blockwatch.server.api
"""

import logging
import os
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from blockwatch.db.database import Database
from blockwatch.db.incidents import find_incidents, normalize_key
from blockwatch.server.accounts import AccountStore
from blockwatch.server.auth import SessionIssuer
from blockwatch.server.billing import StripeProvider, SubscriptionStateMachine
from blockwatch.server.config import Settings
from blockwatch.server.errors import (
    AUTH_UNKNOWN_ACCOUNT,
    AuthRequired,
    EntitlementError,
)
from blockwatch.server.gate import EntitlementGate
from blockwatch.server.mailer import Mailer
from blockwatch.server.models import Account, Authenticated, Identity, Rejected
from blockwatch.server.pricing import ACTION_LOOKUP, get_limit
from blockwatch.server.resets import ResetTokens
from blockwatch.server.usage import UsageLedger

log = logging.getLogger(__name__)

COOKIE_NAME = "token"


# ── Request bodies ──────────────────────────────────────────────────

class Credentials(BaseModel):
    email: str = ""
    password: str = ""


class ForgotPassword(BaseModel):
    email: str = ""


class ResetPassword(BaseModel):
    token: str = ""
    password: str = ""


# ── Helpers ──────────────────────────────────────────────────────────

def extract_token(request: Request) -> Optional[str]:
    """Cookie first, then Authorization: Bearer."""
    token = request.cookies.get(COOKIE_NAME)
    if token:
        return token
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return auth.split(" ", 1)[1].strip() or None
    return None


def _error_response(request: Request, exc: EntitlementError) -> JSONResponse:
    body = {"error": exc.code, "detail": exc.message, **exc.details}
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


# ── App factory ──────────────────────────────────────────────────────

def create_app(settings: Settings, provider: Optional[StripeProvider] = None,
               rate_limits: bool = True) -> FastAPI:
    db = Database(settings.db_path)
    db.init_schema()

    store = AccountStore(db)
    ledger = UsageLedger(db)
    issuer = SessionIssuer(settings.jwt_secret, ttl=settings.session_ttl)
    gate = EntitlementGate(store, ledger, free_limit=settings.free_lookup_limit)
    machine = SubscriptionStateMachine(store, webhook_secret=settings.stripe_webhook_secret)
    resets = ResetTokens(db, store)
    mailer = Mailer.from_settings(settings)
    if provider is None:
        provider = StripeProvider(
            api_key=settings.stripe_secret_key,
            price_id=settings.stripe_price_paid,
            base_url=settings.base_url,
        )

    limiter = Limiter(key_func=get_remote_address, default_limits=["100/minute"],
                      enabled=rate_limits)

    app = FastAPI(title="Blockwatch API", version="1.0.0")
    app.state.limiter = limiter
    app.state.settings = settings
    app.state.db = db
    app.state.store = store
    app.state.ledger = ledger
    app.state.issuer = issuer
    app.state.gate = gate
    app.state.machine = machine
    app.state.resets = resets
    app.state.mailer = mailer
    app.state.provider = provider

    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(EntitlementError, _error_response)

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_origins),
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type"],
        )

    secure_cookie = settings.base_url.startswith("https://")

    def _set_session_cookie(response: Response, token: str) -> None:
        response.set_cookie(
            COOKIE_NAME, token,
            max_age=int(settings.session_ttl.total_seconds()),
            httponly=True, samesite="lax", secure=secure_cookie,
        )

    def _require_identity(request: Request) -> Identity:
        result = issuer.require_session(extract_token(request))
        if isinstance(result, Rejected):
            raise AuthRequired(result.reason)
        return result.identity

    def _require_account(request: Request) -> Account:
        identity = _require_identity(request)
        account = store.get(identity.account_id)
        if account is None:
            raise AuthRequired(AUTH_UNKNOWN_ACCOUNT, "Account no longer exists.")
        return account

    def _usage_summary(account: Account) -> dict:
        return {
            "action_kind": ACTION_LOOKUP,
            "current": ledger.count_for(account.id, ACTION_LOOKUP),
            "limit": get_limit(account.tier, ACTION_LOOKUP, settings.free_lookup_limit),
        }

    def _session_payload(account: Account, token: str) -> dict:
        return {"token": token, "user": account.public()}

    # ── Health ──────────────────────────────────────────────────────

    @app.get("/health")
    def health():
        return {"status": "ok", "db": "ok" if db.ping() else "error"}

    # ── Auth ────────────────────────────────────────────────────────

    @app.post("/api/auth/register")
    @limiter.limit("5/minute")
    def register(request: Request, body: Credentials, response: Response):
        account = store.create(body.email, body.password)
        token = issuer.mint(account)
        _set_session_cookie(response, token)
        log.info("New account registered: id=%s", account.id)
        return _session_payload(account, token)

    @app.post("/api/auth/login")
    @limiter.limit("10/minute")
    def login(request: Request, body: Credentials, response: Response):
        account = store.verify(body.email, body.password)
        token = issuer.mint(account)
        _set_session_cookie(response, token)
        log.info("Account logged in: id=%s", account.id)
        return _session_payload(account, token)

    @app.post("/api/auth/logout")
    def logout(response: Response):
        response.delete_cookie(COOKIE_NAME)
        return {"ok": True}

    @app.get("/api/auth/me")
    def me(request: Request):
        account = _require_account(request)
        return {**account.public(), "usage": _usage_summary(account)}

    @app.post("/api/auth/forgot-password")
    @limiter.limit("3/minute")
    def forgot_password(request: Request, body: ForgotPassword):
        token = resets.issue(body.email)
        if token:
            mailer.send(
                to=body.email.strip().lower(),
                subject="Blockwatch password reset",
                body=(
                    "Reset your Blockwatch password:\n\n"
                    f"{settings.base_url}/reset-password?token={token}\n\n"
                    "This link expires in 1 hour."
                ),
            )
        # Same answer whether or not the email exists.
        return {"ok": True}

    @app.post("/api/auth/reset-password")
    @limiter.limit("10/minute")
    def reset_password(request: Request, body: ResetPassword):
        resets.redeem(body.token, body.password)
        return {"ok": True}

    # ── Usage ───────────────────────────────────────────────────────

    @app.get("/api/usage")
    def usage(request: Request):
        result = issuer.attach_optional_session(extract_token(request))
        if not isinstance(result, Authenticated):
            return {"authenticated": False, "limit": settings.free_lookup_limit}
        account = store.get(result.identity.account_id)
        if account is None:
            return {"authenticated": False, "limit": settings.free_lookup_limit}
        return {"authenticated": True, "tier": account.tier, **_usage_summary(account),
                "recent": ledger.recent(account.id)}

    # ── Lookup (metered) ────────────────────────────────────────────

    @app.get("/api/incidents")
    @limiter.limit("60/minute")
    def lookup_incidents(request: Request, postal_code: str = Query("")):
        identity = _require_identity(request)
        key = normalize_key(postal_code)
        if not key:
            raise HTTPException(status_code=400, detail="postal_code is required")

        with gate.metered(identity.account_id, ACTION_LOOKUP, key) as decision:
            results = find_incidents(db, key)

        return {
            "postal_code": key,
            "results": results,
            "matches": len(results),
            "tier": decision.tier,
            "usage": {"current": decision.current_count + 1, "limit": decision.limit},
        }

    # ── Billing ─────────────────────────────────────────────────────

    @app.post("/api/billing/checkout")
    @limiter.limit("10/minute")
    def billing_checkout(request: Request):
        account = _require_account(request)
        if account.is_paid and account.billing_subscription_ref:
            raise HTTPException(status_code=409, detail="Already subscribed.")
        customer_ref = provider.ensure_customer(account)
        if customer_ref != account.billing_customer_ref:
            store.set_customer_ref(account.id, customer_ref)
        url = provider.create_checkout(account, customer_ref)
        log.info("Checkout started: account=%s", account.id)
        return {"url": url}

    @app.post("/api/billing/cancel")
    @limiter.limit("10/minute")
    def billing_cancel(request: Request):
        account = _require_account(request)
        if not account.billing_subscription_ref:
            raise HTTPException(status_code=400, detail="No active subscription.")
        provider.cancel_subscription(account.billing_subscription_ref)
        # Tier drops when customer.subscription.deleted arrives.
        log.info("Cancellation requested: account=%s", account.id)
        return {"status": "cancel_requested"}

    @app.post("/api/webhook")
    async def stripe_webhook(request: Request):
        payload = await request.body()
        sig = request.headers.get("stripe-signature", "")
        outcome = await run_in_threadpool(machine.handle_webhook, payload, sig)
        return {"status": "ok", "outcome": outcome}

    return app


def main() -> None:
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    settings = Settings.from_env()
    uvicorn.run(
        create_app(settings),
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8080")),
        log_level="info",
    )


if __name__ == "__main__":
    main()
