"""
BLOCKWATCH — Runtime configuration

Read once from the environment at startup and passed explicitly to the
components that need it. Nothing downstream calls os.getenv at request time.

Required:
  BLOCKWATCH_DB_PATH        sqlite database file
  BLOCKWATCH_JWT_SECRET     session signing secret

Optional:
  BLOCKWATCH_SESSION_TTL_HOURS   default 168 (7 days)
  BLOCKWATCH_FREE_LOOKUPS        default 1
  BLOCKWATCH_BASE_URL            checkout redirect base
  BLOCKWATCH_CORS_ORIGINS        comma-separated
  BLOCKWATCH_EMAIL_MODE          smtp | log (default log)
  BLOCKWATCH_EMAIL_FROM          sender address
  SMTP_HOST / SMTP_PORT / SMTP_USER / SMTP_PASS
  STRIPE_MODE                    test | live (default test)
  STRIPE_{TEST,LIVE}_SECRET_KEY / STRIPE_SECRET_KEY
  STRIPE_{TEST,LIVE}_WEBHOOK_SECRET / STRIPE_WEBHOOK_SECRET
  STRIPE_{TEST,LIVE}_PRICE_PAID / STRIPE_PRICE_PAID
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Mapping, Optional

from blockwatch.server.pricing import FREE_LOOKUP_LIMIT


@dataclass(frozen=True)
class Settings:
    db_path: str
    jwt_secret: str
    session_ttl: timedelta = timedelta(days=7)
    free_lookup_limit: int = FREE_LOOKUP_LIMIT
    base_url: str = "http://localhost:8080"
    cors_origins: tuple[str, ...] = field(default_factory=tuple)
    stripe_mode: str = "test"
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_price_paid: str = ""
    email_mode: str = "log"
    email_from: str = "support@blockwatch.local"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_pass: str = ""

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Settings:
        env = os.environ if environ is None else environ

        db_path = env.get("BLOCKWATCH_DB_PATH")
        if not db_path:
            raise RuntimeError(
                "FATAL: BLOCKWATCH_DB_PATH not set. "
                "export BLOCKWATCH_DB_PATH=/path/to/blockwatch.db"
            )
        jwt_secret = env.get("BLOCKWATCH_JWT_SECRET")
        if not jwt_secret:
            raise RuntimeError("FATAL: BLOCKWATCH_JWT_SECRET not set.")

        mode = (env.get("STRIPE_MODE") or "test").lower()
        prefix = "STRIPE_LIVE_" if mode == "live" else "STRIPE_TEST_"

        def stripe_value(name: str) -> str:
            return env.get(f"{prefix}{name}") or env.get(f"STRIPE_{name}") or ""

        origins = tuple(o.strip() for o in env.get("BLOCKWATCH_CORS_ORIGINS", "").split(",") if o.strip())

        return cls(
            db_path=db_path,
            jwt_secret=jwt_secret,
            session_ttl=timedelta(hours=int(env.get("BLOCKWATCH_SESSION_TTL_HOURS", "168"))),
            free_lookup_limit=int(env.get("BLOCKWATCH_FREE_LOOKUPS", str(FREE_LOOKUP_LIMIT))),
            base_url=env.get("BLOCKWATCH_BASE_URL", "http://localhost:8080"),
            cors_origins=origins,
            stripe_mode=mode,
            stripe_secret_key=stripe_value("SECRET_KEY"),
            stripe_webhook_secret=stripe_value("WEBHOOK_SECRET"),
            stripe_price_paid=stripe_value("PRICE_PAID"),
            email_mode=(env.get("BLOCKWATCH_EMAIL_MODE") or "log").lower(),
            email_from=env.get("BLOCKWATCH_EMAIL_FROM", "support@blockwatch.local"),
            smtp_host=env.get("SMTP_HOST", ""),
            smtp_port=int(env.get("SMTP_PORT", "587")),
            smtp_user=env.get("SMTP_USER", ""),
            smtp_pass=env.get("SMTP_PASS", ""),
        )
