"""
BLOCKWATCH — Error taxonomy

Every failure the entitlement engine can surface to a caller. Each error
carries a machine-readable code, a human message, optional details and the
HTTP status the transport layer maps it to.
"""

from __future__ import annotations

from typing import Any, Optional


class EntitlementError(Exception):
    """Base exception for the entitlement engine."""

    status_code = 500

    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


# ── Sessions ─────────────────────────────────────────────────────────

AUTH_MISSING = "MISSING"
AUTH_MALFORMED = "MALFORMED"
AUTH_EXPIRED = "EXPIRED"
AUTH_BAD_SIGNATURE = "BAD_SIGNATURE"
AUTH_UNKNOWN_ACCOUNT = "UNKNOWN_ACCOUNT"


class AuthRequired(EntitlementError):
    """No credential, or one that failed verification, on a required-auth path."""

    status_code = 401

    def __init__(self, reason: str = AUTH_MISSING, message: str = ""):
        self.reason = reason
        if not message:
            message = (
                "Authentication required."
                if reason == AUTH_MISSING
                else "Invalid or expired token."
            )
        super().__init__("AUTH_REQUIRED", message, {"reason": reason})


# ── Accounts ─────────────────────────────────────────────────────────

class InvalidCredentials(EntitlementError):
    status_code = 401

    def __init__(self, message: str = "Invalid email or password."):
        super().__init__("INVALID_CREDENTIALS", message)


class DuplicateEmail(EntitlementError):
    status_code = 409

    def __init__(self, message: str = "Email already registered."):
        super().__init__("DUPLICATE_EMAIL", message)


class WeakPassword(EntitlementError):
    status_code = 400

    def __init__(self, message: str = "Password must be at least 8 characters."):
        super().__init__("WEAK_PASSWORD", message)


class InvalidEmailFormat(EntitlementError):
    status_code = 400

    def __init__(self, message: str = "Email address is not valid."):
        super().__init__("INVALID_EMAIL_FORMAT", message)


class InvalidResetToken(EntitlementError):
    status_code = 400

    def __init__(self, message: str = "Reset token is invalid or has expired."):
        super().__init__("INVALID_RESET_TOKEN", message)


# ── Quota ────────────────────────────────────────────────────────────

class QuotaExceeded(EntitlementError):
    """Expected, user-actionable: the free allowance is used up."""

    status_code = 429

    def __init__(self, current: int, limit: int, action_kind: str = "lookup"):
        self.current = current
        self.limit = limit
        self.action_kind = action_kind
        super().__init__(
            "QUOTA_EXCEEDED",
            "Free lookup limit reached. Upgrade to continue.",
            {"reason": "free_limit_reached", "action_kind": action_kind,
             "current": current, "limit": limit},
        )


# ── Billing ──────────────────────────────────────────────────────────

class ProviderError(EntitlementError):
    """Billing provider call failed. Surfaced as service-unavailable, never retried here."""

    status_code = 503

    def __init__(self, message: str = "Billing service unavailable."):
        super().__init__("PROVIDER_ERROR", message)


class SignatureInvalid(EntitlementError):
    status_code = 400

    def __init__(self, message: str = "Invalid signature."):
        super().__init__("SIGNATURE_INVALID", message)


# ── Storage ──────────────────────────────────────────────────────────

class StorageError(EntitlementError):
    status_code = 500

    def __init__(self, message: str = "Storage failure."):
        super().__init__("STORAGE_ERROR", message)
