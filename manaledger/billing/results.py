"""
Outcomes and errors shared by the billing handlers.

Handlers never raise for expected business-rule rejections. They return an
ActionResult, which serializes to the shape the API returns:

    {"success": True, ...data}
    {"error": "Human readable reason", "code": "machine_code", ...data}

Exceptions are reserved for infrastructure failures (Stripe unreachable,
database errors). RemoteLedgerError wraps anything the Stripe SDK raises so
callers catch one type.
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from typing import Any

from django.db import models

from manaledger.core import rate_limit


class ErrorCode(models.TextChoices):
    RATE_LIMITED = "rate_limited"
    INVALID_INPUT = "invalid_input"
    NO_BILLING_ACCOUNT = "no_billing_account"
    NO_SUBSCRIPTION = "no_subscription"
    NOT_FOUND = "not_found"
    NOT_OWNER = "not_owner"
    ALREADY_REFUNDED = "already_refunded"
    WINDOW_EXPIRED = "window_expired"
    USAGE_EXCEEDS_CHARGE = "usage_exceeds_charge"
    DUPLICATE_REQUEST = "duplicate_request"
    NO_WALLET = "no_wallet"
    NO_BOOSTER_BALANCE = "no_booster_balance"
    SUBSCRIPTION_CHARGE = "subscription_charge"
    ALREADY_ANNUAL = "already_annual"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"
    MISSING_PERIOD_END = "missing_period_end"
    NO_SCHEDULED_UPGRADE = "no_scheduled_upgrade"
    UPGRADE_ALREADY_SCHEDULED = "upgrade_already_scheduled"
    SELF_GIFT = "self_gift"
    RECIPIENT_NOT_FOUND = "recipient_not_found"
    GIFT_UNAVAILABLE = "gift_unavailable"
    REMOTE_ERROR = "remote_error"


class BillingError(Exception):
    """Base exception for billing-related errors."""

    def __init__(self, detail: str, code: str = "billing_error"):
        self.detail = detail
        self.code = code
        super().__init__(detail)


class RemoteLedgerError(BillingError):
    """Raised when a Stripe API call fails."""

    def __init__(self, detail: str = "Billing provider request failed."):
        super().__init__(detail, code=ErrorCode.REMOTE_ERROR)


@dataclass
class ActionResult:
    """Result of a billing action."""

    success: bool
    error: str | None = None
    code: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **data) -> ActionResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: str | None = None, **data) -> ActionResult:
        return cls(success=False, error=error, code=code, data=data)

    def as_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, **self.data}
        payload: dict[str, Any] = {"error": self.error}
        if self.code:
            payload["code"] = str(self.code)
        payload.update(self.data)
        return payload


def enforce_rate_limit(
    action: str,
    user_id,
    message: str | None = None,
) -> ActionResult | None:
    """
    Consume one rate limit token for ``action``.

    Returns a RATE_LIMITED result when the user is over the limit, or None
    when the caller may proceed. ``message`` may use ``{seconds}``.
    """
    result = rate_limit.consume(action, user_id)
    if result.success:
        return None
    seconds = result.retry_after_seconds
    text = message or "Too many requests. Please try again in {seconds} seconds."
    return ActionResult.fail(
        text.format(seconds=seconds),
        ErrorCode.RATE_LIMITED,
        retryAfterSeconds=seconds,
    )
