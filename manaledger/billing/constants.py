"""
Billing constants for the subscription and refund engine.

PlanId values are what we persist on the user record. The paid tier has a
legacy bare value ("sorcerer") from before annual billing existed; it is
treated as monthly everywhere a cadence is needed.
"""

from django.db import models
from django.utils.translation import gettext_lazy as _


class PlanId(models.TextChoices):
    """Plan identifiers stored on ``User.plan_id``."""

    WANDERER = "wanderer", _("Wanderer")
    SORCERER = "sorcerer", _("Sorcerer")
    SORCERER_MONTHLY = "sorcerer_monthly", _("Sorcerer (monthly)")
    SORCERER_ANNUAL = "sorcerer_annual", _("Sorcerer (annual)")


PAID_PLAN_PREFIX = "sorcerer"


class PlanVariant(models.TextChoices):
    """Billing cadence of the paid tier."""

    MONTHLY = "monthly", _("Monthly")
    ANNUAL = "annual", _("Annual")


class RefundStatus(models.TextChoices):
    """
    Refund request lifecycle.

    Review path: PENDING → APPROVED | DENIED (staff decision).
    Self-service path: created directly as APPROVED, refund already issued.
    """

    PENDING = "pending", _("Pending")
    APPROVED = "approved", _("Approved")
    DENIED = "denied", _("Denied")


class GiftStatus(models.TextChoices):
    """
    Gift lifecycle.

    PENDING → ACCEPTED (recipient claims before expiry)
    PENDING → EXPIRED (time elapsed, or recipient declined)

    A sender cancelling a pending gift deletes the row instead.
    """

    PENDING = "pending", _("Pending")
    ACCEPTED = "accepted", _("Accepted")
    EXPIRED = "expired", _("Expired")


class RateLimitedAction(models.TextChoices):
    """Actions bounded by the per-user rate limiter (see BILLING_RATE_LIMITS)."""

    SUBSCRIBE = "subscribe", _("Subscribe")
    UPGRADE_TO_ANNUAL = "upgrade_to_annual", _("Upgrade to annual")
    CANCEL_SCHEDULED_UPGRADE = "cancel_scheduled_upgrade", _("Cancel upgrade")
    SUBSCRIPTION_TOGGLE = "subscription_toggle", _("Cancel or renew")
    REQUEST_REFUND = "request_refund", _("Request refund")
    SELF_SERVICE_REFUND = "self_service_refund", _("Self-service refund")
    BOOSTER_REFUND = "booster_refund", _("Booster refund")
    SEND_GIFT = "send_gift", _("Send gift")


# Remote subscription statuses we treat as a live entitlement.
LIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")

# Statuses of an annual subscription that block scheduling another one.
BLOCKING_ANNUAL_STATUSES = ("active", "trialing", "past_due")

# Schedule statuses that mean an upgrade is still in flight.
OPEN_SCHEDULE_STATUSES = ("not_started", "active")

# Shown on refunds when the caller gave no charge description.
DEFAULT_CHARGE_DESCRIPTION = "Payment"

MIN_REFUND_REASON_LENGTH = 10
MIN_DENIAL_NOTES_LENGTH = 5
