"""
Gift ledger: one user grants the paid tier to another, time-boxed.

State machine:
    PENDING → ACCEPTED   recipient claims before expires_at
    PENDING → EXPIRED    expires_at passes, or the recipient declines
    PENDING → (deleted)  sender cancels

Declining reuses EXPIRED rather than a separate state. An overdue gift is
moved to EXPIRED the moment someone tries to accept it, and by the
periodic expire_gifts sweep otherwise.

Accepting a gift is purely local; Stripe is never involved.
"""

from __future__ import annotations

import logging
from datetime import datetime
from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import transaction
from django.utils import timezone

from manaledger.billing.constants import GiftStatus
from manaledger.billing.constants import PlanId
from manaledger.billing.constants import RateLimitedAction
from manaledger.billing.entitlements import grant_paid_plan
from manaledger.billing.models import Gift
from manaledger.billing.results import ActionResult
from manaledger.billing.results import ErrorCode
from manaledger.billing.results import enforce_rate_limit
from manaledger.billing.tasks import notify
from manaledger.core.analytics import track

if TYPE_CHECKING:
    from manaledger.users.models import User

logger = logging.getLogger(__name__)

GIFT_UNAVAILABLE = "Gift already claimed or expired"
NOT_YOUR_GIFT = "This gift is not for you"


def gift_lifetime() -> timedelta:
    return timedelta(days=settings.BILLING_GIFT_LIFETIME_DAYS)


def display_name(user: User, fallback: str) -> str:
    return user.name or user.email or fallback


class GiftService:
    """
    Send, claim, decline and cancel gifts.

    Usage:
        result = GiftService().send(request.user, "friend@example.com")
    """

    def send(
        self,
        sender: User,
        recipient_email: str,
        *,
        now: datetime | None = None,
    ) -> ActionResult:
        limited = enforce_rate_limit(
            RateLimitedAction.SEND_GIFT,
            sender.pk,
            "You've reached the daily gift limit. Please try again tomorrow.",
        )
        if limited:
            return limited

        recipient_email = (recipient_email or "").strip()
        if not recipient_email:
            return ActionResult.fail("Email is required", ErrorCode.INVALID_INPUT)

        recipient = get_user_model().objects.filter(email__iexact=recipient_email).first()
        if recipient is None:
            return ActionResult.fail(
                "User not found. Ask them to join first!",
                ErrorCode.RECIPIENT_NOT_FOUND,
            )
        if recipient.pk == sender.pk:
            return ActionResult.fail("You cannot gift yourself.", ErrorCode.SELF_GIFT)

        now = now or timezone.now()
        gift = Gift.objects.create(
            sender=sender,
            recipient=recipient,
            status=GiftStatus.PENDING,
            expires_at=now + gift_lifetime(),
        )
        logger.info("User %s sent gift %s to user %s", sender.pk, gift.pk, recipient.pk)

        notify(
            "gift_received",
            to=recipient.email,
            sender_name=display_name(sender, "A friend"),
            expires_at=gift.expires_at.date().isoformat(),
        )
        notify(
            "gift_sent",
            to=sender.email,
            recipient_name=display_name(recipient, recipient_email),
        )
        track("billing_gift_sent", sender.pk, recipient_id=recipient.pk)
        return ActionResult.ok(giftId=str(gift.pk), expiresAt=gift.expires_at.isoformat())

    def accept(self, user: User, gift_id, *, now: datetime | None = None) -> ActionResult:
        now = now or timezone.now()
        with transaction.atomic():
            gift = Gift.objects.select_for_update().filter(pk=gift_id).first()
            if gift is None:
                return ActionResult.fail("Gift not found", ErrorCode.NOT_FOUND)
            if gift.recipient_id != user.pk:
                return ActionResult.fail(NOT_YOUR_GIFT, ErrorCode.NOT_OWNER)
            if gift.status != GiftStatus.PENDING:
                return ActionResult.fail(GIFT_UNAVAILABLE, ErrorCode.GIFT_UNAVAILABLE)
            if gift.is_overdue(now):
                gift.status = GiftStatus.EXPIRED
                gift.save(update_fields=["status", "modified"])
                logger.info("Gift %s expired before it was claimed", gift.pk)
                return ActionResult.fail(GIFT_UNAVAILABLE, ErrorCode.GIFT_UNAVAILABLE)

            grant_paid_plan(user, PlanId.SORCERER)
            gift.status = GiftStatus.ACCEPTED
            gift.accepted_at = now
            gift.save(update_fields=["status", "accepted_at", "modified"])

        logger.info("User %s accepted gift %s", user.pk, gift.pk)
        notify(
            "gift_accepted",
            to=gift.sender.email,
            recipient_name=display_name(user, "Someone"),
        )
        track(
            "billing_gift_accepted",
            user.pk,
            sender_id=gift.sender_id,
            gift_id=str(gift.pk),
        )
        return ActionResult.ok()

    def decline(self, user: User, gift_id) -> ActionResult:
        with transaction.atomic():
            gift = Gift.objects.select_for_update().filter(pk=gift_id).first()
            if gift is None:
                return ActionResult.fail("Gift not found", ErrorCode.NOT_FOUND)
            if gift.recipient_id != user.pk:
                return ActionResult.fail(NOT_YOUR_GIFT, ErrorCode.NOT_OWNER)
            if gift.status != GiftStatus.PENDING:
                return ActionResult.fail(
                    "Can only decline pending gifts",
                    ErrorCode.GIFT_UNAVAILABLE,
                )
            gift.status = GiftStatus.EXPIRED
            gift.save(update_fields=["status", "modified"])
        logger.info("User %s declined gift %s", user.pk, gift.pk)
        return ActionResult.ok()

    def cancel(self, user: User, gift_id) -> ActionResult:
        with transaction.atomic():
            gift = Gift.objects.select_for_update().filter(pk=gift_id).first()
            if gift is None:
                return ActionResult.fail("Gift not found", ErrorCode.NOT_FOUND)
            if gift.sender_id != user.pk:
                return ActionResult.fail(
                    "You can only cancel gifts you sent",
                    ErrorCode.NOT_OWNER,
                )
            if gift.status != GiftStatus.PENDING:
                return ActionResult.fail(
                    "Can only cancel pending gifts",
                    ErrorCode.GIFT_UNAVAILABLE,
                )
            gift.delete()
        logger.info("User %s cancelled gift %s", user.pk, gift_id)
        return ActionResult.ok()

    def pending_received(self, user: User, *, limit: int = 20) -> list[dict]:
        gifts = (
            Gift.objects.filter(recipient=user, status=GiftStatus.PENDING)
            .select_related("sender")
            .order_by("-created")[:limit]
        )
        return [
            {
                "id": str(gift.pk),
                "senderEmail": gift.sender.email or "Unknown",
                "expiresAt": gift.expires_at.isoformat(),
                "createdAt": gift.created.isoformat(),
            }
            for gift in gifts
        ]

    def sent(self, user: User, *, limit: int = 20) -> list[dict]:
        gifts = (
            Gift.objects.filter(sender=user)
            .select_related("recipient")
            .order_by("-created")[:limit]
        )
        return [
            {
                "id": str(gift.pk),
                "recipientEmail": gift.recipient.email or "Unknown",
                "status": gift.status,
                "expiresAt": gift.expires_at.isoformat(),
                "createdAt": gift.created.isoformat(),
            }
            for gift in gifts
        ]


def expire_overdue_gifts(*, now: datetime | None = None, dry_run: bool = False) -> int:
    """Move every pending gift past its expiry to EXPIRED. Returns the count."""
    now = now or timezone.now()
    overdue = Gift.objects.filter(status=GiftStatus.PENDING, expires_at__lt=now)
    if dry_run:
        return overdue.count()
    return overdue.update(status=GiftStatus.EXPIRED, modified=now)
