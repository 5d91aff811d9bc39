"""
Billing models for the manaledger subscription and refund engine.

Key design decisions:
- The user row carries plan and Stripe identifiers (see users.User); these
  models hold the rest of the local billing state.
- Wallet separates core mana (monthly grant, revoked on refund) from booster
  mana (bought separately, survives subscription refunds).
- RefundRequest is an audit trail of every refund, self-service or reviewed.
- Gift is a time-boxed, non-monetary grant of the paid tier.

Relationship: User ──1:1── Wallet, User ──1:1── Progression,
User ──1:N── RefundRequest, User ──1:N── Gift (as sender and as recipient)
"""

import uuid

from django.conf import settings
from django.db import models
from django.utils import timezone
from model_utils.models import TimeStampedModel

from manaledger.billing.constants import GiftStatus
from manaledger.billing.constants import RefundStatus


class Wallet(TimeStampedModel):
    """
    Mana balances for one user.

    last_core_grant_at is only set when a monthly grant actually happened
    (checkout completion or renewal webhook). Usage cost is never computed
    against a wallet where it is null.
    """

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="wallet",
    )
    mana_balance = models.BigIntegerField(
        default=0,
        help_text="Remaining core mana from the monthly subscription grant.",
    )
    booster_balance = models.BigIntegerField(
        default=0,
        help_text="Purchased booster mana. Does not expire.",
    )
    last_core_grant_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When core mana was last granted. Null if never granted.",
    )

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=models.Q(mana_balance__gte=0),
                name="wallet_mana_balance_non_negative",
            ),
            models.CheckConstraint(
                condition=models.Q(booster_balance__gte=0),
                name="wallet_booster_balance_non_negative",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.user}: {self.mana_balance} core, {self.booster_balance} booster"


class Progression(TimeStampedModel):
    """
    Local entitlement flags that outlive the Stripe subscription.

    "Channeling" marks a user whose paid access continues until
    channeling_expires_at even though the subscription is winding down.
    """

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="progression",
    )
    is_channeling = models.BooleanField(default=False)
    channeling_expires_at = models.DateTimeField(null=True, blank=True)

    def __str__(self) -> str:
        return f"{self.user} (channeling={self.is_channeling})"


class RefundRequest(TimeStampedModel):
    """
    Audit record of a refund.

    Created PENDING by the review path, or directly APPROVED by the
    self-service path after the Stripe refund was issued. Rows with
    processed_at set are final.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="refund_requests",
    )
    charge_id = models.CharField(
        max_length=255,
        db_index=True,
        help_text="Stripe Charge ID (ch_xxx).",
    )
    invoice_id = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Stripe Invoice ID (in_xxx), empty for one-time charges.",
    )
    amount_cents = models.PositiveIntegerField(
        help_text="Amount refunded (or requested) in cents.",
    )
    reason = models.TextField()
    status = models.CharField(
        max_length=20,
        choices=RefundStatus.choices,
        default=RefundStatus.PENDING,
    )
    stripe_refund_id = models.CharField(max_length=255, blank=True, default="")
    purchased_at = models.DateTimeField(help_text="When the refunded charge was made.")
    processed_at = models.DateTimeField(null=True, blank=True)
    admin_notes = models.TextField(blank=True, default="")
    resolved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="resolved_refund_requests",
        help_text="Staff member who approved or denied a reviewed request.",
    )

    class Meta:
        ordering = ["-created"]
        indexes = [
            models.Index(fields=["user", "status"], name="refund_user_status_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.user}: {self.charge_id} {self.amount_cents}c ({self.status})"

    @property
    def is_processed(self) -> bool:
        return self.processed_at is not None


class Gift(TimeStampedModel):
    """
    Paid-tier grant from one user to another.

    The grant is local only; no Stripe call is involved in accepting it.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    sender = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="gifts_sent",
    )
    recipient = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="gifts_received",
    )
    status = models.CharField(
        max_length=20,
        choices=GiftStatus.choices,
        default=GiftStatus.PENDING,
    )
    expires_at = models.DateTimeField()
    accepted_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created"]
        indexes = [
            models.Index(fields=["status", "expires_at"], name="gift_status_expires_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=~models.Q(sender=models.F("recipient")),
                name="gift_sender_is_not_recipient",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.sender} → {self.recipient} ({self.status})"

    def is_overdue(self, now=None) -> bool:
        return self.expires_at < (now or timezone.now())
