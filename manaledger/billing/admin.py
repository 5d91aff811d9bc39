"""
Django admin configuration for billing models.

Provides admin interfaces for:
- Wallet: Inspect core and booster balances
- Progression: Inspect the channeling window
- RefundRequest: Review refund history (approval goes through the API so
  Stripe is refunded in the same step)
- Gift: Inspect gifts between users
"""

from django.contrib import admin

from manaledger.billing.models import Gift
from manaledger.billing.models import Progression
from manaledger.billing.models import RefundRequest
from manaledger.billing.models import Wallet


@admin.register(Wallet)
class WalletAdmin(admin.ModelAdmin):
    list_display = ["user", "mana_balance", "booster_balance", "last_core_grant_at"]
    search_fields = ["user__email", "user__username"]
    raw_id_fields = ["user"]
    readonly_fields = ["created", "modified"]


@admin.register(Progression)
class ProgressionAdmin(admin.ModelAdmin):
    list_display = ["user", "is_channeling", "channeling_expires_at"]
    list_filter = ["is_channeling"]
    search_fields = ["user__email", "user__username"]
    raw_id_fields = ["user"]
    readonly_fields = ["created", "modified"]


@admin.register(RefundRequest)
class RefundRequestAdmin(admin.ModelAdmin):
    """Admin for refund requests."""

    list_display = [
        "user",
        "charge_id",
        "amount_cents",
        "status",
        "created",
        "processed_at",
    ]
    list_filter = ["status", "created"]
    search_fields = ["user__email", "charge_id", "stripe_refund_id"]
    raw_id_fields = ["user"]
    readonly_fields = [
        "charge_id",
        "invoice_id",
        "amount_cents",
        "purchased_at",
        "stripe_refund_id",
        "processed_at",
        "resolved_by",
        "created",
        "modified",
    ]

    fieldsets = [
        (None, {"fields": ["user", "status", "reason"]}),
        (
            "Charge",
            {"fields": ["charge_id", "invoice_id", "amount_cents", "purchased_at"]},
        ),
        (
            "Resolution",
            {
                "fields": [
                    "stripe_refund_id",
                    "processed_at",
                    "resolved_by",
                    "admin_notes",
                ],
            },
        ),
        ("Timestamps", {"fields": ["created", "modified"]}),
    ]


@admin.register(Gift)
class GiftAdmin(admin.ModelAdmin):
    list_display = ["sender", "recipient", "status", "expires_at", "accepted_at"]
    list_filter = ["status"]
    search_fields = ["sender__email", "recipient__email"]
    raw_id_fields = ["sender", "recipient"]
    readonly_fields = ["created", "modified"]
