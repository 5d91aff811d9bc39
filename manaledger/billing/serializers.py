"""
Request serializers for the billing API.

Business rules (reason length, rate limits, ownership) live in the
services, which answer with an ActionResult; these serializers only
normalize the payload shape so the services see plain strings.
"""

from rest_framework import serializers

from manaledger.billing.constants import PlanVariant


class SubscribeSerializer(serializers.Serializer):
    plan = serializers.ChoiceField(
        choices=PlanVariant.choices,
        default=PlanVariant.MONTHLY,
    )


class RefundRequestSerializer(serializers.Serializer):
    """Payload shared by self-service, admin-reviewed and booster refunds."""

    charge_id = serializers.CharField(required=False, allow_blank=True, default="")
    reason = serializers.CharField(
        required=False,
        allow_blank=True,
        default="",
        trim_whitespace=False,
    )


class SendGiftSerializer(serializers.Serializer):
    email = serializers.CharField(required=False, allow_blank=True, default="")


class RefundDecisionSerializer(serializers.Serializer):
    notes = serializers.CharField(required=False, allow_blank=True, default="")
