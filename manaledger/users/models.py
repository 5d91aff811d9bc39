from __future__ import annotations

from django.contrib.auth.models import AbstractUser
from django.db import models
from django.db.models import CharField
from django.utils.translation import gettext_lazy as _

from manaledger.billing.constants import PAID_PLAN_PREFIX
from manaledger.billing.constants import PlanId


class User(AbstractUser):
    """
    Default custom user model for manaledger.

    Besides identity, the user row is the local billing record: the plan
    we believe the user is on, and the Stripe identifiers that let us ask
    Stripe what is actually true. Billing fields are only ever nulled out,
    never deleted with the user's history.
    """

    # First and last name do not cover name patterns around the globe
    name = CharField(_("Name of User"), blank=True, max_length=255)

    first_name = None  # type: ignore[assignment]

    last_name = None  # type: ignore[assignment]

    plan_id = models.CharField(
        _("Plan"),
        max_length=32,
        choices=PlanId.choices,
        default=PlanId.WANDERER,
    )
    stripe_customer_id = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        db_index=True,
        help_text=_("Stripe Customer ID (cus_xxx)"),
    )
    stripe_subscription_id = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        db_index=True,
        help_text=_("Current Stripe Subscription ID (sub_xxx)"),
    )
    subscription_period_end = models.DateTimeField(
        null=True,
        blank=True,
        help_text=_("Cached end of the current billing period."),
    )

    def __str__(self):
        return self.email or self.username

    @property
    def has_paid_plan(self) -> bool:
        return bool(self.plan_id) and self.plan_id.startswith(PAID_PLAN_PREFIX)
