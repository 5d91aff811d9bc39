"""
Local grants and revocations of paid access.

Every write to the user's plan fields, wallet balances and progression
flags that is not a plain cache repair goes through here, so the refund,
gift and webhook paths agree on what "paid" and "unpaid" look like.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from manaledger.billing.constants import PlanId
from manaledger.billing.models import Progression
from manaledger.billing.models import Wallet

if TYPE_CHECKING:
    from manaledger.users.models import User

logger = logging.getLogger(__name__)


def grant_core_mana(user: User, *, now: datetime | None = None) -> Wallet:
    """
    Add the monthly core allotment and record the grant time.

    Creates the wallet on first grant. Booster balance is untouched.
    """
    amount = settings.BILLING_CORE_MANA_PER_MONTH
    now = now or timezone.now()
    wallet, _ = Wallet.objects.get_or_create(user=user)
    Wallet.objects.filter(pk=wallet.pk).update(
        mana_balance=F("mana_balance") + amount,
        last_core_grant_at=now,
        modified=now,
    )
    wallet.refresh_from_db()
    logger.info("Granted %s core mana to user %s", amount, user.pk)
    return wallet


def add_booster_mana(user: User, amount: int) -> Wallet:
    wallet, _ = Wallet.objects.get_or_create(user=user)
    Wallet.objects.filter(pk=wallet.pk).update(
        booster_balance=F("booster_balance") + amount,
        modified=timezone.now(),
    )
    wallet.refresh_from_db()
    logger.info("Added %s booster mana to user %s", amount, user.pk)
    return wallet


def deduct_booster_mana(user: User, amount: int) -> Wallet:
    """Lower the booster balance by ``amount``, never below zero."""
    with transaction.atomic():
        wallet = Wallet.objects.select_for_update().get(user=user)
        wallet.booster_balance = max(0, wallet.booster_balance - amount)
        wallet.save(update_fields=["booster_balance", "modified"])
    return wallet


def downgrade_to_unpaid(user: User) -> None:
    """Move the user to the unpaid tier and drop the subscription link."""
    user.plan_id = PlanId.WANDERER
    user.stripe_subscription_id = None
    user.subscription_period_end = None
    user.save(
        update_fields=["plan_id", "stripe_subscription_id", "subscription_period_end"],
    )


def reset_core_entitlement(user: User) -> None:
    """Zero core mana and its grant time, and clear channeling."""
    Wallet.objects.filter(user=user).update(
        mana_balance=0,
        last_core_grant_at=None,
        modified=timezone.now(),
    )
    Progression.objects.filter(user=user).update(
        is_channeling=False,
        channeling_expires_at=None,
        modified=timezone.now(),
    )


@transaction.atomic
def revoke_paid_access(user: User) -> None:
    """
    Drop the user to the unpaid tier in one step.

    Clears the Stripe subscription link and period, zeroes core mana and the
    grant timestamp, and clears channeling. Booster mana is a separate
    purchase and is kept.
    """
    downgrade_to_unpaid(user)
    reset_core_entitlement(user)
    logger.info("Revoked paid access for user %s", user.pk)


def grant_paid_plan(user: User, plan_id: str = PlanId.SORCERER) -> None:
    user.plan_id = plan_id
    user.save(update_fields=["plan_id"])
