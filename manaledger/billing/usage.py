"""
Usage cost calculation for prorated refunds.

Turns the core mana a user has burned through since their last monthly
grant into money, so refunds can subtract what was actually used.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from django.conf import settings

if TYPE_CHECKING:
    from manaledger.billing.models import Wallet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageCost:
    usage_cost_cents: int
    mana_used: int
    mana_granted: int

    def as_dict(self) -> dict:
        return {
            "usageCostCents": self.usage_cost_cents,
            "manaUsed": self.mana_used,
            "manaGranted": self.mana_granted,
        }


NO_USAGE = UsageCost(usage_cost_cents=0, mana_used=0, mana_granted=0)


def calculate_usage_cost(
    wallet: Wallet | None,
    *,
    mana_granted: int | None = None,
    usd_to_mana: int | None = None,
) -> UsageCost:
    """
    Return the cost of core mana consumed from ``wallet``.

    A wallet whose core grant never happened (``last_core_grant_at`` is
    null) costs nothing: the user cannot be charged for access they did not
    receive. Cost rounds up to the next cent.

    Booster mana is never part of the calculation.
    """
    if wallet is None:
        return NO_USAGE

    if mana_granted is None:
        mana_granted = settings.BILLING_CORE_MANA_PER_MONTH
    if usd_to_mana is None:
        usd_to_mana = settings.BILLING_USD_TO_MANA

    if wallet.last_core_grant_at is None:
        logger.warning(
            "Wallet for user %s has no core grant on record; usage cost is zero",
            wallet.user_id,
        )
        return NO_USAGE

    mana_used = max(0, mana_granted - wallet.mana_balance)
    # Integer ceiling of mana_used * 100 / usd_to_mana, no float error.
    usage_cost_cents = -(-mana_used * 100 // usd_to_mana)
    return UsageCost(
        usage_cost_cents=usage_cost_cents,
        mana_used=mana_used,
        mana_granted=mana_granted,
    )


def mana_for_cents(amount_cents: int) -> int:
    """Mana bought by ``amount_cents`` at the configured exchange rate."""
    return amount_cents * settings.BILLING_USD_TO_MANA // 100
