"""
Tests for usage cost calculation.

Usage cost is what consumed core mana is worth in cents, rounded up. It is
subtracted from a charge before a self-service refund.
"""

import pytest
from django.utils import timezone

from manaledger.billing.models import Wallet
from manaledger.billing.usage import calculate_usage_cost
from manaledger.billing.usage import mana_for_cents


def make_wallet(mana_balance, *, granted=True):
    return Wallet(
        mana_balance=mana_balance,
        last_core_grant_at=timezone.now() if granted else None,
    )


class TestCalculateUsageCost:
    def test_partial_usage(self):
        usage = calculate_usage_cost(
            make_wallet(150_000),
            mana_granted=200_000,
            usd_to_mana=20_000,
        )

        assert usage.mana_used == 50_000
        assert usage.usage_cost_cents == 250
        assert 2500 - usage.usage_cost_cents == 2250

    def test_full_usage(self):
        usage = calculate_usage_cost(
            make_wallet(0),
            mana_granted=200_000,
            usd_to_mana=20_000,
        )

        assert usage.mana_used == 200_000
        assert usage.usage_cost_cents == 1000

    def test_balance_above_grant_counts_as_no_usage(self):
        usage = calculate_usage_cost(
            make_wallet(260_000),
            mana_granted=200_000,
            usd_to_mana=20_000,
        )

        assert usage.mana_used == 0
        assert usage.usage_cost_cents == 0

    def test_rounds_up_to_next_cent(self):
        # 1 mana at 20000 mana per dollar is 0.005 cents.
        usage = calculate_usage_cost(
            make_wallet(199_999),
            mana_granted=200_000,
            usd_to_mana=20_000,
        )

        assert usage.usage_cost_cents == 1

    def test_no_wallet_costs_nothing(self):
        usage = calculate_usage_cost(None)

        assert usage.as_dict() == {
            "usageCostCents": 0,
            "manaUsed": 0,
            "manaGranted": 0,
        }

    def test_wallet_without_core_grant_costs_nothing(self):
        usage = calculate_usage_cost(make_wallet(0, granted=False))

        assert usage.usage_cost_cents == 0
        assert usage.mana_used == 0

    def test_defaults_come_from_settings(self, settings):
        settings.BILLING_CORE_MANA_PER_MONTH = 20_000
        settings.BILLING_USD_TO_MANA = 20_000

        usage = calculate_usage_cost(make_wallet(0))

        assert usage.mana_granted == 20_000
        assert usage.usage_cost_cents == 100


@pytest.mark.parametrize(
    ("cents", "mana"),
    [(500, 100_000), (250, 50_000), (1, 200)],
)
def test_mana_for_cents(cents, mana):
    assert mana_for_cents(cents) == mana
