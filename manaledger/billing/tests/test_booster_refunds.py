"""
Tests for booster refunds.

A booster is a one-time purchase of extra mana. Only the share of it still
sitting in the (pooled) booster balance is refundable.
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from django.core import mail
from django.utils import timezone

from manaledger.billing.constants import PlanId
from manaledger.billing.constants import RefundStatus
from manaledger.billing.ledger import RemoteCharge
from manaledger.billing.ledger import RemoteLedger
from manaledger.billing.models import RefundRequest
from manaledger.billing.models import Wallet
from manaledger.billing.refunds import RefundService
from manaledger.billing.refunds import booster_refund_share
from manaledger.billing.results import ErrorCode
from manaledger.billing.tests import stripe_objects
from manaledger.billing.tests.factories import WalletFactory
from manaledger.users.tests.factories import SubscriberFactory


def booster_charge(**kwargs):
    kwargs.setdefault("charge_id", "ch_booster")
    kwargs.setdefault("amount", 250)
    kwargs.setdefault("invoice", None)
    kwargs.setdefault("description", "Mana Booster")
    kwargs.setdefault("created", timezone.now() - timedelta(days=20))
    return RemoteCharge.from_stripe(stripe_objects.charge(**kwargs))


@pytest.fixture
def ledger():
    mock = MagicMock(spec=RemoteLedger)
    mock.retrieve_charge.return_value = booster_charge()
    mock.create_refund.return_value = "re_booster"
    return mock


@pytest.fixture
def subscriber():
    user = SubscriberFactory(
        email="booster@example.com",
        stripe_customer_id="cus_123",
    )
    WalletFactory(user=user, mana_balance=120_000, booster_balance=30_000)
    return user


@pytest.mark.parametrize(
    ("amount_cents", "balance", "expected"),
    [
        (250, 50_000, (250, 50_000)),
        (250, 80_000, (250, 50_000)),
        (250, 30_000, (150, 30_000)),
        (250, 1, (0, 1)),
        (250, 0, (0, 0)),
        (0, 10_000, (0, 0)),
    ],
)
def test_booster_refund_share(amount_cents, balance, expected):
    assert booster_refund_share(amount_cents, balance) == expected


@pytest.mark.django_db
class TestBoosterRefund:
    def test_refunds_unused_share(self, ledger, subscriber):
        result = RefundService(ledger).booster_refund(
            subscriber,
            "ch_booster",
            "Bought by mistake",
        )

        assert result.success, result.error
        assert result.data == {"refundedAmountCents": 150, "manaDeducted": 30_000}
        refund_kwargs = ledger.create_refund.call_args.kwargs
        assert refund_kwargs["amount_cents"] == 150
        assert refund_kwargs["idempotency_key"] == "booster-refund:ch_booster:150"

    def test_deducts_booster_mana_only(self, ledger, subscriber):
        RefundService(ledger).booster_refund(subscriber, "ch_booster", "Bought by mistake")

        wallet = Wallet.objects.get(user=subscriber)
        subscriber.refresh_from_db()
        assert wallet.booster_balance == 0
        assert wallet.mana_balance == 120_000
        assert subscriber.plan_id == PlanId.SORCERER_MONTHLY

    def test_records_approved_request(self, ledger, subscriber):
        RefundService(ledger).booster_refund(subscriber, "ch_booster", "Bought by mistake")

        refund = RefundRequest.objects.get(user=subscriber)
        assert refund.status == RefundStatus.APPROVED
        assert refund.reason == "[Booster] Bought by mistake"
        assert refund.stripe_refund_id == "re_booster"
        assert mail.outbox[0].to == ["booster@example.com"]

    def test_no_age_limit(self, ledger, subscriber):
        ledger.retrieve_charge.return_value = booster_charge(
            created=timezone.now() - timedelta(days=200),
        )

        result = RefundService(ledger).booster_refund(
            subscriber,
            "ch_booster",
            "Bought by mistake",
        )

        assert result.success

    def test_subscription_charge_is_rejected(self, ledger, subscriber):
        ledger.retrieve_charge.return_value = booster_charge(invoice="in_123")

        result = RefundService(ledger).booster_refund(
            subscriber,
            "ch_booster",
            "Bought by mistake",
        )

        assert result.code == ErrorCode.SUBSCRIPTION_CHARGE
        ledger.create_refund.assert_not_called()

    def test_empty_booster_balance(self, ledger, subscriber):
        Wallet.objects.filter(user=subscriber).update(booster_balance=0)

        result = RefundService(ledger).booster_refund(
            subscriber,
            "ch_booster",
            "Bought by mistake",
        )

        assert result.error == (
            "No booster balance to refund. All purchased mana has been used."
        )
        ledger.retrieve_charge.assert_not_called()

    def test_no_wallet(self, ledger):
        user = SubscriberFactory(stripe_customer_id="cus_123")

        result = RefundService(ledger).booster_refund(user, "ch_booster", "Mistake")

        assert result.error == "No wallet found"
        assert result.code == ErrorCode.NO_WALLET

    def test_rounds_to_nothing(self, ledger, subscriber):
        Wallet.objects.filter(user=subscriber).update(booster_balance=1)

        result = RefundService(ledger).booster_refund(
            subscriber,
            "ch_booster",
            "Bought by mistake",
        )

        assert result.code == ErrorCode.NO_BOOSTER_BALANCE
        ledger.create_refund.assert_not_called()

    def test_one_per_day(self, ledger, subscriber):
        service = RefundService(ledger)
        service.booster_refund(subscriber, "ch_booster", "Bought by mistake")

        result = service.booster_refund(subscriber, "ch_booster", "Bought by mistake")

        assert result.code == ErrorCode.RATE_LIMITED


@pytest.mark.django_db
class TestRefundableBoosters:
    def test_lists_one_time_booster_charges(self, ledger, subscriber):
        ledger.list_charges.return_value = [
            booster_charge(),
            RemoteCharge.from_stripe(
                stripe_objects.charge(created=timezone.now()),
            ),
            booster_charge(charge_id="ch_refunded", refunded=True),
        ]

        result = RefundService(ledger).refundable_boosters(subscriber)

        assert result.data["boosters"] == [
            {
                "chargeId": "ch_booster",
                "amountCents": 250,
                "manaGranted": 50_000,
                "manaRemaining": 30_000,
                "refundableAmountCents": 150,
                "purchasedAt": result.data["boosters"][0]["purchasedAt"],
            },
        ]
        ledger.list_charges.assert_called_once_with("cus_123", limit=20)

    def test_metadata_marks_booster(self, ledger, subscriber):
        ledger.list_charges.return_value = [
            booster_charge(description=None, metadata={"boosterAmount": "50000"}),
        ]

        result = RefundService(ledger).refundable_boosters(subscriber)

        assert len(result.data["boosters"]) == 1
