"""
Tests for the dj-stripe webhook receivers.

Receivers are called directly with a stand-in event: dj-stripe has already
verified and stored the event by the time the signal fires, and receivers
only read ``event.data["object"]``.
"""

from datetime import UTC
from datetime import datetime
from types import SimpleNamespace
from unittest.mock import patch

import pytest
import stripe
from django.utils import timezone

from manaledger.billing.constants import PlanId
from manaledger.billing.models import Progression
from manaledger.billing.models import Wallet
from manaledger.billing.results import RemoteLedgerError
from manaledger.billing.tests import stripe_objects
from manaledger.billing.tests.factories import WalletFactory
from manaledger.billing.webhooks import handle_checkout_completed
from manaledger.billing.webhooks import handle_invoice_paid
from manaledger.billing.webhooks import handle_schedule_activated
from manaledger.billing.webhooks import handle_schedule_canceled
from manaledger.billing.webhooks import handle_subscription_created
from manaledger.billing.webhooks import handle_subscription_deleted
from manaledger.billing.webhooks import handle_subscription_updated
from manaledger.users.tests.factories import SubscriberFactory
from manaledger.users.tests.factories import UserFactory

PERIOD_END = datetime(2026, 4, 1, tzinfo=UTC)
ANNUAL_END = datetime(2027, 4, 1, tzinfo=UTC)


def event(obj):
    return SimpleNamespace(data={"object": obj})


def checkout_session(user, **overrides):
    session = {
        "id": "cs_123",
        "mode": "subscription",
        "customer": "cus_new",
        "subscription": "sub_new",
        "payment_status": "paid",
        "metadata": {"userId": str(user.pk), "plan": "monthly"},
    }
    session.update(overrides)
    return session


@pytest.mark.django_db
class TestCheckoutCompleted:
    @patch("stripe.Subscription.retrieve")
    def test_subscription_checkout_links_and_grants(self, mock_retrieve):
        mock_retrieve.return_value = stripe_objects.subscription(
            "sub_new",
            period_end=PERIOD_END,
        )
        user = UserFactory()

        handle_checkout_completed(sender=None, event=event(checkout_session(user)))

        user.refresh_from_db()
        wallet = Wallet.objects.get(user=user)
        assert user.plan_id == PlanId.SORCERER_MONTHLY
        assert user.stripe_customer_id == "cus_new"
        assert user.stripe_subscription_id == "sub_new"
        assert user.subscription_period_end == PERIOD_END
        assert wallet.mana_balance == 200_000
        assert wallet.last_core_grant_at is not None

    @patch("stripe.Subscription.retrieve")
    def test_annual_plan_from_metadata(self, mock_retrieve):
        mock_retrieve.return_value = stripe_objects.subscription("sub_new")
        user = UserFactory()
        session = checkout_session(
            user,
            metadata={"userId": str(user.pk), "plan": "annual"},
        )

        handle_checkout_completed(sender=None, event=event(session))

        user.refresh_from_db()
        assert user.plan_id == PlanId.SORCERER_ANNUAL

    @patch("stripe.Subscription.retrieve")
    def test_period_lookup_failure_still_grants(self, mock_retrieve):
        mock_retrieve.side_effect = stripe.StripeError("timeout")
        user = UserFactory()

        handle_checkout_completed(sender=None, event=event(checkout_session(user)))

        user.refresh_from_db()
        assert user.stripe_subscription_id == "sub_new"
        assert user.subscription_period_end is None
        assert Wallet.objects.get(user=user).mana_balance == 200_000

    def test_booster_checkout_credits_booster_mana(self):
        user = UserFactory()
        WalletFactory(user=user, mana_balance=10, booster_balance=5)
        session = checkout_session(
            user,
            mode="payment",
            subscription=None,
            metadata={"userId": str(user.pk), "boosterAmount": "50000"},
        )

        handle_checkout_completed(sender=None, event=event(session))

        wallet = Wallet.objects.get(user=user)
        assert wallet.booster_balance == 50_005
        assert wallet.mana_balance == 10

    def test_unpaid_booster_checkout_is_ignored(self):
        user = UserFactory()
        session = checkout_session(
            user,
            mode="payment",
            payment_status="unpaid",
            metadata={"userId": str(user.pk), "boosterAmount": "50000"},
        )

        handle_checkout_completed(sender=None, event=event(session))

        assert not Wallet.objects.filter(user=user).exists()

    def test_missing_user_id_is_ignored(self):
        user = UserFactory()

        handle_checkout_completed(
            sender=None,
            event=event(checkout_session(user, metadata={})),
        )

        user.refresh_from_db()
        assert user.plan_id == PlanId.WANDERER


@pytest.mark.django_db
class TestInvoicePaid:
    def test_renewal_adds_core_mana(self):
        user = SubscriberFactory(stripe_subscription_id="sub_123")
        WalletFactory(user=user, mana_balance=1_000)
        invoice = {
            "id": "in_123",
            "billing_reason": "subscription_cycle",
            "parent": {"subscription_details": {"subscription": "sub_123"}},
        }

        handle_invoice_paid(sender=None, event=event(invoice))

        assert Wallet.objects.get(user=user).mana_balance == 201_000

    def test_first_invoice_is_ignored(self):
        user = SubscriberFactory(stripe_subscription_id="sub_123")
        WalletFactory(user=user, mana_balance=1_000)
        invoice = {
            "id": "in_123",
            "billing_reason": "subscription_create",
            "subscription": "sub_123",
        }

        handle_invoice_paid(sender=None, event=event(invoice))

        assert Wallet.objects.get(user=user).mana_balance == 1_000


@pytest.mark.django_db
class TestSubscriptionLifecycle:
    def test_created_links_annual_subscription_from_schedule(self):
        user = SubscriberFactory(
            stripe_customer_id="cus_123",
            stripe_subscription_id="sub_monthly",
        )
        payload = stripe_objects.subscription(
            "sub_annual",
            price="price_annual",
            period_end=PERIOD_END,
        )

        handle_subscription_created(sender=None, event=event(payload))

        user.refresh_from_db()
        assert user.stripe_subscription_id == "sub_annual"
        assert user.plan_id == PlanId.SORCERER_ANNUAL
        assert user.subscription_period_end == PERIOD_END

    def test_created_with_unknown_price_is_ignored(self):
        user = SubscriberFactory(
            stripe_customer_id="cus_123",
            stripe_subscription_id="sub_monthly",
        )
        payload = stripe_objects.subscription("sub_other", price="price_unknown")

        handle_subscription_created(sender=None, event=event(payload))

        user.refresh_from_db()
        assert user.stripe_subscription_id == "sub_monthly"

    def test_updated_cancel_at_period_end_sets_channeling_expiry(self):
        user = SubscriberFactory(stripe_subscription_id="sub_123")
        payload = stripe_objects.subscription(
            "sub_123",
            period_end=PERIOD_END,
            cancel_at_period_end=True,
        )

        handle_subscription_updated(sender=None, event=event(payload))

        progression = Progression.objects.get(user=user)
        assert progression.is_channeling
        assert progression.channeling_expires_at == PERIOD_END

    def test_updated_renewal_clears_channeling_expiry(self):
        user = SubscriberFactory(stripe_subscription_id="sub_123")
        Progression.objects.create(
            user=user,
            is_channeling=True,
            channeling_expires_at=timezone.now(),
        )
        payload = stripe_objects.subscription("sub_123", period_end=PERIOD_END)

        handle_subscription_updated(sender=None, event=event(payload))

        progression = Progression.objects.get(user=user)
        assert progression.channeling_expires_at is None

    def test_updated_keeps_plan_for_unknown_price(self):
        user = SubscriberFactory(
            stripe_subscription_id="sub_123",
            plan_id=PlanId.SORCERER_ANNUAL,
        )
        payload = stripe_objects.subscription("sub_123", price="price_legacy")

        handle_subscription_updated(sender=None, event=event(payload))

        user.refresh_from_db()
        assert user.plan_id == PlanId.SORCERER_ANNUAL

    def test_deleted_current_subscription_downgrades(self):
        user = SubscriberFactory(
            stripe_customer_id="cus_123",
            stripe_subscription_id="sub_123",
        )
        payload = stripe_objects.subscription("sub_123", status="canceled")

        handle_subscription_deleted(sender=None, event=event(payload))

        user.refresh_from_db()
        assert user.plan_id == PlanId.WANDERER
        assert user.stripe_subscription_id is None

    def test_deleted_replaced_subscription_is_ignored(self):
        user = SubscriberFactory(
            stripe_customer_id="cus_123",
            stripe_subscription_id="sub_annual",
            plan_id=PlanId.SORCERER_ANNUAL,
        )
        payload = stripe_objects.subscription("sub_monthly", status="canceled")

        handle_subscription_deleted(sender=None, event=event(payload))

        user.refresh_from_db()
        assert user.plan_id == PlanId.SORCERER_ANNUAL
        assert user.stripe_subscription_id == "sub_annual"


@pytest.mark.django_db
class TestScheduleEvents:
    @pytest.fixture
    def subscriber(self):
        return SubscriberFactory(
            stripe_customer_id="cus_123",
            stripe_subscription_id="sub_monthly",
        )

    def upgrade_schedule(self, user, **overrides):
        return stripe_objects.schedule(
            start=PERIOD_END,
            end=ANNUAL_END,
            metadata={"userId": str(user.pk), "plan": "annual"},
            **overrides,
        )

    @patch("stripe.Subscription.retrieve")
    def test_completed_links_annual_subscription(self, mock_retrieve, subscriber):
        mock_retrieve.return_value = stripe_objects.subscription(
            "sub_annual",
            price="price_annual",
            period_end=ANNUAL_END,
        )
        payload = self.upgrade_schedule(
            subscriber,
            status="completed",
            subscription="sub_annual",
        )

        handle_schedule_activated(sender=None, event=event(payload))

        mock_retrieve.assert_called_once_with("sub_annual")
        subscriber.refresh_from_db()
        assert subscriber.stripe_subscription_id == "sub_annual"
        assert subscriber.plan_id == PlanId.SORCERER_ANNUAL
        assert subscriber.subscription_period_end == ANNUAL_END

    @patch("stripe.Subscription.retrieve")
    def test_released_uses_released_subscription(self, mock_retrieve, subscriber):
        mock_retrieve.return_value = stripe_objects.subscription(
            "sub_annual",
            price="price_annual",
        )
        payload = self.upgrade_schedule(
            subscriber,
            status="released",
            released_subscription="sub_annual",
        )

        handle_schedule_activated(sender=None, event=event(payload))

        subscriber.refresh_from_db()
        assert subscriber.stripe_subscription_id == "sub_annual"
        assert subscriber.plan_id == PlanId.SORCERER_ANNUAL

    @patch("stripe.Subscription.retrieve")
    def test_schedule_without_user_id_is_ignored(self, mock_retrieve, subscriber):
        payload = stripe_objects.schedule(
            status="completed",
            start=PERIOD_END,
            end=ANNUAL_END,
            subscription="sub_annual",
        )

        handle_schedule_activated(sender=None, event=event(payload))

        mock_retrieve.assert_not_called()
        subscriber.refresh_from_db()
        assert subscriber.stripe_subscription_id == "sub_monthly"

    @patch("stripe.Subscription.retrieve")
    def test_fetch_failure_leaves_user_unchanged(self, mock_retrieve, subscriber):
        mock_retrieve.side_effect = stripe.StripeError("timeout")
        payload = self.upgrade_schedule(
            subscriber,
            status="completed",
            subscription="sub_annual",
        )

        handle_schedule_activated(sender=None, event=event(payload))

        subscriber.refresh_from_db()
        assert subscriber.stripe_subscription_id == "sub_monthly"
        assert subscriber.plan_id == PlanId.SORCERER_MONTHLY

    @patch("stripe.Subscription.modify")
    @patch("stripe.Subscription.retrieve")
    def test_canceled_clears_cancel_flag(self, mock_retrieve, mock_modify, subscriber):
        mock_retrieve.return_value = stripe_objects.subscription(
            "sub_monthly",
            cancel_at_period_end=True,
        )
        mock_modify.return_value = stripe_objects.subscription("sub_monthly")
        payload = self.upgrade_schedule(subscriber, status="canceled")

        handle_schedule_canceled(sender=None, event=event(payload))

        mock_retrieve.assert_called_once_with("sub_monthly")
        mock_modify.assert_called_once_with("sub_monthly", cancel_at_period_end=False)

    @patch("stripe.Subscription.modify")
    @patch("stripe.Subscription.retrieve")
    def test_canceled_leaves_unflagged_subscription_alone(
        self,
        mock_retrieve,
        mock_modify,
        subscriber,
    ):
        mock_retrieve.return_value = stripe_objects.subscription("sub_monthly")
        payload = self.upgrade_schedule(subscriber, status="canceled")

        handle_schedule_canceled(sender=None, event=event(payload))

        mock_modify.assert_not_called()

    @patch("stripe.Subscription.modify")
    @patch("stripe.Subscription.retrieve")
    def test_canceled_monthly_schedule_is_ignored(
        self,
        mock_retrieve,
        mock_modify,
        subscriber,
    ):
        payload = self.upgrade_schedule(
            subscriber,
            status="canceled",
            price="price_monthly",
        )

        handle_schedule_canceled(sender=None, event=event(payload))

        mock_retrieve.assert_not_called()
        mock_modify.assert_not_called()

    @patch("stripe.Subscription.retrieve")
    def test_canceled_propagates_stripe_errors(self, mock_retrieve, subscriber):
        mock_retrieve.side_effect = stripe.StripeError("timeout")
        payload = self.upgrade_schedule(subscriber, status="canceled")

        with pytest.raises(RemoteLedgerError):
            handle_schedule_canceled(sender=None, event=event(payload))
