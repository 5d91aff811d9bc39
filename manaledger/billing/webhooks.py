"""
Stripe webhook handlers using dj-stripe signals.

dj-stripe verifies the webhook signature, stores the Event, then sends the
per-type signal from djstripe.signals.WEBHOOK_SIGNALS. These receivers keep
the local billing record in step with Stripe.

Key events handled:
- checkout.session.completed: Link the subscription and grant core mana,
  or credit booster mana for a one-time purchase
- invoice.paid: Grant core mana on each renewal
- customer.subscription.created: Link a subscription started by an annual
  upgrade schedule
- customer.subscription.updated: Sync plan variant, period end and the
  channeling window
- customer.subscription.deleted: Downgrade when the current subscription ends
- subscription_schedule.completed / released: Link the subscription an
  annual upgrade schedule handed over
- subscription_schedule.canceled: Clear the cancel flag the upgrade left on
  the monthly subscription, so it does not lapse with nothing after it

Grants raise on database failure so Stripe retries the event. Events that
can never succeed (unknown user, missing metadata) are logged and dropped.

To test locally:
    stripe listen --forward-to localhost:8000/stripe/webhook/
"""

import logging

from django.conf import settings
from django.contrib.auth import get_user_model
from django.dispatch import receiver
from djstripe.signals import WEBHOOK_SIGNALS

from manaledger.billing.constants import LIVE_SUBSCRIPTION_STATUSES
from manaledger.billing.constants import PlanId
from manaledger.billing.constants import PlanVariant
from manaledger.billing.entitlements import add_booster_mana
from manaledger.billing.entitlements import downgrade_to_unpaid
from manaledger.billing.entitlements import grant_core_mana
from manaledger.billing.ledger import RemoteLedger
from manaledger.billing.ledger import RemoteSubscription
from manaledger.billing.ledger import SubscriptionSchedule
from manaledger.billing.models import Progression
from manaledger.billing.reconciliation import price_plan_variant
from manaledger.billing.results import RemoteLedgerError
from manaledger.core.analytics import track

logger = logging.getLogger(__name__)

PLAN_ID_BY_VARIANT = {
    PlanVariant.MONTHLY: PlanId.SORCERER_MONTHLY,
    PlanVariant.ANNUAL: PlanId.SORCERER_ANNUAL,
}


def _users():
    return get_user_model().objects


def _find_user(*, user_id=None, customer_id=None, subscription_id=None):
    if user_id:
        user = _users().filter(pk=user_id).first()
        if user:
            return user
    if subscription_id:
        user = _users().filter(stripe_subscription_id=subscription_id).first()
        if user:
            return user
    if customer_id:
        return _users().filter(stripe_customer_id=customer_id).first()
    return None


def _fetch_period_end(subscription_id):
    try:
        return RemoteLedger().retrieve_subscription(subscription_id).period_end
    except RemoteLedgerError:
        logger.exception(
            "Failed to fetch subscription %s period on checkout completion",
            subscription_id,
        )
        return None


@receiver(WEBHOOK_SIGNALS["checkout.session.completed"])
def handle_checkout_completed(sender, event, **kwargs):
    """
    Provision access after successful Stripe Checkout.

    metadata.userId is set by BillingService when the session is created.
    """
    session = event.data["object"]
    metadata = session.get("metadata") or {}
    user_id = metadata.get("userId")

    if not user_id:
        logger.error("checkout.session.completed %s missing userId", session.get("id"))
        track("webhook_invalid_metadata", None, session_id=session.get("id"))
        return

    user = _find_user(user_id=user_id)
    if user is None:
        logger.error("checkout.session.completed for unknown user_id=%s", user_id)
        return

    mode = session.get("mode")
    if mode == "subscription":
        subscription_id = session.get("subscription")
        variant = (
            PlanVariant.ANNUAL
            if metadata.get("plan") == PlanVariant.ANNUAL
            else PlanVariant.MONTHLY
        )
        user.stripe_customer_id = session.get("customer") or user.stripe_customer_id
        user.stripe_subscription_id = subscription_id
        user.plan_id = PLAN_ID_BY_VARIANT[variant]
        update_fields = ["stripe_customer_id", "stripe_subscription_id", "plan_id"]
        period_end = _fetch_period_end(subscription_id) if subscription_id else None
        if period_end:
            user.subscription_period_end = period_end
            update_fields.append("subscription_period_end")
        user.save(update_fields=update_fields)

        wallet = grant_core_mana(user)
        logger.info(
            "Activated %s subscription %s for user %s",
            variant,
            subscription_id,
            user.pk,
        )
        track(
            "webhook_mana_granted",
            user.pk,
            amount=wallet.mana_balance,
            type="subscription_checkout",
            subscription_id=subscription_id,
        )
        return

    if mode == "payment" and session.get("payment_status") == "paid":
        try:
            booster_amount = int(metadata.get("boosterAmount") or 0)
        except (TypeError, ValueError):
            booster_amount = 0
        if booster_amount <= 0:
            logger.warning("Booster checkout %s has no boosterAmount", session.get("id"))
            return
        add_booster_mana(user, booster_amount)
        track(
            "webhook_booster_granted",
            user.pk,
            amount=booster_amount,
            session_id=session.get("id"),
        )


@receiver(WEBHOOK_SIGNALS["invoice.paid"])
def handle_invoice_paid(sender, event, **kwargs):
    """
    Grant the monthly core mana on renewal.

    Only billing_reason=subscription_cycle counts; the first invoice is
    covered by checkout.session.completed.
    """
    invoice = event.data["object"]
    if invoice.get("billing_reason") != "subscription_cycle":
        return

    subscription_id = invoice.get("subscription")
    if not subscription_id:
        parent = invoice.get("parent") or {}
        subscription_id = (parent.get("subscription_details") or {}).get("subscription")
    if not subscription_id:
        return

    user = _users().filter(stripe_subscription_id=subscription_id).first()
    if user is None:
        logger.error(
            "invoice.paid %s: no user for subscription %s",
            invoice.get("id"),
            subscription_id,
        )
        return

    grant_core_mana(user)
    track(
        "webhook_mana_granted",
        user.pk,
        type="subscription_renewal",
        subscription_id=subscription_id,
    )


@receiver(WEBHOOK_SIGNALS["customer.subscription.created"])
def handle_subscription_created(sender, event, **kwargs):
    """
    Link a subscription that started without a checkout.

    This is how an annual upgrade lands: the schedule created by
    AnnualUpgradeScheduler starts a new subscription at the old period end.
    """
    subscription = RemoteSubscription.from_stripe(event.data["object"])
    user = _find_user(
        user_id=subscription.metadata.get("userId"),
        customer_id=subscription.customer_id,
    )
    if user is None:
        return
    if user.stripe_subscription_id == subscription.id:
        return

    variant = price_plan_variant(subscription.price_id)
    if variant is None:
        return

    user.stripe_subscription_id = subscription.id
    user.plan_id = PLAN_ID_BY_VARIANT[variant]
    update_fields = ["stripe_subscription_id", "plan_id"]
    if subscription.period_end:
        user.subscription_period_end = subscription.period_end
        update_fields.append("subscription_period_end")
    user.save(update_fields=update_fields)
    logger.info(
        "Linked new %s subscription %s to user %s",
        variant,
        subscription.id,
        user.pk,
    )


@receiver(WEBHOOK_SIGNALS["customer.subscription.updated"])
def handle_subscription_updated(sender, event, **kwargs):
    """
    Sync plan variant and period end from the user's current subscription.

    Access continues until the period end when the user cancels; that window
    is tracked on Progression as channeling_expires_at.
    """
    subscription = RemoteSubscription.from_stripe(event.data["object"])
    user = _users().filter(stripe_subscription_id=subscription.id).first()
    if user is None:
        return

    variant = price_plan_variant(subscription.price_id)
    if variant is not None:
        user.plan_id = PLAN_ID_BY_VARIANT[variant]
    update_fields = ["plan_id"]
    if subscription.period_end:
        user.subscription_period_end = subscription.period_end
        update_fields.append("subscription_period_end")
    user.save(update_fields=update_fields)

    if subscription.cancel_at_period_end and subscription.period_end:
        Progression.objects.update_or_create(
            user=user,
            defaults={
                "is_channeling": True,
                "channeling_expires_at": subscription.period_end,
            },
        )
    elif not subscription.cancel_at_period_end:
        Progression.objects.update_or_create(
            user=user,
            defaults={"is_channeling": True, "channeling_expires_at": None},
        )

    logger.info(
        "Subscription %s updated for user %s: plan=%s cancel_at_period_end=%s",
        subscription.id,
        user.pk,
        user.plan_id,
        subscription.cancel_at_period_end,
    )


@receiver(WEBHOOK_SIGNALS["customer.subscription.deleted"])
def handle_subscription_deleted(sender, event, **kwargs):
    """
    Downgrade when the user's current subscription ends.

    A monthly subscription ending after an annual upgrade has already been
    replaced on the user row, so it does not downgrade anyone.
    """
    subscription = RemoteSubscription.from_stripe(event.data["object"])
    user = _find_user(
        subscription_id=subscription.id,
        customer_id=subscription.customer_id,
    )
    if user is None:
        return

    if user.stripe_subscription_id != subscription.id:
        logger.info(
            "Ignoring deletion of %s; user %s is on %s",
            subscription.id,
            user.pk,
            user.stripe_subscription_id,
        )
        return

    downgrade_to_unpaid(user)
    logger.info("Subscription %s ended; user %s downgraded", subscription.id, user.pk)


@receiver(WEBHOOK_SIGNALS["subscription_schedule.completed"])
@receiver(WEBHOOK_SIGNALS["subscription_schedule.released"])
def handle_schedule_activated(sender, event, **kwargs):
    """
    Link the subscription an upgrade schedule handed over.

    customer.subscription.created usually gets there first; this covers the
    case where that event was missed or arrived before the user row existed.
    """
    schedule = SubscriptionSchedule.from_stripe(event.data["object"])
    user_id = schedule.metadata.get("userId")
    if not user_id:
        logger.info("Schedule %s has no userId; ignoring", schedule.id)
        return

    user = _find_user(user_id=user_id)
    if user is None or not schedule.subscription_id:
        logger.warning(
            "Schedule %s: cannot link subscription %s to user_id=%s",
            schedule.id,
            schedule.subscription_id,
            user_id,
        )
        return

    try:
        subscription = RemoteLedger().retrieve_subscription(schedule.subscription_id)
    except RemoteLedgerError:
        logger.exception(
            "Failed to fetch subscription %s for schedule %s",
            schedule.subscription_id,
            schedule.id,
        )
        return

    variant = price_plan_variant(subscription.price_id) or PlanVariant.ANNUAL
    user.stripe_subscription_id = subscription.id
    user.plan_id = PLAN_ID_BY_VARIANT[variant]
    update_fields = ["stripe_subscription_id", "plan_id"]
    if subscription.period_end:
        user.subscription_period_end = subscription.period_end
        update_fields.append("subscription_period_end")
    user.save(update_fields=update_fields)
    logger.info(
        "Schedule %s activated %s subscription %s for user %s",
        schedule.id,
        variant,
        subscription.id,
        user.pk,
    )


@receiver(WEBHOOK_SIGNALS["subscription_schedule.canceled"])
def handle_schedule_canceled(sender, event, **kwargs):
    """
    Undo the cancel flag when an annual upgrade schedule is cancelled.

    Covers cancellations made outside AnnualUpgradeScheduler.cancel (the
    Stripe dashboard, support tooling). Stripe errors propagate so the event
    is retried.
    """
    schedule = SubscriptionSchedule.from_stripe(event.data["object"])
    if schedule.phase_for_price(settings.STRIPE_PRICE_ANNUAL) is None:
        return

    user = _find_user(
        user_id=schedule.metadata.get("userId"),
        customer_id=event.data["object"].get("customer"),
    )
    if user is None or not user.stripe_subscription_id:
        return

    ledger = RemoteLedger()
    current = ledger.retrieve_subscription(user.stripe_subscription_id)
    if current.status not in LIVE_SUBSCRIPTION_STATUSES or not current.cancel_at_period_end:
        return

    ledger.update_subscription(current.id, cancel_at_period_end=False)
    logger.info(
        "Schedule %s cancelled; cleared cancel_at_period_end on %s for user %s",
        schedule.id,
        current.id,
        user.pk,
    )
    track("billing_upgrade_cancelled", user.pk, schedule_id=schedule.id)
