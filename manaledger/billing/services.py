"""
Billing service for Stripe checkout, portal and subscription toggles.

This service provides a clean interface for:
- Getting or creating Stripe customers
- Creating Stripe Checkout sessions (subscription signup, booster purchase)
- Opening the Stripe Customer Portal (self-service management)
- Flagging the subscription to cancel or renew at period end
- Assembling the billing overview (reconciled subscription plus wallet)

We use Stripe Checkout (not custom payment forms) for PCI compliance.
Access is provisioned by the checkout.session.completed webhook, not here.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.conf import settings

from manaledger.billing.constants import PlanVariant
from manaledger.billing.constants import RateLimitedAction
from manaledger.billing.emails import billing_url
from manaledger.billing.ledger import RemoteLedger
from manaledger.billing.models import Wallet
from manaledger.billing.reconciliation import SubscriptionReconciler
from manaledger.billing.results import ActionResult
from manaledger.billing.results import ErrorCode
from manaledger.billing.results import RemoteLedgerError
from manaledger.billing.results import enforce_rate_limit
from manaledger.core.analytics import track

if TYPE_CHECKING:
    from manaledger.users.models import User

logger = logging.getLogger(__name__)

TOGGLE_RATE_LIMIT_MESSAGE = "Too many changes. Please wait {seconds} seconds before trying again."


class BillingService:
    """
    Service for Stripe billing operations.

    Usage:
        service = BillingService()
        result = service.subscribe(request.user, plan="annual")
        if result.success:
            return redirect(result.data["url"])
    """

    def __init__(self, ledger: RemoteLedger | None = None):
        self.ledger = ledger or RemoteLedger()

    def get_or_create_stripe_customer(self, user: User) -> str:
        """
        Get existing Stripe customer or create a new one.

        Returns the Stripe customer ID (cus_xxx).
        """
        if user.stripe_customer_id:
            return user.stripe_customer_id

        customer_id = self.ledger.create_customer(
            email=user.email,
            name=user.name,
            user_id=user.pk,
        )
        user.stripe_customer_id = customer_id
        user.save(update_fields=["stripe_customer_id"])
        logger.info("Created Stripe customer %s for user %s", customer_id, user.pk)
        return customer_id

    def subscribe(self, user: User, plan: str = PlanVariant.MONTHLY) -> ActionResult:
        """
        Start a subscription checkout, or send an existing subscriber to the portal.

        Anything other than "annual" is treated as monthly.
        """
        limited = enforce_rate_limit(
            RateLimitedAction.SUBSCRIBE,
            user.pk,
            "Too many subscription attempts. Please try again later.",
        )
        if limited:
            return limited

        variant = PlanVariant.ANNUAL if plan == PlanVariant.ANNUAL else PlanVariant.MONTHLY

        try:
            if user.stripe_subscription_id and user.has_paid_plan and user.stripe_customer_id:
                url = self.ledger.create_portal_session(
                    customer_id=user.stripe_customer_id,
                    return_url=billing_url(),
                )
                return ActionResult.ok(url=url, portal=True)

            price_id = (
                settings.STRIPE_PRICE_ANNUAL
                if variant == PlanVariant.ANNUAL
                else settings.STRIPE_PRICE_MONTHLY
            )
            url = self.ledger.create_checkout_session(
                mode="subscription",
                price_id=price_id,
                customer_id=self.get_or_create_stripe_customer(user),
                success_url=f"{billing_url()}?success=true",
                cancel_url=f"{billing_url()}?canceled=true",
                metadata={"userId": str(user.pk), "plan": str(variant)},
            )
        except RemoteLedgerError:
            logger.exception("Failed to start subscription checkout for user %s", user.pk)
            return ActionResult.fail(
                "Failed to start checkout. Please try again.",
                ErrorCode.REMOTE_ERROR,
            )
        return ActionResult.ok(url=url, portal=False)

    def manage(self, user: User) -> ActionResult:
        try:
            url = self.ledger.create_portal_session(
                customer_id=self.get_or_create_stripe_customer(user),
                return_url=billing_url(),
            )
        except RemoteLedgerError:
            logger.exception("Failed to open billing portal for user %s", user.pk)
            return ActionResult.fail(
                "Failed to open billing portal. Please try again.",
                ErrorCode.REMOTE_ERROR,
            )
        return ActionResult.ok(url=url)

    def buy_booster(self, user: User) -> ActionResult:
        try:
            url = self.ledger.create_checkout_session(
                mode="payment",
                price_id=settings.STRIPE_PRICE_BOOSTER,
                customer_id=self.get_or_create_stripe_customer(user),
                success_url=f"{billing_url()}?booster_success=true",
                cancel_url=f"{billing_url()}?canceled=true",
                metadata={
                    "userId": str(user.pk),
                    "boosterAmount": str(settings.BILLING_BOOSTER_MANA),
                },
            )
        except RemoteLedgerError:
            logger.exception("Failed to start booster checkout for user %s", user.pk)
            return ActionResult.fail(
                "Failed to start checkout. Please try again.",
                ErrorCode.REMOTE_ERROR,
            )
        return ActionResult.ok(url=url)

    def cancel_at_period_end(self, user: User) -> ActionResult:
        limited = enforce_rate_limit(
            RateLimitedAction.SUBSCRIPTION_TOGGLE,
            user.pk,
            TOGGLE_RATE_LIMIT_MESSAGE,
        )
        if limited:
            return limited

        if not user.stripe_subscription_id:
            return ActionResult.fail(
                "No subscription found to cancel",
                ErrorCode.NO_SUBSCRIPTION,
            )

        try:
            self.ledger.update_subscription(
                user.stripe_subscription_id,
                cancel_at_period_end=True,
            )
        except RemoteLedgerError:
            logger.exception("Failed to cancel subscription for user %s", user.pk)
            return ActionResult.fail(
                "Failed to cancel subscription. Please try again.",
                ErrorCode.REMOTE_ERROR,
            )

        track("billing_subscription_cancelled", user.pk)
        return ActionResult.ok()

    def renew(self, user: User) -> ActionResult:
        limited = enforce_rate_limit(
            RateLimitedAction.SUBSCRIPTION_TOGGLE,
            user.pk,
            TOGGLE_RATE_LIMIT_MESSAGE,
        )
        if limited:
            return limited

        if not user.stripe_subscription_id:
            return ActionResult.fail(
                "No subscription found to renew",
                ErrorCode.NO_SUBSCRIPTION,
            )

        try:
            self.ledger.update_subscription(
                user.stripe_subscription_id,
                cancel_at_period_end=False,
            )
        except RemoteLedgerError:
            logger.exception("Failed to renew subscription for user %s", user.pk)
            return ActionResult.fail(
                "Failed to renew subscription. Please try again.",
                ErrorCode.REMOTE_ERROR,
            )

        # A cancellation can also be expressed as an absolute cancel_at.
        # Stripe rejects clearing it when it was never set, which is fine.
        try:
            self.ledger.update_subscription(user.stripe_subscription_id, cancel_at="")
        except RemoteLedgerError:
            logger.info(
                "Clearing cancel_at on %s failed (probably not set)",
                user.stripe_subscription_id,
            )

        track("billing_subscription_started", user.pk, action="renewed")
        return ActionResult.ok()

    def overview(self, user: User) -> dict:
        """Reconciled subscription state plus wallet balances."""
        view = SubscriptionReconciler(self.ledger).reconcile(user)
        wallet = Wallet.objects.filter(user=user).first()
        return {
            "planId": user.plan_id,
            "subscription": view.as_dict(),
            "wallet": {
                "manaBalance": wallet.mana_balance if wallet else 0,
                "boosterBalance": wallet.booster_balance if wallet else 0,
                "lastCoreGrantAt": (
                    wallet.last_core_grant_at.isoformat()
                    if wallet and wallet.last_core_grant_at
                    else None
                ),
            },
        }
