"""
Monthly to annual upgrades, scheduled for the end of the current period.

The user keeps their monthly subscription until it ends, then a Stripe
subscription schedule starts the annual one at that exact timestamp. Two
paid subscriptions never overlap:

0. Refuse if the customer already has a live annual subscription or an
   open schedule carrying the annual price.
1. Flag the monthly subscription cancel_at_period_end.
2. Create a schedule whose single phase starts at the same period end and
   uses the annual price.
3. Email the user the yearly savings and record an analytics event.

If step 2 fails, step 1 is reverted on a best-effort basis so the user is
not left with a subscription that lapses with nothing after it. Cancelling
a scheduled upgrade cancels the schedule (found by its annual-price phase,
since the schedule id is not stored locally) and clears the flag.

References:
- https://docs.stripe.com/billing/subscriptions/subscription-schedules
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from django.conf import settings
from django.utils import timezone

from manaledger.billing.constants import BLOCKING_ANNUAL_STATUSES
from manaledger.billing.constants import LIVE_SUBSCRIPTION_STATUSES
from manaledger.billing.constants import RateLimitedAction
from manaledger.billing.ledger import RemoteLedger
from manaledger.billing.ledger import find_open_schedule
from manaledger.billing.ledger import to_timestamp
from manaledger.billing.results import ActionResult
from manaledger.billing.results import ErrorCode
from manaledger.billing.results import RemoteLedgerError
from manaledger.billing.results import enforce_rate_limit
from manaledger.billing.tasks import notify
from manaledger.core.analytics import track

if TYPE_CHECKING:
    from manaledger.users.models import User

logger = logging.getLogger(__name__)


def annual_savings_cents() -> int:
    return settings.BILLING_MONTHLY_PRICE_CENTS * 12 - settings.BILLING_ANNUAL_PRICE_CENTS


class AnnualUpgradeScheduler:
    """
    Schedule and cancel monthly→annual plan changes.

    Usage:
        scheduler = AnnualUpgradeScheduler()
        result = scheduler.schedule(request.user)
        if not result.success:
            return Response(result.as_dict(), status=400)
    """

    def __init__(self, ledger: RemoteLedger | None = None):
        self.ledger = ledger or RemoteLedger()

    def schedule(self, user: User, *, now: datetime | None = None) -> ActionResult:
        now = now or timezone.now()

        limited = enforce_rate_limit(RateLimitedAction.UPGRADE_TO_ANNUAL, user.pk)
        if limited:
            return limited

        if not user.stripe_subscription_id or not user.stripe_customer_id:
            return ActionResult.fail(
                "No active subscription found",
                ErrorCode.NO_SUBSCRIPTION,
            )

        annual_price = settings.STRIPE_PRICE_ANNUAL

        try:
            if self._has_annual_subscription(user.stripe_customer_id, annual_price):
                return ActionResult.fail(
                    "You already have an annual subscription.",
                    ErrorCode.ALREADY_ANNUAL,
                )

            schedules = self.ledger.list_schedules(user.stripe_customer_id)
            if find_open_schedule(schedules, annual_price) is not None:
                return ActionResult.fail(
                    "Your annual upgrade is already scheduled.",
                    ErrorCode.UPGRADE_ALREADY_SCHEDULED,
                )

            current = self.ledger.retrieve_subscription(user.stripe_subscription_id)
        except RemoteLedgerError:
            logger.exception("Annual upgrade pre-checks failed for user %s", user.pk)
            return ActionResult.fail(
                "Failed to schedule upgrade. Please try again.",
                ErrorCode.REMOTE_ERROR,
            )

        if current.status not in LIVE_SUBSCRIPTION_STATUSES:
            return ActionResult.fail(
                "Your subscription is not active.",
                ErrorCode.SUBSCRIPTION_INACTIVE,
            )

        period_end = current.period_end
        if period_end is not None and period_end != user.subscription_period_end:
            user.subscription_period_end = period_end
            user.save(update_fields=["subscription_period_end"])
        if period_end is None:
            cached = user.subscription_period_end
            if cached is not None and cached > now:
                period_end = cached
        if period_end is None:
            logger.warning(
                "No period end for subscription %s (user %s)",
                current.id,
                user.pk,
            )
            return ActionResult.fail(
                "We couldn't determine when your current billing period ends. "
                "Please contact support.",
                ErrorCode.MISSING_PERIOD_END,
            )

        try:
            self.ledger.update_subscription(current.id, cancel_at_period_end=True)
        except RemoteLedgerError:
            logger.exception("Failed to flag subscription %s for cancel", current.id)
            return ActionResult.fail(
                "Failed to schedule upgrade. Please try again.",
                ErrorCode.REMOTE_ERROR,
            )

        metadata = {"userId": str(user.pk), "plan": "annual"}
        try:
            schedule = self.ledger.create_schedule(
                customer_id=user.stripe_customer_id,
                price_id=annual_price,
                start_date=period_end,
                metadata=metadata,
                idempotency_key=(
                    f"annual-upgrade:{current.id}:{to_timestamp(period_end)}"
                ),
            )
        except RemoteLedgerError:
            logger.exception(
                "Failed to create annual schedule for user %s; reverting cancel flag",
                user.pk,
            )
            self._revert_cancel_flag(current.id)
            return ActionResult.fail(
                "Failed to schedule upgrade. Please try again.",
                ErrorCode.REMOTE_ERROR,
            )

        savings = annual_savings_cents()
        logger.info(
            "Scheduled annual upgrade for user %s starting %s (schedule %s)",
            user.pk,
            period_end.isoformat(),
            schedule.id,
        )
        notify(
            "upgrade_scheduled",
            to=user.email,
            start_date=period_end.date().isoformat(),
            savings_cents=savings,
        )
        track(
            "billing_subscription_upgraded",
            user.pk,
            from_plan="monthly",
            to_plan="annual",
            scheduled_start=period_end.isoformat(),
        )
        return ActionResult.ok(
            scheduledStart=period_end.isoformat(),
            savingsCents=savings,
            scheduleId=schedule.id,
        )

    def cancel(self, user: User) -> ActionResult:
        limited = enforce_rate_limit(RateLimitedAction.CANCEL_SCHEDULED_UPGRADE, user.pk)
        if limited:
            return limited

        if not user.stripe_customer_id:
            return ActionResult.fail(
                "No billing account found",
                ErrorCode.NO_BILLING_ACCOUNT,
            )

        annual_price = settings.STRIPE_PRICE_ANNUAL
        try:
            schedules = self.ledger.list_schedules(user.stripe_customer_id, limit=3)
            schedule = find_open_schedule(schedules, annual_price)
            if schedule is None:
                return ActionResult.fail(
                    "No scheduled upgrade found",
                    ErrorCode.NO_SCHEDULED_UPGRADE,
                )

            self.ledger.cancel_schedule(schedule.id)
            if user.stripe_subscription_id:
                self.ledger.update_subscription(
                    user.stripe_subscription_id,
                    cancel_at_period_end=False,
                )
        except RemoteLedgerError:
            logger.exception("Failed to cancel scheduled upgrade for user %s", user.pk)
            return ActionResult.fail(
                "Failed to cancel upgrade. Please try again.",
                ErrorCode.REMOTE_ERROR,
            )

        logger.info("Cancelled scheduled annual upgrade %s for user %s", schedule.id, user.pk)
        track("billing_upgrade_cancelled", user.pk, schedule_id=schedule.id)
        return ActionResult.ok()

    def _has_annual_subscription(self, customer_id: str, annual_price: str) -> bool:
        existing = self.ledger.list_subscriptions(customer_id, price_id=annual_price)
        return any(
            sub.status in BLOCKING_ANNUAL_STATUSES or sub.cancel_at_period_end
            for sub in existing
        )

    def _revert_cancel_flag(self, subscription_id: str) -> None:
        try:
            self.ledger.update_subscription(subscription_id, cancel_at_period_end=False)
        except RemoteLedgerError:
            logger.exception(
                "Subscription %s left flagged to cancel with no annual successor",
                subscription_id,
            )
