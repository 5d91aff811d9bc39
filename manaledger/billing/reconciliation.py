"""
Subscription reconciliation between the local user record and Stripe.

Stripe is the source of truth; the plan fields on the user row are a cache
that can lag behind it (a webhook that never arrived, a write made moments
ago that Stripe has not reflected yet). The reconciler merges both into a
single SubscriptionView and repairs the cached period end as a side effect
of every read, so no separate sync job is needed.

Resolution order:
1. Fetch the subscription by the stored id.
2. If that yields nothing usable and we know the customer, list the
   customer's subscriptions: the first live one with a period end wins,
   otherwise the one ending last.
3. Look for an open schedule whose phases carry the annual price; it
   fills in the scheduled annual start/end and, while one of its phases is
   in progress, the current period.
4. The local plan id decides the plan variant when it names one, even if
   Stripe's price disagrees.

Stripe being unreachable or returning nothing degrades to "no active
subscription" rather than an error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from django.conf import settings
from django.utils import timezone

from manaledger.billing.constants import LIVE_SUBSCRIPTION_STATUSES
from manaledger.billing.constants import PlanId
from manaledger.billing.constants import PlanVariant
from manaledger.billing.ledger import RemoteLedger
from manaledger.billing.ledger import RemoteSubscription
from manaledger.billing.ledger import SchedulePhase
from manaledger.billing.ledger import find_open_schedule
from manaledger.billing.models import Progression
from manaledger.billing.results import RemoteLedgerError

if TYPE_CHECKING:
    from manaledger.users.models import User

logger = logging.getLogger(__name__)


def format_usd(cents: int) -> str:
    dollars, remainder = divmod(cents, 100)
    if remainder:
        return f"${dollars}.{remainder:02d}"
    return f"${dollars}"


def plan_label(variant: str | None) -> str | None:
    if variant == PlanVariant.ANNUAL:
        return f"{format_usd(settings.BILLING_ANNUAL_PRICE_CENTS)}/yr (Annual Pact)"
    if variant == PlanVariant.MONTHLY:
        return f"{format_usd(settings.BILLING_MONTHLY_PRICE_CENTS)}/mo (Monthly Pact)"
    return None


def local_plan_variant(plan_id: str | None) -> str | None:
    """Cadence implied by the stored plan id. The bare paid id is monthly."""
    if plan_id == PlanId.SORCERER_ANNUAL:
        return PlanVariant.ANNUAL
    if plan_id in (PlanId.SORCERER_MONTHLY, PlanId.SORCERER):
        return PlanVariant.MONTHLY
    return None


def price_plan_variant(price_id: str | None) -> str | None:
    if not price_id:
        return None
    if price_id == settings.STRIPE_PRICE_ANNUAL:
        return PlanVariant.ANNUAL
    if price_id == settings.STRIPE_PRICE_MONTHLY:
        return PlanVariant.MONTHLY
    return None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class SubscriptionView:
    """Canonical subscription state presented to the user."""

    is_active: bool
    plan_variant: str | None
    plan_label: str | None
    period_start: datetime | None
    period_end: datetime | None
    renewal_date: datetime | None
    scheduled_cancellation: datetime | None
    scheduled_annual_start: datetime | None = None
    scheduled_annual_end: datetime | None = None
    cancel_at_period_end: bool = False
    status: str | None = None

    @property
    def has_scheduled_annual_upgrade(self) -> bool:
        return self.scheduled_annual_start is not None

    def as_dict(self) -> dict:
        return {
            "isActive": self.is_active,
            "planVariant": self.plan_variant,
            "planLabel": self.plan_label,
            "periodStart": _iso(self.period_start),
            "periodEnd": _iso(self.period_end),
            "renewalDate": _iso(self.renewal_date),
            "scheduledCancellation": _iso(self.scheduled_cancellation),
            "scheduledAnnualStart": _iso(self.scheduled_annual_start),
            "scheduledAnnualEnd": _iso(self.scheduled_annual_end),
            "cancelAtPeriodEnd": self.cancel_at_period_end,
            "status": self.status,
        }


class SubscriptionReconciler:
    """
    Build a SubscriptionView for a user, repairing the local cache.

    Usage:
        view = SubscriptionReconciler().reconcile(request.user)
        if view.is_active:
            ...
    """

    def __init__(self, ledger: RemoteLedger | None = None):
        self.ledger = ledger or RemoteLedger()

    def reconcile(self, user: User, *, now: datetime | None = None) -> SubscriptionView:
        now = now or timezone.now()

        remote = self._resolve_subscription(user)
        scheduled_phase = self._find_annual_schedule_phase(user)

        # A schedule phase that is running right now stands in for a
        # subscription period Stripe has not surfaced yet.
        current_phase = None
        if scheduled_phase is not None and scheduled_phase.contains(now):
            current_phase = scheduled_phase

        if remote is not None and remote.period_end is not None:
            self._repair_period_end(user, remote.period_end)

        variant = local_plan_variant(user.plan_id) or price_plan_variant(
            remote.price_id if remote else None,
        )

        progression = Progression.objects.filter(user=user).first()
        is_channeling = bool(progression and progression.is_channeling)
        channeling_expires_at = progression.channeling_expires_at if progression else None

        remote_live = remote is not None and remote.status in LIVE_SUBSCRIPTION_STATUSES
        is_active = bool(
            user.stripe_subscription_id
            or local_plan_variant(user.plan_id)
            or is_channeling
            or remote_live,
        )

        scheduled_start = scheduled_phase.start_date if scheduled_phase else None
        scheduled_end = scheduled_phase.end_date if scheduled_phase else None

        period_start = (
            (remote.period_start if remote else None)
            or (current_phase.start_date if current_phase else None)
            or scheduled_start
        )
        period_end = (
            (remote.period_end if remote else None)
            or (current_phase.end_date if current_phase else None)
            or scheduled_end
            or user.subscription_period_end
        )

        scheduled_cancellation = None
        if remote is not None and remote.cancel_at is not None:
            scheduled_cancellation = remote.cancel_at
        elif remote is not None and remote.cancel_at_period_end:
            scheduled_cancellation = period_end
        elif channeling_expires_at is not None:
            scheduled_cancellation = channeling_expires_at

        return SubscriptionView(
            is_active=is_active,
            plan_variant=variant,
            plan_label=plan_label(variant),
            period_start=period_start,
            period_end=period_end,
            renewal_date=period_end,
            scheduled_cancellation=scheduled_cancellation,
            scheduled_annual_start=scheduled_start,
            scheduled_annual_end=scheduled_end,
            cancel_at_period_end=bool(remote and remote.cancel_at_period_end),
            status=remote.status if remote else None,
        )

    def _resolve_subscription(self, user: User) -> RemoteSubscription | None:
        remote = None
        if user.stripe_subscription_id:
            try:
                remote = self.ledger.retrieve_subscription(user.stripe_subscription_id)
            except RemoteLedgerError:
                logger.exception(
                    "Failed to retrieve subscription %s for user %s",
                    user.stripe_subscription_id,
                    user.pk,
                )

        if user.stripe_customer_id and (remote is None or remote.period_end is None):
            try:
                candidates = self.ledger.list_subscriptions(user.stripe_customer_id)
            except RemoteLedgerError:
                logger.exception(
                    "Failed to list subscriptions for customer %s",
                    user.stripe_customer_id,
                )
                return remote
            best = self._pick_subscription(candidates)
            if best is not None:
                remote = best

        return remote

    @staticmethod
    def _pick_subscription(
        candidates: list[RemoteSubscription],
    ) -> RemoteSubscription | None:
        with_period = [sub for sub in candidates if sub.period_end is not None]
        for sub in with_period:
            if sub.status in LIVE_SUBSCRIPTION_STATUSES:
                return sub
        if not with_period:
            return None
        return max(with_period, key=lambda sub: sub.period_end)

    def _find_annual_schedule_phase(self, user: User) -> SchedulePhase | None:
        if not user.stripe_customer_id:
            return None
        try:
            schedules = self.ledger.list_schedules(user.stripe_customer_id)
        except RemoteLedgerError:
            logger.exception(
                "Failed to list schedules for customer %s",
                user.stripe_customer_id,
            )
            return None
        schedule = find_open_schedule(schedules, settings.STRIPE_PRICE_ANNUAL)
        if schedule is None:
            return None
        return schedule.phase_for_price(settings.STRIPE_PRICE_ANNUAL)

    @staticmethod
    def _repair_period_end(user: User, period_end: datetime) -> None:
        if user.subscription_period_end == period_end:
            return
        logger.info(
            "Repairing cached period end for user %s: %s -> %s",
            user.pk,
            user.subscription_period_end,
            period_end,
        )
        user.subscription_period_end = period_end
        user.save(update_fields=["subscription_period_end"])
