"""
Typed wrapper around the Stripe objects the billing engine reads and writes.

Stripe returns loosely-shaped dicts whose layout has shifted between API
versions (period dates moved from the subscription root onto its items,
invoice.subscription moved under invoice.parent). This module is the one
place that knows about those shapes. Everything above it works with the
dataclasses defined here.

All SDK failures surface as RemoteLedgerError, chained to the original
stripe.StripeError.

Usage:
    ledger = RemoteLedger()
    subscription = ledger.retrieve_subscription("sub_123")
    if subscription.period_end:
        ...
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import UTC
from datetime import datetime
from typing import Any

import stripe
from django.conf import settings

from manaledger.billing.constants import OPEN_SCHEDULE_STATUSES
from manaledger.billing.results import RemoteLedgerError

logger = logging.getLogger(__name__)


def from_timestamp(value: Any) -> datetime | None:
    """Convert a Stripe unix timestamp to an aware datetime."""
    if value in (None, "", 0):
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def to_timestamp(value: datetime) -> int:
    return int(value.timestamp())


def _request_options(idempotency_key: str | None) -> dict:
    return {"idempotency_key": idempotency_key} if idempotency_key else {}


def _object_id(value: Any) -> str | None:
    """Stripe fields may hold an id string or an expanded object."""
    if not value:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


@dataclass(frozen=True)
class RemoteSubscription:
    id: str
    status: str
    customer_id: str | None = None
    price_id: str | None = None
    cancel_at_period_end: bool = False
    cancel_at: datetime | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_stripe(cls, obj) -> RemoteSubscription:
        items = (obj.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        price = first_item.get("price") or {}
        # Newer API versions carry the period on the item, older on the root.
        period_start = first_item.get("current_period_start") or obj.get(
            "current_period_start",
        )
        period_end = first_item.get("current_period_end") or obj.get(
            "current_period_end",
        )
        return cls(
            id=obj["id"],
            status=obj.get("status") or "",
            customer_id=_object_id(obj.get("customer")),
            price_id=price.get("id"),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            cancel_at=from_timestamp(obj.get("cancel_at")),
            period_start=from_timestamp(period_start),
            period_end=from_timestamp(period_end),
            metadata=dict(obj.get("metadata") or {}),
        )


@dataclass(frozen=True)
class SchedulePhase:
    start_date: datetime | None
    end_date: datetime | None
    price_ids: tuple[str, ...] = ()

    def contains(self, moment: datetime) -> bool:
        if self.start_date is None or self.end_date is None:
            return False
        return self.start_date <= moment <= self.end_date


@dataclass(frozen=True)
class SubscriptionSchedule:
    id: str
    status: str
    subscription_id: str | None = None
    phases: tuple[SchedulePhase, ...] = ()
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_stripe(cls, obj) -> SubscriptionSchedule:
        phases = []
        for phase in obj.get("phases") or []:
            prices = (_object_id(item.get("price")) for item in phase.get("items") or [])
            price_ids = tuple(pid for pid in prices if pid)
            phases.append(
                SchedulePhase(
                    start_date=from_timestamp(phase.get("start_date")),
                    end_date=from_timestamp(phase.get("end_date")),
                    price_ids=price_ids,
                ),
            )
        return cls(
            id=obj["id"],
            status=obj.get("status") or "",
            subscription_id=_object_id(
                obj.get("subscription") or obj.get("released_subscription"),
            ),
            phases=tuple(phases),
            metadata=dict(obj.get("metadata") or {}),
        )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_SCHEDULE_STATUSES

    def phase_for_price(self, price_id: str) -> SchedulePhase | None:
        for phase in self.phases:
            if price_id in phase.price_ids:
                return phase
        return None


def find_open_schedule(
    schedules: list[SubscriptionSchedule],
    price_id: str,
) -> SubscriptionSchedule | None:
    """Return the first not-yet-finished schedule with a phase on ``price_id``."""
    return next(
        (s for s in schedules if s.is_open and s.phase_for_price(price_id) is not None),
        None,
    )


@dataclass(frozen=True)
class RemoteCharge:
    id: str
    amount_cents: int
    created: datetime
    customer_id: str | None = None
    refunded: bool = False
    amount_refunded_cents: int = 0
    invoice_id: str | None = None
    payment_intent_id: str | None = None
    description: str | None = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_stripe(cls, obj) -> RemoteCharge:
        # A partial refund leaves "refunded" false; any refund at all counts here.
        amount_refunded = int(obj.get("amount_refunded") or 0)
        return cls(
            id=obj["id"],
            amount_cents=int(obj.get("amount") or 0),
            created=from_timestamp(obj.get("created")),
            customer_id=_object_id(obj.get("customer")),
            refunded=bool(obj.get("refunded")) or amount_refunded > 0,
            amount_refunded_cents=amount_refunded,
            invoice_id=_object_id(obj.get("invoice")),
            payment_intent_id=_object_id(obj.get("payment_intent")),
            description=obj.get("description"),
            metadata=dict(obj.get("metadata") or {}),
        )

    @property
    def is_one_time(self) -> bool:
        return self.invoice_id is None


class RemoteLedger:
    """
    Stripe client used by every billing component.

    Methods map one-to-one onto Stripe API calls. None of them retry; the
    caller decides whether a failure is fatal or best-effort.
    """

    def __init__(self):
        """Initialize with Stripe API key."""
        stripe.api_key = settings.STRIPE_SECRET_KEY

    # ------------------------------------------------------------------
    # Customers and hosted pages
    # ------------------------------------------------------------------

    def create_customer(self, *, email: str, name: str, user_id) -> str:
        try:
            customer = stripe.Customer.create(
                email=email,
                name=name or None,
                metadata={"userId": str(user_id)},
            )
        except stripe.StripeError as e:
            logger.exception("Failed to create Stripe customer for user %s", user_id)
            raise RemoteLedgerError(f"Failed to create customer: {e}") from e
        return customer["id"]

    def create_checkout_session(
        self,
        *,
        mode: str,
        price_id: str,
        customer_id: str,
        success_url: str,
        cancel_url: str,
        metadata: dict,
    ) -> str:
        params = {
            "mode": mode,
            "customer": customer_id,
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        if mode == "subscription":
            params["subscription_data"] = {"metadata": metadata}
        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            logger.exception("Failed to create %s checkout session", mode)
            raise RemoteLedgerError(f"Failed to create checkout session: {e}") from e
        return session["url"]

    def create_portal_session(self, *, customer_id: str, return_url: str) -> str:
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as e:
            logger.exception("Failed to create portal session for %s", customer_id)
            raise RemoteLedgerError(f"Failed to create portal session: {e}") from e
        return session["url"]

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def retrieve_subscription(self, subscription_id: str) -> RemoteSubscription:
        try:
            obj = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            raise RemoteLedgerError(f"Failed to retrieve subscription: {e}") from e
        return RemoteSubscription.from_stripe(obj)

    def list_subscriptions(
        self,
        customer_id: str,
        *,
        price_id: str | None = None,
        limit: int = 10,
    ) -> list[RemoteSubscription]:
        params = {"customer": customer_id, "status": "all", "limit": limit}
        if price_id:
            params["price"] = price_id
        try:
            page = stripe.Subscription.list(**params)
        except stripe.StripeError as e:
            raise RemoteLedgerError(f"Failed to list subscriptions: {e}") from e
        return [RemoteSubscription.from_stripe(obj) for obj in page.get("data") or []]

    def update_subscription(self, subscription_id: str, **fields) -> RemoteSubscription:
        try:
            obj = stripe.Subscription.modify(subscription_id, **fields)
        except stripe.StripeError as e:
            raise RemoteLedgerError(f"Failed to update subscription: {e}") from e
        return RemoteSubscription.from_stripe(obj)

    def cancel_subscription(self, subscription_id: str) -> None:
        """Cancel immediately. Distinct from flagging cancel_at_period_end."""
        try:
            stripe.Subscription.cancel(subscription_id)
        except stripe.StripeError as e:
            raise RemoteLedgerError(f"Failed to cancel subscription: {e}") from e

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    def list_schedules(
        self,
        customer_id: str,
        *,
        limit: int = 10,
    ) -> list[SubscriptionSchedule]:
        try:
            page = stripe.SubscriptionSchedule.list(customer=customer_id, limit=limit)
        except stripe.StripeError as e:
            raise RemoteLedgerError(f"Failed to list schedules: {e}") from e
        return [SubscriptionSchedule.from_stripe(obj) for obj in page.get("data") or []]

    def create_schedule(
        self,
        *,
        customer_id: str,
        price_id: str,
        start_date: datetime,
        metadata: dict,
        idempotency_key: str | None = None,
    ) -> SubscriptionSchedule:
        try:
            obj = stripe.SubscriptionSchedule.create(
                customer=customer_id,
                start_date=to_timestamp(start_date),
                end_behavior="release",
                phases=[
                    {
                        "items": [{"price": price_id, "quantity": 1}],
                        "proration_behavior": "none",
                        "metadata": metadata,
                    },
                ],
                metadata=metadata,
                **_request_options(idempotency_key),
            )
        except stripe.StripeError as e:
            raise RemoteLedgerError(f"Failed to create schedule: {e}") from e
        return SubscriptionSchedule.from_stripe(obj)

    def cancel_schedule(self, schedule_id: str) -> None:
        try:
            stripe.SubscriptionSchedule.cancel(schedule_id)
        except stripe.StripeError as e:
            raise RemoteLedgerError(f"Failed to cancel schedule: {e}") from e

    # ------------------------------------------------------------------
    # Charges, invoices, refunds
    # ------------------------------------------------------------------

    def retrieve_charge(self, charge_id: str) -> RemoteCharge:
        try:
            obj = stripe.Charge.retrieve(charge_id)
        except stripe.StripeError as e:
            raise RemoteLedgerError(f"Failed to retrieve charge: {e}") from e
        return RemoteCharge.from_stripe(obj)

    def list_charges(self, customer_id: str, *, limit: int = 10) -> list[RemoteCharge]:
        try:
            page = stripe.Charge.list(customer=customer_id, limit=limit)
        except stripe.StripeError as e:
            raise RemoteLedgerError(f"Failed to list charges: {e}") from e
        return [RemoteCharge.from_stripe(obj) for obj in page.get("data") or []]

    def invoice_subscription_id(self, invoice_id: str) -> str | None:
        """Return the subscription an invoice billed, if any."""
        try:
            invoice = stripe.Invoice.retrieve(invoice_id)
        except stripe.StripeError as e:
            raise RemoteLedgerError(f"Failed to retrieve invoice: {e}") from e
        subscription = invoice.get("subscription")
        if not subscription:
            parent = invoice.get("parent") or {}
            subscription = (parent.get("subscription_details") or {}).get("subscription")
        return _object_id(subscription)

    def create_refund(
        self,
        *,
        charge_id: str,
        amount_cents: int,
        reason: str = "requested_by_customer",
        metadata: dict | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        try:
            refund = stripe.Refund.create(
                charge=charge_id,
                amount=amount_cents,
                reason=reason,
                metadata=metadata or {},
                **_request_options(idempotency_key),
            )
        except stripe.StripeError as e:
            raise RemoteLedgerError(f"Failed to create refund: {e}") from e
        return refund["id"]
