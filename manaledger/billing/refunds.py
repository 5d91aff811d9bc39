"""
Refunds: usage-prorated self-service refunds, reviewed requests, boosters.

Self-service (charge younger than BILLING_REFUND_WINDOW_DAYS):
1. Verify the charge is the caller's, unrefunded and inside the window.
2. Subtract the usage cost of consumed core mana from the charge amount.
   Nothing is sent to Stripe when the result is zero.
3. Issue a partial refund for exactly that amount.
4. Record an APPROVED RefundRequest with the usage breakdown in its reason.
5. Cancel the subscription, resolving it through the charge's invoice and
   through the stored subscription id. Failures here are logged only: the
   refund has already been issued and must not be rolled back.
6. Revoke paid access locally (booster mana is kept).

Review (any age): validate ownership and that no request is pending for the
charge, then record a PENDING RefundRequest and notify the billing admin.
No money moves until staff approve it.

Boosters: one-time charges (no invoice). The refundable share is
min(1, booster_balance / mana_from_charge), applied to both the money and
the mana removed. Booster balance is pooled, not tracked per purchase.

Money moves before access is revoked, so an interruption leaves a refunded
user with access (logged) rather than a revoked user without their money.
"""

from __future__ import annotations

import logging
from datetime import datetime
from datetime import timedelta
from fractions import Fraction
from math import floor
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import DatabaseError
from django.db import transaction
from django.utils import timezone

from manaledger.billing.constants import DEFAULT_CHARGE_DESCRIPTION
from manaledger.billing.constants import MIN_DENIAL_NOTES_LENGTH
from manaledger.billing.constants import MIN_REFUND_REASON_LENGTH
from manaledger.billing.constants import RateLimitedAction
from manaledger.billing.constants import RefundStatus
from manaledger.billing.entitlements import deduct_booster_mana
from manaledger.billing.entitlements import downgrade_to_unpaid
from manaledger.billing.entitlements import reset_core_entitlement
from manaledger.billing.entitlements import revoke_paid_access
from manaledger.billing.ledger import RemoteCharge
from manaledger.billing.ledger import RemoteLedger
from manaledger.billing.models import RefundRequest
from manaledger.billing.models import Wallet
from manaledger.billing.results import ActionResult
from manaledger.billing.results import ErrorCode
from manaledger.billing.results import RemoteLedgerError
from manaledger.billing.results import enforce_rate_limit
from manaledger.billing.tasks import notify
from manaledger.billing.usage import calculate_usage_cost
from manaledger.billing.usage import mana_for_cents
from manaledger.core.analytics import track

if TYPE_CHECKING:
    from manaledger.users.models import User

logger = logging.getLogger(__name__)

SELF_SERVICE_FAILED = "Failed to process refund. Please try again or contact support."
BOOSTER_REFUND_FAILED = (
    "Failed to process booster refund. Please try again or contact support."
)


def refund_window() -> timedelta:
    return timedelta(days=settings.BILLING_REFUND_WINDOW_DAYS)


def is_within_window(charge: RemoteCharge, now: datetime) -> bool:
    return now - charge.created <= refund_window()


def booster_refund_share(
    amount_cents: int,
    booster_balance: int,
) -> tuple[int, int]:
    """
    Return (refund_cents, mana_to_deduct) for a booster charge.

    The refundable share is the fraction of the charge's mana still in the
    pooled booster balance, capped at the whole charge. Both values round
    down.
    """
    mana_from_charge = mana_for_cents(amount_cents)
    if mana_from_charge <= 0 or booster_balance <= 0:
        return 0, 0
    share = min(Fraction(1), Fraction(booster_balance, mana_from_charge))
    return floor(amount_cents * share), floor(mana_from_charge * share)


def serialize_refund_request(refund: RefundRequest) -> dict:
    return {
        "id": str(refund.id),
        "chargeId": refund.charge_id,
        "invoiceId": refund.invoice_id or None,
        "amountCents": refund.amount_cents,
        "reason": refund.reason,
        "status": refund.status,
        "stripeRefundId": refund.stripe_refund_id or None,
        "purchasedAt": refund.purchased_at.isoformat(),
        "processedAt": refund.processed_at.isoformat() if refund.processed_at else None,
        "resolvedById": refund.resolved_by_id,
        "createdAt": refund.created.isoformat(),
    }


class RefundService:
    """
    Refund flows for users and billing staff.

    Usage:
        service = RefundService()
        estimate = service.estimate(request.user)
        result = service.self_service_refund(request.user, charge_id, reason)
    """

    def __init__(self, ledger: RemoteLedger | None = None):
        self.ledger = ledger or RemoteLedger()

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def estimate(self, user: User) -> ActionResult:
        """Usage breakdown shown before the user commits to a refund."""
        wallet = Wallet.objects.filter(user=user).first()
        return ActionResult.ok(**calculate_usage_cost(wallet).as_dict())

    def refundable_charges(self, user: User, *, now: datetime | None = None) -> ActionResult:
        now = now or timezone.now()
        if not user.stripe_customer_id:
            return ActionResult.ok(charges=[])

        try:
            charges = self.ledger.list_charges(user.stripe_customer_id, limit=10)
        except RemoteLedgerError:
            logger.exception("Failed to fetch charges for user %s", user.pk)
            return ActionResult.fail(
                "Failed to load payment history",
                ErrorCode.REMOTE_ERROR,
                charges=[],
            )

        pending_charge_ids = set(
            RefundRequest.objects.filter(
                user=user,
                status=RefundStatus.PENDING,
            ).values_list("charge_id", flat=True),
        )
        return ActionResult.ok(
            charges=[
                {
                    "id": charge.payment_intent_id or charge.id,
                    "chargeId": charge.id,
                    "invoiceId": charge.invoice_id,
                    "amountCents": charge.amount_cents,
                    "description": charge.description or DEFAULT_CHARGE_DESCRIPTION,
                    "createdAt": charge.created.isoformat(),
                    "isWithinWindow": is_within_window(charge, now),
                    "hasPendingRequest": charge.id in pending_charge_ids,
                }
                for charge in charges
                if not charge.refunded and charge.amount_cents > 0
            ],
        )

    def history(self, user: User, *, limit: int = 10) -> list[dict]:
        requests = RefundRequest.objects.filter(user=user).order_by("-created")[:limit]
        return [serialize_refund_request(r) for r in requests]

    def refundable_boosters(self, user: User) -> ActionResult:
        if not user.stripe_customer_id:
            return ActionResult.ok(boosters=[])

        wallet = Wallet.objects.filter(user=user).first()
        booster_balance = wallet.booster_balance if wallet else 0

        try:
            charges = self.ledger.list_charges(user.stripe_customer_id, limit=20)
        except RemoteLedgerError:
            logger.exception("Failed to fetch booster purchases for user %s", user.pk)
            return ActionResult.fail(
                "Failed to load booster purchases",
                ErrorCode.REMOTE_ERROR,
                boosters=[],
            )

        boosters = []
        for charge in charges:
            if not self._is_booster_charge(charge):
                continue
            refund_cents, mana_remaining = booster_refund_share(
                charge.amount_cents,
                booster_balance,
            )
            boosters.append(
                {
                    "chargeId": charge.id,
                    "amountCents": charge.amount_cents,
                    "manaGranted": mana_for_cents(charge.amount_cents),
                    "manaRemaining": mana_remaining,
                    "refundableAmountCents": refund_cents,
                    "purchasedAt": charge.created.isoformat(),
                },
            )
        return ActionResult.ok(boosters=boosters)

    # ------------------------------------------------------------------
    # Self-service
    # ------------------------------------------------------------------

    def self_service_refund(
        self,
        user: User,
        charge_id: str,
        reason: str,
        *,
        now: datetime | None = None,
    ) -> ActionResult:
        limited = enforce_rate_limit(
            RateLimitedAction.SELF_SERVICE_REFUND,
            user.pk,
            "You can only request one self-service refund per day. "
            "Please try again tomorrow.",
        )
        if limited:
            return limited

        if not charge_id or not reason:
            return ActionResult.fail("Missing required fields", ErrorCode.INVALID_INPUT)
        if not user.stripe_customer_id:
            return ActionResult.fail(
                "No billing account found",
                ErrorCode.NO_BILLING_ACCOUNT,
            )

        try:
            return self._execute_self_service_refund(
                user,
                charge_id,
                reason,
                now=now or timezone.now(),
            )
        except Exception:
            logger.exception(
                "Self-service refund failed for user %s charge %s",
                user.pk,
                charge_id,
            )
            return ActionResult.fail(SELF_SERVICE_FAILED, ErrorCode.REMOTE_ERROR)

    def _execute_self_service_refund(
        self,
        user: User,
        charge_id: str,
        reason: str,
        *,
        now: datetime,
    ) -> ActionResult:
        charge, rejection = self._load_refundable_charge(user, charge_id)
        if rejection:
            return rejection

        if not is_within_window(charge, now):
            return ActionResult.fail(
                "Self-service refund window has expired. Please submit a refund request.",
                ErrorCode.WINDOW_EXPIRED,
            )

        wallet = Wallet.objects.filter(user=user).first()
        usage = calculate_usage_cost(wallet)
        refund_cents = max(0, charge.amount_cents - usage.usage_cost_cents)
        if refund_cents <= 0:
            return ActionResult.fail(
                f"Your mana usage ({usage.mana_used:,} of {usage.mana_granted:,} mana) "
                "exceeds the charge amount. No refund available.",
                ErrorCode.USAGE_EXCEEDS_CHARGE,
                usageCostCents=usage.usage_cost_cents,
            )

        refund_id = self.ledger.create_refund(
            charge_id=charge.id,
            amount_cents=refund_cents,
            metadata={"userId": str(user.pk), "type": "self_service"},
            idempotency_key=f"self-service-refund:{charge.id}",
        )
        logger.info(
            "Self-service refund %s for user %s: charge=%sc usage=%sc refund=%sc",
            refund_id,
            user.pk,
            charge.amount_cents,
            usage.usage_cost_cents,
            refund_cents,
        )

        RefundRequest.objects.create(
            user=user,
            charge_id=charge.id,
            invoice_id=charge.invoice_id or "",
            amount_cents=refund_cents,
            reason=(
                f"{reason} [Usage: {usage.mana_used:,} mana = "
                f"${usage.usage_cost_cents / 100:.2f}]"
            ),
            status=RefundStatus.APPROVED,
            stripe_refund_id=refund_id,
            purchased_at=charge.created,
            processed_at=now,
        )

        self._cancel_refunded_subscription(user, charge)
        revoke_paid_access(user)

        notify(
            "refund_processed",
            to=user.email,
            refund_cents=refund_cents,
            usage_cost_cents=usage.usage_cost_cents,
            mana_used=usage.mana_used,
        )
        track(
            "billing_self_service_refund",
            user.pk,
            refund_amount_cents=refund_cents,
            original_amount_cents=charge.amount_cents,
            usage_cost_cents=usage.usage_cost_cents,
            mana_used=usage.mana_used,
        )
        return ActionResult.ok(
            refundedAmountCents=refund_cents,
            usageCostCents=usage.usage_cost_cents,
            manaUsed=usage.mana_used,
        )

    # ------------------------------------------------------------------
    # Review path
    # ------------------------------------------------------------------

    def request_refund(self, user: User, charge_id: str, reason: str) -> ActionResult:
        limited = enforce_rate_limit(
            RateLimitedAction.REQUEST_REFUND,
            user.pk,
            "Too many refund requests. Please wait before submitting another.",
        )
        if limited:
            return limited

        if not charge_id or not reason:
            return ActionResult.fail("Missing required fields", ErrorCode.INVALID_INPUT)
        if len(reason.strip()) < MIN_REFUND_REASON_LENGTH:
            return ActionResult.fail(
                "Please provide a more detailed reason for your refund request",
                ErrorCode.INVALID_INPUT,
            )
        if not user.stripe_customer_id:
            return ActionResult.fail(
                "No billing account found",
                ErrorCode.NO_BILLING_ACCOUNT,
            )

        try:
            charge, rejection = self._load_refundable_charge(user, charge_id)
        except RemoteLedgerError:
            logger.exception("Failed to load charge %s for refund request", charge_id)
            return ActionResult.fail(
                "Failed to submit refund request. Please try again.",
                ErrorCode.REMOTE_ERROR,
            )
        if rejection:
            return rejection

        with transaction.atomic():
            already_pending = (
                RefundRequest.objects.select_for_update()
                .filter(charge_id=charge.id, status=RefundStatus.PENDING)
                .exists()
            )
            if already_pending:
                return ActionResult.fail(
                    "A refund request for this charge is already pending",
                    ErrorCode.DUPLICATE_REQUEST,
                )
            refund_request = RefundRequest.objects.create(
                user=user,
                charge_id=charge.id,
                invoice_id=charge.invoice_id or "",
                amount_cents=charge.amount_cents,
                reason=reason,
                status=RefundStatus.PENDING,
                purchased_at=charge.created,
            )

        notify(
            "refund_request_admin",
            user_email=user.email or "Unknown",
            charge_id=charge.id,
            amount_cents=charge.amount_cents,
            reason=reason,
        )
        track(
            "billing_refund_requested",
            user.pk,
            amount_cents=charge.amount_cents,
            charge_id=charge.id,
        )
        return ActionResult.ok(requestId=str(refund_request.id))

    # ------------------------------------------------------------------
    # Boosters
    # ------------------------------------------------------------------

    def booster_refund(self, user: User, charge_id: str, reason: str) -> ActionResult:
        limited = enforce_rate_limit(
            RateLimitedAction.BOOSTER_REFUND,
            user.pk,
            "You can only request one booster refund per day. Please try again tomorrow.",
        )
        if limited:
            return limited

        if not charge_id or not reason:
            return ActionResult.fail("Missing required fields", ErrorCode.INVALID_INPUT)
        if not user.stripe_customer_id:
            return ActionResult.fail(
                "No billing account found",
                ErrorCode.NO_BILLING_ACCOUNT,
            )

        wallet = Wallet.objects.filter(user=user).first()
        if wallet is None:
            return ActionResult.fail("No wallet found", ErrorCode.NO_WALLET)
        if wallet.booster_balance <= 0:
            return ActionResult.fail(
                "No booster balance to refund. All purchased mana has been used.",
                ErrorCode.NO_BOOSTER_BALANCE,
            )

        try:
            return self._execute_booster_refund(user, wallet, charge_id, reason)
        except Exception:
            logger.exception(
                "Booster refund failed for user %s charge %s",
                user.pk,
                charge_id,
            )
            return ActionResult.fail(BOOSTER_REFUND_FAILED, ErrorCode.REMOTE_ERROR)

    def _execute_booster_refund(
        self,
        user: User,
        wallet: Wallet,
        charge_id: str,
        reason: str,
    ) -> ActionResult:
        charge, rejection = self._load_refundable_charge(user, charge_id)
        if rejection:
            return rejection
        if not charge.is_one_time:
            return ActionResult.fail(
                "This is a subscription charge. "
                "Use the subscription refund flow instead.",
                ErrorCode.SUBSCRIPTION_CHARGE,
            )

        refund_cents, mana_to_deduct = booster_refund_share(
            charge.amount_cents,
            wallet.booster_balance,
        )
        if refund_cents <= 0:
            return ActionResult.fail(
                "No refundable amount. All booster mana from this purchase has been used.",
                ErrorCode.NO_BOOSTER_BALANCE,
            )

        refund_id = self.ledger.create_refund(
            charge_id=charge.id,
            amount_cents=refund_cents,
            metadata={"userId": str(user.pk), "type": "booster"},
            idempotency_key=f"booster-refund:{charge.id}:{refund_cents}",
        )
        logger.info(
            "Booster refund %s for user %s: charge=%sc refund=%sc mana_deducted=%s",
            refund_id,
            user.pk,
            charge.amount_cents,
            refund_cents,
            mana_to_deduct,
        )

        RefundRequest.objects.create(
            user=user,
            charge_id=charge.id,
            amount_cents=refund_cents,
            reason=f"[Booster] {reason}",
            status=RefundStatus.APPROVED,
            stripe_refund_id=refund_id,
            purchased_at=charge.created,
            processed_at=timezone.now(),
        )
        deduct_booster_mana(user, mana_to_deduct)

        notify(
            "booster_refund",
            to=user.email,
            refund_cents=refund_cents,
            mana_deducted=mana_to_deduct,
        )
        track(
            "billing_booster_refund",
            user.pk,
            refund_amount_cents=refund_cents,
            original_amount_cents=charge.amount_cents,
            mana_deducted=mana_to_deduct,
        )
        return ActionResult.ok(
            refundedAmountCents=refund_cents,
            manaDeducted=mana_to_deduct,
        )

    # ------------------------------------------------------------------
    # Staff resolution
    # ------------------------------------------------------------------

    def approve(
        self,
        refund_request: RefundRequest,
        *,
        notes: str = "",
        resolved_by: User | None = None,
    ) -> ActionResult:
        """
        Approve a pending request with a full refund of the charge.

        A charge that was already refunded (e.g. from the Stripe dashboard)
        is approved without a second refund call.
        """
        if refund_request.status != RefundStatus.PENDING:
            return ActionResult.fail(
                "This request has already been processed",
                ErrorCode.DUPLICATE_REQUEST,
            )

        user = refund_request.user
        try:
            charge = self.ledger.retrieve_charge(refund_request.charge_id)
            if charge.refunded:
                self._mark_processed(
                    refund_request,
                    RefundStatus.APPROVED,
                    notes or "Charge was already refunded in Stripe.",
                    resolved_by,
                )
                return ActionResult.ok(alreadyRefunded=True)

            refund_id = self.ledger.create_refund(
                charge_id=charge.id,
                amount_cents=charge.amount_cents,
                metadata={
                    "userId": str(user.pk),
                    "refundRequestId": str(refund_request.id),
                },
                idempotency_key=f"refund-request:{refund_request.id}",
            )
        except RemoteLedgerError:
            logger.exception(
                "Failed to approve refund request %s",
                refund_request.id,
            )
            return ActionResult.fail(
                "Failed to process refund in Stripe.",
                ErrorCode.REMOTE_ERROR,
            )

        refund_request.stripe_refund_id = refund_id
        refund_request.amount_cents = charge.amount_cents
        self._mark_processed(
            refund_request,
            RefundStatus.APPROVED,
            notes,
            resolved_by,
        )

        invoice_id = refund_request.invoice_id or charge.invoice_id
        if invoice_id:
            try:
                subscription_id = self.ledger.invoice_subscription_id(invoice_id)
                if subscription_id and subscription_id == user.stripe_subscription_id:
                    self.ledger.cancel_subscription(subscription_id)
                    downgrade_to_unpaid(user)
            except RemoteLedgerError:
                logger.exception(
                    "Refund %s issued but subscription cancel failed for user %s",
                    refund_id,
                    user.pk,
                )
        try:
            reset_core_entitlement(user)
        except DatabaseError:
            logger.exception(
                "Refund %s issued but wallet reset failed for user %s",
                refund_id,
                user.pk,
            )

        notify(
            "refund_resolved",
            to=user.email,
            approved=True,
            amount_cents=charge.amount_cents,
        )
        track(
            "billing_refund_approved",
            user.pk,
            amount_cents=charge.amount_cents,
            refund_request_id=str(refund_request.id),
        )
        return ActionResult.ok(refundId=refund_id)

    def deny(
        self,
        refund_request: RefundRequest,
        *,
        notes: str,
        resolved_by: User | None = None,
    ) -> ActionResult:
        if refund_request.status != RefundStatus.PENDING:
            return ActionResult.fail(
                "This request has already been processed",
                ErrorCode.DUPLICATE_REQUEST,
            )
        if len((notes or "").strip()) < MIN_DENIAL_NOTES_LENGTH:
            return ActionResult.fail(
                "Please provide a reason for denying this request.",
                ErrorCode.INVALID_INPUT,
            )

        self._mark_processed(refund_request, RefundStatus.DENIED, notes, resolved_by)
        notify(
            "refund_resolved",
            to=refund_request.user.email,
            approved=False,
            amount_cents=refund_request.amount_cents,
            notes=notes,
        )
        track(
            "billing_refund_denied",
            refund_request.user_id,
            refund_request_id=str(refund_request.id),
        )
        return ActionResult.ok()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_refundable_charge(
        self,
        user: User,
        charge_id: str,
    ) -> tuple[RemoteCharge | None, ActionResult | None]:
        """Fetch a charge and check it is the user's and still refundable."""
        charge = self.ledger.retrieve_charge(charge_id)
        if charge.customer_id != user.stripe_customer_id:
            return None, ActionResult.fail("Charge not found", ErrorCode.NOT_FOUND)
        if charge.refunded:
            return None, ActionResult.fail(
                "This charge has already been refunded",
                ErrorCode.ALREADY_REFUNDED,
            )
        return charge, None

    @staticmethod
    def _is_booster_charge(charge: RemoteCharge) -> bool:
        if not charge.is_one_time or charge.refunded or charge.amount_cents <= 0:
            return False
        description = (charge.description or "").lower()
        return "booster" in description or bool(charge.metadata.get("boosterAmount"))

    def _cancel_refunded_subscription(self, user: User, charge: RemoteCharge) -> None:
        """
        Cancel the subscription behind a refunded charge, best effort.

        Tries the subscription the charge's invoice billed, then the one
        stored on the user if it differs or the first attempt failed.
        """
        cancelled = set()
        if charge.invoice_id:
            try:
                invoice_subscription = self.ledger.invoice_subscription_id(
                    charge.invoice_id,
                )
            except RemoteLedgerError:
                logger.warning(
                    "Could not resolve subscription from invoice %s",
                    charge.invoice_id,
                    exc_info=True,
                )
                invoice_subscription = None
            if invoice_subscription and self._cancel_quietly(invoice_subscription):
                cancelled.add(invoice_subscription)

        stored = user.stripe_subscription_id
        if stored and stored not in cancelled:
            self._cancel_quietly(stored)

    def _cancel_quietly(self, subscription_id: str) -> bool:
        try:
            self.ledger.cancel_subscription(subscription_id)
        except RemoteLedgerError:
            logger.warning(
                "Immediate cancel of %s failed; flagging cancel at period end",
                subscription_id,
                exc_info=True,
            )
        else:
            logger.info("Cancelled subscription %s after refund", subscription_id)
            return True

        try:
            self.ledger.update_subscription(subscription_id, cancel_at_period_end=True)
        except RemoteLedgerError:
            logger.warning(
                "Could not flag subscription %s for cancellation",
                subscription_id,
                exc_info=True,
            )
        return False

    @staticmethod
    def _mark_processed(
        refund_request: RefundRequest,
        status: str,
        notes: str,
        resolved_by: User | None = None,
    ) -> None:
        refund_request.status = status
        refund_request.admin_notes = notes or ""
        refund_request.resolved_by = resolved_by
        refund_request.processed_at = timezone.now()
        refund_request.save(
            update_fields=[
                "status",
                "admin_notes",
                "processed_at",
                "resolved_by",
                "stripe_refund_id",
                "amount_cents",
                "modified",
            ],
        )
