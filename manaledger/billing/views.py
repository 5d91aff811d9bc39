"""
Billing API endpoints.

Every endpoint is a thin APIView over one service call. Services answer with
an ActionResult; ``result_response`` turns it into a Response whose status
follows the error code:

- rate_limited → 429 (with a Retry-After header)
- not_found → 404
- not_owner → 403
- remote_error → 502
- any other failure → 400

Admin endpoints under admin/refunds/ require a staff user.
"""

from __future__ import annotations

import logging

from django.shortcuts import get_object_or_404
from drf_spectacular.utils import extend_schema
from rest_framework import status
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAdminUser
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from manaledger.billing.constants import RefundStatus
from manaledger.billing.gifts import GiftService
from manaledger.billing.models import RefundRequest
from manaledger.billing.refunds import RefundService
from manaledger.billing.refunds import serialize_refund_request
from manaledger.billing.results import ActionResult
from manaledger.billing.results import ErrorCode
from manaledger.billing.serializers import RefundDecisionSerializer
from manaledger.billing.serializers import RefundRequestSerializer
from manaledger.billing.serializers import SendGiftSerializer
from manaledger.billing.serializers import SubscribeSerializer
from manaledger.billing.services import BillingService
from manaledger.billing.upgrades import AnnualUpgradeScheduler

logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    ErrorCode.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.NOT_OWNER: status.HTTP_403_FORBIDDEN,
    ErrorCode.REMOTE_ERROR: status.HTTP_502_BAD_GATEWAY,
}


def result_response(result: ActionResult) -> Response:
    if result.success:
        return Response(result.as_dict(), status=status.HTTP_200_OK)
    response = Response(
        result.as_dict(),
        status=STATUS_BY_CODE.get(result.code, status.HTTP_400_BAD_REQUEST),
    )
    retry_after = result.data.get("retryAfterSeconds")
    if retry_after is not None:
        response["Retry-After"] = str(retry_after)
    return response


def _validated(serializer_class, request) -> dict:
    serializer = serializer_class(data=request.data)
    serializer.is_valid(raise_exception=True)
    return serializer.validated_data


class BillingAPIView(APIView):
    permission_classes = [IsAuthenticated]

    def handle_exception(self, exc):
        if isinstance(exc, ValidationError):
            return result_response(
                ActionResult.fail(
                    "Invalid request",
                    ErrorCode.INVALID_INPUT,
                    fields=exc.detail,
                ),
            )
        return super().handle_exception(exc)


# ----------------------------------------------------------------------
# Subscription
# ----------------------------------------------------------------------


class SubscriptionOverviewView(BillingAPIView):
    @extend_schema(summary="Reconciled subscription and wallet", tags=["Billing"])
    def get(self, request):
        return Response(BillingService().overview(request.user))


class SubscribeView(BillingAPIView):
    """
    Start a subscription checkout.

    Users who already pay get a Customer Portal URL instead, with
    ``portal: true``.
    """

    @extend_schema(request=SubscribeSerializer, tags=["Billing"])
    def post(self, request):
        data = _validated(SubscribeSerializer, request)
        return result_response(BillingService().subscribe(request.user, data["plan"]))


class PortalView(BillingAPIView):
    @extend_schema(request=None, tags=["Billing"])
    def post(self, request):
        return result_response(BillingService().manage(request.user))


class BoosterCheckoutView(BillingAPIView):
    @extend_schema(request=None, tags=["Billing"])
    def post(self, request):
        return result_response(BillingService().buy_booster(request.user))


class CancelSubscriptionView(BillingAPIView):
    @extend_schema(request=None, tags=["Billing"])
    def post(self, request):
        return result_response(BillingService().cancel_at_period_end(request.user))


class RenewSubscriptionView(BillingAPIView):
    @extend_schema(request=None, tags=["Billing"])
    def post(self, request):
        return result_response(BillingService().renew(request.user))


class ScheduleAnnualUpgradeView(BillingAPIView):
    """Schedule the switch to annual billing at the end of the current period."""

    @extend_schema(request=None, tags=["Billing"])
    def post(self, request):
        return result_response(AnnualUpgradeScheduler().schedule(request.user))


class CancelAnnualUpgradeView(BillingAPIView):
    @extend_schema(request=None, tags=["Billing"])
    def post(self, request):
        return result_response(AnnualUpgradeScheduler().cancel(request.user))


# ----------------------------------------------------------------------
# Refunds
# ----------------------------------------------------------------------


class RefundHistoryView(BillingAPIView):
    @extend_schema(tags=["Refunds"])
    def get(self, request):
        return Response({"requests": RefundService().history(request.user)})


class RefundableChargesView(BillingAPIView):
    @extend_schema(tags=["Refunds"])
    def get(self, request):
        return result_response(RefundService().refundable_charges(request.user))


class RefundEstimateView(BillingAPIView):
    @extend_schema(tags=["Refunds"])
    def get(self, request):
        return result_response(RefundService().estimate(request.user))


class SelfServiceRefundView(BillingAPIView):
    """Instant refund of a recent charge, less the cost of mana used."""

    @extend_schema(request=RefundRequestSerializer, tags=["Refunds"])
    def post(self, request):
        data = _validated(RefundRequestSerializer, request)
        return result_response(
            RefundService().self_service_refund(
                request.user,
                data["charge_id"],
                data["reason"],
            ),
        )


class RequestRefundView(BillingAPIView):
    """File a refund request for an administrator to review."""

    @extend_schema(request=RefundRequestSerializer, tags=["Refunds"])
    def post(self, request):
        data = _validated(RefundRequestSerializer, request)
        return result_response(
            RefundService().request_refund(
                request.user,
                data["charge_id"],
                data["reason"],
            ),
        )


class BoosterRefundsView(BillingAPIView):
    """
    GET lists booster purchases with unused mana.
    POST refunds the unused share of one of them.
    """

    @extend_schema(tags=["Refunds"])
    def get(self, request):
        return result_response(RefundService().refundable_boosters(request.user))

    @extend_schema(request=RefundRequestSerializer, tags=["Refunds"])
    def post(self, request):
        data = _validated(RefundRequestSerializer, request)
        return result_response(
            RefundService().booster_refund(
                request.user,
                data["charge_id"],
                data["reason"],
            ),
        )


# ----------------------------------------------------------------------
# Gifts
# ----------------------------------------------------------------------


class SendGiftView(BillingAPIView):
    @extend_schema(request=SendGiftSerializer, tags=["Gifts"])
    def post(self, request):
        data = _validated(SendGiftSerializer, request)
        return result_response(GiftService().send(request.user, data["email"]))


class ReceivedGiftsView(BillingAPIView):
    @extend_schema(tags=["Gifts"])
    def get(self, request):
        return Response({"gifts": GiftService().pending_received(request.user)})


class SentGiftsView(BillingAPIView):
    @extend_schema(tags=["Gifts"])
    def get(self, request):
        return Response({"gifts": GiftService().sent(request.user)})


class AcceptGiftView(BillingAPIView):
    @extend_schema(request=None, tags=["Gifts"])
    def post(self, request, gift_id):
        return result_response(GiftService().accept(request.user, gift_id))


class DeclineGiftView(BillingAPIView):
    @extend_schema(request=None, tags=["Gifts"])
    def post(self, request, gift_id):
        return result_response(GiftService().decline(request.user, gift_id))


class CancelGiftView(BillingAPIView):
    @extend_schema(request=None, tags=["Gifts"])
    def post(self, request, gift_id):
        return result_response(GiftService().cancel(request.user, gift_id))


# ----------------------------------------------------------------------
# Admin review
# ----------------------------------------------------------------------


class AdminRefundQueueView(BillingAPIView):
    permission_classes = [IsAdminUser]

    @extend_schema(tags=["Refund review"])
    def get(self, request):
        pending = (
            RefundRequest.objects.filter(status=RefundStatus.PENDING)
            .select_related("user")
            .order_by("created")
        )
        return Response(
            {
                "requests": [
                    {**serialize_refund_request(refund), "userEmail": refund.user.email}
                    for refund in pending
                ],
            },
        )


class ApproveRefundView(BillingAPIView):
    permission_classes = [IsAdminUser]

    @extend_schema(request=RefundDecisionSerializer, tags=["Refund review"])
    def post(self, request, request_id):
        refund_request = get_object_or_404(RefundRequest, pk=request_id)
        data = _validated(RefundDecisionSerializer, request)
        logger.info(
            "Admin %s approving refund request %s",
            request.user.pk,
            refund_request.pk,
        )
        return result_response(
            RefundService().approve(
                refund_request,
                notes=data["notes"],
                resolved_by=request.user,
            ),
        )


class DenyRefundView(BillingAPIView):
    permission_classes = [IsAdminUser]

    @extend_schema(request=RefundDecisionSerializer, tags=["Refund review"])
    def post(self, request, request_id):
        refund_request = get_object_or_404(RefundRequest, pk=request_id)
        data = _validated(RefundDecisionSerializer, request)
        logger.info(
            "Admin %s denying refund request %s",
            request.user.pk,
            refund_request.pk,
        )
        return result_response(
            RefundService().deny(
                refund_request,
                notes=data["notes"],
                resolved_by=request.user,
            ),
        )
