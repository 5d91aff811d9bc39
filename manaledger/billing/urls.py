"""
URL configuration for the billing API.

Mounted at /api/v1/billing/.

Routes:
- subscription/                    - Reconciled subscription and wallet (GET)
- subscribe/                       - Start subscription checkout (POST)
- portal/                          - Stripe Customer Portal URL (POST)
- booster/checkout/                - Start booster checkout (POST)
- subscription/cancel/             - Cancel at period end (POST)
- subscription/renew/              - Undo a pending cancellation (POST)
- upgrade/annual/                  - Schedule annual upgrade (POST)
- upgrade/annual/cancel/           - Cancel scheduled upgrade (POST)
- refunds/                         - Refund request history (GET)
- refunds/charges/                 - Refundable charges (GET)
- refunds/estimate/                - Usage cost estimate (GET)
- refunds/self-service/            - Instant refund (POST)
- refunds/request/                 - Refund request for review (POST)
- refunds/boosters/                - Booster refunds (GET, POST)
- gifts/                           - Send a gift (POST)
- gifts/received/                  - Pending gifts for me (GET)
- gifts/sent/                      - Gifts I sent (GET)
- gifts/<id>/accept|decline|cancel/
- admin/refunds/                   - Pending review queue (GET)
- admin/refunds/<id>/approve|deny/
"""

from django.urls import path

from manaledger.billing import views

app_name = "billing"

urlpatterns = [
    path(
        "subscription/",
        views.SubscriptionOverviewView.as_view(),
        name="subscription",
    ),
    path("subscribe/", views.SubscribeView.as_view(), name="subscribe"),
    path("portal/", views.PortalView.as_view(), name="portal"),
    path(
        "booster/checkout/",
        views.BoosterCheckoutView.as_view(),
        name="booster-checkout",
    ),
    path(
        "subscription/cancel/",
        views.CancelSubscriptionView.as_view(),
        name="subscription-cancel",
    ),
    path(
        "subscription/renew/",
        views.RenewSubscriptionView.as_view(),
        name="subscription-renew",
    ),
    path(
        "upgrade/annual/",
        views.ScheduleAnnualUpgradeView.as_view(),
        name="upgrade-annual",
    ),
    path(
        "upgrade/annual/cancel/",
        views.CancelAnnualUpgradeView.as_view(),
        name="upgrade-annual-cancel",
    ),
    path("refunds/", views.RefundHistoryView.as_view(), name="refunds"),
    path(
        "refunds/charges/",
        views.RefundableChargesView.as_view(),
        name="refund-charges",
    ),
    path(
        "refunds/estimate/",
        views.RefundEstimateView.as_view(),
        name="refund-estimate",
    ),
    path(
        "refunds/self-service/",
        views.SelfServiceRefundView.as_view(),
        name="refund-self-service",
    ),
    path(
        "refunds/request/",
        views.RequestRefundView.as_view(),
        name="refund-request",
    ),
    path(
        "refunds/boosters/",
        views.BoosterRefundsView.as_view(),
        name="refund-boosters",
    ),
    path("gifts/", views.SendGiftView.as_view(), name="gift-send"),
    path(
        "gifts/received/",
        views.ReceivedGiftsView.as_view(),
        name="gifts-received",
    ),
    path("gifts/sent/", views.SentGiftsView.as_view(), name="gifts-sent"),
    path(
        "gifts/<uuid:gift_id>/accept/",
        views.AcceptGiftView.as_view(),
        name="gift-accept",
    ),
    path(
        "gifts/<uuid:gift_id>/decline/",
        views.DeclineGiftView.as_view(),
        name="gift-decline",
    ),
    path(
        "gifts/<uuid:gift_id>/cancel/",
        views.CancelGiftView.as_view(),
        name="gift-cancel",
    ),
    path(
        "admin/refunds/",
        views.AdminRefundQueueView.as_view(),
        name="admin-refunds",
    ),
    path(
        "admin/refunds/<uuid:request_id>/approve/",
        views.ApproveRefundView.as_view(),
        name="admin-refund-approve",
    ),
    path(
        "admin/refunds/<uuid:request_id>/deny/",
        views.DenyRefundView.as_view(),
        name="admin-refund-deny",
    ),
]
