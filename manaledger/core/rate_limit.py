"""
Per-user action rate limiting for destructive billing operations.

Built on DRF's SimpleRateThrottle (sliding window of request timestamps kept
in the Django cache), but keyed by ``billing:{action}:{user_id}`` rather
than by request, so service code can call it directly and turn a rejection
into a result value instead of an HTTP 429.

Limits come from the BILLING_RATE_LIMITS setting as (limit, window_seconds):

    BILLING_RATE_LIMITS = {
        "self_service_refund": (1, 24 * 60 * 60),
        "subscription_toggle": (3, 60),
    }

This bounds how often one user can run a sequence; it does not deduplicate
two requests racing inside the same window.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from django.conf import settings
from rest_framework.throttling import SimpleRateThrottle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of consuming one token."""

    success: bool
    limit: int
    remaining: int
    retry_after_seconds: int = 0


class ImproperlyConfiguredRateLimit(KeyError):
    """Raised when an action has no entry in BILLING_RATE_LIMITS."""


class BillingActionThrottle(SimpleRateThrottle):
    """
    A SimpleRateThrottle scoped to one billing action for one user.

    ``allow_request`` ignores its request/view arguments; the cache key is
    fixed at construction.
    """

    cache_format = "billing:%(scope)s:%(ident)s"

    def __init__(self, action: str, user_id):
        self.scope = str(action)
        self.ident = user_id
        super().__init__()

    def get_rate(self):
        try:
            return settings.BILLING_RATE_LIMITS[self.scope]
        except KeyError as e:
            raise ImproperlyConfiguredRateLimit(self.scope) from e

    def parse_rate(self, rate):
        limit, window = rate
        return int(limit), int(window)

    def get_cache_key(self, request=None, view=None):
        return self.cache_format % {"scope": self.scope, "ident": self.ident}

    def remaining(self) -> int:
        return max(0, self.num_requests - len(self.history))

    def reset(self) -> None:
        self.cache.delete(self.get_cache_key())


def consume(action: str, user_id) -> RateLimitResult:
    """
    Record one attempt of ``action`` by ``user_id`` and report whether it fits.

    Rejected attempts are not recorded, so a user who waits out the window
    always gets their full allowance back.
    """
    throttle = BillingActionThrottle(action, user_id)
    if throttle.allow_request(None, None):
        return RateLimitResult(
            success=True,
            limit=throttle.num_requests,
            remaining=throttle.remaining(),
        )

    wait = throttle.wait()
    logger.info(
        "Rate limit hit: action=%s user_id=%s limit=%s window=%ss",
        throttle.scope,
        user_id,
        throttle.num_requests,
        throttle.duration,
    )
    return RateLimitResult(
        success=False,
        limit=throttle.num_requests,
        remaining=0,
        retry_after_seconds=math.ceil(wait if wait is not None else throttle.duration),
    )


def reset(action: str, user_id) -> None:
    BillingActionThrottle(action, user_id).reset()
