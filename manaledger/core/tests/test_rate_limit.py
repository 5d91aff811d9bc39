from unittest.mock import MagicMock
from unittest.mock import patch

import pytest
from django.core.cache import cache
from rest_framework.throttling import SimpleRateThrottle

from manaledger.core import rate_limit
from manaledger.core.rate_limit import BillingActionThrottle


@pytest.fixture(autouse=True)
def _limits(settings):
    settings.BILLING_RATE_LIMITS = {
        "subscription_toggle": (3, 60),
        "self_service_refund": (1, 86400),
    }


class TestBillingActionThrottle:
    def test_is_a_drf_throttle_keyed_by_action_and_user(self):
        throttle = BillingActionThrottle("subscription_toggle", 7)

        assert isinstance(throttle, SimpleRateThrottle)
        assert throttle.get_cache_key() == "billing:subscription_toggle:7"
        assert (throttle.num_requests, throttle.duration) == (3, 60)

    def test_history_is_stored_under_the_billing_key(self):
        rate_limit.consume("subscription_toggle", 7)

        assert len(cache.get("billing:subscription_toggle:7")) == 1


class TestConsume:
    def test_allows_up_to_limit(self):
        results = [rate_limit.consume("subscription_toggle", 7) for _ in range(3)]

        assert all(r.success for r in results)
        assert [r.remaining for r in results] == [2, 1, 0]

    def test_rejects_past_limit_with_wait_time(self):
        for _ in range(3):
            rate_limit.consume("subscription_toggle", 7)

        result = rate_limit.consume("subscription_toggle", 7)

        assert not result.success
        assert result.remaining == 0
        assert 0 < result.retry_after_seconds <= 60

    def test_rejected_attempts_are_not_recorded(self):
        for _ in range(5):
            rate_limit.consume("subscription_toggle", 7)

        assert len(cache.get("billing:subscription_toggle:7")) == 3

    def test_keys_are_per_user_and_action(self):
        rate_limit.consume("self_service_refund", 1)

        assert rate_limit.consume("self_service_refund", 2).success
        assert rate_limit.consume("subscription_toggle", 1).success
        assert not rate_limit.consume("self_service_refund", 1).success

    def test_window_slides(self):
        with patch.object(
            BillingActionThrottle,
            "timer",
            MagicMock(return_value=1_000.0),
        ):
            for _ in range(3):
                rate_limit.consume("subscription_toggle", 7)
        with patch.object(
            BillingActionThrottle,
            "timer",
            MagicMock(return_value=1_061.0),
        ):
            result = rate_limit.consume("subscription_toggle", 7)

        assert result.success

    def test_wait_time_counts_down_from_oldest_attempt(self):
        with patch.object(
            BillingActionThrottle,
            "timer",
            MagicMock(return_value=1_000.0),
        ):
            rate_limit.consume("self_service_refund", 1)
        with patch.object(
            BillingActionThrottle,
            "timer",
            MagicMock(return_value=1_000.0 + 86_000),
        ):
            result = rate_limit.consume("self_service_refund", 1)

        assert not result.success
        assert result.retry_after_seconds == 400

    def test_reset_clears_history(self):
        rate_limit.consume("self_service_refund", 1)
        rate_limit.reset("self_service_refund", 1)

        assert rate_limit.consume("self_service_refund", 1).success

    def test_unknown_action_is_a_configuration_error(self):
        with pytest.raises(rate_limit.ImproperlyConfiguredRateLimit):
            rate_limit.consume("unknown", 1)
