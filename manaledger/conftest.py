import pytest
from django.core.cache import cache


@pytest.fixture(autouse=True)
def _clear_cache():
    """Rate limit counters live in the cache; start every test from zero."""
    cache.clear()
    yield
    cache.clear()


@pytest.fixture(autouse=True)
def _stripe_prices(settings) -> None:
    settings.STRIPE_PRICE_MONTHLY = "price_monthly"
    settings.STRIPE_PRICE_ANNUAL = "price_annual"
    settings.STRIPE_PRICE_BOOSTER = "price_booster"
    settings.SITE_URL = "https://manaledger.test"
