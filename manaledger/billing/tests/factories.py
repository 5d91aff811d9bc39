from datetime import timedelta

import factory
from django.utils import timezone
from factory.django import DjangoModelFactory

from manaledger.billing.constants import GiftStatus
from manaledger.billing.constants import RefundStatus
from manaledger.billing.models import Gift
from manaledger.billing.models import Progression
from manaledger.billing.models import RefundRequest
from manaledger.billing.models import Wallet
from manaledger.users.tests.factories import UserFactory


class WalletFactory(DjangoModelFactory[Wallet]):
    class Meta:
        model = Wallet
        django_get_or_create = ["user"]

    user = factory.SubFactory(UserFactory)
    mana_balance = 200_000
    booster_balance = 0
    last_core_grant_at = factory.LazyFunction(timezone.now)


class ProgressionFactory(DjangoModelFactory[Progression]):
    class Meta:
        model = Progression
        django_get_or_create = ["user"]

    user = factory.SubFactory(UserFactory)
    is_channeling = True


class RefundRequestFactory(DjangoModelFactory[RefundRequest]):
    class Meta:
        model = RefundRequest

    user = factory.SubFactory(UserFactory)
    charge_id = factory.Sequence(lambda n: f"ch_test_{n:04d}")
    invoice_id = factory.Sequence(lambda n: f"in_test_{n:04d}")
    amount_cents = 2500
    reason = "Not what I expected from the service"
    status = RefundStatus.PENDING
    purchased_at = factory.LazyFunction(lambda: timezone.now() - timedelta(days=2))


class GiftFactory(DjangoModelFactory[Gift]):
    class Meta:
        model = Gift

    sender = factory.SubFactory(UserFactory)
    recipient = factory.SubFactory(UserFactory)
    status = GiftStatus.PENDING
    expires_at = factory.LazyFunction(lambda: timezone.now() + timedelta(days=7))
