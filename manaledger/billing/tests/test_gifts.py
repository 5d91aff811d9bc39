"""
Tests for the gift ledger.

A gift grants the paid tier to another user once accepted. Pending gifts
expire a week after they are sent.
"""

from datetime import timedelta
from io import StringIO

import pytest
from django.core import mail
from django.core.management import call_command
from django.utils import timezone

from manaledger.billing.constants import GiftStatus
from manaledger.billing.constants import PlanId
from manaledger.billing.gifts import GIFT_UNAVAILABLE
from manaledger.billing.gifts import GiftService
from manaledger.billing.gifts import expire_overdue_gifts
from manaledger.billing.models import Gift
from manaledger.billing.results import ErrorCode
from manaledger.billing.tasks import expire_gifts
from manaledger.billing.tests.factories import GiftFactory
from manaledger.users.tests.factories import UserFactory


@pytest.fixture
def sender():
    return UserFactory(email="sender@example.com", name="Merlin")


@pytest.fixture
def recipient():
    return UserFactory(email="friend@example.com", name="Nimue")


@pytest.mark.django_db
class TestSendGift:
    def test_creates_pending_gift(self, sender, recipient):
        now = timezone.now()

        result = GiftService().send(sender, "Friend@Example.com", now=now)

        assert result.success, result.error
        gift = Gift.objects.get(pk=result.data["giftId"])
        assert gift.recipient == recipient
        assert gift.status == GiftStatus.PENDING
        assert gift.expires_at == now + timedelta(days=7)

    def test_emails_both_parties(self, sender, recipient):
        GiftService().send(sender, "friend@example.com")

        recipients = sorted(message.to[0] for message in mail.outbox)
        assert recipients == ["friend@example.com", "sender@example.com"]

    def test_unknown_recipient(self, sender):
        result = GiftService().send(sender, "nobody@example.com")

        assert result.error == "User not found. Ask them to join first!"
        assert result.code == ErrorCode.RECIPIENT_NOT_FOUND

    def test_cannot_gift_yourself(self, sender):
        result = GiftService().send(sender, "sender@example.com")

        assert result.code == ErrorCode.SELF_GIFT
        assert not Gift.objects.exists()

    def test_email_required(self, sender):
        result = GiftService().send(sender, "  ")

        assert result.error == "Email is required"

    def test_daily_limit(self, sender, recipient):
        service = GiftService()
        for _ in range(5):
            assert service.send(sender, "friend@example.com").success

        result = service.send(sender, "friend@example.com")

        assert result.code == ErrorCode.RATE_LIMITED
        assert Gift.objects.count() == 5


@pytest.mark.django_db
class TestAcceptGift:
    def test_accept_grants_paid_plan(self, sender, recipient):
        gift = GiftFactory(sender=sender, recipient=recipient)

        result = GiftService().accept(recipient, gift.pk)

        assert result.success
        gift.refresh_from_db()
        recipient.refresh_from_db()
        assert gift.status == GiftStatus.ACCEPTED
        assert gift.accepted_at is not None
        assert recipient.plan_id == PlanId.SORCERER
        assert mail.outbox[-1].to == ["sender@example.com"]

    def test_overdue_gift_expires_on_accept(self, sender, recipient):
        sent_at = timezone.now()
        gift = GiftFactory(
            sender=sender,
            recipient=recipient,
            expires_at=sent_at + timedelta(days=7),
        )

        result = GiftService().accept(
            recipient,
            gift.pk,
            now=sent_at + timedelta(days=8),
        )

        assert result.error == GIFT_UNAVAILABLE
        gift.refresh_from_db()
        recipient.refresh_from_db()
        assert gift.status == GiftStatus.EXPIRED
        assert recipient.plan_id == PlanId.WANDERER

    def test_only_recipient_may_accept(self, sender, recipient):
        gift = GiftFactory(sender=sender, recipient=recipient)

        result = GiftService().accept(sender, gift.pk)

        assert result.error == "This gift is not for you"
        assert result.code == ErrorCode.NOT_OWNER

    def test_cannot_accept_twice(self, sender, recipient):
        gift = GiftFactory(sender=sender, recipient=recipient)
        GiftService().accept(recipient, gift.pk)

        result = GiftService().accept(recipient, gift.pk)

        assert result.code == ErrorCode.GIFT_UNAVAILABLE

    def test_missing_gift(self, recipient):
        result = GiftService().accept(recipient, "6f1c8a1e-3b7e-4c1f-9d61-0d4f7c2b9a10")

        assert result.code == ErrorCode.NOT_FOUND


@pytest.mark.django_db
class TestDeclineAndCancel:
    def test_decline_marks_expired(self, sender, recipient):
        gift = GiftFactory(sender=sender, recipient=recipient)

        result = GiftService().decline(recipient, gift.pk)

        assert result.success
        gift.refresh_from_db()
        assert gift.status == GiftStatus.EXPIRED

    def test_decline_only_pending(self, sender, recipient):
        gift = GiftFactory(
            sender=sender,
            recipient=recipient,
            status=GiftStatus.ACCEPTED,
        )

        result = GiftService().decline(recipient, gift.pk)

        assert result.error == "Can only decline pending gifts"

    def test_only_recipient_may_decline(self, sender, recipient):
        gift = GiftFactory(sender=sender, recipient=recipient)

        by_sender = GiftService().decline(sender, gift.pk)
        by_stranger = GiftService().decline(UserFactory(), gift.pk)

        assert by_sender.code == ErrorCode.NOT_OWNER
        assert by_stranger.code == ErrorCode.NOT_OWNER
        gift.refresh_from_db()
        assert gift.status == GiftStatus.PENDING

    def test_cancel_deletes_gift(self, sender, recipient):
        gift = GiftFactory(sender=sender, recipient=recipient)

        result = GiftService().cancel(sender, gift.pk)

        assert result.success
        assert not Gift.objects.filter(pk=gift.pk).exists()

    def test_only_sender_may_cancel(self, sender, recipient):
        gift = GiftFactory(sender=sender, recipient=recipient)

        result = GiftService().cancel(recipient, gift.pk)

        assert result.error == "You can only cancel gifts you sent"
        assert Gift.objects.filter(pk=gift.pk).exists()


@pytest.mark.django_db
class TestGiftLists:
    def test_pending_received(self, sender, recipient):
        GiftFactory(sender=sender, recipient=recipient)
        GiftFactory(sender=sender, recipient=recipient, status=GiftStatus.EXPIRED)

        gifts = GiftService().pending_received(recipient)

        assert len(gifts) == 1
        assert gifts[0]["senderEmail"] == "sender@example.com"

    def test_sent_includes_every_status(self, sender, recipient):
        GiftFactory(sender=sender, recipient=recipient)
        GiftFactory(sender=sender, recipient=recipient, status=GiftStatus.ACCEPTED)

        gifts = GiftService().sent(sender)

        assert {g["status"] for g in gifts} == {"pending", "accepted"}


@pytest.mark.django_db
class TestExpireGifts:
    @pytest.fixture
    def gifts(self, sender, recipient):
        now = timezone.now()
        overdue = GiftFactory(
            sender=sender,
            recipient=recipient,
            expires_at=now - timedelta(hours=1),
        )
        current = GiftFactory(sender=sender, recipient=recipient)
        return overdue, current

    def test_expire_overdue_gifts(self, gifts):
        overdue, current = gifts

        assert expire_overdue_gifts() == 1

        overdue.refresh_from_db()
        current.refresh_from_db()
        assert overdue.status == GiftStatus.EXPIRED
        assert current.status == GiftStatus.PENDING

    def test_command_dry_run_changes_nothing(self, gifts):
        overdue, _ = gifts
        out = StringIO()

        call_command("expire_gifts", "--dry-run", stdout=out)

        assert "[DRY RUN] Would expire 1 gift(s)" in out.getvalue()
        overdue.refresh_from_db()
        assert overdue.status == GiftStatus.PENDING

    def test_command(self, gifts):
        out = StringIO()

        call_command("expire_gifts", stdout=out)

        assert "Expired 1 gift(s)" in out.getvalue()

    def test_scheduled_task_runs_command(self, gifts):
        result = expire_gifts.apply().get()

        assert result["status"] == "completed"
        assert "Expired 1 gift(s)" in result["output"]
