"""
Email notifications for billing events.

This module handles sending email notifications when:
- A self-service refund or booster refund is processed (to the user)
- A refund request is submitted (to the billing admin)
- A refund request is approved or denied (to the user)
- An annual upgrade is scheduled (to the user)
- A gift is sent, received or accepted (to sender and recipient)

Functions take plain values rather than model instances because they run
inside Celery tasks (see billing.tasks.send_billing_email). Each returns
True if the backend accepted the message. Messages are AnymailMessages
tagged ``billing-<kind>`` so the ESP (Postmark in production) can group
them; other backends ignore the tag.
"""

from __future__ import annotations

import logging

from anymail.message import AnymailMessage
from django.conf import settings
from django.utils.translation import gettext as _

from manaledger.billing.reconciliation import format_usd

logger = logging.getLogger(__name__)


def get_site_url() -> str:
    """
    Get the base site URL for building absolute URLs in emails.

    Uses SITE_URL setting if available, falls back to default.
    """
    return getattr(settings, "SITE_URL", "https://manaledger.app")


def billing_url() -> str:
    return f"{get_site_url()}/dashboard/billing"


def _send(kind: str, subject: str, message: str, recipient: str) -> bool:
    if not recipient:
        logger.warning("Cannot send %s email: no recipient", kind)
        return False

    email = AnymailMessage(
        subject=subject,
        body=message,
        from_email=getattr(settings, "DEFAULT_FROM_EMAIL", None),
        to=[recipient],
        tags=[f"billing-{kind.replace(' ', '-')}"],
        metadata={"kind": kind},
    )
    try:
        sent = email.send()
    except Exception:
        logger.exception("Error sending %s email to %s", kind, recipient)
        return False

    if sent == 0:
        logger.error("Email backend did not accept %s email for %s", kind, recipient)
        return False

    logger.info("Sent %s email to %s", kind, recipient)
    return True


def send_refund_processed_email(
    to: str,
    refund_cents: int,
    usage_cost_cents: int,
    mana_used: int,
) -> bool:
    subject = _("Your refund of %(amount)s is on its way") % {
        "amount": format_usd(refund_cents),
    }
    message = _(
        """Hi there,

We've refunded %(amount)s to your original payment method. Refunds usually
appear within 5-10 business days.

Usage deducted: %(mana_used)s mana (%(usage_cost)s).

Your subscription has been cancelled and your account is now on the free tier.
Any booster mana you bought is still yours.

Thanks,
The manaledger Team
"""
    ) % {
        "amount": format_usd(refund_cents),
        "mana_used": f"{mana_used:,}",
        "usage_cost": format_usd(usage_cost_cents),
    }
    return _send("refund processed", subject, message, to)


def send_booster_refund_email(to: str, refund_cents: int, mana_deducted: int) -> bool:
    subject = _("Your booster refund of %(amount)s is on its way") % {
        "amount": format_usd(refund_cents),
    }
    message = _(
        """Hi there,

We've refunded %(amount)s for your booster purchase and removed
%(mana)s booster mana from your wallet.

Thanks,
The manaledger Team
"""
    ) % {"amount": format_usd(refund_cents), "mana": f"{mana_deducted:,}"}
    return _send("booster refund", subject, message, to)


def send_refund_request_admin_email(
    user_email: str,
    charge_id: str,
    amount_cents: int,
    reason: str,
) -> bool:
    subject = _("Refund request from %(email)s") % {"email": user_email}
    message = _(
        """A refund request needs review.

User: %(email)s
Charge: %(charge_id)s
Amount: %(amount)s

Reason:
%(reason)s

Review it at %(admin_url)s
"""
    ) % {
        "email": user_email,
        "charge_id": charge_id,
        "amount": format_usd(amount_cents),
        "reason": reason,
        "admin_url": f"{get_site_url()}/admin/billing/refundrequest/",
    }
    return _send("refund request", subject, message, settings.BILLING_ADMIN_EMAIL)


def send_refund_resolved_email(
    to: str,
    approved: bool,  # noqa: FBT001
    amount_cents: int,
    notes: str = "",
) -> bool:
    if approved:
        subject = _("Your refund request was approved")
        message = _(
            """Hi there,

Your refund request was approved. We've refunded %(amount)s to your
original payment method.

Thanks,
The manaledger Team
"""
        ) % {"amount": format_usd(amount_cents)}
    else:
        subject = _("Update on your refund request")
        message = _(
            """Hi there,

We reviewed your refund request and weren't able to approve it.

%(notes)s

Reply to this email if you have questions.

Thanks,
The manaledger Team
"""
        ) % {"notes": notes}
    return _send("refund resolved", subject, message, to)


def send_upgrade_scheduled_email(to: str, start_date: str, savings_cents: int) -> bool:
    subject = _("Your annual plan is scheduled")
    message = _(
        """Hi there,

Your switch to annual billing is scheduled. Your monthly plan stays active
until %(start_date)s, and your annual plan starts then. You'll save
%(savings)s a year.

Change your mind? You can cancel the switch from %(billing_url)s.

Thanks,
The manaledger Team
"""
    ) % {
        "start_date": start_date,
        "savings": format_usd(savings_cents),
        "billing_url": billing_url(),
    }
    return _send("upgrade scheduled", subject, message, to)


def send_gift_received_email(to: str, sender_name: str, expires_at: str) -> bool:
    subject = _("%(sender)s sent you a gift") % {"sender": sender_name}
    message = _(
        """Hi there,

%(sender)s has gifted you the Sorcerer plan. Claim it before %(expires_at)s at
%(billing_url)s.

Thanks,
The manaledger Team
"""
    ) % {"sender": sender_name, "expires_at": expires_at, "billing_url": billing_url()}
    return _send("gift received", subject, message, to)


def send_gift_sent_email(to: str, recipient_name: str) -> bool:
    subject = _("Your gift to %(recipient)s was sent") % {"recipient": recipient_name}
    message = _(
        """Hi there,

Your gift to %(recipient)s is waiting for them. We'll let you know when they
claim it.

Thanks,
The manaledger Team
"""
    ) % {"recipient": recipient_name}
    return _send("gift sent", subject, message, to)


def send_gift_accepted_email(to: str, recipient_name: str) -> bool:
    subject = _("%(recipient)s accepted your gift") % {"recipient": recipient_name}
    message = _(
        """Hi there,

%(recipient)s accepted your gift and is now on the Sorcerer plan.

Thanks,
The manaledger Team
"""
    ) % {"recipient": recipient_name}
    return _send("gift accepted", subject, message, to)


EMAIL_SENDERS = {
    "refund_processed": send_refund_processed_email,
    "booster_refund": send_booster_refund_email,
    "refund_request_admin": send_refund_request_admin_email,
    "refund_resolved": send_refund_resolved_email,
    "upgrade_scheduled": send_upgrade_scheduled_email,
    "gift_received": send_gift_received_email,
    "gift_sent": send_gift_sent_email,
    "gift_accepted": send_gift_accepted_email,
}
