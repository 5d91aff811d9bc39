"""
Celery tasks for billing side effects and scheduled maintenance.

Emails are dispatched with ``notify`` and run at most once: a failure is
logged, not retried, and never reaches the request that triggered it.

The gift expiry sweep wraps the ``expire_gifts`` management command and is
scheduled through CELERY_BEAT_SCHEDULE (hourly by default).
"""

from __future__ import annotations

import logging
from datetime import UTC
from datetime import datetime
from io import StringIO

from celery import shared_task
from django.core.management import call_command
from django.db import OperationalError

from manaledger.billing.emails import EMAIL_SENDERS
from manaledger.core.tasks import fire_and_forget

logger = logging.getLogger(__name__)

# Exceptions that indicate transient failures worth retrying.
RETRYABLE_EXCEPTIONS = (
    OperationalError,  # Database connection issues
    ConnectionError,  # Network issues
    TimeoutError,  # Timeouts
)


@shared_task(name="manaledger.send_billing_email", ignore_result=True)
def send_billing_email(kind: str, context: dict) -> bool:
    """Send one of the emails registered in billing.emails.EMAIL_SENDERS."""
    sender = EMAIL_SENDERS.get(kind)
    if sender is None:
        logger.error("Unknown billing email kind: %s", kind)
        return False
    return sender(**context)


def notify(kind: str, **context) -> None:
    """Queue a billing email without waiting for it."""
    fire_and_forget(send_billing_email, kind, context)


@shared_task(
    bind=True,
    name="manaledger.expire_gifts",
    autoretry_for=RETRYABLE_EXCEPTIONS,
    max_retries=3,
    retry_backoff=60,  # Exponential backoff starting at 60s
    retry_backoff_max=600,  # Max 10 minutes between retries
    acks_late=True,
)
def expire_gifts(self) -> dict:
    """
    Move pending gifts past their expiry to EXPIRED.

    Default schedule: Hourly at :00
    """
    logger.info("Starting scheduled gift expiry (task_id=%s)", self.request.id)

    out = StringIO()
    call_command("expire_gifts", stdout=out)
    result = {
        "status": "completed",
        "command": "expire_gifts",
        "output": out.getvalue().strip(),
        "timestamp": datetime.now(tz=UTC).isoformat(),
    }

    logger.info("Gift expiry completed: %s", result["output"])
    return result
