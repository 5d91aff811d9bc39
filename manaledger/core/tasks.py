"""
Fire-and-forget dispatch for side effects that must never fail a request.

Email and analytics go through Celery. Callers use ``fire_and_forget``
rather than ``.delay()`` directly: if the broker is down, or the task
fails while running eagerly, the failure is logged and the caller carries
on. Delivery is at-most-once with no retry.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from celery import shared_task

if TYPE_CHECKING:
    from celery import Task

logger = logging.getLogger(__name__)
analytics_logger = logging.getLogger("manaledger.analytics")


def fire_and_forget(task: Task, *args, **kwargs) -> None:
    """Queue ``task`` and swallow any dispatch failure."""
    try:
        task.delay(*args, **kwargs)
    except Exception:  # noqa: BLE001
        logger.warning("Failed to dispatch task %s", task.name, exc_info=True)


@shared_task(name="manaledger.record_analytics_event", ignore_result=True)
def record_analytics_event(event: str, user_id, properties: dict) -> None:
    """
    Emit one analytics event as a structured log record.

    The production JsonFormatter lifts ``extra`` into top-level fields, so
    the log sink doubles as the analytics pipeline.
    """
    analytics_logger.info(
        "Analytics event %s",
        event,
        extra={"event": event, "user_id": user_id, "properties": properties},
    )
