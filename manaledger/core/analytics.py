from __future__ import annotations

from manaledger.core.tasks import fire_and_forget
from manaledger.core.tasks import record_analytics_event


def track(event: str, user_id, **properties) -> None:
    """Record an analytics event without waiting for it."""
    fire_and_forget(record_analytics_event, event, user_id, properties)
