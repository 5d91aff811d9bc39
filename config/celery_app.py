"""
Celery application configuration for ManaLedger.

Tasks are defined with @shared_task so they also run under
CELERY_TASK_ALWAYS_EAGER in tests.

Components:
  - Worker: Sends billing emails and analytics events (`celery -A config worker`)
  - Beat: Triggers the hourly gift expiry sweep (`celery -A config beat`)

Configuration:
  - Broker: Redis (CELERY_BROKER_URL)
  - Result backend: None (fire-and-forget, all state in Django models)
  - Task serialization: JSON
  - Periodic tasks: django-celery-beat with DatabaseScheduler

Usage:
    celery -A config worker --loglevel=info

    celery -A config beat --loglevel=info \\
        --scheduler django_celery_beat.schedulers:DatabaseScheduler
"""

import os

from celery import Celery

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings.local")

app = Celery("manaledger")

# - namespace='CELERY' means all celery-related configuration keys
#   should have a `CELERY_` prefix.
app.config_from_object("django.conf:settings", namespace="CELERY")

# Load task modules from all registered Django apps.
app.autodiscover_tasks()
