"""
Celery application for Memberdesk.

The only periodic work is billing: beat enqueues ``memberdesk.run_daily_billing``
(see CELERY_BEAT_SCHEDULE), which fans out one ``memberdesk.run_billing`` per
active tenant. There is no result backend; outcomes live in the invoice
ledger.

    celery -A config worker --loglevel=info
    celery -A config beat --loglevel=info \\
        --scheduler django_celery_beat.schedulers:DatabaseScheduler
"""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings.local")

app = Celery("memberdesk")

# All Celery settings are read from Django settings with a CELERY_ prefix.
app.config_from_object("django.conf:settings", namespace="CELERY")

app.autodiscover_tasks()
