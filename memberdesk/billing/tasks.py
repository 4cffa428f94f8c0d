"""
Celery tasks for billing.

Beat triggers ``memberdesk.run_daily_billing`` hourly (see
CELERY_BEAT_SCHEDULE). It fans out one ``memberdesk.run_billing`` task per
active tenant; each tenant's automatic run claims its local calendar day, so
only the first hourly tick after local midnight does any work.

To run the worker:
    celery -A config worker --loglevel=info

To run the beat scheduler:
    celery -A config beat --loglevel=info \\
        --scheduler django_celery_beat.schedulers:DatabaseScheduler
"""

import logging
from datetime import UTC
from datetime import datetime
from io import StringIO

from celery import shared_task
from django.core.management import call_command
from django.db import OperationalError

from memberdesk.tenants.models import Tenant

logger = logging.getLogger(__name__)

# Exceptions that indicate transient failures worth retrying.
RETRYABLE_EXCEPTIONS = (
    OperationalError,
    ConnectionError,
    TimeoutError,
    OSError,
)


def _run_management_command(command_name: str, *args: str) -> dict:
    """
    Run a management command and return its output.

    Exceptions propagate so Celery's autoretry_for can handle them.
    """
    out = StringIO()
    err = StringIO()
    call_command(command_name, *args, stdout=out, stderr=err)

    result = {
        "status": "completed",
        "command": command_name,
        "output": out.getvalue().strip(),
        "timestamp": datetime.now(tz=UTC).isoformat(),
    }
    errors = err.getvalue().strip()
    if errors:
        result["errors"] = errors
    return result


@shared_task(
    bind=True,
    name="memberdesk.run_billing",
    autoretry_for=RETRYABLE_EXCEPTIONS,
    max_retries=3,
    retry_backoff=60,
    retry_backoff_max=600,
    acks_late=True,
)
def run_billing(self, tenant_slug: str, auto: bool = True) -> dict:
    """Run billing for one tenant (the daily composite job when ``auto``)."""
    logger.info(
        "Starting billing for %s (auto=%s, task_id=%s)",
        tenant_slug,
        auto,
        self.request.id,
    )
    args = [f"--tenant={tenant_slug}"]
    if auto:
        args.append("--auto")
    result = _run_management_command("run_billing", *args)
    logger.info("Billing for %s completed: %s", tenant_slug, result["output"])
    return result


@shared_task(
    bind=True,
    name="memberdesk.run_daily_billing",
    autoretry_for=RETRYABLE_EXCEPTIONS,
    max_retries=3,
    retry_backoff=60,
    retry_backoff_max=600,
)
def run_daily_billing(self) -> dict:
    """Queue the automatic billing run for every active tenant."""
    slugs = list(
        Tenant.objects.filter(is_active=True).values_list("slug", flat=True),
    )
    for slug in slugs:
        run_billing.delay(slug, auto=True)
    logger.info("Queued daily billing for %s tenant(s)", len(slugs))
    return {"status": "queued", "tenants": slugs}
