"""
Management command to run billing for a tenant.

Usage:
    python manage.py run_billing --tenant iron-temple
    python manage.py run_billing --tenant iron-temple --auto
    python manage.py run_billing --all --auto
"""

from django.core.management.base import BaseCommand
from django.core.management.base import CommandError

from memberdesk.billing.scheduler import BillingScheduler
from memberdesk.tenants.models import Tenant


class Command(BaseCommand):
    help = "Generate due invoices (and, with --auto, run the daily billing job)."

    def add_arguments(self, parser):
        target = parser.add_mutually_exclusive_group(required=True)
        target.add_argument("--tenant", help="Slug of the tenant to bill")
        target.add_argument(
            "--all",
            action="store_true",
            help="Bill every active tenant",
        )
        parser.add_argument(
            "--auto",
            action="store_true",
            help=(
                "Run the once-a-day job: billing with auto-charge, past-due "
                "sweep, dunning retries and scheduled cancellations"
            ),
        )

    def handle(self, *args, **options):
        if options["all"]:
            tenants = list(Tenant.objects.filter(is_active=True))
        else:
            tenant = Tenant.objects.filter(slug=options["tenant"]).first()
            if tenant is None:
                msg = f"Unknown tenant: {options['tenant']}"
                raise CommandError(msg)
            tenants = [tenant]

        for tenant in tenants:
            scheduler = BillingScheduler(tenant)
            if options["auto"]:
                self._report_auto(tenant, scheduler.auto_run())
            else:
                self._report_run(tenant, scheduler.run())

    def _report_run(self, tenant, result):
        self.stdout.write(
            self.style.SUCCESS(
                f"{tenant.slug}: {result.created} created, {result.skipped} "
                f"skipped of {result.total} due.",
            ),
        )
        for error in result.errors:
            self.stderr.write(self.style.ERROR(f"{tenant.slug}: {error}"))

    def _report_auto(self, tenant, result):
        if result.skipped:
            self.stdout.write(
                self.style.WARNING(f"{tenant.slug}: skipped ({result.message})."),
            )
            return
        self.stdout.write(
            self.style.SUCCESS(
                f"{tenant.slug}: {result.invoices_created} created, "
                f"{result.invoices_skipped} skipped, "
                f"{result.past_due_marked} past due, "
                f"{result.dunning_processed} dunning retries, "
                f"{result.memberships_suspended} suspended, "
                f"{result.cancellations_processed} cancelled.",
            ),
        )
        for error in result.errors:
            self.stderr.write(self.style.ERROR(f"{tenant.slug}: {error}"))
