from django.apps import AppConfig


class PaymentsConfig(AppConfig):
    """Processor adapters, checkout and webhook reconciliation."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "memberdesk.payments"
