from django.apps import AppConfig


class BillingConfig(AppConfig):
    """
    Django app configuration for billing.

    Owns plans, subscriptions, invoices and their settlements, plus the
    scheduler and dunning engine that drive them.
    """

    default_auto_field = "django.db.models.BigAutoField"
    name = "memberdesk.billing"
