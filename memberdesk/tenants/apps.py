from django.apps import AppConfig


class TenantsConfig(AppConfig):
    """
    Django app configuration for tenants.

    A tenant is one studio/gym business. Every billing row hangs off a tenant
    and each tenant carries its own processor credentials and billing knobs.
    """

    default_auto_field = "django.db.models.BigAutoField"
    name = "memberdesk.tenants"
