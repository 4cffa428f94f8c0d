from django.contrib import admin

from memberdesk.tenants.models import Tenant
from memberdesk.tenants.models import TenantSetting


class TenantSettingInline(admin.TabularInline):
    model = TenantSetting
    extra = 0
    fields = ["key", "value"]


@admin.register(Tenant)
class TenantAdmin(admin.ModelAdmin):
    list_display = ["name", "slug", "is_active", "created"]
    search_fields = ["name", "slug"]
    prepopulated_fields = {"slug": ["name"]}
    inlines = [TenantSettingInline]
