from django.contrib import admin

from memberdesk.members.models import FamilyLink
from memberdesk.members.models import Member


class FamilyLinkInline(admin.TabularInline):
    model = FamilyLink
    fk_name = "member"
    extra = 0


@admin.register(Member)
class MemberAdmin(admin.ModelAdmin):
    list_display = ["full_name", "email", "tenant", "account_credit_cents"]
    list_filter = ["tenant"]
    search_fields = ["first_name", "last_name", "email"]
    inlines = [FamilyLinkInline]
