from django.contrib import admin
from django.contrib.auth import admin as auth_admin
from django.utils.translation import gettext_lazy as _

from manaledger.users.models import User


@admin.register(User)
class UserAdmin(auth_admin.UserAdmin):
    fieldsets = (
        (None, {"fields": ("username", "password")}),
        (_("Personal info"), {"fields": ("name", "email")}),
        (
            _("Billing"),
            {
                "fields": (
                    "plan_id",
                    "stripe_customer_id",
                    "stripe_subscription_id",
                    "subscription_period_end",
                ),
            },
        ),
        (
            _("Permissions"),
            {
                "fields": (
                    "is_active",
                    "is_staff",
                    "is_superuser",
                    "groups",
                    "user_permissions",
                ),
            },
        ),
        (_("Important dates"), {"fields": ("last_login", "date_joined")}),
    )
    list_display = ["username", "email", "plan_id", "is_superuser"]
    list_filter = ["plan_id", "is_staff", "is_active"]
    search_fields = ["name", "username", "email", "stripe_customer_id"]
    ordering = ["username"]
