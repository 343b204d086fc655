# users/admin.py
from django.contrib import admin
from django.contrib.auth.admin import UserAdmin

from .models import CustomUser


@admin.register(CustomUser)
class CustomUserAdmin(UserAdmin):
    list_display = ("id", "username", "email", "university", "verified", "is_active")
    list_filter = ("verified", "is_active", "is_staff")
    search_fields = ("username", "email", "university")
    fieldsets = UserAdmin.fieldsets + (
        ("Marketplace", {"fields": ("university", "verified")}),
    )
