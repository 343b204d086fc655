# listings/admin.py
from django.contrib import admin

from .models import Listing


@admin.register(Listing)
class ListingAdmin(admin.ModelAdmin):
    list_display = ("id", "title", "price", "status", "user", "created_at")
    list_filter = ("status", "category")
    search_fields = ("title", "description")
