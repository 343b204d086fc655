# listings/models.py
from django.db import models
from django.conf import settings
from django.utils import timezone


class Listing(models.Model):
    """
    A marketplace item. Owned by the listings feature; the messaging core
    only reads id, title, price, images and status for display.
    """

    STATUS_CHOICES = [
        ("active", "Active"),
        ("sold", "Sold"),
        ("inactive", "Inactive"),
    ]

    title = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")
    price = models.DecimalField(max_digits=10, decimal_places=2)
    condition = models.CharField(max_length=50, blank=True, default="")
    category = models.CharField(max_length=100, blank=True, default="")
    images = models.JSONField(default=list, blank=True)
    location = models.CharField(max_length=255, blank=True, default="")
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="listings"
    )
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="active")
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "listings"
        ordering = ["-created_at"]

    def __str__(self):
        return self.title
