# users/serializers.py
from rest_framework import serializers
from django.contrib.auth import get_user_model

CustomUser = get_user_model()


class UserPublicSerializer(serializers.ModelSerializer):
    """User fields safe to show to other marketplace members (no password)."""

    firstName = serializers.CharField(source="first_name", read_only=True)
    lastName = serializers.CharField(source="last_name", read_only=True)

    class Meta:
        model = CustomUser
        fields = [
            "id",
            "username",
            "email",
            "firstName",
            "lastName",
            "university",
            "verified",
        ]
        read_only_fields = fields
