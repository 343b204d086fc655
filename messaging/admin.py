# messaging/admin.py
from django.contrib import admin

from .models import Conversation, ConversationParticipant, Message


class ConversationParticipantInline(admin.TabularInline):
    model = ConversationParticipant
    extra = 0
    readonly_fields = ("last_read_at",)


@admin.register(Conversation)
class ConversationAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "origin_listing_id",
        "listing",
        "participants_count",
        "messages_count",
        "created_at",
        "updated_at",
    )
    search_fields = ("participants__username",)
    readonly_fields = ("created_at", "updated_at")
    inlines = [ConversationParticipantInline]
    list_per_page = 20

    def participants_count(self, obj):
        return obj.participant_rows.count()

    participants_count.short_description = "Participants"

    def messages_count(self, obj):
        return obj.messages.count()

    messages_count.short_description = "Messages"


@admin.register(Message)
class MessageAdmin(admin.ModelAdmin):
    list_display = ("id", "conversation", "sender", "short_content", "created_at", "read_at")
    list_filter = ("created_at",)
    search_fields = ("content", "sender__username")
    readonly_fields = ("created_at", "read_at")

    def short_content(self, obj):
        return obj.content[:50] + "..." if len(obj.content) > 50 else obj.content

    short_content.short_description = "Content"
