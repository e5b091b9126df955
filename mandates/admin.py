from django.contrib import admin

from .models import ActiveMandate, MandateHistoryEntry, Organisation, WebhookEvent


@admin.register(Organisation)
class OrganisationAdmin(admin.ModelAdmin):
    list_display = ("id", "name", "end_date", "created_at")
    search_fields = ("name",)
    readonly_fields = ("created_at", "updated_at")


@admin.register(ActiveMandate)
class ActiveMandateAdmin(admin.ModelAdmin):
    list_display = (
        "organisation",
        "status",
        "sequence_number",
        "amount",
        "notified",
        "notification_retry_count",
        "execution_retry_count",
        "last_execution_attempt_at",
    )
    list_filter = ("status", "notified")
    search_fields = ("organisation__name", "unified_mandate_number", "payer_address")
    readonly_fields = ("created_at", "updated_at", "registration_tran_id", "lease_expires_at", "lease_token")

    fieldsets = (
        (
            "Mandate",
            {"fields": ("organisation", "unified_mandate_number", "amount", "status", "sequence_number")},
        ),
        (
            "Payer",
            {
                "fields": ("payer_address", "payer_name", "payer_mobile"),
                "classes": ("collapse",),
            },
        ),
        (
            "Notification cycle",
            {"fields": ("notified", "notification_retry_count", "last_notification_attempt_at")},
        ),
        (
            "Execution cycle",
            {"fields": ("execution_retry_count", "last_execution_attempt_at", "lease_expires_at", "lease_token")},
        ),
        (
            "Timestamps",
            {
                "fields": ("registration_tran_id", "created_at", "updated_at"),
                "classes": ("collapse",),
            },
        ),
    )


@admin.register(MandateHistoryEntry)
class MandateHistoryEntryAdmin(admin.ModelAdmin):
    """Read-only: history rows are append-only."""
    list_display = ("merchant_tran_id", "organisation", "status", "amount", "response_code", "created_at")
    list_filter = ("status", "created_at")
    search_fields = ("merchant_tran_id", "bank_reference_id", "unified_mandate_number", "organisation__name")
    date_hierarchy = "created_at"

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    list_display = ("id", "provider", "merchant_tran_id", "processed", "received_at")
    list_filter = ("provider", "processed")
    search_fields = ("merchant_tran_id",)
    readonly_fields = ("provider", "payload", "merchant_tran_id", "processed", "error", "received_at")
