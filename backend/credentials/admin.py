from django.contrib import admin
from simple_history.admin import SimpleHistoryAdmin  # pyright: ignore[reportMissingImports]

from .models import Credential, PipelineAuditLog, PrintBatch


@admin.register(Credential)
class CredentialAdmin(SimpleHistoryAdmin):
    list_display = ("uuid", "accreditation_request", "status", "is_active", "generated_at", "printed_at")
    list_filter = ("status", "is_active")
    search_fields = ("uuid", "qr_code")
    readonly_fields = (
        "uuid",
        "employee_snapshot",
        "template_snapshot",
        "event_snapshot",
        "zones_snapshot",
        "qr_code",
        "qr_image_path",
        "credential_image_path",
        "credential_pdf_path",
        "generated_at",
        "printed_at",
        "print_batch",
        "error_message",
        "retry_count",
        "created_at",
        "updated_at",
    )


@admin.register(PrintBatch)
class PrintBatchAdmin(admin.ModelAdmin):
    list_display = (
        "uuid",
        "event",
        "status",
        "processed_credentials",
        "total_credentials",
        "retry_count",
        "created_at",
    )
    list_filter = ("status", "event")
    readonly_fields = (
        "uuid",
        "filters_snapshot",
        "credential_ids",
        "total_credentials",
        "processed_credentials",
        "pdf_path",
        "started_at",
        "finished_at",
        "error_message",
        "retry_count",
        "created_at",
        "updated_at",
    )


@admin.register(PipelineAuditLog)
class PipelineAuditLogAdmin(admin.ModelAdmin):
    list_display = ("action", "credential", "print_batch", "event", "actor", "created_at")
    list_filter = ("action", "created_at")
    search_fields = ("action", "message")
    readonly_fields = (
        "action",
        "message",
        "metadata",
        "actor",
        "credential",
        "print_batch",
        "event",
        "created_at",
    )

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False
