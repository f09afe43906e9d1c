from __future__ import annotations

from datetime import timedelta
import json
from uuid import uuid4

from django.conf import settings
from django.db import models
from django.utils import timezone
from simple_history.models import HistoricalRecords  # pyright: ignore[reportMissingImports]

from .conf import BATCH_RETRY_CEILING
from .snapshots import EmployeeSnapshot, EventSnapshot, TemplateSnapshot, ZonesSnapshot


class PrintBatch(models.Model):
    class Status(models.TextChoices):
        QUEUED = "queued", "Queued"
        PROCESSING = "processing", "Processing"
        READY = "ready", "Ready"
        FAILED = "failed", "Failed"
        ARCHIVED = "archived", "Archived"

    uuid = models.UUIDField(default=uuid4, unique=True, editable=False)
    event = models.ForeignKey(
        "accreditations.Event", on_delete=models.CASCADE, related_name="print_batches"
    )
    area_ids = models.JSONField(default=list, blank=True)
    provider_ids = models.JSONField(default=list, blank=True)
    generated_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="print_batches",
    )
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.QUEUED)
    filters_snapshot = models.JSONField(default=dict, blank=True)
    credential_ids = models.JSONField(default=list, blank=True)
    total_credentials = models.PositiveIntegerField(default=0)  # pyright: ignore[reportArgumentType]
    processed_credentials = models.PositiveIntegerField(default=0)  # pyright: ignore[reportArgumentType]
    pdf_path = models.CharField(max_length=255, null=True, blank=True)
    started_at = models.DateTimeField(null=True, blank=True)
    finished_at = models.DateTimeField(null=True, blank=True)
    error_message = models.TextField(null=True, blank=True)
    retry_count = models.PositiveIntegerField(default=0)  # pyright: ignore[reportArgumentType]
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "-created_at"], name="prbatch_status_created_idx"),
            models.Index(fields=["event", "status"], name="prbatch_event_status_idx"),
        ]

    def __str__(self) -> str:
        return f"Batch {self.uuid} ({self.status})"

    @property
    def is_processing(self) -> bool:
        return self.status == self.Status.PROCESSING

    @property
    def progress_percentage(self) -> float:
        if not self.total_credentials:
            return 0.0
        return round(self.processed_credentials / self.total_credentials * 100, 1)

    @property
    def duration(self) -> timedelta | None:
        if not self.started_at or not self.finished_at:
            return None
        return self.finished_at - self.started_at

    def can_be_retried(self) -> bool:
        return self.status == self.Status.FAILED and self.retry_count < BATCH_RETRY_CEILING

    def can_be_downloaded(self) -> bool:
        return self.status == self.Status.READY and bool(self.pdf_path)

    def mark_as_processing(self, *, now=None) -> None:
        self.status = self.Status.PROCESSING
        self.started_at = now or timezone.now()
        self.error_message = None
        self.save(update_fields=["status", "started_at", "error_message", "updated_at"])

    def update_progress(self, processed: int) -> None:
        # Never goes backwards, never exceeds the total fixed at creation.
        processed = min(int(processed), int(self.total_credentials))
        if processed <= self.processed_credentials:
            return
        self.processed_credentials = processed
        self.save(update_fields=["processed_credentials", "updated_at"])

    def mark_as_ready(self, pdf_path: str, *, now=None) -> None:
        self.status = self.Status.READY
        self.pdf_path = pdf_path
        self.finished_at = now or timezone.now()
        self.processed_credentials = self.total_credentials
        self.error_message = None
        self.save(
            update_fields=[
                "status",
                "pdf_path",
                "finished_at",
                "processed_credentials",
                "error_message",
                "updated_at",
            ]
        )

    def mark_as_failed(self, message: str, *, now=None) -> None:
        self.status = self.Status.FAILED
        self.error_message = str(message) or "Print batch failed."
        self.retry_count = int(self.retry_count) + 1
        self.finished_at = now or timezone.now()
        self.pdf_path = None
        self.save(
            update_fields=[
                "status",
                "error_message",
                "retry_count",
                "finished_at",
                "pdf_path",
                "updated_at",
            ]
        )

    def reset_for_retry(self) -> None:
        self.status = self.Status.QUEUED
        self.processed_credentials = 0
        self.started_at = None
        self.finished_at = None
        self.error_message = None
        self.pdf_path = None
        self.save(
            update_fields=[
                "status",
                "processed_credentials",
                "started_at",
                "finished_at",
                "error_message",
                "pdf_path",
                "updated_at",
            ]
        )


class Credential(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        GENERATING = "generating", "Generating"
        READY = "ready", "Ready"
        FAILED = "failed", "Failed"

    uuid = models.UUIDField(default=uuid4, unique=True, editable=False)
    accreditation_request = models.OneToOneField(
        "accreditations.AccreditationRequest",
        on_delete=models.CASCADE,
        related_name="credential",
    )
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    employee_snapshot = models.JSONField(null=True, blank=True)
    template_snapshot = models.JSONField(null=True, blank=True)
    event_snapshot = models.JSONField(null=True, blank=True)
    zones_snapshot = models.JSONField(null=True, blank=True)
    qr_code = models.CharField(max_length=64, unique=True, null=True, blank=True)
    qr_image_path = models.CharField(max_length=255, null=True, blank=True)
    credential_image_path = models.CharField(max_length=255, null=True, blank=True)
    credential_pdf_path = models.CharField(max_length=255, null=True, blank=True)
    generated_at = models.DateTimeField(null=True, blank=True)
    expires_at = models.DateTimeField(null=True, blank=True)
    is_active = models.BooleanField(default=True)  # pyright: ignore[reportArgumentType]
    printed_at = models.DateTimeField(null=True, blank=True)
    print_batch = models.ForeignKey(
        PrintBatch,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="credentials",
    )
    error_message = models.TextField(null=True, blank=True)
    retry_count = models.PositiveIntegerField(default=0)  # pyright: ignore[reportArgumentType]
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    history = HistoricalRecords()

    class Meta:
        ordering = ["id"]
        indexes = [
            models.Index(fields=["status"], name="credential_status_idx"),
            models.Index(fields=["is_active", "expires_at"], name="credential_active_exp_idx"),
            models.Index(fields=["printed_at"], name="credential_printed_idx"),
        ]

    def __str__(self) -> str:
        return f"Credential {self.uuid} ({self.status})"

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and self.expires_at <= timezone.now()

    @property
    def is_ready(self) -> bool:
        return self.status == self.Status.READY and bool(self.is_active) and not self.is_expired

    @property
    def is_printed(self) -> bool:
        return self.printed_at is not None

    @property
    def formatted_error_message(self) -> str | None:
        if not self.error_message:
            return None
        try:
            summary = json.loads(self.error_message)
        except ValueError:
            return self.error_message
        if not isinstance(summary, dict):
            return self.error_message
        message = summary.get("message") or ""
        exception_type = summary.get("type")
        return f"{exception_type}: {message}" if exception_type else message

    @property
    def error_summary(self) -> dict | None:
        if not self.error_message:
            return None
        try:
            summary = json.loads(self.error_message)
        except ValueError:
            return {"message": self.error_message}
        return summary if isinstance(summary, dict) else {"message": self.error_message}

    @property
    def employee(self) -> EmployeeSnapshot:
        return EmployeeSnapshot.from_dict(self.employee_snapshot)

    @property
    def template(self) -> TemplateSnapshot:
        return TemplateSnapshot.from_dict(self.template_snapshot)

    @property
    def event(self) -> EventSnapshot:
        return EventSnapshot.from_dict(self.event_snapshot)

    @property
    def zones(self) -> ZonesSnapshot:
        return ZonesSnapshot.from_dict(self.zones_snapshot)

    @property
    def has_snapshots(self) -> bool:
        return bool(self.employee_snapshot and self.template_snapshot and self.event_snapshot)


class PipelineAuditLog(models.Model):
    action = models.CharField(max_length=100)
    message = models.TextField(blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="pipeline_audit_logs",
    )
    credential = models.ForeignKey(
        Credential, on_delete=models.SET_NULL, null=True, blank=True, related_name="audit_logs"
    )
    print_batch = models.ForeignKey(
        PrintBatch, on_delete=models.SET_NULL, null=True, blank=True, related_name="audit_logs"
    )
    event = models.ForeignKey(
        "accreditations.Event",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="pipeline_audit_logs",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["-created_at"], name="pipelog_created_idx"),
            models.Index(fields=["action", "-created_at"], name="pipelog_action_created_idx"),
        ]

    def __str__(self):
        return f"{self.action} - {self.created_at:%Y-%m-%d}"
