from uuid import uuid4

from django.conf import settings
from django.db import models
from django.db.models import Q


class Event(models.Model):
    class Status(models.TextChoices):
        DRAFT = "draft", "Draft"
        ACTIVE = "active", "Active"
        FINISHED = "finished", "Finished"

    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    location = models.CharField(max_length=255, blank=True)
    start_date = models.DateTimeField(null=True, blank=True)
    end_date = models.DateTimeField(null=True, blank=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.ACTIVE)
    zones = models.ManyToManyField("Zone", related_name="events", blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-start_date", "name"]

    def __str__(self) -> str:
        return str(self.name)


class Zone(models.Model):
    name = models.CharField(max_length=120)
    description = models.TextField(blank=True)
    color = models.CharField(max_length=20, blank=True)
    capacity = models.PositiveIntegerField(null=True, blank=True)

    class Meta:
        ordering = ["name"]

    def __str__(self) -> str:
        return str(self.name)


class Area(models.Model):
    name = models.CharField(max_length=120, unique=True)

    def __str__(self) -> str:
        return str(self.name)


class Provider(models.Model):
    name = models.CharField(max_length=255)
    area = models.ForeignKey(Area, on_delete=models.PROTECT, related_name="providers")
    is_active = models.BooleanField(default=True)  # pyright: ignore[reportArgumentType]

    class Meta:
        ordering = ["name"]

    def __str__(self) -> str:
        return str(self.name)


class Employee(models.Model):
    provider = models.ForeignKey(Provider, on_delete=models.PROTECT, related_name="employees")
    first_name = models.CharField(max_length=120)
    last_name = models.CharField(max_length=120)
    document_type = models.CharField(max_length=20, blank=True)
    document_number = models.CharField(max_length=50, blank=True)
    function = models.CharField(max_length=120, blank=True)
    photo_path = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["provider", "document_type", "document_number"],
                condition=~Q(document_number=""),
                name="unique_employee_document_per_provider",
            )
        ]

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def __str__(self) -> str:
        return self.full_name


class Template(models.Model):
    uuid = models.UUIDField(default=uuid4, unique=True, editable=False)
    event = models.ForeignKey(Event, on_delete=models.CASCADE, related_name="templates")
    name = models.CharField(max_length=255)
    file_path = models.CharField(max_length=255, blank=True)
    layout_meta = models.JSONField(default=dict, blank=True)
    version = models.PositiveIntegerField(default=1)  # pyright: ignore[reportArgumentType]
    is_default = models.BooleanField(default=False)  # pyright: ignore[reportArgumentType]
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    REQUIRED_LAYOUT_FIELDS = ("fold_mm", "rect_photo", "rect_qr")

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["event"],
                condition=Q(is_default=True),
                name="unique_default_template_per_event",
            )
        ]
        ordering = ["event_id", "-version"]

    def missing_layout_fields(self) -> list[str]:
        layout = self.layout_meta or {}
        return [name for name in self.REQUIRED_LAYOUT_FIELDS if name not in layout]

    def __str__(self) -> str:
        return f"{self.name} v{self.version}"


class AccreditationRequest(models.Model):
    class Status(models.TextChoices):
        DRAFT = "draft", "Draft"
        SUBMITTED = "submitted", "Submitted"
        UNDER_REVIEW = "under_review", "Under review"
        APPROVED = "approved", "Approved"
        REJECTED = "rejected", "Rejected"
        CANCELLED = "cancelled", "Cancelled"

    uuid = models.UUIDField(default=uuid4, unique=True, editable=False)
    employee = models.ForeignKey(
        Employee, on_delete=models.CASCADE, related_name="accreditation_requests"
    )
    event = models.ForeignKey(Event, on_delete=models.CASCADE, related_name="accreditation_requests")
    zones = models.ManyToManyField(Zone, related_name="accreditation_requests", blank=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.DRAFT)
    approved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="approved_accreditation_requests",
    )
    approved_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["employee", "event"],
                name="unique_request_per_employee_event",
            )
        ]
        indexes = [
            models.Index(fields=["event", "status"], name="accreq_event_status_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.employee} @ {self.event}"
