from __future__ import annotations

import logging
from typing import Any

from django.db import transaction
from django.db.models import Count
from django.utils import timezone

from accreditations.models import AccreditationRequest, Template

from .audit import log_pipeline_event
from .conf import PipelineConfig
from .exceptions import CredentialRenderError
from .models import Credential
from .rendering import (
    build_qr_code,
    build_verification_url,
    compose_credential_image,
    render_image_pdf_bytes,
    render_qr_png,
)
from .snapshots import EmployeeSnapshot, EventSnapshot, TemplateSnapshot, ZonesSnapshot
from .storage import (
    credential_image_name,
    credential_pdf_name,
    delete_if_exists,
    get_credential_storage,
    qr_image_name,
    write_bytes,
)

logger = logging.getLogger(__name__)

ARTIFACT_FIELDS = ["credential_image_path", "credential_pdf_path"]
QR_FIELDS = ["qr_code", "qr_image_path"]


def default_template_for_event(event_id: int) -> Template | None:
    return (
        Template.objects.filter(event_id=event_id)
        .order_by("-is_default", "-version", "-id")
        .first()
    )


def _load_request(credential: Credential) -> AccreditationRequest:
    return (
        AccreditationRequest.objects.select_related("employee__provider", "event")
        .prefetch_related("zones")
        .get(id=credential.accreditation_request_id)
    )


def create_credential_for_request(request: AccreditationRequest) -> Credential:
    credential, created = Credential.objects.get_or_create(
        accreditation_request=request,
        defaults={"status": Credential.Status.PENDING},
    )
    if created:
        logger.info("Credential %s created for request %s.", credential.uuid, request.uuid)
    return credential


def approve_accreditation_request(
    request: AccreditationRequest,
    *,
    actor=None,
    now=None,
) -> Credential:
    """Approve a request, create its credential and queue generation after commit."""
    from .tasks import generate_credential

    with transaction.atomic():
        locked_request = AccreditationRequest.objects.select_for_update().get(id=request.id)
        if locked_request.status != AccreditationRequest.Status.APPROVED:
            locked_request.status = AccreditationRequest.Status.APPROVED
            locked_request.approved_at = now or timezone.now()
            locked_request.approved_by = actor if actor is not None and actor.is_authenticated else None
            locked_request.save(update_fields=["status", "approved_at", "approved_by", "updated_at"])
        credential = create_credential_for_request(locked_request)
        if credential.status != Credential.Status.READY:
            credential_id = credential.id
            transaction.on_commit(lambda: generate_credential.delay(credential_id))
    request.refresh_from_db()
    return credential


def capture_snapshots(
    credential: Credential,
    *,
    now,
    template: Template | None = None,
    refresh_template: bool = False,
) -> list[str]:
    """Fill in missing snapshot blobs; returns the names of the fields written.

    Employee, event and zones snapshots are captured once. The template
    snapshot is replaced when ``refresh_template`` is set.
    """
    request = _load_request(credential)
    updated_fields: list[str] = []
    if not credential.employee_snapshot:
        credential.employee_snapshot = EmployeeSnapshot.capture(
            request.employee, captured_at=now
        ).to_dict()
        updated_fields.append("employee_snapshot")
    if not credential.event_snapshot:
        credential.event_snapshot = EventSnapshot.capture(request.event, captured_at=now).to_dict()
        updated_fields.append("event_snapshot")
    if not credential.zones_snapshot:
        credential.zones_snapshot = ZonesSnapshot.capture(
            request.zones.all(), captured_at=now
        ).to_dict()
        updated_fields.append("zones_snapshot")
    if refresh_template or not credential.template_snapshot:
        template = template or default_template_for_event(request.event_id)
        if template is None:
            raise CredentialRenderError(f"Event {request.event_id} has no credential template.")
        credential.template_snapshot = TemplateSnapshot.capture(template, captured_at=now).to_dict()
        updated_fields.append("template_snapshot")
    if updated_fields:
        credential.save(update_fields=[*updated_fields, "updated_at"])
    return updated_fields


def clear_generated_artifacts(credential: Credential, *, clear_qr: bool, storage=None) -> list[str]:
    storage = storage or get_credential_storage()
    cleared = list(ARTIFACT_FIELDS)
    credential.credential_image_path = None
    credential.credential_pdf_path = None
    credential.generated_at = None
    cleared.append("generated_at")
    if clear_qr:
        delete_if_exists(credential.qr_image_path, storage)
        credential.qr_code = None
        credential.qr_image_path = None
        cleared.extend(QR_FIELDS)
    return cleared


def generate_qr_code(credential: Credential, *, config: PipelineConfig, storage=None) -> str:
    storage = storage or get_credential_storage()

    def is_taken(candidate: str) -> bool:
        return Credential.objects.filter(qr_code=candidate).exclude(id=credential.id).exists()

    qr_code = build_qr_code(credential.id, is_taken=is_taken, max_attempts=config.qr_max_attempts)
    png = render_qr_png(build_verification_url(config.verification_url, qr_code))
    stored_name = write_bytes(qr_image_name(qr_code), png, storage)
    credential.qr_code = qr_code
    credential.qr_image_path = stored_name
    credential.save(update_fields=["qr_code", "qr_image_path", "updated_at"])
    return qr_code


def _storage_file_path(name: str | None, storage) -> str | None:
    if not name or not storage.exists(name):
        return None
    return storage.path(name)


def generate_credential_image(credential: Credential, *, config: PipelineConfig, storage=None) -> str:
    storage = storage or get_credential_storage()
    template = credential.template
    employee = credential.employee
    template_image_path = _storage_file_path(template.file_path, storage)
    if template.file_path and template_image_path is None:
        logger.warning(
            "Template file %s for credential %s is missing, using a blank canvas.",
            template.file_path,
            credential.uuid,
        )
    qr_png = None
    if credential.qr_image_path and storage.exists(credential.qr_image_path):
        with storage.open(credential.qr_image_path, "rb") as handle:
            qr_png = handle.read()
    png = compose_credential_image(
        template=template,
        employee=employee,
        event=credential.event,
        zones=credential.zones,
        qr_png=qr_png,
        template_image_path=template_image_path,
        photo_path=_storage_file_path(employee.photo_path, storage),
        font_path=config.font_path,
    )
    stored_name = write_bytes(credential_image_name(credential.uuid), png, storage)
    credential.credential_image_path = stored_name
    credential.save(update_fields=["credential_image_path", "updated_at"])
    return stored_name


def generate_credential_pdf(credential: Credential, *, config: PipelineConfig, storage=None) -> str:
    storage = storage or get_credential_storage()
    image_path = _storage_file_path(credential.credential_image_path, storage)
    if image_path is None:
        raise CredentialRenderError(
            f"Credential {credential.uuid} has no composited image to render as PDF."
        )
    pdf_bytes = render_image_pdf_bytes(image_path, dpi=config.reference_dpi)
    stored_name = write_bytes(credential_pdf_name(credential.uuid), pdf_bytes, storage)
    credential.credential_pdf_path = stored_name
    credential.save(update_fields=["credential_pdf_path", "updated_at"])
    return stored_name


def mark_credential_ready(credential: Credential, *, now) -> None:
    credential.status = Credential.Status.READY
    credential.generated_at = now
    credential.error_message = None
    credential.save(update_fields=["status", "generated_at", "error_message", "updated_at"])


def process_credential_generation(
    credential: Credential,
    *,
    config: PipelineConfig,
    now,
    storage=None,
    render_pdf: bool = True,
) -> Credential:
    storage = storage or get_credential_storage()
    if not credential.qr_code:
        generate_qr_code(credential, config=config, storage=storage)
    generate_credential_image(credential, config=config, storage=storage)
    if render_pdf:
        generate_credential_pdf(credential, config=config, storage=storage)
    mark_credential_ready(credential, now=now)
    return credential


def expire_event_credentials(event_id: int, *, now=None, actor=None) -> int:
    now = now or timezone.now()
    active_credentials = Credential.objects.filter(
        accreditation_request__event_id=event_id,
        is_active=True,
    )
    expired_count = 0
    for credential in active_credentials:
        credential.is_active = False
        credential.expires_at = now
        credential.save(update_fields=["is_active", "expires_at", "updated_at"])
        expired_count += 1
    if expired_count:
        log_pipeline_event(
            action="credentials.event_expired",
            message=f"Expired {expired_count} credentials.",
            actor=actor,
            event_id=event_id,
            metadata={"expired_count": expired_count, "expired_at": now.isoformat()},
        )
    return expired_count


def verify_credential_by_qr(qr_code: str, *, now=None) -> dict[str, Any] | None:
    credential = Credential.objects.filter(qr_code=qr_code).first()
    if credential is None:
        return None
    now = now or timezone.now()
    expired = credential.expires_at is not None and credential.expires_at <= now
    if not credential.is_active or expired:
        return {"valid": False, "message": "Credential is expired or inactive."}
    if credential.status != Credential.Status.READY:
        return {"valid": False, "message": "Credential has not been issued yet."}
    return {
        "valid": True,
        "credential": {
            "uuid": str(credential.uuid),
            "status": credential.status,
            "generated_at": credential.generated_at.isoformat() if credential.generated_at else None,
            "expires_at": credential.expires_at.isoformat() if credential.expires_at else None,
        },
        "employee": credential.employee_snapshot,
        "event": credential.event_snapshot,
        "zones": credential.zones_snapshot,
    }


def regenerate_credential(credential: Credential, *, actor=None) -> Credential:
    """Reset a credential to pending, drop every artifact and queue a new generation run."""
    from .tasks import generate_credential

    with transaction.atomic():
        locked = Credential.objects.select_for_update().get(id=credential.id)
        cleared = clear_generated_artifacts(locked, clear_qr=True)
        locked.status = Credential.Status.PENDING
        locked.error_message = None
        locked.retry_count = 0
        locked.save(update_fields=[*cleared, "status", "error_message", "retry_count", "updated_at"])
        log_pipeline_event(
            action="credential.regeneration_requested",
            message="Credential reset for regeneration.",
            actor=actor,
            credential=locked,
        )
        credential_id = locked.id
        transaction.on_commit(lambda: generate_credential.delay(credential_id))
    credential.refresh_from_db()
    return credential


def get_credential_stats(event_id: int | None = None) -> dict[str, int]:
    queryset = Credential.objects.all()
    if event_id is not None:
        queryset = queryset.filter(accreditation_request__event_id=event_id)
    stats = {status: 0 for status in Credential.Status.values}
    for row in queryset.values("status").annotate(total=Count("id")):
        stats[row["status"]] = row["total"]
    stats["total"] = sum(stats[status] for status in Credential.Status.values)
    stats["printed"] = queryset.filter(printed_at__isnull=False).count()
    stats["inactive"] = queryset.filter(is_active=False).count()
    return stats
