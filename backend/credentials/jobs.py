"""Queue-independent workers for credential generation, regeneration and expiry.

Workers read their records once, receive the clock and configuration as
parameters, and report back through plain values: the generation worker
returns a scheduling directive, the regeneration coordinator returns a
report. The Celery tasks in ``credentials.tasks`` translate those values into
queue behaviour.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import json
import logging
import os
import traceback
from typing import Callable, Union

from django.utils import timezone

from accreditations.models import AccreditationRequest, Event, Template

from .audit import log_pipeline_event
from .conf import PipelineConfig
from .exceptions import CredentialRenderError
from .models import Credential
from .services import (
    capture_snapshots,
    clear_generated_artifacts,
    default_template_for_event,
    expire_event_credentials,
    generate_credential_image,
    generate_credential_pdf,
    generate_qr_code,
    mark_credential_ready,
    process_credential_generation,
)
from .snapshots import TemplateSnapshot
from .storage import get_credential_storage

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class Done:
    skipped: bool = False


@dataclass(frozen=True)
class RetryAfter:
    seconds: int
    reason: str = ""


@dataclass(frozen=True)
class Fail:
    reason: str


Directive = Union[Done, RetryAfter, Fail]


def build_error_summary(exc: BaseException, *, attempt: int, now: datetime) -> dict:
    frames = traceback.extract_tb(exc.__traceback__) if exc.__traceback__ else []
    last_frame = frames[-1] if frames else None
    return {
        "message": str(exc) or exc.__class__.__name__,
        "file": os.path.basename(last_frame.filename) if last_frame else None,
        "line": last_frame.lineno if last_frame else None,
        "attempt": attempt,
        "timestamp": now.isoformat(),
        "type": exc.__class__.__name__,
    }


def _deadline_passed(first_attempt_at: datetime | None, now: datetime, config: PipelineConfig) -> bool:
    if first_attempt_at is None:
        return False
    return (now - first_attempt_at).total_seconds() >= config.retry_deadline_seconds


def mark_generation_failed(credential: Credential, *, summary: dict, attempts: int, now: datetime) -> None:
    credential.status = Credential.Status.FAILED
    credential.error_message = json.dumps(
        {**summary, "total_attempts": attempts, "failed_at": now.isoformat()}
    )
    credential.retry_count = attempts
    credential.save(update_fields=["status", "error_message", "retry_count", "updated_at"])
    log_pipeline_event(
        action="credential.generation_failed",
        message=f"Credential generation failed permanently after {attempts} attempt(s).",
        credential=credential,
        metadata={"error": summary.get("message"), "type": summary.get("type")},
    )


def run_credential_generation(
    credential_id: int,
    *,
    attempt: int = 1,
    first_attempt_at: datetime | None = None,
    config: PipelineConfig | None = None,
    clock: Clock = timezone.now,
) -> Directive:
    config = config or PipelineConfig.from_settings()
    now = clock()
    credential = (
        Credential.objects.select_related("accreditation_request").filter(id=credential_id).first()
    )
    if credential is None:
        logger.warning("Credential %s no longer exists, skipping generation.", credential_id)
        return Done(skipped=True)
    if credential.status == Credential.Status.READY:
        logger.debug("Credential %s is already ready, skipping generation.", credential.uuid)
        return Done(skipped=True)

    credential.status = Credential.Status.GENERATING
    credential.save(update_fields=["status", "updated_at"])
    storage = get_credential_storage()
    try:
        capture_snapshots(credential, now=now)
        process_credential_generation(credential, config=config, now=clock(), storage=storage)
    except Exception as exc:
        summary = build_error_summary(exc, attempt=attempt, now=now)
        logger.warning(
            "Credential %s generation attempt %s/%s failed: %s",
            credential.uuid,
            attempt,
            config.max_attempts,
            summary["message"],
        )
        if attempt >= config.max_attempts or _deadline_passed(first_attempt_at, clock(), config):
            mark_generation_failed(credential, summary=summary, attempts=attempt, now=clock())
            logger.error("Credential %s marked as failed: %s", credential.uuid, summary["message"])
            return Fail(reason=summary["message"])
        credential.status = Credential.Status.PENDING
        credential.error_message = json.dumps(summary)
        credential.retry_count = attempt
        credential.save(update_fields=["status", "error_message", "retry_count", "updated_at"])
        return RetryAfter(seconds=config.retry_delay_for(attempt), reason=summary["message"])

    logger.info("Credential %s generated on attempt %s.", credential.uuid, attempt)
    return Done()


@dataclass(frozen=True)
class ItemResult:
    credential_id: int
    ok: bool
    error: str = ""


@dataclass
class RegenerationReport:
    event_id: int | None = None
    template_id: int | None = None
    results: list[ItemResult] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for result in self.results if result.ok)

    @property
    def error_count(self) -> int:
        return sum(1 for result in self.results if not result.ok)

    @property
    def errors(self) -> list[ItemResult]:
        return [result for result in self.results if not result.ok]

    def as_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "template_id": self.template_id,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "errors": [
                {"credential_id": result.credential_id, "error": result.error}
                for result in self.errors
            ],
        }


def _regenerate_for_event(
    credential: Credential,
    *,
    template: Template,
    config: PipelineConfig,
    clock: Clock,
    storage,
) -> ItemResult:
    try:
        now = clock()
        cleared = clear_generated_artifacts(credential, clear_qr=True, storage=storage)
        credential.template_snapshot = TemplateSnapshot.capture(template, captured_at=now).to_dict()
        credential.status = Credential.Status.PENDING
        credential.error_message = None
        credential.save(
            update_fields=[*cleared, "template_snapshot", "status", "error_message", "updated_at"]
        )
        capture_snapshots(credential, now=now)
        process_credential_generation(credential, config=config, now=clock(), storage=storage)
    except Exception as exc:
        logger.exception("Regeneration of credential %s failed.", credential.uuid)
        credential.status = Credential.Status.FAILED
        credential.error_message = str(exc) or exc.__class__.__name__
        credential.save(update_fields=["status", "error_message", "updated_at"])
        return ItemResult(credential_id=credential.id, ok=False, error=credential.error_message)
    return ItemResult(credential_id=credential.id, ok=True)


def regenerate_event_credentials(
    event_id: int,
    template_id: int | None = None,
    *,
    config: PipelineConfig | None = None,
    clock: Clock = timezone.now,
) -> RegenerationReport:
    """Reissue every approved credential of an event under its current template.

    Setup errors (unknown event, no template) propagate. Failures of single
    credentials are recorded in the report and never stop the loop.
    """
    config = config or PipelineConfig.from_settings()
    event = Event.objects.get(id=event_id)
    if template_id is not None:
        template = Template.objects.get(id=template_id, event_id=event.id)
    else:
        template = default_template_for_event(event.id)
    if template is None:
        raise CredentialRenderError(f"Event {event.id} has no credential template.")

    credentials = list(
        Credential.objects.filter(
            accreditation_request__event_id=event.id,
            accreditation_request__status=AccreditationRequest.Status.APPROVED,
        ).select_related("accreditation_request")
    )
    storage = get_credential_storage()
    report = RegenerationReport(event_id=event.id, template_id=template.id)
    for credential in credentials:
        report.results.append(
            _regenerate_for_event(
                credential, template=template, config=config, clock=clock, storage=storage
            )
        )

    logger.info(
        "Regenerated credentials for event %s: %s succeeded, %s failed.",
        event.id,
        report.success_count,
        report.error_count,
    )
    log_pipeline_event(
        action="credentials.event_regenerated",
        message=(
            f"Regenerated {report.success_count} credential(s), "
            f"{report.error_count} error(s)."
        ),
        event_id=event.id,
        metadata=report.as_dict(),
    )
    return report


def regenerate_single_credential(
    credential_id: int,
    template_id: int,
    *,
    regenerate_qr: bool = False,
    regenerate_pdf: bool = True,
    config: PipelineConfig | None = None,
    clock: Clock = timezone.now,
) -> ItemResult | None:
    config = config or PipelineConfig.from_settings()
    credential = (
        Credential.objects.select_related("accreditation_request").filter(id=credential_id).first()
    )
    template = Template.objects.filter(id=template_id).first()
    if credential is None or template is None:
        logger.warning(
            "Skipping regeneration: credential %s or template %s not found.",
            credential_id,
            template_id,
        )
        return None

    storage = get_credential_storage()
    now = clock()
    cleared = clear_generated_artifacts(credential, clear_qr=regenerate_qr, storage=storage)
    credential.status = Credential.Status.GENERATING
    credential.error_message = None
    credential.template_snapshot = TemplateSnapshot.capture(template, captured_at=now).to_dict()
    credential.save(
        update_fields=[*cleared, "status", "error_message", "template_snapshot", "updated_at"]
    )
    try:
        capture_snapshots(credential, now=now)
        qr_missing = not credential.qr_image_path or not storage.exists(credential.qr_image_path)
        if regenerate_qr or not credential.qr_code or qr_missing:
            generate_qr_code(credential, config=config, storage=storage)
        generate_credential_image(credential, config=config, storage=storage)
        if regenerate_pdf:
            generate_credential_pdf(credential, config=config, storage=storage)
        mark_credential_ready(credential, now=clock())
    except Exception as exc:
        credential.status = Credential.Status.FAILED
        credential.error_message = str(exc) or exc.__class__.__name__
        credential.save(update_fields=["status", "error_message", "updated_at"])
        logger.error("Regeneration of credential %s failed: %s", credential.uuid, exc)
        raise
    return ItemResult(credential_id=credential.id, ok=True)


def run_expiration_sweep(event_id: int, *, clock: Clock = timezone.now) -> int:
    try:
        expired_count = expire_event_credentials(event_id, now=clock())
    except Exception:
        logger.exception("Expiring credentials for event %s failed.", event_id)
        raise
    logger.info("Expired %s credential(s) for event %s.", expired_count, event_id)
    return expired_count
