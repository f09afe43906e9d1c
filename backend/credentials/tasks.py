from __future__ import annotations

import logging

from celery import shared_task
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from .conf import PipelineConfig
from .jobs import (
    Fail,
    RetryAfter,
    regenerate_event_credentials as run_event_regeneration,
    regenerate_single_credential as run_single_regeneration,
    run_credential_generation,
    run_expiration_sweep,
)
from .print_batches import EmptyPrintBatchError, cleanup_old_batches, run_print_batch

logger = logging.getLogger(__name__)

GENERATION_TIME_LIMIT = 120
EVENT_REGENERATION_MAX_RETRIES = 2
SINGLE_REGENERATION_TIME_LIMIT = 180
SINGLE_REGENERATION_MAX_RETRIES = 2
PRINT_BATCH_TIME_LIMIT = 1800
PRINT_BATCH_MAX_RETRIES = 2
PRINT_BATCH_RETRY_DELAY = 30
EXPIRATION_TIME_LIMIT = 300
EXPIRATION_MAX_RETRIES = 2


@shared_task(
    bind=True,
    acks_late=True,
    soft_time_limit=GENERATION_TIME_LIMIT,
    time_limit=GENERATION_TIME_LIMIT + 10,
)
def generate_credential(self, credential_id: int, first_attempt_at: str | None = None) -> str:
    config = PipelineConfig.from_settings()
    attempt = int(self.request.retries) + 1
    started_at = parse_datetime(first_attempt_at) if first_attempt_at else None
    started_at = started_at or timezone.now()

    directive = run_credential_generation(
        credential_id,
        attempt=attempt,
        first_attempt_at=started_at,
        config=config,
    )
    if isinstance(directive, RetryAfter):
        logger.info(
            "Retrying credential %s in %ss (attempt %s).", credential_id, directive.seconds, attempt
        )
        raise self.retry(
            countdown=directive.seconds,
            args=(),
            kwargs={"credential_id": credential_id, "first_attempt_at": started_at.isoformat()},
            max_retries=config.max_attempts,
        )
    if isinstance(directive, Fail):
        return "failed"
    return "skipped" if directive.skipped else "ready"


@shared_task(bind=True, acks_late=True, max_retries=EVENT_REGENERATION_MAX_RETRIES)
def regenerate_event_credentials(self, event_id: int, template_id: int | None = None) -> dict:
    try:
        report = run_event_regeneration(event_id, template_id)
    except Exception as exc:
        raise self.retry(exc=exc)
    return report.as_dict()


@shared_task(
    bind=True,
    acks_late=True,
    max_retries=SINGLE_REGENERATION_MAX_RETRIES,
    soft_time_limit=SINGLE_REGENERATION_TIME_LIMIT,
    time_limit=SINGLE_REGENERATION_TIME_LIMIT + 10,
)
def regenerate_single_credential(
    self,
    credential_id: int,
    template_id: int,
    regenerate_qr: bool = False,
    regenerate_pdf: bool = True,
) -> bool:
    try:
        result = run_single_regeneration(
            credential_id,
            template_id,
            regenerate_qr=regenerate_qr,
            regenerate_pdf=regenerate_pdf,
        )
    except Exception as exc:
        raise self.retry(exc=exc)
    return result is not None


@shared_task(
    bind=True,
    acks_late=True,
    max_retries=PRINT_BATCH_MAX_RETRIES,
    default_retry_delay=PRINT_BATCH_RETRY_DELAY,
    soft_time_limit=PRINT_BATCH_TIME_LIMIT,
    time_limit=PRINT_BATCH_TIME_LIMIT + 30,
)
def generate_print_batch(self, batch_id: int, credential_ids: list[int]) -> dict | None:
    try:
        result = run_print_batch(batch_id, credential_ids)
    except EmptyPrintBatchError:
        raise
    except Exception as exc:
        raise self.retry(exc=exc)
    if result is None:
        return None
    return {
        "batch_id": result.batch_id,
        "skipped": result.skipped,
        "page_count": result.page_count,
        "pdf_path": result.pdf_path,
    }


@shared_task(
    bind=True,
    acks_late=True,
    max_retries=EXPIRATION_MAX_RETRIES,
    soft_time_limit=EXPIRATION_TIME_LIMIT,
    time_limit=EXPIRATION_TIME_LIMIT + 10,
)
def expire_event_credentials(self, event_id: int) -> int:
    try:
        return run_expiration_sweep(event_id)
    except Exception as exc:
        raise self.retry(exc=exc)


@shared_task
def cleanup_old_print_batches(days: int | None = None) -> dict:
    config = PipelineConfig.from_settings()
    summary = cleanup_old_batches(days if days is not None else config.cleanup_days)
    if summary["archived"]:
        logger.info("Archived %s old print batch(es).", summary["archived"])
    return summary
