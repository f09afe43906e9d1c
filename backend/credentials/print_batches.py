from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
import gc
import logging
from typing import Any, Callable, Iterable

from django.db import transaction
from django.db.models import Count
from django.utils import timezone

from accreditations.models import Area, Event, Provider

from .audit import log_print_batch_event
from .conf import PipelineConfig
from .exceptions import InvalidBatchFilters, PrintBatchError
from .models import Credential, PrintBatch
from .rendering import BatchPdfComposer, page_size_mm
from .storage import delete_if_exists, ensure_directory, get_credential_storage, print_batch_pdf_name

logger = logging.getLogger(__name__)


class EmptyPrintBatchError(PrintBatchError):
    pass


# Repository


def get_ready_credentials_in_order(credential_ids: Iterable[int]) -> list[Credential]:
    ordered_ids = [int(credential_id) for credential_id in credential_ids]
    by_id = {
        credential.id: credential
        for credential in Credential.objects.filter(
            id__in=ordered_ids, status=Credential.Status.READY
        ).select_related("accreditation_request__employee")
    }
    return [by_id[credential_id] for credential_id in ordered_ids if credential_id in by_id]


def mark_credentials_as_printed(credentials: Iterable[Credential], batch: PrintBatch, *, now=None) -> int:
    """Stamp ``printed_at`` and the batch on every credential in one update.

    Stamping an already-printed credential again simply moves its timestamp
    and batch link forward.
    """
    now = now or timezone.now()
    credential_ids = [credential.id for credential in credentials]
    if not credential_ids:
        return 0
    return Credential.objects.filter(id__in=credential_ids).update(
        printed_at=now,
        print_batch=batch,
        updated_at=now,
    )


def get_credentials_for_printing(
    *,
    event_id: int,
    area_ids: list[int] | None = None,
    provider_ids: list[int] | None = None,
    only_unprinted: bool = True,
) -> list[int]:
    queryset = Credential.objects.filter(
        accreditation_request__event_id=event_id,
        status=Credential.Status.READY,
        is_active=True,
    )
    if area_ids:
        queryset = queryset.filter(accreditation_request__employee__provider__area_id__in=area_ids)
    if provider_ids:
        queryset = queryset.filter(accreditation_request__employee__provider_id__in=provider_ids)
    if only_unprinted:
        queryset = queryset.filter(printed_at__isnull=True)
    return list(queryset.order_by("id").values_list("id", flat=True))


# Service


def _as_id_list(value: Any, field_name: str) -> list[int]:
    if value in (None, "", []):
        return []
    if not isinstance(value, (list, tuple)):
        value = [value]
    try:
        return sorted({int(item) for item in value})
    except (TypeError, ValueError) as exc:
        raise InvalidBatchFilters(f"{field_name} must contain integer ids.", field=field_name) from exc


def validate_batch_filters(filters: dict[str, Any]) -> dict[str, Any]:
    raw_event_id = filters.get("event_id")
    if raw_event_id in (None, ""):
        raise InvalidBatchFilters("event_id is required.", field="event_id")
    try:
        event_id = int(raw_event_id)
    except (TypeError, ValueError) as exc:
        raise InvalidBatchFilters("event_id must be an integer.", field="event_id") from exc
    if not Event.objects.filter(id=event_id).exists():
        raise InvalidBatchFilters(f"Event {event_id} does not exist.", field="event_id")

    area_ids = _as_id_list(filters.get("area_id"), "area_id")
    missing_areas = set(area_ids) - set(Area.objects.filter(id__in=area_ids).values_list("id", flat=True))
    if missing_areas:
        raise InvalidBatchFilters(
            f"Unknown area id(s): {', '.join(str(item) for item in sorted(missing_areas))}.",
            field="area_id",
        )

    provider_ids = _as_id_list(filters.get("provider_id"), "provider_id")
    missing_providers = set(provider_ids) - set(
        Provider.objects.filter(id__in=provider_ids).values_list("id", flat=True)
    )
    if missing_providers:
        raise InvalidBatchFilters(
            f"Unknown provider id(s): {', '.join(str(item) for item in sorted(missing_providers))}.",
            field="provider_id",
        )

    only_unprinted = filters.get("only_unprinted", True)
    if isinstance(only_unprinted, str):
        only_unprinted = only_unprinted.strip().lower() not in ("0", "false", "no", "")
    return {
        "event_id": event_id,
        "area_id": area_ids,
        "provider_id": provider_ids,
        "only_unprinted": bool(only_unprinted),
    }


def _dispatch_batch(batch: PrintBatch, credential_ids: list[int]) -> None:
    from .tasks import generate_print_batch

    batch_id = batch.id
    transaction.on_commit(lambda: generate_print_batch.delay(batch_id, credential_ids))


def queue_print_batch(filters: dict[str, Any], *, user=None) -> PrintBatch:
    cleaned = validate_batch_filters(filters)
    credential_ids = get_credentials_for_printing(
        event_id=cleaned["event_id"],
        area_ids=cleaned["area_id"],
        provider_ids=cleaned["provider_id"],
        only_unprinted=cleaned["only_unprinted"],
    )
    if not credential_ids:
        raise PrintBatchError("No ready credentials match the selected filters.")

    with transaction.atomic():
        batch = PrintBatch.objects.create(
            event_id=cleaned["event_id"],
            area_ids=cleaned["area_id"],
            provider_ids=cleaned["provider_id"],
            generated_by=user if user is not None and user.is_authenticated else None,
            status=PrintBatch.Status.QUEUED,
            filters_snapshot=cleaned,
            credential_ids=credential_ids,
            total_credentials=len(credential_ids),
        )
        log_print_batch_event(
            batch,
            action="queued",
            message="Print batch queued.",
            actor=user,
            metadata={"total_credentials": len(credential_ids), "filters": cleaned},
        )
        _dispatch_batch(batch, credential_ids)
    logger.info("Print batch %s queued with %s credential(s).", batch.uuid, len(credential_ids))
    return batch


def retry_print_batch(batch: PrintBatch, *, user=None) -> PrintBatch:
    with transaction.atomic():
        locked = PrintBatch.objects.select_for_update().get(id=batch.id)
        if not locked.can_be_retried():
            raise PrintBatchError(
                f"Print batch {locked.uuid} cannot be retried (status={locked.status}, "
                f"retry_count={locked.retry_count})."
            )
        snapshot = dict(locked.filters_snapshot or {})
        credential_ids = get_credentials_for_printing(
            event_id=locked.event_id,
            area_ids=snapshot.get("area_id") or [],
            provider_ids=snapshot.get("provider_id") or [],
            only_unprinted=bool(snapshot.get("only_unprinted", True)),
        )
        if not credential_ids:
            raise PrintBatchError("No ready credentials match the batch filters anymore.")
        locked.credential_ids = credential_ids
        locked.total_credentials = len(credential_ids)
        locked.save(update_fields=["credential_ids", "total_credentials", "updated_at"])
        locked.reset_for_retry()
        log_print_batch_event(
            locked,
            action="retried",
            message="Print batch re-queued.",
            actor=user,
            metadata={"retry_count": locked.retry_count, "total_credentials": len(credential_ids)},
        )
        _dispatch_batch(locked, credential_ids)
    batch.refresh_from_db()
    return batch


def old_batches_for_cleanup(days: int, *, now=None):
    cutoff = (now or timezone.now()) - timedelta(days=days)
    return (
        PrintBatch.objects.filter(
            status=PrintBatch.Status.READY,
            created_at__lt=cutoff,
            pdf_path__isnull=False,
        )
        .exclude(pdf_path="")
        .order_by("id")
    )


def cleanup_old_batches(days: int = 90, *, now=None) -> dict[str, int]:
    storage = get_credential_storage()
    archived_count = 0
    deleted_files = 0
    for batch in list(old_batches_for_cleanup(days, now=now)):
        with transaction.atomic():
            locked = PrintBatch.objects.select_for_update().get(id=batch.id)
            if locked.status != PrintBatch.Status.READY or not locked.pdf_path:
                continue
            pdf_path = locked.pdf_path
            if delete_if_exists(pdf_path, storage):
                deleted_files += 1
            locked.status = PrintBatch.Status.ARCHIVED
            locked.pdf_path = None
            locked.save(update_fields=["status", "pdf_path", "updated_at"])
            log_print_batch_event(
                locked,
                action="archived",
                message="Print batch PDF deleted and batch archived.",
                metadata={"days_threshold": days, "pdf_path": pdf_path},
            )
            archived_count += 1
    return {"archived": archived_count, "deleted_files": deleted_files}


def get_batch_stats(event_id: int | None = None) -> dict[str, int]:
    queryset = PrintBatch.objects.all()
    if event_id is not None:
        queryset = queryset.filter(event_id=event_id)
    stats = {status: 0 for status in PrintBatch.Status.values}
    for row in queryset.values("status").annotate(total=Count("id")):
        stats[row["status"]] = row["total"]
    stats["total"] = sum(stats[status] for status in PrintBatch.Status.values)
    return stats


# Worker


@dataclass
class PrintBatchResult:
    batch_id: int
    skipped: bool = False
    page_count: int = 0
    pdf_path: str | None = None
    printed_ids: list[int] = field(default_factory=list)
    skipped_ids: list[int] = field(default_factory=list)


def _chunks(items: list, size: int):
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _add_credential_page(composer, credential: Credential, storage) -> bool:
    image_name = credential.credential_image_path
    if not image_name or not storage.exists(image_name):
        logger.warning("Credential %s has no image on storage, skipping page.", credential.uuid)
        return False
    try:
        composer.add_image_page(storage.path(image_name))
    except Exception as exc:
        logger.warning("Could not place image of credential %s: %s", credential.uuid, exc)
        return False
    return True


def run_print_batch(
    batch_id: int,
    credential_ids: list[int],
    *,
    config: PipelineConfig | None = None,
    clock: Callable = timezone.now,
    composer_factory: Callable[..., Any] = BatchPdfComposer,
) -> PrintBatchResult | None:
    config = config or PipelineConfig.from_settings()
    batch = PrintBatch.objects.filter(id=batch_id).first()
    if batch is None:
        logger.warning("Print batch %s no longer exists.", batch_id)
        return None
    if batch.status == PrintBatch.Status.READY:
        logger.debug("Print batch %s is already ready, skipping.", batch.uuid)
        return PrintBatchResult(batch_id=batch.id, skipped=True, pdf_path=batch.pdf_path)

    batch.mark_as_processing(now=clock())
    storage = get_credential_storage()
    result = PrintBatchResult(batch_id=batch.id)
    pdf_name = print_batch_pdf_name(batch.uuid)
    try:
        credentials = get_ready_credentials_in_order(credential_ids)
        if not credentials:
            raise EmptyPrintBatchError(
                f"Print batch {batch.uuid} has no ready credentials to print."
            )

        width_mm, height_mm = page_size_mm(
            config.reference_width_px, config.reference_height_px, config.reference_dpi
        )
        composer = composer_factory(
            width_mm=width_mm, height_mm=height_mm, jpeg_quality=config.jpeg_quality
        )
        printed: list[Credential] = []
        processed = 0
        for chunk in _chunks(credentials, config.chunk_size):
            for credential in chunk:
                if _add_credential_page(composer, credential, storage):
                    printed.append(credential)
                else:
                    result.skipped_ids.append(credential.id)
            processed += len(chunk)
            batch.update_progress(processed)
            # Frees per-chunk decode and layout scratch; rendered pages stay on the composer.
            gc.collect()

        if not printed:
            raise PrintBatchError(f"Print batch {batch.uuid} produced no printable pages.")

        composer.save(ensure_directory(pdf_name, storage))
        if not storage.exists(pdf_name) or storage.size(pdf_name) < config.min_batch_pdf_bytes:
            delete_if_exists(pdf_name, storage)
            raise PrintBatchError(f"Generated PDF for print batch {batch.uuid} is empty or corrupt.")

        mark_credentials_as_printed(printed, batch, now=clock())
        batch.mark_as_ready(pdf_name, now=clock())
        result.page_count = composer.page_count
        result.pdf_path = pdf_name
        result.printed_ids = [credential.id for credential in printed]
    except Exception as exc:
        detail = getattr(exc, "detail", None) or str(exc) or exc.__class__.__name__
        batch.mark_as_failed(str(detail)[:4000], now=clock())
        log_print_batch_event(
            batch,
            action="failed",
            message="Print batch generation failed.",
            metadata={"detail": str(detail)[:1000], "retry_count": batch.retry_count},
        )
        logger.error("Print batch %s failed: %s", batch.uuid, detail)
        raise

    log_print_batch_event(
        batch,
        action="ready",
        message="Print batch PDF generated.",
        metadata={
            "page_count": result.page_count,
            "skipped_credential_ids": result.skipped_ids,
            "pdf_path": pdf_name,
        },
    )
    logger.info(
        "Print batch %s ready: %s page(s), %s skipped.",
        batch.uuid,
        result.page_count,
        len(result.skipped_ids),
    )
    return result
