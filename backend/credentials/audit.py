from __future__ import annotations

from typing import Any

from .models import Credential, PipelineAuditLog, PrintBatch


def log_pipeline_event(
    *,
    action: str,
    message: str,
    actor=None,
    credential: Credential | None = None,
    print_batch: PrintBatch | None = None,
    event_id: int | None = None,
    metadata: dict[str, Any] | None = None,
) -> PipelineAuditLog:
    metadata_payload = dict(metadata or {})
    if credential is not None:
        metadata_payload.setdefault("credential_id", credential.id)
    if print_batch is not None:
        metadata_payload.setdefault("print_batch_id", print_batch.id)
        event_id = event_id or print_batch.event_id
    return PipelineAuditLog.objects.create(
        action=action,
        message=message,
        actor=actor if actor is not None and actor.is_authenticated else None,
        credential=credential,
        print_batch=print_batch,
        event_id=event_id,
        metadata=metadata_payload,
    )


def log_print_batch_event(
    print_batch: PrintBatch,
    *,
    action: str,
    message: str,
    actor=None,
    metadata: dict[str, Any] | None = None,
) -> PipelineAuditLog:
    return log_pipeline_event(
        action=f"print_batch.{action}",
        message=message,
        actor=actor,
        print_batch=print_batch,
        metadata=metadata,
    )
