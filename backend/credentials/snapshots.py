"""Typed views over the snapshot blobs stored on a credential.

Each snapshot is written as JSON carrying a ``kind`` tag and a
``schema_version``. Decoding rejects blobs of the wrong kind or of a newer
schema than this code understands, so shape drift surfaces as an error
instead of a silently half-rendered credential.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .exceptions import CredentialPipelineError

SCHEMA_VERSION = 1


class SnapshotDecodeError(CredentialPipelineError):
    pass


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _check_header(payload: dict[str, Any] | None, kind: str) -> dict[str, Any]:
    if not payload:
        raise SnapshotDecodeError(f"Missing {kind} snapshot.")
    found_kind = payload.get("kind", kind)
    if found_kind != kind:
        raise SnapshotDecodeError(f"Expected a {kind} snapshot, got {found_kind!r}.")
    version = int(payload.get("schema_version", 1))
    if version > SCHEMA_VERSION:
        raise SnapshotDecodeError(
            f"Unsupported {kind} snapshot schema version {version} (max {SCHEMA_VERSION})."
        )
    return payload


@dataclass(frozen=True)
class EmployeeSnapshot:
    id: int
    first_name: str
    last_name: str
    document_type: str = ""
    document_number: str = ""
    function: str = ""
    photo_path: str = ""
    provider_id: int | None = None
    provider_name: str = ""
    captured_at: str | None = None

    kind = "employee"

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def capture(cls, employee, *, captured_at: datetime) -> EmployeeSnapshot:
        provider = employee.provider
        return cls(
            id=employee.id,
            first_name=employee.first_name,
            last_name=employee.last_name,
            document_type=employee.document_type,
            document_number=employee.document_number,
            function=employee.function,
            photo_path=employee.photo_path,
            provider_id=provider.id if provider else None,
            provider_name=provider.name if provider else "",
            captured_at=_iso(captured_at),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "schema_version": SCHEMA_VERSION,
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "document_type": self.document_type,
            "document_number": self.document_number,
            "function": self.function,
            "photo_path": self.photo_path,
            "provider_id": self.provider_id,
            "provider_name": self.provider_name,
            "captured_at": self.captured_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> EmployeeSnapshot:
        data = _check_header(payload, cls.kind)
        return cls(
            id=int(data["id"]),
            first_name=str(data.get("first_name") or ""),
            last_name=str(data.get("last_name") or ""),
            document_type=str(data.get("document_type") or ""),
            document_number=str(data.get("document_number") or ""),
            function=str(data.get("function") or ""),
            photo_path=str(data.get("photo_path") or ""),
            provider_id=data.get("provider_id"),
            provider_name=str(data.get("provider_name") or ""),
            captured_at=data.get("captured_at"),
        )


@dataclass(frozen=True)
class EventSnapshot:
    id: int
    name: str
    description: str = ""
    start_date: str | None = None
    end_date: str | None = None
    location: str = ""
    status: str = ""
    captured_at: str | None = None

    kind = "event"

    @classmethod
    def capture(cls, event, *, captured_at: datetime) -> EventSnapshot:
        return cls(
            id=event.id,
            name=event.name,
            description=event.description,
            start_date=_iso(event.start_date),
            end_date=_iso(event.end_date),
            location=event.location,
            status=event.status,
            captured_at=_iso(captured_at),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "schema_version": SCHEMA_VERSION,
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "location": self.location,
            "status": self.status,
            "captured_at": self.captured_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> EventSnapshot:
        data = _check_header(payload, cls.kind)
        return cls(
            id=int(data["id"]),
            name=str(data.get("name") or ""),
            description=str(data.get("description") or ""),
            start_date=data.get("start_date"),
            end_date=data.get("end_date"),
            location=str(data.get("location") or ""),
            status=str(data.get("status") or ""),
            captured_at=data.get("captured_at"),
        )


@dataclass(frozen=True)
class ZoneEntry:
    id: int
    name: str
    description: str = ""
    color: str = ""
    capacity: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "color": self.color,
            "capacity": self.capacity,
        }


@dataclass(frozen=True)
class ZonesSnapshot:
    zones: tuple[ZoneEntry, ...] = ()
    captured_at: str | None = None

    kind = "zones"

    @property
    def names(self) -> list[str]:
        return [zone.name for zone in self.zones]

    @classmethod
    def capture(cls, zones, *, captured_at: datetime) -> ZonesSnapshot:
        return cls(
            zones=tuple(
                ZoneEntry(
                    id=zone.id,
                    name=zone.name,
                    description=zone.description,
                    color=zone.color,
                    capacity=zone.capacity,
                )
                for zone in zones
            ),
            captured_at=_iso(captured_at),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "schema_version": SCHEMA_VERSION,
            "zones": [zone.to_dict() for zone in self.zones],
            "captured_at": self.captured_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> ZonesSnapshot:
        if not payload:
            return cls()
        data = _check_header(payload, cls.kind)
        return cls(
            zones=tuple(
                ZoneEntry(
                    id=int(item["id"]),
                    name=str(item.get("name") or ""),
                    description=str(item.get("description") or ""),
                    color=str(item.get("color") or ""),
                    capacity=item.get("capacity"),
                )
                for item in data.get("zones") or []
            ),
            captured_at=data.get("captured_at"),
        )


@dataclass(frozen=True)
class TemplateSnapshot:
    id: int
    name: str
    file_path: str = ""
    layout_meta: dict[str, Any] = field(default_factory=dict)
    version: int = 1
    captured_at: str | None = None

    kind = "template"

    @classmethod
    def capture(cls, template, *, captured_at: datetime) -> TemplateSnapshot:
        return cls(
            id=template.id,
            name=template.name,
            file_path=template.file_path,
            layout_meta=dict(template.layout_meta or {}),
            version=int(template.version),
            captured_at=_iso(captured_at),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "schema_version": SCHEMA_VERSION,
            "id": self.id,
            "name": self.name,
            "file_path": self.file_path,
            "layout_meta": dict(self.layout_meta),
            "version": self.version,
            "captured_at": self.captured_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> TemplateSnapshot:
        data = _check_header(payload, cls.kind)
        layout_meta = data.get("layout_meta") or {}
        if not isinstance(layout_meta, dict):
            raise SnapshotDecodeError("Template layout_meta must be an object.")
        return cls(
            id=int(data["id"]),
            name=str(data.get("name") or ""),
            file_path=str(data.get("file_path") or ""),
            layout_meta=dict(layout_meta),
            version=int(data.get("version") or 1),
            captured_at=data.get("captured_at"),
        )
