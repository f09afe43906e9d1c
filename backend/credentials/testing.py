"""Fixtures shared by the credentials test modules."""

from __future__ import annotations

from datetime import timedelta
from io import BytesIO
import os
import re
import shutil
import tempfile
import zlib

from django.test import override_settings
from django.utils import timezone
from PIL import Image

from accreditations.models import AccreditationRequest, Area, Employee, Event, Provider, Template, Zone

from .models import Credential
from .storage import credential_image_name, get_credential_storage, write_bytes

SAMPLE_LAYOUT = {
    "fold_mm": 0,
    "rect_photo": {"x": 40, "y": 40, "width": 300, "height": 380},
    "rect_qr": {"x": 700, "y": 1100, "width": 260, "height": 260},
    "text_blocks": [
        {"id": "nombre", "x": 40, "y": 480, "width": 900, "height": 80, "font_size": 8, "alignment": "left"},
        {"id": "rol", "x": 40, "y": 570, "width": 900, "height": 60, "font_size": 5, "alignment": "left"},
        {"id": "empresa", "x": 40, "y": 640, "width": 900, "height": 60, "font_size": 5, "alignment": "center"},
        {"id": "zonas", "x": 40, "y": 720, "width": 900, "height": 60, "font_size": 4, "alignment": "right"},
    ],
}


def png_bytes(size: tuple[int, int] = (145, 102), *, noise: bool = False, color: str = "#1d4ed8") -> bytes:
    if noise:
        width, height = size
        image = Image.frombytes("RGB", size, os.urandom(width * height * 3))
    else:
        image = Image.new("RGB", size, color)
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


PDF_PAGE_OBJECT = re.compile(rb"/Type\s*/Page(?![a-zA-Z])")
PDF_STREAM = re.compile(rb"(?<!end)stream\r?\n(.*?)\r?\nendstream", re.S)


def pdf_page_count(data: bytes) -> int:
    """Count page objects in a PDF, looking inside compressed object streams too."""
    sections = [data]
    for match in PDF_STREAM.finditer(data):
        try:
            sections.append(zlib.decompress(match.group(1)))
        except zlib.error:
            continue
    return sum(len(PDF_PAGE_OBJECT.findall(section)) for section in sections)


class CredentialStorageMixin:
    """Points the ``credentials`` storage alias at a throwaway directory."""

    def setUp(self):
        super().setUp()
        media_root = tempfile.mkdtemp(prefix="credentials-test-")
        self.addCleanup(shutil.rmtree, media_root, True)
        override = override_settings(
            MEDIA_ROOT=media_root,
            STORAGES={
                "default": {"BACKEND": "django.core.files.storage.FileSystemStorage"},
                "credentials": {
                    "BACKEND": "django.core.files.storage.FileSystemStorage",
                    "OPTIONS": {"location": media_root, "base_url": "/media/public/"},
                },
                "staticfiles": {"BACKEND": "django.contrib.staticfiles.storage.StaticFilesStorage"},
            },
        )
        override.enable()
        self.addCleanup(override.disable)
        self.storage = get_credential_storage()


def create_event_fixture(*, name: str = "Expo 2026", zone_names=("Backstage", "Hall A")):
    event = Event.objects.create(
        name=name,
        description="Annual expo",
        location="Convention Center",
        start_date=timezone.now(),
        end_date=timezone.now() + timedelta(days=3),
    )
    zones = [Zone.objects.create(name=zone_name, color="#ff0000") for zone_name in zone_names]
    event.zones.set(zones)
    area = Area.objects.create(name=f"{name} Logistics")
    provider = Provider.objects.create(name=f"{name} Catering", area=area)
    template = Template.objects.create(
        event=event,
        name="Default badge",
        layout_meta=SAMPLE_LAYOUT,
        version=1,
        is_default=True,
    )
    return event, area, provider, template, zones


def create_request(
    *,
    event: Event,
    provider: Provider,
    first_name: str,
    last_name: str = "Doe",
    zones=(),
    status: str = AccreditationRequest.Status.APPROVED,
) -> AccreditationRequest:
    employee = Employee.objects.create(
        provider=provider,
        first_name=first_name,
        last_name=last_name,
        document_type="ID",
        document_number=f"DOC-{first_name}-{last_name}",
        function="Staff",
    )
    request = AccreditationRequest.objects.create(employee=employee, event=event, status=status)
    if zones:
        request.zones.set(zones)
    return request


def create_ready_credential(
    request: AccreditationRequest,
    *,
    storage=None,
    with_image: bool = True,
    image_name: str | None = None,
    noise: bool = False,
) -> Credential:
    storage = storage or get_credential_storage()
    credential = Credential.objects.create(
        accreditation_request=request,
        status=Credential.Status.READY,
        qr_code=f"CRD_TEST{request.id:08d}_{request.id}",
        generated_at=timezone.now(),
    )
    if image_name:
        credential.credential_image_path = image_name
    else:
        name = credential_image_name(credential.uuid)
        if with_image:
            name = write_bytes(name, png_bytes(noise=noise), storage)
        credential.credential_image_path = name
    credential.save(update_fields=["credential_image_path", "updated_at"])
    return credential
