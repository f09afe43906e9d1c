from __future__ import annotations

import os

from django.core.files.base import ContentFile
from django.core.files.storage import Storage, storages

CREDENTIALS_STORAGE_ALIAS = "credentials"

QR_DIRECTORY = "credentials/qr"
IMAGE_DIRECTORY = "credentials/images"
PDF_DIRECTORY = "credentials/pdf"
PRINT_BATCH_DIRECTORY = "print_batches"


def get_credential_storage() -> Storage:
    return storages[CREDENTIALS_STORAGE_ALIAS]


def qr_image_name(qr_code: str) -> str:
    return f"{QR_DIRECTORY}/{qr_code}.png"


def credential_image_name(credential_uuid) -> str:
    return f"{IMAGE_DIRECTORY}/credential_{credential_uuid}.png"


def credential_pdf_name(credential_uuid) -> str:
    return f"{PDF_DIRECTORY}/credential_{credential_uuid}.pdf"


def print_batch_pdf_name(batch_uuid) -> str:
    return f"{PRINT_BATCH_DIRECTORY}/batch_{batch_uuid}.pdf"


def ensure_directory(name: str, storage: Storage | None = None) -> str:
    """Create the parent directory of ``name`` and return its absolute path."""
    storage = storage or get_credential_storage()
    absolute_path = storage.path(name)
    os.makedirs(os.path.dirname(absolute_path), exist_ok=True)
    return absolute_path


def write_bytes(name: str, content: bytes, storage: Storage | None = None) -> str:
    storage = storage or get_credential_storage()
    if storage.exists(name):
        storage.delete(name)
    return storage.save(name, ContentFile(content))


def delete_if_exists(name: str | None, storage: Storage | None = None) -> bool:
    if not name:
        return False
    storage = storage or get_credential_storage()
    if not storage.exists(name):
        return False
    storage.delete(name)
    return True
