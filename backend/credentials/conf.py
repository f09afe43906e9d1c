from __future__ import annotations

from dataclasses import dataclass

from django.conf import settings

REFERENCE_WIDTH_PX = 1448
REFERENCE_HEIGHT_PX = 1018
REFERENCE_DPI = 96
MIN_BATCH_PDF_BYTES = 1024
BATCH_RETRY_CEILING = 3


@dataclass(frozen=True)
class PipelineConfig:
    max_attempts: int = 3
    retry_delay_seconds: int = 30
    retry_deadline_seconds: int = 600
    verification_url: str = "http://localhost:8000/verify-qr"
    font_path: str = ""
    chunk_size: int = 100
    jpeg_quality: int = 90
    cleanup_days: int = 90
    qr_max_attempts: int = 10
    reference_width_px: int = REFERENCE_WIDTH_PX
    reference_height_px: int = REFERENCE_HEIGHT_PX
    reference_dpi: int = REFERENCE_DPI
    min_batch_pdf_bytes: int = MIN_BATCH_PDF_BYTES

    @classmethod
    def from_settings(cls) -> PipelineConfig:
        return cls(
            max_attempts=int(getattr(settings, "CREDENTIALS_RETRY_MAX_ATTEMPTS", 3)),
            retry_delay_seconds=int(getattr(settings, "CREDENTIALS_RETRY_DELAY_SECONDS", 30)),
            retry_deadline_seconds=int(getattr(settings, "CREDENTIALS_RETRY_DEADLINE_SECONDS", 600)),
            verification_url=str(
                getattr(settings, "CREDENTIALS_VERIFICATION_URL", cls.verification_url)
            ),
            font_path=str(getattr(settings, "CREDENTIALS_FONT_PATH", "") or ""),
            chunk_size=max(1, int(getattr(settings, "PRINT_BATCH_CHUNK_SIZE", 100))),
            jpeg_quality=int(getattr(settings, "PRINT_BATCH_JPEG_QUALITY", 90)),
            cleanup_days=int(getattr(settings, "PRINT_BATCH_CLEANUP_DAYS", 90)),
        )

    def retry_delay_for(self, attempt: int) -> int:
        """Linear backoff: the nth failed attempt waits ``retry_delay_seconds * n``."""
        return self.retry_delay_seconds * max(1, int(attempt))
