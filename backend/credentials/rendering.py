from __future__ import annotations

from io import BytesIO
import logging
from pathlib import Path
import secrets
import string
from typing import Any, Callable

from PIL import Image, ImageDraw, ImageFont, ImageOps, UnidentifiedImageError
import qrcode
from qrcode.constants import ERROR_CORRECT_H
from weasyprint import HTML

from .exceptions import CredentialRenderError, QRCodeCollisionError
from .snapshots import EmployeeSnapshot, EventSnapshot, TemplateSnapshot, ZonesSnapshot

logger = logging.getLogger(__name__)

QR_PREFIX = "CRD_"
QR_RANDOM_LENGTH = 12
QR_ALPHABET = string.ascii_uppercase + string.digits
QR_IMAGE_SIZE = 300
QR_IMAGE_BORDER = 1

CANVAS_LONG_SIDE_PX = 1448
DEFAULT_CANVAS_SIZE = (1024, 1448)
MM_TO_PX = 3.78
FALLBACK_QR_SIZE_PX = 150
FALLBACK_QR_MARGIN_PX = 20
MAX_LISTED_ZONES = 3

TEXT_BLOCK_ALIASES = {
    "nombre": "name",
    "name": "name",
    "full_name": "name",
    "rol": "function",
    "position": "function",
    "function": "function",
    "cargo": "function",
    "company": "company",
    "empresa": "company",
    "identification": "document",
    "cedula": "document",
    "document": "document",
    "event": "event",
    "evento": "event",
    "location": "location",
    "lugar": "location",
    "zona": "zones",
    "zonas": "zones",
    "zones": "zones",
    "proveedor": "provider",
    "provider": "provider",
}


# QR codes


def build_qr_code(credential_id: int, *, is_taken: Callable[[str], bool], max_attempts: int = 10) -> str:
    for _ in range(max(1, max_attempts)):
        token = "".join(secrets.choice(QR_ALPHABET) for _ in range(QR_RANDOM_LENGTH))
        candidate = f"{QR_PREFIX}{token}_{credential_id}"
        if not is_taken(candidate):
            return candidate
    raise QRCodeCollisionError(
        f"Could not allocate a unique QR code for credential {credential_id} "
        f"after {max_attempts} attempts."
    )


def build_verification_url(verification_url: str, qr_code: str) -> str:
    separator = "&" if "?" in verification_url else "?"
    return f"{verification_url}{separator}qr={qr_code}"


def render_qr_png(payload: str, *, size: int = QR_IMAGE_SIZE, border: int = QR_IMAGE_BORDER) -> bytes:
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_H, box_size=10, border=border)
    qr.add_data(payload)
    qr.make(fit=True)
    image = qr.make_image(fill_color="black", back_color="white").get_image().convert("RGB")
    image = image.resize((size, size), Image.NEAREST)
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


# Credential image compositing


def zones_label(zones: ZonesSnapshot) -> str:
    names = [name for name in zones.names if name]
    if not names:
        return "All zones"
    if len(names) <= MAX_LISTED_ZONES:
        return ", ".join(names)
    hidden = len(names) - MAX_LISTED_ZONES
    return f"{', '.join(names[:MAX_LISTED_ZONES])} and {hidden} more"


def resolve_block_text(
    block: dict[str, Any],
    *,
    employee: EmployeeSnapshot,
    event: EventSnapshot,
    zones: ZonesSnapshot,
) -> str:
    kind = TEXT_BLOCK_ALIASES.get(str(block.get("id", "")).strip().lower())
    if kind == "name":
        return employee.full_name
    if kind == "function":
        return employee.function
    if kind in ("company", "provider"):
        return employee.provider_name
    if kind == "document":
        return f"{employee.document_type} {employee.document_number}".strip()
    if kind == "event":
        return event.name
    if kind == "location":
        return event.location
    if kind == "zones":
        return zones_label(zones)
    return str(block.get("text") or "")


def canvas_size_for(template_size: tuple[int, int] | None) -> tuple[int, int]:
    if not template_size:
        return DEFAULT_CANVAS_SIZE
    width, height = template_size
    if width <= 0 or height <= 0:
        raise CredentialRenderError("Template image has invalid dimensions.")
    if width >= height:
        return CANVAS_LONG_SIDE_PX, max(1, round(height * CANVAS_LONG_SIDE_PX / width))
    return max(1, round(width * CANVAS_LONG_SIDE_PX / height)), CANVAS_LONG_SIDE_PX


def _scaled_rect(rect: Any, scale_x: float, scale_y: float) -> tuple[int, int, int, int] | None:
    if not isinstance(rect, dict):
        return None
    try:
        x = round(float(rect["x"]) * scale_x)
        y = round(float(rect["y"]) * scale_y)
        width = round(float(rect["width"]) * scale_x)
        height = round(float(rect["height"]) * scale_y)
    except (KeyError, TypeError, ValueError):
        return None
    if width <= 0 or height <= 0:
        return None
    return x, y, width, height


def _load_font(font_path: str, size: int):
    size = max(8, int(size))
    if font_path:
        try:
            return ImageFont.truetype(font_path, size)
        except OSError:
            logger.warning("Credential font %s could not be loaded, using default font.", font_path)
    return ImageFont.load_default(size=size)


def _wrap_text(draw: ImageDraw.ImageDraw, text: str, font, max_width: int) -> list[str]:
    lines: list[str] = []
    current = ""
    for word in text.split():
        candidate = f"{current} {word}".strip()
        if not current or draw.textlength(candidate, font=font) <= max_width:
            current = candidate
            continue
        lines.append(current)
        current = word
    if current:
        lines.append(current)
    return lines


def _draw_text_block(
    draw: ImageDraw.ImageDraw,
    text: str,
    box: tuple[int, int, int, int],
    *,
    font,
    alignment: str,
) -> None:
    x, y, width, height = box
    lines = _wrap_text(draw, text, font, width)
    if not lines:
        return
    line_height = sum(font.getmetrics())
    top = y + max(0, (height - line_height * len(lines)) // 2)
    for index, line in enumerate(lines):
        line_width = draw.textlength(line, font=font)
        if alignment == "center":
            left = x + (width - line_width) / 2
        elif alignment == "right":
            left = x + width - line_width
        else:
            left = x
        draw.text((left, top + index * line_height), line, fill="black", font=font)


def _open_image(source: bytes | str | Path) -> Image.Image:
    try:
        if isinstance(source, bytes):
            image = Image.open(BytesIO(source))
        else:
            image = Image.open(source)
        image.load()
    except (OSError, UnidentifiedImageError) as exc:
        raise CredentialRenderError(f"Unreadable image: {exc}") from exc
    return image


def compose_credential_image(
    *,
    template: TemplateSnapshot,
    employee: EmployeeSnapshot,
    event: EventSnapshot,
    zones: ZonesSnapshot,
    qr_png: bytes | None,
    template_image_path: str | None = None,
    photo_path: str | None = None,
    font_path: str = "",
) -> bytes:
    """Composite the personalised credential and return PNG bytes.

    Layout rectangles and text blocks are expressed in the template image's own
    pixel space and are scaled onto the canvas. Without a template image the
    default portrait canvas is used unscaled.
    """
    layout = template.layout_meta or {}
    background = _open_image(template_image_path).convert("RGB") if template_image_path else None

    if background is not None:
        canvas_size = canvas_size_for(background.size)
        canvas = background.resize(canvas_size, Image.LANCZOS)
        scale_x = canvas_size[0] / background.size[0]
        scale_y = canvas_size[1] / background.size[1]
    else:
        canvas = Image.new("RGB", DEFAULT_CANVAS_SIZE, "white")
        scale_x = scale_y = 1.0
    scale = min(scale_x, scale_y)

    photo_rect = _scaled_rect(layout.get("rect_photo"), scale_x, scale_y)
    if photo_path and photo_rect:
        x, y, width, height = photo_rect
        photo = ImageOps.fit(_open_image(photo_path).convert("RGB"), (width, height), Image.LANCZOS)
        canvas.paste(photo, (x, y))
    elif photo_rect:
        logger.debug("No photo available for employee %s.", employee.id)

    if qr_png:
        qr_image = _open_image(qr_png).convert("RGB")
        qr_rect = _scaled_rect(layout.get("rect_qr"), scale_x, scale_y)
        if qr_rect is None:
            size = round(FALLBACK_QR_SIZE_PX * scale)
            margin = round(FALLBACK_QR_MARGIN_PX * scale)
            qr_rect = (canvas.width - size - margin, canvas.height - size - margin, size, size)
        x, y, width, height = qr_rect
        canvas.paste(qr_image.resize((width, height), Image.NEAREST), (x, y))

    draw = ImageDraw.Draw(canvas)
    for block in layout.get("text_blocks") or []:
        box = _scaled_rect(block, scale_x, scale_y)
        if box is None:
            continue
        text = resolve_block_text(block, employee=employee, event=event, zones=zones)
        if not text:
            continue
        font_size_mm = float(block.get("font_size") or 4)
        font = _load_font(font_path, round(font_size_mm * MM_TO_PX * scale))
        _draw_text_block(
            draw,
            text,
            box,
            font=font,
            alignment=str(block.get("alignment") or "left").lower(),
        )

    buffer = BytesIO()
    canvas.save(buffer, format="PNG")
    return buffer.getvalue()


# PDF output


def px_to_mm(pixels: int | float, dpi: int | float) -> float:
    return round(float(pixels) * 25.4 / float(dpi), 2)


def page_size_mm(width_px: int, height_px: int, dpi: int) -> tuple[float, float]:
    """Landscape page in millimetres for a raster of ``width_px`` x ``height_px``."""
    width_mm = px_to_mm(width_px, dpi)
    height_mm = px_to_mm(height_px, dpi)
    if height_mm > width_mm:
        width_mm, height_mm = height_mm, width_mm
    return width_mm, height_mm


def inspect_image(path: str | Path) -> tuple[int, int]:
    """Return the pixel size of a raster file, raising if it cannot be decoded."""
    try:
        with Image.open(path) as image:
            image.verify()
        with Image.open(path) as image:
            return image.size
    except (OSError, UnidentifiedImageError) as exc:
        raise CredentialRenderError(f"Unreadable credential image {path}: {exc}") from exc


def _image_page_html(image_path: str | Path, *, width_mm: float, height_mm: float) -> str:
    image_uri = Path(image_path).resolve().as_uri()
    # Full-width, auto-height placement as a page background never spills onto a second page.
    return (
        "<!doctype html>"
        "<html><head><meta charset='utf-8'>"
        "<style>"
        f"@page {{ size: {width_mm}mm {height_mm}mm; margin: 0; "
        f"background: url('{image_uri}') no-repeat left top; background-size: 100% auto; }}"
        "html,body{margin:0;padding:0;}"
        "</style>"
        "</head><body></body></html>"
    )


def render_image_pdf_bytes(image_path: str | Path, *, dpi: int) -> bytes:
    width_px, height_px = inspect_image(image_path)
    width_mm = px_to_mm(width_px, dpi)
    height_mm = px_to_mm(height_px, dpi)
    html = _image_page_html(image_path, width_mm=width_mm, height_mm=height_mm)
    return HTML(string=html, base_url=str(Path(image_path).resolve().parent)).write_pdf()


class BatchPdfComposer:
    """Accumulates one page per credential image and writes a single PDF.

    Every page shares the size computed from the reference raster, whatever
    the pixel size of the individual image.
    """

    def __init__(self, *, width_mm: float, height_mm: float, jpeg_quality: int = 90):
        self.width_mm = width_mm
        self.height_mm = height_mm
        self.jpeg_quality = jpeg_quality
        self._first_document = None
        self._pages: list = []

    @property
    def page_count(self) -> int:
        return len(self._pages)

    def add_image_page(self, image_path: str | Path) -> tuple[int, int]:
        size = inspect_image(image_path)
        html = _image_page_html(image_path, width_mm=self.width_mm, height_mm=self.height_mm)
        document = HTML(string=html, base_url=str(Path(image_path).resolve().parent)).render()
        if self._first_document is None:
            self._first_document = document
        self._pages.extend(document.pages)
        return size

    def save(self, target_path: str | Path) -> None:
        if self._first_document is None or not self._pages:
            raise CredentialRenderError("No printable pages were produced for this batch.")
        self._first_document.copy(self._pages).write_pdf(
            target=str(target_path),
            jpeg_quality=self.jpeg_quality,
            optimize_images=True,
        )
