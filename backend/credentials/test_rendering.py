from io import BytesIO
from pathlib import Path
import shutil
import tempfile
from unittest.mock import Mock

from django.test import SimpleTestCase
from PIL import Image

from .exceptions import CredentialRenderError, QRCodeCollisionError
from .rendering import (
    BatchPdfComposer,
    build_qr_code,
    build_verification_url,
    canvas_size_for,
    compose_credential_image,
    px_to_mm,
    render_image_pdf_bytes,
    render_qr_png,
    resolve_block_text,
    zones_label,
)
from .snapshots import (
    EmployeeSnapshot,
    EventSnapshot,
    SnapshotDecodeError,
    TemplateSnapshot,
    ZoneEntry,
    ZonesSnapshot,
)
from .testing import SAMPLE_LAYOUT, pdf_page_count, png_bytes


def _zones(*names: str) -> ZonesSnapshot:
    return ZonesSnapshot(zones=tuple(ZoneEntry(id=index, name=name) for index, name in enumerate(names, 1)))


def _employee() -> EmployeeSnapshot:
    return EmployeeSnapshot(
        id=7,
        first_name="Ana",
        last_name="Rojas",
        document_type="ID",
        document_number="123456",
        function="Security",
        provider_name="Acme Services",
    )


def _event() -> EventSnapshot:
    return EventSnapshot(id=3, name="Expo 2026", location="Convention Center")


def _image_size(png: bytes) -> tuple[int, int]:
    with Image.open(BytesIO(png)) as image:
        return image.size


class QrCodeTests(SimpleTestCase):
    def test_code_format_embeds_credential_id(self):
        code = build_qr_code(42, is_taken=lambda candidate: False)
        self.assertRegex(code, r"^CRD_[A-Z0-9]{12}_42$")

    def test_taken_codes_are_drawn_again(self):
        is_taken = Mock(side_effect=[True, False])
        code = build_qr_code(5, is_taken=is_taken)
        self.assertEqual(is_taken.call_count, 2)
        self.assertTrue(code.endswith("_5"))

    def test_exhausted_attempts_raise(self):
        with self.assertRaises(QRCodeCollisionError):
            build_qr_code(5, is_taken=lambda candidate: True, max_attempts=3)

    def test_verification_url_appends_query_parameter(self):
        self.assertEqual(
            build_verification_url("https://expo.test/verify-qr", "CRD_X_1"),
            "https://expo.test/verify-qr?qr=CRD_X_1",
        )
        self.assertEqual(
            build_verification_url("https://expo.test/verify?lang=es", "CRD_X_1"),
            "https://expo.test/verify?lang=es&qr=CRD_X_1",
        )

    def test_qr_png_is_square(self):
        self.assertEqual(_image_size(render_qr_png("https://expo.test/verify-qr?qr=CRD_X_1")), (300, 300))


class LayoutTextTests(SimpleTestCase):
    def test_zones_label(self):
        self.assertEqual(zones_label(_zones()), "All zones")
        self.assertEqual(zones_label(_zones("Backstage", "Hall A")), "Backstage, Hall A")
        self.assertEqual(
            zones_label(_zones("A", "B", "C", "D", "E")),
            "A, B, C and 2 more",
        )

    def test_block_aliases(self):
        context = {"employee": _employee(), "event": _event(), "zones": _zones("VIP")}
        self.assertEqual(resolve_block_text({"id": "nombre"}, **context), "Ana Rojas")
        self.assertEqual(resolve_block_text({"id": "EMPRESA"}, **context), "Acme Services")
        self.assertEqual(resolve_block_text({"id": "cedula"}, **context), "ID 123456")
        self.assertEqual(resolve_block_text({"id": "lugar"}, **context), "Convention Center")
        self.assertEqual(resolve_block_text({"id": "zonas"}, **context), "VIP")
        self.assertEqual(resolve_block_text({"id": "footer", "text": "STAFF"}, **context), "STAFF")
        self.assertEqual(resolve_block_text({"id": "footer"}, **context), "")

    def test_canvas_keeps_long_side(self):
        self.assertEqual(canvas_size_for(None), (1024, 1448))
        self.assertEqual(canvas_size_for((2000, 1000)), (1448, 724))
        self.assertEqual(canvas_size_for((1000, 2000)), (724, 1448))
        with self.assertRaises(CredentialRenderError):
            canvas_size_for((0, 100))


class CompositionTests(SimpleTestCase):
    def setUp(self):
        self.workdir = Path(tempfile.mkdtemp(prefix="credentials-render-"))
        self.addCleanup(shutil.rmtree, self.workdir, True)
        self.template = TemplateSnapshot(id=1, name="Badge", layout_meta=SAMPLE_LAYOUT)

    def _write(self, name: str, payload: bytes) -> str:
        path = self.workdir / name
        path.write_bytes(payload)
        return str(path)

    def test_default_canvas_without_template_image(self):
        png = compose_credential_image(
            template=self.template,
            employee=_employee(),
            event=_event(),
            zones=_zones("Backstage"),
            qr_png=render_qr_png("payload"),
        )
        self.assertEqual(_image_size(png), (1024, 1448))

    def test_template_image_and_photo_are_scaled(self):
        background = self._write("template.png", png_bytes((2000, 1000), color="#f3f4f6"))
        photo = self._write("photo.png", png_bytes((120, 160), color="#111827"))
        png = compose_credential_image(
            template=TemplateSnapshot(id=1, name="Badge", layout_meta={}),
            employee=_employee(),
            event=_event(),
            zones=_zones(),
            qr_png=render_qr_png("payload"),
            template_image_path=background,
            photo_path=photo,
        )
        self.assertEqual(_image_size(png), (1448, 724))

    def test_unreadable_template_image_raises(self):
        broken = self._write("template.png", b"not a png")
        with self.assertRaises(CredentialRenderError):
            compose_credential_image(
                template=self.template,
                employee=_employee(),
                event=_event(),
                zones=_zones(),
                qr_png=None,
                template_image_path=broken,
            )

    def test_single_image_pdf(self):
        self.assertEqual(px_to_mm(1448, 96), 383.12)
        image = self._write("credential.png", png_bytes((1448, 1018)))
        pdf_data = render_image_pdf_bytes(image, dpi=96)
        self.assertTrue(pdf_data.startswith(b"%PDF"))
        self.assertEqual(pdf_page_count(pdf_data), 1)

    def test_composer_refuses_to_save_without_pages(self):
        composer = BatchPdfComposer(width_mm=383.12, height_mm=269.34)
        with self.assertRaises(CredentialRenderError):
            composer.save(self.workdir / "batch.pdf")


class SnapshotTests(SimpleTestCase):
    def test_snapshot_kind_is_checked(self):
        payload = _employee().to_dict()
        with self.assertRaises(SnapshotDecodeError):
            EventSnapshot.from_dict(payload)

    def test_zone_names_survive_serialisation(self):
        zones = ZonesSnapshot.from_dict(_zones("Hall A", "Hall B").to_dict())
        self.assertEqual(zones.names, ["Hall A", "Hall B"])
