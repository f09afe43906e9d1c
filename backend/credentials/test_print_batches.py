from datetime import timedelta
from io import StringIO
from pathlib import Path
from unittest.mock import patch

from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone

from .conf import PipelineConfig
from .exceptions import InvalidBatchFilters, PrintBatchError
from .models import Credential, PipelineAuditLog, PrintBatch
from .print_batches import (
    EmptyPrintBatchError,
    cleanup_old_batches,
    get_batch_stats,
    mark_credentials_as_printed,
    queue_print_batch,
    retry_print_batch,
    run_print_batch,
)
from .rendering import page_size_mm
from .storage import write_bytes
from .tasks import generate_print_batch
from .testing import (
    CredentialStorageMixin,
    create_event_fixture,
    create_ready_credential,
    create_request,
    pdf_page_count,
    png_bytes,
)


class RecordingComposer:
    """Stand-in for the PDF composer that remembers page order and writes a fake PDF."""

    def __init__(self, *, width_mm, height_mm, jpeg_quality, output_size=2048):
        self.width_mm = width_mm
        self.height_mm = height_mm
        self.jpeg_quality = jpeg_quality
        self.output_size = output_size
        self.pages: list[str] = []

    @property
    def page_count(self):
        return len(self.pages)

    def add_image_page(self, image_path):
        self.pages.append(str(image_path))
        return (1448, 1018)

    def save(self, target_path):
        Path(target_path).write_bytes(b"%PDF-1.7\n" + b"0" * self.output_size)


def recording_factory(created: list, **overrides):
    def factory(**kwargs):
        composer = RecordingComposer(**kwargs, **overrides)
        created.append(composer)
        return composer

    return factory


class PrintBatchModelTests(TestCase):
    def setUp(self):
        self.event, _, _, _, _ = create_event_fixture()
        self.batch = PrintBatch.objects.create(event=self.event, total_credentials=3)

    def test_progress_never_decreases_or_exceeds_total(self):
        self.batch.update_progress(2)
        self.assertEqual(self.batch.processed_credentials, 2)
        self.assertEqual(self.batch.progress_percentage, 66.7)

        self.batch.update_progress(1)
        self.assertEqual(self.batch.processed_credentials, 2)

        self.batch.update_progress(10)
        self.batch.refresh_from_db()
        self.assertEqual(self.batch.processed_credentials, 3)
        self.assertEqual(self.batch.progress_percentage, 100.0)

    def test_state_helpers(self):
        started = timezone.now()
        self.batch.mark_as_processing(now=started)
        self.assertTrue(self.batch.is_processing)
        self.assertIsNone(self.batch.error_message)

        self.batch.mark_as_ready("print_batches/batch_x.pdf", now=started + timedelta(seconds=42))
        self.batch.refresh_from_db()
        self.assertEqual(self.batch.status, PrintBatch.Status.READY)
        self.assertEqual(self.batch.processed_credentials, 3)
        self.assertEqual(self.batch.duration, timedelta(seconds=42))
        self.assertTrue(self.batch.can_be_downloaded())
        self.assertFalse(self.batch.can_be_retried())

    def test_retry_ceiling(self):
        for expected_retry_count in (1, 2, 3):
            self.batch.mark_as_failed("boom")
            self.assertEqual(self.batch.retry_count, expected_retry_count)
            self.assertIsNone(self.batch.pdf_path)
            self.assertIsNotNone(self.batch.finished_at)
        self.assertEqual(self.batch.status, PrintBatch.Status.FAILED)
        self.assertFalse(self.batch.can_be_retried())

        self.batch.retry_count = 2
        self.assertTrue(self.batch.can_be_retried())


class PageSizeTests(TestCase):
    def test_reference_raster_maps_to_landscape_page(self):
        width_mm, height_mm = page_size_mm(1448, 1018, 96)
        self.assertAlmostEqual(width_mm, 383.08, delta=0.1)
        self.assertAlmostEqual(height_mm, 269.33, delta=0.1)
        self.assertEqual(page_size_mm(1018, 1448, 96), (width_mm, height_mm))


class PrintBatchWorkerTests(CredentialStorageMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.event, _, self.provider, _, _ = create_event_fixture()
        self.config = PipelineConfig()

    def _ready_credentials(self, count: int, **kwargs) -> list[Credential]:
        return [
            create_ready_credential(
                create_request(event=self.event, provider=self.provider, first_name=f"Worker{index}"),
                **kwargs,
            )
            for index in range(count)
        ]

    def _batch_for(self, credentials) -> PrintBatch:
        return PrintBatch.objects.create(
            event=self.event,
            credential_ids=[credential.id for credential in credentials],
            total_credentials=len(credentials),
        )

    def test_missing_image_is_skipped_and_not_marked_printed(self):
        first, second, third = self._ready_credentials(3, noise=True)
        self.storage.delete(second.credential_image_path)
        batch = self._batch_for([first, second, third])

        result = run_print_batch(batch.id, [first.id, second.id, third.id], config=self.config)

        self.assertEqual(result.page_count, 2)
        self.assertEqual(result.skipped_ids, [second.id])
        batch.refresh_from_db()
        self.assertEqual(batch.status, PrintBatch.Status.READY)
        self.assertEqual(batch.pdf_path, f"print_batches/batch_{batch.uuid}.pdf")
        self.assertEqual(batch.processed_credentials, batch.total_credentials)
        self.assertTrue(self.storage.exists(batch.pdf_path))
        self.assertGreaterEqual(self.storage.size(batch.pdf_path), 1024)
        with self.storage.open(batch.pdf_path, "rb") as handle:
            pdf_data = handle.read()
        self.assertEqual(pdf_data[:4], b"%PDF")
        self.assertEqual(pdf_page_count(pdf_data), 2)

        for credential in (first, second, third):
            credential.refresh_from_db()
        self.assertIsNone(second.printed_at)
        self.assertIsNone(second.print_batch_id)
        self.assertIsNotNone(first.printed_at)
        self.assertEqual(first.print_batch_id, batch.id)
        self.assertEqual(third.print_batch_id, batch.id)
        self.assertTrue(
            PipelineAuditLog.objects.filter(action="print_batch.ready", print_batch=batch).exists()
        )

    def test_unreadable_image_is_skipped(self):
        good, broken = self._ready_credentials(2, noise=True)
        write_bytes(broken.credential_image_path, b"not an image at all", self.storage)
        batch = self._batch_for([good, broken])

        result = run_print_batch(batch.id, [good.id, broken.id], config=self.config)

        self.assertEqual(result.page_count, 1)
        self.assertEqual(result.printed_ids, [good.id])
        with self.storage.open(result.pdf_path, "rb") as handle:
            self.assertEqual(pdf_page_count(handle.read()), 1)

    def test_batch_without_ready_credentials_fails(self):
        request = create_request(event=self.event, provider=self.provider, first_name="Pending")
        pending = Credential.objects.create(accreditation_request=request)
        batch = self._batch_for([pending])

        with self.assertRaises(EmptyPrintBatchError):
            run_print_batch(batch.id, [pending.id], config=self.config)

        batch.refresh_from_db()
        self.assertEqual(batch.status, PrintBatch.Status.FAILED)
        self.assertTrue(batch.error_message)
        self.assertIsNone(batch.pdf_path)
        self.assertEqual(batch.retry_count, 1)
        self.assertTrue(
            PipelineAuditLog.objects.filter(action="print_batch.failed", print_batch=batch).exists()
        )

    def test_ready_batch_is_left_untouched(self):
        batch = PrintBatch.objects.create(
            event=self.event,
            status=PrintBatch.Status.READY,
            pdf_path="print_batches/batch_done.pdf",
            total_credentials=1,
            processed_credentials=1,
        )
        created = []

        result = run_print_batch(
            batch.id, [1], config=self.config, composer_factory=recording_factory(created)
        )

        self.assertTrue(result.skipped)
        self.assertEqual(created, [])
        batch.refresh_from_db()
        self.assertEqual(batch.pdf_path, "print_batches/batch_done.pdf")
        self.assertIsNone(batch.started_at)

    def test_progress_advances_per_chunk(self):
        shared_image = write_bytes("credentials/images/shared.png", png_bytes(), self.storage)
        credentials = self._ready_credentials(250, image_name=shared_image)
        batch = self._batch_for(credentials)
        observed = []
        original_update_progress = PrintBatch.update_progress

        def record_progress(instance, processed):
            original_update_progress(instance, processed)
            observed.append(instance.processed_credentials)
            self.assertLessEqual(instance.processed_credentials, instance.total_credentials)

        created = []
        with patch.object(PrintBatch, "update_progress", autospec=True, side_effect=record_progress):
            result = run_print_batch(
                batch.id,
                [credential.id for credential in credentials],
                config=PipelineConfig(chunk_size=100),
                composer_factory=recording_factory(created),
            )

        self.assertEqual(observed, [100, 200, 250])
        self.assertEqual(result.page_count, 250)
        batch.refresh_from_db()
        self.assertEqual(batch.processed_credentials, 250)
        self.assertEqual(
            Credential.objects.filter(print_batch=batch, printed_at__isnull=False).count(), 250
        )

    def test_pages_follow_captured_id_order_at_reference_size(self):
        credentials = self._ready_credentials(3)
        write_bytes(credentials[0].credential_image_path, png_bytes((600, 900)), self.storage)
        ordered = [credentials[2], credentials[0], credentials[1]]
        batch = self._batch_for(ordered)
        created = []

        run_print_batch(
            batch.id,
            [credential.id for credential in ordered],
            config=self.config,
            composer_factory=recording_factory(created),
        )

        composer = created[0]
        self.assertEqual(
            [Path(page).name for page in composer.pages],
            [Path(credential.credential_image_path).name for credential in ordered],
        )
        self.assertEqual((composer.width_mm, composer.height_mm), page_size_mm(1448, 1018, 96))
        self.assertEqual(composer.jpeg_quality, 90)

    def test_tiny_output_is_treated_as_corrupt(self):
        credentials = self._ready_credentials(1)
        batch = self._batch_for(credentials)

        with self.assertRaises(PrintBatchError):
            run_print_batch(
                batch.id,
                [credentials[0].id],
                config=self.config,
                composer_factory=recording_factory([], output_size=10),
            )

        batch.refresh_from_db()
        self.assertEqual(batch.status, PrintBatch.Status.FAILED)
        self.assertIn("corrupt", batch.error_message)
        self.assertFalse(self.storage.exists(f"print_batches/batch_{batch.uuid}.pdf"))
        credentials[0].refresh_from_db()
        self.assertIsNone(credentials[0].printed_at)

    def test_mark_printed_can_be_repeated(self):
        credentials = self._ready_credentials(2)
        batch = self._batch_for(credentials)
        first_stamp = timezone.now() - timedelta(hours=1)
        second_stamp = timezone.now()

        self.assertEqual(mark_credentials_as_printed(credentials, batch, now=first_stamp), 2)
        self.assertEqual(mark_credentials_as_printed(credentials, batch, now=second_stamp), 2)

        credentials[0].refresh_from_db()
        self.assertEqual(credentials[0].printed_at, second_stamp)
        self.assertEqual(credentials[0].print_batch_id, batch.id)

    def test_task_retries_whole_batch_on_failure(self):
        with patch(
            "credentials.tasks.run_print_batch", side_effect=PrintBatchError("renderer crashed")
        ) as worker_mock:
            result = generate_print_batch.apply(args=[1, [1, 2]])

        self.assertTrue(result.failed())
        self.assertEqual(worker_mock.call_count, 3)

    def test_task_does_not_retry_an_empty_batch(self):
        batch = PrintBatch.objects.create(event=self.event, total_credentials=0)

        result = generate_print_batch.apply(args=[batch.id, []])

        self.assertTrue(result.failed())
        batch.refresh_from_db()
        self.assertEqual(batch.status, PrintBatch.Status.FAILED)
        self.assertEqual(batch.retry_count, 1)


class PrintBatchServiceTests(CredentialStorageMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.event, self.area, self.provider, _, _ = create_event_fixture()
        self.other_event, self.other_area, self.other_provider, _, _ = create_event_fixture(
            name="Fair 2026"
        )
        self.printed = create_ready_credential(
            create_request(event=self.event, provider=self.provider, first_name="Printed")
        )
        Credential.objects.filter(id=self.printed.id).update(printed_at=timezone.now())
        self.fresh = create_ready_credential(
            create_request(event=self.event, provider=self.provider, first_name="Fresh")
        )
        self.pending = Credential.objects.create(
            accreditation_request=create_request(
                event=self.event, provider=self.provider, first_name="Pending"
            )
        )
        self.elsewhere = create_ready_credential(
            create_request(event=self.other_event, provider=self.other_provider, first_name="Else")
        )

    def test_filters_are_validated(self):
        with self.assertRaises(InvalidBatchFilters) as missing_event:
            queue_print_batch({})
        self.assertEqual(missing_event.exception.field, "event_id")

        with self.assertRaises(InvalidBatchFilters):
            queue_print_batch({"event_id": 999999})

        with self.assertRaises(InvalidBatchFilters) as unknown_provider:
            queue_print_batch({"event_id": self.event.id, "provider_id": [999999]})
        self.assertEqual(unknown_provider.exception.field, "provider_id")

        with self.assertRaises(InvalidBatchFilters):
            queue_print_batch({"event_id": self.event.id, "area_id": ["not-a-number"]})

    @patch("credentials.tasks.generate_print_batch")
    def test_queue_selects_ready_unprinted_credentials(self, task_mock):
        with self.captureOnCommitCallbacks(execute=True):
            batch = queue_print_batch({"event_id": self.event.id, "area_id": [self.area.id]})

        self.assertEqual(batch.status, PrintBatch.Status.QUEUED)
        self.assertEqual(batch.total_credentials, 1)
        self.assertEqual(batch.credential_ids, [self.fresh.id])
        self.assertTrue(batch.filters_snapshot["only_unprinted"])
        task_mock.delay.assert_called_once_with(batch.id, [self.fresh.id])

    @patch("credentials.tasks.generate_print_batch")
    def test_queue_can_include_printed_credentials(self, _task_mock):
        batch = queue_print_batch(
            {"event_id": self.event.id, "provider_id": self.provider.id, "only_unprinted": False}
        )
        self.assertEqual(batch.credential_ids, [self.printed.id, self.fresh.id])

    def test_queue_without_matches_raises(self):
        with self.assertRaises(PrintBatchError):
            queue_print_batch({"event_id": self.event.id, "provider_id": [self.other_provider.id]})
        self.assertFalse(PrintBatch.objects.exists())

    @patch("credentials.tasks.generate_print_batch")
    def test_retry_requeues_failed_batch_until_ceiling(self, task_mock):
        batch = PrintBatch.objects.create(
            event=self.event,
            status=PrintBatch.Status.FAILED,
            filters_snapshot={"event_id": self.event.id, "area_id": [], "provider_id": [], "only_unprinted": True},
            total_credentials=5,
            processed_credentials=4,
            retry_count=1,
            error_message="renderer crashed",
        )

        with self.captureOnCommitCallbacks(execute=True):
            retry_print_batch(batch)

        batch.refresh_from_db()
        self.assertEqual(batch.status, PrintBatch.Status.QUEUED)
        self.assertEqual(batch.processed_credentials, 0)
        self.assertEqual(batch.total_credentials, 1)
        self.assertIsNone(batch.error_message)
        self.assertIsNone(batch.started_at)
        task_mock.delay.assert_called_once_with(batch.id, [self.fresh.id])

        PrintBatch.objects.filter(id=batch.id).update(status=PrintBatch.Status.FAILED, retry_count=3)
        batch.refresh_from_db()
        with self.assertRaises(PrintBatchError):
            retry_print_batch(batch)

    def _old_ready_batch(self, *, days_old: int) -> PrintBatch:
        batch = PrintBatch.objects.create(
            event=self.event, status=PrintBatch.Status.READY, total_credentials=1, processed_credentials=1
        )
        pdf_path = write_bytes(f"print_batches/batch_{batch.uuid}.pdf", b"%PDF-1.7 old", self.storage)
        PrintBatch.objects.filter(id=batch.id).update(
            pdf_path=pdf_path, created_at=timezone.now() - timedelta(days=days_old)
        )
        batch.refresh_from_db()
        return batch

    def test_cleanup_archives_old_batches_only(self):
        old_batch = self._old_ready_batch(days_old=120)
        recent_batch = self._old_ready_batch(days_old=5)
        old_pdf = old_batch.pdf_path

        summary = cleanup_old_batches(days=90)

        self.assertEqual(summary, {"archived": 1, "deleted_files": 1})
        old_batch.refresh_from_db()
        recent_batch.refresh_from_db()
        self.assertEqual(old_batch.status, PrintBatch.Status.ARCHIVED)
        self.assertIsNone(old_batch.pdf_path)
        self.assertFalse(self.storage.exists(old_pdf))
        self.assertEqual(recent_batch.status, PrintBatch.Status.READY)
        self.assertTrue(self.storage.exists(recent_batch.pdf_path))

    def test_cleanup_command_dry_run_keeps_files(self):
        old_batch = self._old_ready_batch(days_old=120)

        stdout = StringIO()
        call_command("cleanup_print_batches", "--days", "90", "--dry-run", stdout=stdout)

        self.assertIn("Dry run complete: 1 candidate(s).", stdout.getvalue())
        old_batch.refresh_from_db()
        self.assertEqual(old_batch.status, PrintBatch.Status.READY)

        stdout = StringIO()
        call_command("cleanup_print_batches", "--days", "90", stdout=stdout)
        self.assertIn("Archived 1 batch(es)", stdout.getvalue())

    def test_batch_stats(self):
        PrintBatch.objects.create(event=self.event, status=PrintBatch.Status.FAILED)
        PrintBatch.objects.create(event=self.event)

        stats = get_batch_stats()

        self.assertEqual(stats["failed"], 1)
        self.assertEqual(stats["queued"], 1)
        self.assertEqual(stats["ready"], 0)
        self.assertEqual(stats["total"], 2)
