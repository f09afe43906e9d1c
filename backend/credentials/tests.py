from datetime import timedelta
from io import StringIO
import json
import re
from unittest.mock import patch

from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone

from accreditations.models import AccreditationRequest, Template

from .conf import PipelineConfig
from .exceptions import CredentialRenderError
from .jobs import (
    Done,
    Fail,
    RetryAfter,
    regenerate_event_credentials,
    regenerate_single_credential,
    run_credential_generation,
    run_expiration_sweep,
)
from .models import Credential, PipelineAuditLog
from .rendering import compose_credential_image
from .services import (
    approve_accreditation_request,
    create_credential_for_request,
    expire_event_credentials,
    get_credential_stats,
    mark_credential_ready,
    regenerate_credential,
    verify_credential_by_qr,
)
from .snapshots import SCHEMA_VERSION, EmployeeSnapshot, SnapshotDecodeError
from .tasks import expire_event_credentials as expire_event_credentials_task
from .tasks import generate_credential
from .tasks import regenerate_event_credentials as regenerate_event_credentials_task
from .testing import (
    CredentialStorageMixin,
    create_event_fixture,
    create_ready_credential,
    create_request,
)

QR_CODE_PATTERN = re.compile(r"^CRD_[A-Z0-9]{12}_\d+$")


class CredentialModelTests(TestCase):
    def setUp(self):
        self.event, _, self.provider, _, _ = create_event_fixture()
        self.request = create_request(event=self.event, provider=self.provider, first_name="Ana")

    def test_is_ready_requires_active_and_unexpired_credential(self):
        credential = Credential.objects.create(
            accreditation_request=self.request,
            status=Credential.Status.READY,
            qr_code="CRD_AAAAAAAAAAAA_1",
            credential_image_path="credentials/images/a.png",
        )
        self.assertTrue(credential.is_ready)

        credential.is_active = False
        self.assertFalse(credential.is_ready)

        credential.is_active = True
        credential.expires_at = timezone.now() - timedelta(minutes=1)
        self.assertTrue(credential.is_expired)
        self.assertFalse(credential.is_ready)

    def test_formatted_error_message_reads_structured_summary(self):
        credential = Credential.objects.create(
            accreditation_request=self.request,
            status=Credential.Status.FAILED,
            error_message=json.dumps({"message": "Template missing", "type": "CredentialRenderError"}),
        )
        self.assertEqual(credential.formatted_error_message, "CredentialRenderError: Template missing")

        credential.error_message = "plain failure"
        self.assertEqual(credential.formatted_error_message, "plain failure")
        self.assertEqual(credential.error_summary, {"message": "plain failure"})

    def test_status_changes_are_kept_in_history(self):
        credential = create_credential_for_request(self.request)
        credential.status = Credential.Status.GENERATING
        credential.save()
        self.assertEqual(credential.history.count(), 2)
        self.assertEqual(credential.history.first().status, Credential.Status.GENERATING)

    def test_snapshot_of_newer_schema_is_rejected(self):
        payload = {"kind": "employee", "schema_version": SCHEMA_VERSION + 1, "id": 1}
        with self.assertRaises(SnapshotDecodeError):
            EmployeeSnapshot.from_dict(payload)
        with self.assertRaises(SnapshotDecodeError):
            EmployeeSnapshot.from_dict({"kind": "event", "schema_version": 1, "id": 1})


class CredentialGenerationWorkerTests(CredentialStorageMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.event, _, self.provider, self.template, self.zones = create_event_fixture()
        self.request = create_request(
            event=self.event, provider=self.provider, first_name="Ana", zones=self.zones
        )
        self.credential = create_credential_for_request(self.request)
        self.config = PipelineConfig(verification_url="https://badges.example.com/verify-qr")

    def test_generation_produces_all_artifacts(self):
        directive = run_credential_generation(self.credential.id, attempt=1, config=self.config)

        self.assertEqual(directive, Done())
        self.credential.refresh_from_db()
        self.assertEqual(self.credential.status, Credential.Status.READY)
        self.assertIsNotNone(self.credential.generated_at)
        self.assertIsNone(self.credential.error_message)
        self.assertRegex(self.credential.qr_code, QR_CODE_PATTERN)
        self.assertTrue(self.credential.qr_code.endswith(f"_{self.credential.id}"))
        for path in (
            self.credential.qr_image_path,
            self.credential.credential_image_path,
            self.credential.credential_pdf_path,
        ):
            self.assertIsNotNone(path)
            self.assertTrue(self.storage.exists(path))
        self.assertEqual(
            self.credential.credential_image_path,
            f"credentials/images/credential_{self.credential.uuid}.png",
        )
        self.assertEqual(self.credential.employee.full_name, "Ana Doe")
        self.assertEqual(self.credential.template.version, 1)
        self.assertEqual(self.credential.zones.names, ["Backstage", "Hall A"])

    def test_ready_credential_is_not_rendered_again(self):
        run_credential_generation(self.credential.id, attempt=1, config=self.config)
        self.credential.refresh_from_db()
        generated_at = self.credential.generated_at
        image_path = self.credential.credential_image_path
        pdf_path = self.credential.credential_pdf_path

        with patch("credentials.services.compose_credential_image") as compose_mock, patch(
            "credentials.services.render_qr_png"
        ) as qr_mock:
            directive = run_credential_generation(self.credential.id, attempt=1, config=self.config)

        self.assertEqual(directive, Done(skipped=True))
        compose_mock.assert_not_called()
        qr_mock.assert_not_called()
        self.credential.refresh_from_db()
        self.assertEqual(self.credential.generated_at, generated_at)
        self.assertEqual(self.credential.credential_image_path, image_path)
        self.assertEqual(self.credential.credential_pdf_path, pdf_path)

    @patch("credentials.services.compose_credential_image", side_effect=CredentialRenderError("disk full"))
    def test_retry_backoff_is_linear_and_final_attempt_fails(self, _compose_mock):
        directives = [
            run_credential_generation(self.credential.id, attempt=attempt, config=self.config)
            for attempt in (1, 2, 3)
        ]

        self.assertEqual(directives[0], RetryAfter(seconds=30, reason="disk full"))
        self.assertEqual(directives[1], RetryAfter(seconds=60, reason="disk full"))
        self.assertEqual(directives[2], Fail(reason="disk full"))

        self.credential.refresh_from_db()
        self.assertEqual(self.credential.status, Credential.Status.FAILED)
        self.assertEqual(self.credential.retry_count, 3)
        summary = self.credential.error_summary
        self.assertEqual(summary["message"], "disk full")
        self.assertEqual(summary["type"], "CredentialRenderError")
        self.assertEqual(summary["attempt"], 3)
        self.assertEqual(summary["total_attempts"], 3)
        self.assertIn("failed_at", summary)
        self.assertIsNotNone(summary["file"])
        self.assertTrue(
            PipelineAuditLog.objects.filter(
                action="credential.generation_failed", credential=self.credential
            ).exists()
        )

    def test_image_failure_recovers_on_third_attempt(self):
        calls = {"count": 0}

        def flaky_compose(**kwargs):
            calls["count"] += 1
            if calls["count"] < 3:
                raise CredentialRenderError(f"compositing failed #{calls['count']}")
            return compose_credential_image(**kwargs)

        with patch("credentials.services.compose_credential_image", side_effect=flaky_compose):
            first = run_credential_generation(self.credential.id, attempt=1, config=self.config)
            self.credential.refresh_from_db()
            self.assertEqual(self.credential.status, Credential.Status.PENDING)
            self.assertEqual(self.credential.error_summary["attempt"], 1)
            second = run_credential_generation(self.credential.id, attempt=2, config=self.config)
            third = run_credential_generation(self.credential.id, attempt=3, config=self.config)

        self.assertIsInstance(first, RetryAfter)
        self.assertIsInstance(second, RetryAfter)
        self.assertGreaterEqual(first.seconds + second.seconds, 30 + 60)
        self.assertEqual(third, Done())
        self.credential.refresh_from_db()
        self.assertEqual(self.credential.status, Credential.Status.READY)
        self.assertEqual(self.credential.retry_count, 2)
        self.assertIsNone(self.credential.error_message)

    @patch("credentials.services.compose_credential_image", side_effect=CredentialRenderError("slow storage"))
    def test_deadline_stops_retrying_before_attempts_run_out(self, _compose_mock):
        first_attempt_at = timezone.now() - timedelta(minutes=11)

        directive = run_credential_generation(
            self.credential.id,
            attempt=1,
            first_attempt_at=first_attempt_at,
            config=self.config,
        )

        self.assertEqual(directive, Fail(reason="slow storage"))
        self.credential.refresh_from_db()
        self.assertEqual(self.credential.status, Credential.Status.FAILED)

    def test_worker_uses_injected_clock(self):
        fixed_now = timezone.now().replace(microsecond=0) - timedelta(days=1)

        run_credential_generation(
            self.credential.id, attempt=1, config=self.config, clock=lambda: fixed_now
        )

        self.credential.refresh_from_db()
        self.assertEqual(self.credential.generated_at, fixed_now)
        self.assertEqual(self.credential.employee.captured_at, fixed_now.isoformat())

    def test_generation_task_retries_eagerly_until_ready(self):
        calls = {"count": 0}

        def flaky_compose(**kwargs):
            calls["count"] += 1
            if calls["count"] < 3:
                raise CredentialRenderError("temporary")
            return compose_credential_image(**kwargs)

        with patch("credentials.services.compose_credential_image", side_effect=flaky_compose):
            result = generate_credential.apply(args=[self.credential.id])

        self.assertEqual(result.get(), "ready")
        self.assertEqual(calls["count"], 3)
        self.credential.refresh_from_db()
        self.assertEqual(self.credential.status, Credential.Status.READY)
        self.assertEqual(self.credential.retry_count, 2)


class CredentialApprovalFlowTests(CredentialStorageMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.event, _, self.provider, _, self.zones = create_event_fixture()
        self.request = create_request(
            event=self.event,
            provider=self.provider,
            first_name="Luis",
            status=AccreditationRequest.Status.UNDER_REVIEW,
        )

    @patch("credentials.tasks.generate_credential")
    def test_approval_creates_pending_credential_and_queues_generation(self, task_mock):
        with self.captureOnCommitCallbacks(execute=True):
            credential = approve_accreditation_request(self.request)

        self.request.refresh_from_db()
        self.assertEqual(self.request.status, AccreditationRequest.Status.APPROVED)
        self.assertIsNotNone(self.request.approved_at)
        self.assertEqual(credential.status, Credential.Status.PENDING)
        task_mock.delay.assert_called_once_with(credential.id)

        directive = run_credential_generation(credential.id, attempt=1)

        self.assertEqual(directive, Done())
        credential.refresh_from_db()
        self.assertEqual(credential.status, Credential.Status.READY)
        self.assertIsNotNone(credential.generated_at)
        self.assertIsNotNone(credential.qr_image_path)
        self.assertIsNotNone(credential.credential_image_path)
        self.assertIsNotNone(credential.credential_pdf_path)

    @patch("credentials.tasks.generate_credential")
    def test_approving_twice_keeps_a_single_credential(self, _task_mock):
        first = approve_accreditation_request(self.request)
        second = approve_accreditation_request(self.request)
        self.assertEqual(first.id, second.id)
        self.assertEqual(Credential.objects.filter(accreditation_request=self.request).count(), 1)


class BulkRegenerationTests(CredentialStorageMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.event, _, self.provider, self.template, self.zones = create_event_fixture()
        self.credentials = [
            create_credential_for_request(
                create_request(event=self.event, provider=self.provider, first_name=name)
            )
            for name in ("Ana", "Ben", "Cleo", "Dan")
        ]

    def test_event_regeneration_isolates_single_failure(self):
        failing_id = self.credentials[1].id

        def fake_process(credential, *, config, now, storage=None, render_pdf=True):
            if credential.id == failing_id:
                raise CredentialRenderError("broken photo")
            credential.qr_code = f"CRD_FAKE{credential.id:08d}_{credential.id}"
            credential.credential_image_path = f"credentials/images/credential_{credential.uuid}.png"
            credential.save(update_fields=["qr_code", "credential_image_path", "updated_at"])
            mark_credential_ready(credential, now=now)
            return credential

        with patch("credentials.jobs.process_credential_generation", side_effect=fake_process):
            report = regenerate_event_credentials(self.event.id)

        self.assertEqual(report.success_count, 3)
        self.assertEqual(report.error_count, 1)
        self.assertEqual(report.errors[0].credential_id, failing_id)
        for credential in self.credentials:
            credential.refresh_from_db()
            if credential.id == failing_id:
                self.assertEqual(credential.status, Credential.Status.FAILED)
                self.assertEqual(credential.error_message, "broken photo")
            else:
                self.assertEqual(credential.status, Credential.Status.READY)
        self.assertTrue(
            PipelineAuditLog.objects.filter(
                action="credentials.event_regenerated", event=self.event
            ).exists()
        )

    def test_event_regeneration_reissues_qr_and_refreshes_template(self):
        credential = self.credentials[0]
        run_credential_generation(credential.id, attempt=1)
        credential.refresh_from_db()
        old_qr_code = credential.qr_code
        Template.objects.filter(id=self.template.id).update(version=2, name="Badge v2")

        report = regenerate_event_credentials(self.event.id)

        self.assertEqual(report.error_count, 0)
        credential.refresh_from_db()
        self.assertEqual(credential.status, Credential.Status.READY)
        self.assertNotEqual(credential.qr_code, old_qr_code)
        self.assertEqual(credential.template.version, 2)
        self.assertEqual(credential.template.name, "Badge v2")

    def test_event_regeneration_skips_requests_that_are_not_approved(self):
        pending_request = create_request(
            event=self.event,
            provider=self.provider,
            first_name="Eve",
            status=AccreditationRequest.Status.SUBMITTED,
        )
        skipped = create_credential_for_request(pending_request)

        with patch("credentials.jobs.process_credential_generation") as process_mock:
            report = regenerate_event_credentials(self.event.id)

        self.assertEqual(len(report.results), 4)
        self.assertNotIn(skipped.id, [call.args[0].id for call in process_mock.call_args_list])

    def test_event_regeneration_without_template_propagates(self):
        Template.objects.filter(event=self.event).delete()
        with self.assertRaises(CredentialRenderError):
            regenerate_event_credentials(self.event.id)

    def test_single_regeneration_keeps_qr_unless_asked(self):
        credential = self.credentials[0]
        run_credential_generation(credential.id, attempt=1)
        credential.refresh_from_db()
        qr_code = credential.qr_code

        result = regenerate_single_credential(credential.id, self.template.id, regenerate_pdf=False)

        self.assertTrue(result.ok)
        credential.refresh_from_db()
        self.assertEqual(credential.status, Credential.Status.READY)
        self.assertEqual(credential.qr_code, qr_code)
        self.assertIsNotNone(credential.credential_image_path)
        self.assertIsNone(credential.credential_pdf_path)

        regenerate_single_credential(credential.id, self.template.id, regenerate_qr=True)

        credential.refresh_from_db()
        self.assertNotEqual(credential.qr_code, qr_code)
        self.assertIsNotNone(credential.credential_pdf_path)

    def test_single_regeneration_with_unknown_ids_is_a_no_op(self):
        self.assertIsNone(regenerate_single_credential(999999, self.template.id))
        self.assertIsNone(regenerate_single_credential(self.credentials[0].id, 999999))
        self.credentials[0].refresh_from_db()
        self.assertEqual(self.credentials[0].status, Credential.Status.PENDING)

    @patch("credentials.services.compose_credential_image", side_effect=CredentialRenderError("bad layout"))
    def test_single_regeneration_failure_marks_failed_and_reraises(self, _compose_mock):
        credential = self.credentials[0]
        with self.assertRaises(CredentialRenderError):
            regenerate_single_credential(credential.id, self.template.id)

        credential.refresh_from_db()
        self.assertEqual(credential.status, Credential.Status.FAILED)
        self.assertEqual(credential.error_message, "bad layout")

    def test_single_regeneration_redraws_qr_when_its_image_is_missing(self):
        credential = self.credentials[0]
        run_credential_generation(credential.id, attempt=1)
        credential.refresh_from_db()
        self.storage.delete(credential.qr_image_path)
        Credential.objects.filter(id=credential.id).update(qr_image_path=None)

        result = regenerate_single_credential(credential.id, self.template.id, regenerate_pdf=False)

        self.assertTrue(result.ok)
        credential.refresh_from_db()
        self.assertEqual(credential.status, Credential.Status.READY)
        self.assertRegex(credential.qr_code, QR_CODE_PATTERN)
        self.assertIsNotNone(credential.qr_image_path)
        self.assertTrue(self.storage.exists(credential.qr_image_path))

    @patch("credentials.tasks.run_event_regeneration", side_effect=RuntimeError("db down"))
    def test_event_regeneration_task_is_retried_by_the_queue(self, regeneration_mock):
        result = regenerate_event_credentials_task.apply(args=[self.event.id])

        self.assertTrue(result.failed())
        self.assertEqual(regeneration_mock.call_count, 3)


class CredentialServiceTests(CredentialStorageMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.event, _, self.provider, _, _ = create_event_fixture()
        self.other_event, _, self.other_provider, _, _ = create_event_fixture(name="Fair 2026")
        self.credential = create_ready_credential(
            create_request(event=self.event, provider=self.provider, first_name="Ana")
        )
        self.other_credential = create_ready_credential(
            create_request(event=self.other_event, provider=self.other_provider, first_name="Ben")
        )

    def test_expire_event_credentials_is_scoped_and_idempotent(self):
        expired = expire_event_credentials(self.event.id)

        self.assertEqual(expired, 1)
        self.credential.refresh_from_db()
        self.other_credential.refresh_from_db()
        self.assertFalse(self.credential.is_active)
        self.assertIsNotNone(self.credential.expires_at)
        self.assertFalse(self.credential.is_ready)
        self.assertTrue(self.other_credential.is_active)
        self.assertEqual(expire_event_credentials(self.event.id), 0)
        self.assertEqual(
            PipelineAuditLog.objects.filter(action="credentials.event_expired").count(), 1
        )

    def test_expiration_sweep_logs_and_reraises(self):
        with patch(
            "credentials.jobs.expire_event_credentials", side_effect=RuntimeError("db down")
        ), self.assertLogs("credentials.jobs", level="ERROR"):
            with self.assertRaises(RuntimeError):
                run_expiration_sweep(self.event.id)

    @patch("credentials.tasks.run_expiration_sweep", side_effect=RuntimeError("db down"))
    def test_expiration_task_is_retried_by_the_queue(self, sweep_mock):
        result = expire_event_credentials_task.apply(args=[self.event.id])

        self.assertTrue(result.failed())
        self.assertEqual(sweep_mock.call_count, 3)

    def test_expiration_task_returns_expired_count(self):
        result = expire_event_credentials_task.apply(args=[self.event.id])

        self.assertEqual(result.get(), 1)

    def test_verify_credential_by_qr(self):
        self.assertIsNone(verify_credential_by_qr("CRD_UNKNOWN"))

        result = verify_credential_by_qr(self.credential.qr_code)
        self.assertTrue(result["valid"])
        self.assertEqual(result["credential"]["uuid"], str(self.credential.uuid))

        expire_event_credentials(self.event.id)
        result = verify_credential_by_qr(self.credential.qr_code)
        self.assertFalse(result["valid"])

    @patch("credentials.tasks.generate_credential")
    def test_regenerate_credential_resets_and_queues(self, task_mock):
        self.credential.retry_count = 2
        self.credential.error_message = "old error"
        self.credential.save()

        with self.captureOnCommitCallbacks(execute=True):
            regenerate_credential(self.credential)

        self.credential.refresh_from_db()
        self.assertEqual(self.credential.status, Credential.Status.PENDING)
        self.assertEqual(self.credential.retry_count, 0)
        self.assertIsNone(self.credential.error_message)
        self.assertIsNone(self.credential.qr_code)
        self.assertIsNone(self.credential.credential_image_path)
        task_mock.delay.assert_called_once_with(self.credential.id)

    def test_credential_stats_count_by_status(self):
        stats = get_credential_stats(self.event.id)
        self.assertEqual(stats["ready"], 1)
        self.assertEqual(stats["pending"], 0)
        self.assertEqual(stats["total"], 1)
        self.assertEqual(get_credential_stats()["total"], 2)


class ManageCredentialsCommandTests(CredentialStorageMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.event, _, self.provider, _, _ = create_event_fixture()
        self.request = create_request(event=self.event, provider=self.provider, first_name="Ana")
        self.credential = create_ready_credential(self.request)

    def test_status_for_request(self):
        stdout = StringIO()
        call_command("manage_credentials", "status", "--request", str(self.request.uuid), stdout=stdout)
        self.assertIn(f"credential={self.credential.uuid} status=ready", stdout.getvalue())

    def test_expire_event(self):
        stdout = StringIO()
        call_command("manage_credentials", "expire-event", "--event", str(self.event.id), stdout=stdout)
        self.assertIn("Expired 1 credential(s)", stdout.getvalue())
        self.credential.refresh_from_db()
        self.assertFalse(self.credential.is_active)

    @patch("credentials.tasks.generate_credential")
    def test_regenerate_failed_credentials(self, _task_mock):
        Credential.objects.filter(id=self.credential.id).update(
            status=Credential.Status.FAILED, error_message="boom"
        )
        stdout = StringIO()
        call_command("manage_credentials", "regenerate", "--retry-failed", stdout=stdout)
        self.assertIn("Queued 1 failed credential(s)", stdout.getvalue())
        self.credential.refresh_from_db()
        self.assertEqual(self.credential.status, Credential.Status.PENDING)
