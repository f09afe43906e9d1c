import uuid

from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion
import simple_history.models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("accreditations", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="PrintBatch",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("uuid", models.UUIDField(default=uuid.uuid4, editable=False, unique=True)),
                ("area_ids", models.JSONField(blank=True, default=list)),
                ("provider_ids", models.JSONField(blank=True, default=list)),
                ("status", models.CharField(choices=[("queued", "Queued"), ("processing", "Processing"), ("ready", "Ready"), ("failed", "Failed"), ("archived", "Archived")], default="queued", max_length=20)),
                ("filters_snapshot", models.JSONField(blank=True, default=dict)),
                ("credential_ids", models.JSONField(blank=True, default=list)),
                ("total_credentials", models.PositiveIntegerField(default=0)),
                ("processed_credentials", models.PositiveIntegerField(default=0)),
                ("pdf_path", models.CharField(blank=True, max_length=255, null=True)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("finished_at", models.DateTimeField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True, null=True)),
                ("retry_count", models.PositiveIntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("event", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="print_batches", to="accreditations.event")),
                ("generated_by", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="print_batches", to=settings.AUTH_USER_MODEL)),
            ],
            options={"ordering": ["-created_at"]},
        ),
        migrations.AddIndex(
            model_name="printbatch",
            index=models.Index(fields=["status", "-created_at"], name="prbatch_status_created_idx"),
        ),
        migrations.AddIndex(
            model_name="printbatch",
            index=models.Index(fields=["event", "status"], name="prbatch_event_status_idx"),
        ),
        migrations.CreateModel(
            name="Credential",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("uuid", models.UUIDField(default=uuid.uuid4, editable=False, unique=True)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("generating", "Generating"), ("ready", "Ready"), ("failed", "Failed")], default="pending", max_length=20)),
                ("employee_snapshot", models.JSONField(blank=True, null=True)),
                ("template_snapshot", models.JSONField(blank=True, null=True)),
                ("event_snapshot", models.JSONField(blank=True, null=True)),
                ("zones_snapshot", models.JSONField(blank=True, null=True)),
                ("qr_code", models.CharField(blank=True, max_length=64, null=True, unique=True)),
                ("qr_image_path", models.CharField(blank=True, max_length=255, null=True)),
                ("credential_image_path", models.CharField(blank=True, max_length=255, null=True)),
                ("credential_pdf_path", models.CharField(blank=True, max_length=255, null=True)),
                ("generated_at", models.DateTimeField(blank=True, null=True)),
                ("expires_at", models.DateTimeField(blank=True, null=True)),
                ("is_active", models.BooleanField(default=True)),
                ("printed_at", models.DateTimeField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True, null=True)),
                ("retry_count", models.PositiveIntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("accreditation_request", models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name="credential", to="accreditations.accreditationrequest")),
                ("print_batch", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="credentials", to="credentials.printbatch")),
            ],
            options={"ordering": ["id"]},
        ),
        migrations.AddIndex(
            model_name="credential",
            index=models.Index(fields=["status"], name="credential_status_idx"),
        ),
        migrations.AddIndex(
            model_name="credential",
            index=models.Index(fields=["is_active", "expires_at"], name="credential_active_exp_idx"),
        ),
        migrations.AddIndex(
            model_name="credential",
            index=models.Index(fields=["printed_at"], name="credential_printed_idx"),
        ),
        migrations.CreateModel(
            name="HistoricalCredential",
            fields=[
                ("id", models.BigIntegerField(auto_created=True, blank=True, db_index=True, verbose_name="ID")),
                ("uuid", models.UUIDField(db_index=True, default=uuid.uuid4, editable=False)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("generating", "Generating"), ("ready", "Ready"), ("failed", "Failed")], default="pending", max_length=20)),
                ("employee_snapshot", models.JSONField(blank=True, null=True)),
                ("template_snapshot", models.JSONField(blank=True, null=True)),
                ("event_snapshot", models.JSONField(blank=True, null=True)),
                ("zones_snapshot", models.JSONField(blank=True, null=True)),
                ("qr_code", models.CharField(blank=True, db_index=True, max_length=64, null=True)),
                ("qr_image_path", models.CharField(blank=True, max_length=255, null=True)),
                ("credential_image_path", models.CharField(blank=True, max_length=255, null=True)),
                ("credential_pdf_path", models.CharField(blank=True, max_length=255, null=True)),
                ("generated_at", models.DateTimeField(blank=True, null=True)),
                ("expires_at", models.DateTimeField(blank=True, null=True)),
                ("is_active", models.BooleanField(default=True)),
                ("printed_at", models.DateTimeField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True, null=True)),
                ("retry_count", models.PositiveIntegerField(default=0)),
                ("created_at", models.DateTimeField(blank=True, editable=False)),
                ("updated_at", models.DateTimeField(blank=True, editable=False)),
                ("history_id", models.AutoField(primary_key=True, serialize=False)),
                ("history_date", models.DateTimeField(db_index=True)),
                ("history_change_reason", models.CharField(max_length=100, null=True)),
                ("history_type", models.CharField(choices=[("+", "Created"), ("~", "Changed"), ("-", "Deleted")], max_length=1)),
                ("accreditation_request", models.ForeignKey(blank=True, db_constraint=False, null=True, on_delete=django.db.models.deletion.DO_NOTHING, related_name="+", to="accreditations.accreditationrequest")),
                ("history_user", models.ForeignKey(null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to=settings.AUTH_USER_MODEL)),
                ("print_batch", models.ForeignKey(blank=True, db_constraint=False, null=True, on_delete=django.db.models.deletion.DO_NOTHING, related_name="+", to="credentials.printbatch")),
            ],
            options={
                "verbose_name": "historical credential",
                "verbose_name_plural": "historical credentials",
                "ordering": ("-history_date", "-history_id"),
                "get_latest_by": ("history_date", "history_id"),
            },
            bases=(simple_history.models.HistoricalChanges, models.Model),
        ),
        migrations.CreateModel(
            name="PipelineAuditLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("action", models.CharField(max_length=100)),
                ("message", models.TextField(blank=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("actor", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="pipeline_audit_logs", to=settings.AUTH_USER_MODEL)),
                ("credential", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="audit_logs", to="credentials.credential")),
                ("event", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="pipeline_audit_logs", to="accreditations.event")),
                ("print_batch", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="audit_logs", to="credentials.printbatch")),
            ],
        ),
        migrations.AddIndex(
            model_name="pipelineauditlog",
            index=models.Index(fields=["-created_at"], name="pipelog_created_idx"),
        ),
        migrations.AddIndex(
            model_name="pipelineauditlog",
            index=models.Index(fields=["action", "-created_at"], name="pipelog_action_created_idx"),
        ),
    ]
