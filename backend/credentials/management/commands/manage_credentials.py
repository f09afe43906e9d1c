from __future__ import annotations

from django.core.management.base import BaseCommand, CommandError

from accreditations.models import AccreditationRequest, Event
from credentials.models import Credential
from credentials.services import expire_event_credentials, get_credential_stats, regenerate_credential


class Command(BaseCommand):
    help = "Inspect, regenerate or expire event credentials."

    def add_arguments(self, parser):
        parser.add_argument("action", choices=["status", "regenerate", "expire-event"])
        parser.add_argument("--request", dest="request_uuid", help="Accreditation request UUID.")
        parser.add_argument("--event", dest="event_id", type=int, help="Event id.")
        parser.add_argument(
            "--retry-failed",
            action="store_true",
            help="With regenerate: reset every failed credential (optionally within --event).",
        )

    def handle(self, *args, **options):
        action = options["action"]
        if action == "status":
            self._status(options)
        elif action == "regenerate":
            self._regenerate(options)
        else:
            self._expire_event(options)

    def _status(self, options):
        request_uuid = options.get("request_uuid")
        if request_uuid:
            credential = self._credential_for_request(request_uuid)
            self.stdout.write(f"credential={credential.uuid} status={credential.status}")
            self.stdout.write(f"qr_code={credential.qr_code or '-'} retry_count={credential.retry_count}")
            self.stdout.write(f"generated_at={credential.generated_at or '-'} printed_at={credential.printed_at or '-'}")
            if credential.error_message:
                self.stdout.write(self.style.ERROR(f"error={credential.formatted_error_message}"))
            return

        stats = get_credential_stats(options.get("event_id"))
        for key, value in stats.items():
            self.stdout.write(f"{key}: {value}")

    def _regenerate(self, options):
        if options["retry_failed"]:
            queryset = Credential.objects.filter(status=Credential.Status.FAILED)
            if options.get("event_id"):
                queryset = queryset.filter(accreditation_request__event_id=options["event_id"])
            count = 0
            for credential in list(queryset):
                regenerate_credential(credential)
                count += 1
            self.stdout.write(self.style.SUCCESS(f"Queued {count} failed credential(s) for regeneration."))
            return

        request_uuid = options.get("request_uuid")
        if not request_uuid:
            raise CommandError("regenerate requires --request or --retry-failed.")
        credential = regenerate_credential(self._credential_for_request(request_uuid))
        self.stdout.write(self.style.SUCCESS(f"Credential {credential.uuid} queued for regeneration."))

    def _expire_event(self, options):
        event_id = options.get("event_id")
        if not event_id:
            raise CommandError("expire-event requires --event.")
        if not Event.objects.filter(id=event_id).exists():
            raise CommandError(f"Event {event_id} does not exist.")
        expired_count = expire_event_credentials(event_id)
        self.stdout.write(self.style.SUCCESS(f"Expired {expired_count} credential(s) for event {event_id}."))

    def _credential_for_request(self, request_uuid: str) -> Credential:
        request = AccreditationRequest.objects.filter(uuid=request_uuid).first()
        if request is None:
            raise CommandError(f"Accreditation request {request_uuid} not found.")
        credential = Credential.objects.filter(accreditation_request=request).first()
        if credential is None:
            raise CommandError(f"Request {request_uuid} has no credential yet.")
        return credential
