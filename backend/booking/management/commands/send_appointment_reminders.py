from datetime import timedelta

from django.core.management.base import BaseCommand

from booking.services import send_due_reminders


class Command(BaseCommand):
    help = "Email patients whose confirmed appointment starts within the next day"

    def add_arguments(self, parser):
        parser.add_argument("--hours", type=int, default=24, help="Look-ahead window in hours")

    def handle(self, *args, **options):
        sent = send_due_reminders(window=timedelta(hours=options["hours"]))
        self.stdout.write(self.style.SUCCESS(f"Sent {sent} reminder(s)"))
