from django.core.management.base import BaseCommand

from booking.slot_locking import cleanup_expired_locks


class Command(BaseCommand):
    help = "Delete expired slot locks"

    def handle(self, *args, **options):
        deleted = cleanup_expired_locks()
        self.stdout.write(self.style.SUCCESS(f"Removed {deleted} expired slot lock(s)"))
