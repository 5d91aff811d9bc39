"""
Management command to expire pending gifts past their expiry date.

Gifts are also expired lazily when someone tries to claim them; this sweep
keeps the pending lists accurate for gifts nobody touches.

Usage:
    python manage.py expire_gifts
    python manage.py expire_gifts --dry-run
"""

from django.core.management.base import BaseCommand

from manaledger.billing.gifts import expire_overdue_gifts


class Command(BaseCommand):
    help = "Mark pending gifts past their expiry date as expired"

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show how many gifts would expire without changing them",
        )

    def handle(self, *args, **options):
        dry_run = options["dry_run"]
        count = expire_overdue_gifts(dry_run=dry_run)

        if dry_run:
            self.stdout.write(f"[DRY RUN] Would expire {count} gift(s)")
            return

        self.stdout.write(self.style.SUCCESS(f"Expired {count} gift(s)"))
