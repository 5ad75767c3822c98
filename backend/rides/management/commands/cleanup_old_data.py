from django.core.management.base import BaseCommand
from django.utils import timezone
from datetime import timedelta
from rides.models import RideRequest
from services.matching.types import TERMINAL_STATUSES
import logging

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Clean up settled (accepted, cancelled or expired) ride requests."

    def add_arguments(self, parser):
        parser.add_argument(
            "--days",
            type=int,
            default=30,
            help="Delete ride requests settled more than this many days ago (default: 30).",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show what would be deleted without actually deleting.",
        )

    def handle(self, *args, **options):
        days = options["days"]
        dry_run = options["dry_run"]
        cutoff = timezone.now() - timedelta(days=days)

        old_rides = RideRequest.objects.filter(
            created_at__lt=cutoff,
            status__in=[s.value for s in TERMINAL_STATUSES],
        )
        rides_count = old_rides.count()

        if dry_run:
            self.stdout.write(
                self.style.WARNING(
                    f"DRY RUN: Would delete {rides_count} old rides older than {days} days."
                )
            )
        else:
            old_rides.delete()
            logger.info("Cleaned up %d old rides", rides_count)
            self.stdout.write(
                self.style.SUCCESS(
                    f"Deleted {rides_count} old rides older than {days} days."
                )
            )
