from django.conf import settings
from django.core.management.base import BaseCommand

from webhooks.views import webhook_processor


class Command(BaseCommand):
    help = "Re-apply failed payment webhooks whose next retry time has passed"

    def add_arguments(self, parser):
        parser.add_argument(
            "--max-retries",
            type=int,
            default=settings.WEBHOOK_MAX_RETRIES,
            help="Skip logs that already failed this many times",
        )

    def handle(self, *args, **options):
        succeeded, failed = webhook_processor().retry_due(options["max_retries"])
        if not succeeded and not failed:
            self.stdout.write("No webhooks due for retry.")
            return
        self.stdout.write(self.style.SUCCESS(f"{succeeded} webhooks applied."))
        if failed:
            self.stdout.write(self.style.ERROR(f"{failed} webhooks failed again and were rescheduled."))
