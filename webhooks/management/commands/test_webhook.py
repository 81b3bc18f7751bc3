import json
import time
import uuid

from django.conf import settings
from django.core.management.base import BaseCommand
from django.test import RequestFactory

from store.exceptions import ShopError
from webhooks.services import sign_payload
from webhooks.views import payment_webhook


class Command(BaseCommand):
    help = "Simulate a signed payment webhook locally"

    def add_arguments(self, parser):
        parser.add_argument("--order-id", type=str, required=True, help="Order UUID")
        parser.add_argument("--status", type=str, default="paid", help="Reported payment status (paid or failed)")
        parser.add_argument(
            "--transaction-id",
            type=str,
            default=f"tx_{uuid.uuid4().hex[:10]}",
            help="Provider transaction id (reuse one to test replays)",
        )
        parser.add_argument("--skew", type=int, default=0, help="Seconds to add to the webhook timestamp")

    def handle(self, *args, **options):
        secret = settings.WEBHOOK_SECRET
        if not secret:
            self.stdout.write(self.style.ERROR("No WEBHOOK_SECRET found in settings."))
            return

        payload = {
            "order_id": options["order_id"],
            "transaction_id": options["transaction_id"],
            "payment_status": options["status"],
            "timestamp": int(time.time()) + options["skew"],
        }
        body = json.dumps(payload).encode()

        request = RequestFactory().post(
            "/api/payment-webhook",
            data=body,
            content_type="application/json",
            HTTP_X_PAYMENT_SIGNATURE=sign_payload(body, secret),
        )

        self.stdout.write(f"Sending {options['status']} webhook {options['transaction_id']} for order {options['order_id']}...")
        try:
            response = payment_webhook(request)
        except ShopError as e:
            self.stdout.write(self.style.ERROR(f"Webhook rejected ({e.http_status}): {e.message}"))
            return

        content = json.loads(response.content)
        if response.status_code == 200:
            self.stdout.write(self.style.SUCCESS(content["message"]))
        else:
            self.stdout.write(self.style.ERROR(f"Webhook failed with status {response.status_code}: {content.get('error')}"))
