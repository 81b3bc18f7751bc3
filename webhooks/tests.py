import hashlib
import hmac
import json
import time
import uuid
from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core import mail
from django.core.management import call_command
from django.db import DatabaseError
from django.test import Client, SimpleTestCase, TestCase, override_settings
from django.urls import reverse
from django.utils import timezone

from store.auth import issue_token
from store.exceptions import InvalidState, NotFound, PersistenceError, ValidationError
from store.models import Order, UserProfile
from store.repositories import InMemoryOrderRepository
from webhooks.models import WebhookLog
from webhooks.repositories import InMemoryWebhookLogRepository
from webhooks.services import (
    PaymentWebhookProcessor,
    PaymentWebhookRequest,
    verify_timestamp,
    verify_webhook_signature,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=dt_timezone.utc)


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


def _webhook(order_id, transaction_id="tx-1", payment_status="paid"):
    return PaymentWebhookRequest(
        order_id=str(order_id),
        transaction_id=transaction_id,
        payment_status=payment_status,
        timestamp=int(NOW.timestamp()),
    )


class PaymentWebhookProcessorTests(SimpleTestCase):
    def setUp(self):
        self.orders = InMemoryOrderRepository()
        self.logs = InMemoryWebhookLogRepository()
        self.clock = FakeClock()
        self.processor = PaymentWebhookProcessor(
            self.orders, self.logs, clock=self.clock, retry_delay=timedelta(minutes=5)
        )
        self.order = self._add_order()

    def _add_order(self, status=Order.STATUS_PENDING):
        order = Order(customer_id=1, total_price=Decimal("20.00"), status=status)
        self.orders.create(order, [])
        return order

    def test_paid_webhook_completes_order(self):
        log = self.processor.process(_webhook(self.order.pk))

        order = self.orders.get_by_id(self.order.pk)
        self.assertEqual(order.status, Order.STATUS_COMPLETED)
        self.assertEqual(order.payment_status, Order.PAYMENT_PAID)
        self.assertEqual(log.status, WebhookLog.STATUS_COMPLETED)
        self.assertEqual(log.processed_at, NOW)

        history = self.processor.get_webhook_history(self.order.pk)
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].transaction_id, "tx-1")
        self.assertEqual(history[0].status, WebhookLog.STATUS_COMPLETED)
        self.assertEqual(history[0].retry_count, 0)

    def test_failed_payment_keeps_order_pending(self):
        self.processor.process(_webhook(self.order.pk, payment_status="failed"))

        order = self.orders.get_by_id(self.order.pk)
        self.assertEqual(order.status, Order.STATUS_PENDING)
        self.assertEqual(order.payment_status, Order.PAYMENT_FAILED)
        [log] = self.processor.get_webhook_history(self.order.pk)
        self.assertEqual(log.status, WebhookLog.STATUS_COMPLETED)

    def test_raw_payload_snapshots_request(self):
        self.processor.process(_webhook(self.order.pk))

        [log] = self.logs.all()
        self.assertEqual(json.loads(log.raw_payload), {
            "order_id": str(self.order.pk),
            "transaction_id": "tx-1",
            "payment_status": "paid",
            "timestamp": int(NOW.timestamp()),
        })

    def test_replay_is_a_noop(self):
        self.processor.process(_webhook(self.order.pk))
        completed = self.orders.get_by_id(self.order.pk)

        with patch.object(self.orders, "update") as update:
            result = self.processor.process(_webhook(self.order.pk))

        self.assertIsNone(result)
        update.assert_not_called()
        self.assertEqual(len(self.logs.all()), 1)
        self.assertEqual(self.orders.get_by_id(self.order.pk).updated_at, completed.updated_at)

    def test_replay_wins_over_state_gate(self):
        self.processor.process(_webhook(self.order.pk, payment_status="paid"))
        # same transaction for an order that is now completed is still fine
        self.assertIsNone(self.processor.process(_webhook(self.order.pk, payment_status="failed")))

    def test_non_pending_order_is_rejected(self):
        for status in (Order.STATUS_COMPLETED, Order.STATUS_CANCELLED):
            order = self._add_order(status=status)
            with self.assertRaises(InvalidState):
                self.processor.process(_webhook(order.pk, transaction_id=f"tx-{status}"))
            self.assertEqual(self.orders.get_by_id(order.pk).payment_status, Order.PAYMENT_UNPAID)
        self.assertEqual(self.logs.all(), [])

    def test_validation_errors_leave_no_trace(self):
        cases = [
            _webhook(self.order.pk, transaction_id=""),
            _webhook("not-a-uuid"),
            _webhook(self.order.pk, payment_status="refunded"),
            _webhook(self.order.pk, payment_status="unpaid"),
        ]
        for request in cases:
            with self.subTest(request=request):
                with self.assertRaises(ValidationError):
                    self.processor.process(request)

        self.assertEqual(self.logs.all(), [])
        order = self.orders.get_by_id(self.order.pk)
        self.assertEqual(order.status, Order.STATUS_PENDING)
        self.assertEqual(order.payment_status, Order.PAYMENT_UNPAID)

    def test_unknown_order(self):
        with self.assertRaises(NotFound):
            self.processor.process(_webhook(uuid.uuid4()))
        self.assertEqual(self.logs.all(), [])

    def test_order_update_failure_schedules_retry(self):
        with patch.object(self.orders, "update", side_effect=DatabaseError("connection lost")):
            with self.assertRaises(PersistenceError) as ctx:
                self.processor.process(_webhook(self.order.pk))

        self.assertIsInstance(ctx.exception.__cause__, DatabaseError)
        [log] = self.logs.all()
        self.assertEqual(log.status, WebhookLog.STATUS_FAILED)
        self.assertEqual(log.retry_count, 1)
        self.assertEqual(log.next_retry_at, NOW + timedelta(minutes=5))
        self.assertIsNone(log.processed_at)
        self.assertEqual(self.orders.get_by_id(self.order.pk).payment_status, Order.PAYMENT_UNPAID)
        self.assertEqual(len(mail.outbox), 1)
        self.assertIn("tx-1", mail.outbox[0].subject)

    def test_log_update_failure_does_not_mask_order_failure(self):
        with patch.object(self.orders, "update", side_effect=DatabaseError("connection lost")), \
                patch.object(self.logs, "update", side_effect=PersistenceError("log store down")):
            with self.assertRaises(PersistenceError) as ctx:
                self.processor.process(_webhook(self.order.pk))

        self.assertIsInstance(ctx.exception.__cause__, DatabaseError)
        [log] = self.logs.all()
        self.assertEqual(log.status, WebhookLog.STATUS_PROCESSING)

    def test_completion_log_failure_still_succeeds(self):
        with patch.object(self.logs, "update", side_effect=PersistenceError("log store down")):
            self.processor.process(_webhook(self.order.pk))

        self.assertEqual(self.orders.get_by_id(self.order.pk).status, Order.STATUS_COMPLETED)

    def test_duplicate_insert_is_treated_as_replay(self):
        other = self._add_order()
        self.processor.process(_webhook(other.pk, transaction_id="tx-shared"))

        result = self.processor.process(_webhook(self.order.pk, transaction_id="tx-shared"))

        self.assertIsNone(result)
        self.assertEqual(self.orders.get_by_id(self.order.pk).payment_status, Order.PAYMENT_UNPAID)
        self.assertEqual(len(self.logs.all()), 1)

    def test_order_settled_concurrently_is_not_overwritten(self):
        stale = self.orders.get_by_id(self.order.pk)
        self.processor.process(_webhook(self.order.pk, transaction_id="tx-paid"))

        with patch.object(self.orders, "get_by_id", return_value=stale):
            with self.assertRaises(InvalidState):
                self.processor.process(_webhook(self.order.pk, transaction_id="tx-late", payment_status="failed"))

        order = self.orders.get_by_id(self.order.pk)
        self.assertEqual((order.status, order.payment_status), (Order.STATUS_COMPLETED, Order.PAYMENT_PAID))
        logs = {log.transaction_id: log for log in self.logs.all()}
        self.assertEqual(logs["tx-late"].status, WebhookLog.STATUS_COMPLETED)
        self.assertEqual(logs["tx-late"].retry_count, 0)
        self.assertEqual(mail.outbox, [])

    def test_history_is_newest_first(self):
        self.processor.process(_webhook(self.order.pk, transaction_id="tx-a", payment_status="failed"))
        self.clock.now = NOW + timedelta(minutes=1)
        self.processor.process(_webhook(self.order.pk, transaction_id="tx-b", payment_status="paid"))

        history = self.processor.get_webhook_history(self.order.pk)
        self.assertEqual([log.transaction_id for log in history], ["tx-b", "tx-a"])
        self.assertEqual(self.processor.get_webhook_history(uuid.uuid4()), [])

    def test_retry_due_applies_failed_webhook(self):
        with patch.object(self.orders, "update", side_effect=DatabaseError("connection lost")):
            with self.assertRaises(PersistenceError):
                self.processor.process(_webhook(self.order.pk))

        # not due yet
        self.assertEqual(self.processor.retry_due(max_retries=5), (0, 0))

        self.clock.now = NOW + timedelta(minutes=6)
        self.assertEqual(self.processor.retry_due(max_retries=5), (1, 0))

        order = self.orders.get_by_id(self.order.pk)
        self.assertEqual(order.status, Order.STATUS_COMPLETED)
        [log] = self.logs.all()
        self.assertEqual(log.status, WebhookLog.STATUS_COMPLETED)
        self.assertEqual(log.retry_count, 1)

    def test_retry_failure_reschedules(self):
        with patch.object(self.orders, "update", side_effect=DatabaseError("connection lost")):
            with self.assertRaises(PersistenceError):
                self.processor.process(_webhook(self.order.pk))
            self.clock.now = NOW + timedelta(minutes=6)
            self.assertEqual(self.processor.retry_due(max_retries=5), (0, 1))

        [log] = self.logs.all()
        self.assertEqual(log.status, WebhookLog.STATUS_FAILED)
        self.assertEqual(log.retry_count, 2)
        self.assertEqual(log.next_retry_at, NOW + timedelta(minutes=11))

    def test_retry_skips_exhausted_logs(self):
        with patch.object(self.orders, "update", side_effect=DatabaseError("connection lost")):
            with self.assertRaises(PersistenceError):
                self.processor.process(_webhook(self.order.pk))
        self.clock.now = NOW + timedelta(hours=1)
        self.assertEqual(self.processor.retry_due(max_retries=1), (0, 0))

    def test_retry_closes_log_when_order_settled_elsewhere(self):
        with patch.object(self.orders, "update", side_effect=DatabaseError("connection lost")):
            with self.assertRaises(PersistenceError):
                self.processor.process(_webhook(self.order.pk))
        order = self.orders.get_by_id(self.order.pk)
        order.update_status(Order.STATUS_CANCELLED)
        self.orders.update(order)

        [log] = self.logs.all()
        self.assertFalse(self.processor.retry(log))
        self.assertEqual(self.orders.get_by_id(self.order.pk).status, Order.STATUS_CANCELLED)
        self.assertEqual(self.logs.all()[0].status, WebhookLog.STATUS_COMPLETED)


class WebhookVerificationTests(SimpleTestCase):
    def test_signature(self):
        body = b'{"order_id": "x"}'
        signature = hmac.new(b"secret", body, hashlib.sha256).hexdigest()
        self.assertTrue(verify_webhook_signature(body, signature, "secret"))
        self.assertFalse(verify_webhook_signature(body, signature, "other"))
        self.assertFalse(verify_webhook_signature(body, "", "secret"))
        self.assertFalse(verify_webhook_signature(body, signature, ""))

    def test_timestamp_window(self):
        now = NOW.timestamp()
        self.assertTrue(verify_timestamp(int(now), NOW, 300))
        self.assertTrue(verify_timestamp(int(now) - 300, NOW, 300))
        self.assertTrue(verify_timestamp(int(now) + 299, NOW, 300))
        self.assertFalse(verify_timestamp(int(now) - 301, NOW, 300))
        self.assertFalse(verify_timestamp(int(now) + 301, NOW, 300))
        self.assertFalse(verify_timestamp(0, NOW, 300))

    def test_request_from_dict(self):
        request = PaymentWebhookRequest.from_dict(
            {"order_id": "abc", "transaction_id": "tx", "payment_status": "paid", "timestamp": 5}
        )
        self.assertEqual(request.timestamp, 5)
        for data in (
            {"order_id": 12, "transaction_id": "tx", "payment_status": "paid", "timestamp": 5},
            {"order_id": "abc", "transaction_id": "tx", "payment_status": "paid", "timestamp": "5"},
            {"order_id": "abc", "transaction_id": "tx", "payment_status": "paid", "timestamp": True},
        ):
            with self.assertRaises(ValidationError):
                PaymentWebhookRequest.from_dict(data)


@override_settings(WEBHOOK_SECRET="testsecret")
class PaymentWebhookViewTests(TestCase):
    def setUp(self):
        self.client = Client()
        self.order = Order.objects.create(customer_id=1, total_price=Decimal("15.00"))

    def _payload(self, **overrides):
        payload = {
            "order_id": str(self.order.pk),
            "transaction_id": "pay_123",
            "payment_status": "paid",
            "timestamp": int(time.time()),
        }
        payload.update(overrides)
        return payload

    def _get_signature(self, body):
        return hmac.new(b"testsecret", body.encode(), digestmod=hashlib.sha256).hexdigest()

    def _post(self, payload, signature=None):
        body = payload if isinstance(payload, str) else json.dumps(payload)
        extra = {}
        if signature is None:
            signature = self._get_signature(body)
        if signature:
            extra["HTTP_X_PAYMENT_SIGNATURE"] = signature
        return self.client.post(
            reverse("webhooks:payment-webhook"),
            data=body,
            content_type="application/json",
            **extra,
        )

    def test_payment_paid(self):
        response = self._post(self._payload())

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "success", "message": "Payment webhook processed successfully"})
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.STATUS_COMPLETED)
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PAID)
        log = WebhookLog.objects.get(transaction_id="pay_123")
        self.assertEqual(log.status, WebhookLog.STATUS_COMPLETED)
        self.assertIsNotNone(log.processed_at)

    def test_payment_failed(self):
        response = self._post(self._payload(payment_status="failed"))

        self.assertEqual(response.status_code, 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.STATUS_PENDING)
        self.assertEqual(self.order.payment_status, Order.PAYMENT_FAILED)

    def test_replay(self):
        self._post(self._payload())
        response = self._post(self._payload())

        self.assertEqual(response.status_code, 200)
        self.assertEqual(WebhookLog.objects.filter(order=self.order).count(), 1)

    def test_missing_signature(self):
        response = self._post(self._payload(), signature="")
        self.assertEqual(response.status_code, 401)
        self.assertFalse(WebhookLog.objects.exists())

    def test_invalid_signature(self):
        response = self._post(self._payload(), signature="invalid_signature")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"], "Invalid signature")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_UNPAID)

    def test_stale_and_future_timestamps(self):
        for timestamp in (int(time.time()) - 600, int(time.time()) + 600, 0):
            with self.subTest(timestamp=timestamp):
                response = self._post(self._payload(timestamp=timestamp))
                self.assertEqual(response.status_code, 401)
        self.assertFalse(WebhookLog.objects.exists())

    def test_invalid_json(self):
        response = self._post("{not json")
        self.assertEqual(response.status_code, 400)

    def test_error_mapping(self):
        completed = Order.objects.create(customer_id=1, status=Order.STATUS_COMPLETED)
        cases = [
            (self._payload(order_id="nope"), 400),
            (self._payload(payment_status="refunded"), 400),
            (self._payload(transaction_id=""), 400),
            (self._payload(order_id=str(uuid.uuid4())), 404),
            (self._payload(order_id=str(completed.pk), transaction_id="pay_late"), 409),
        ]
        for payload, status in cases:
            with self.subTest(payload=payload):
                response = self._post(payload)
                self.assertEqual(response.status_code, status)
                self.assertIn("error", response.json())
        self.assertFalse(WebhookLog.objects.exists())

    @override_settings(WEBHOOK_SECRET="")
    def test_secret_not_configured(self):
        response = self._post(self._payload(), signature="whatever")
        self.assertEqual(response.status_code, 500)

    def test_duplicate_transaction_constraint(self):
        other = Order.objects.create(customer_id=2)
        WebhookLog.objects.create(order=other, transaction_id="pay_123", payment_status="paid")

        response = self._post(self._payload())

        self.assertEqual(response.status_code, 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_UNPAID)

    def test_order_update_failure_returns_500(self):
        with patch("store.repositories.DjangoOrderRepository.update", side_effect=PersistenceError("db down")):
            response = self._post(self._payload())

        self.assertEqual(response.status_code, 500)
        log = WebhookLog.objects.get(transaction_id="pay_123")
        self.assertEqual(log.status, WebhookLog.STATUS_FAILED)
        self.assertEqual(log.retry_count, 1)
        self.assertIsNotNone(log.next_retry_at)


class PaymentHistoryViewTests(TestCase):
    def setUp(self):
        User = get_user_model()
        self.admin = User.objects.create_user(username="admin@example.com", email="admin@example.com", password="pass1234")
        UserProfile.objects.filter(user=self.admin).update(role=UserProfile.ROLE_ADMIN)
        self.customer = User.objects.create_user(username="buyer@example.com", email="buyer@example.com", password="pass1234")
        self.order = Order.objects.create(customer_id=self.customer.pk)
        WebhookLog.objects.create(
            order=self.order, transaction_id="tx-old", payment_status="failed",
            status=WebhookLog.STATUS_COMPLETED, created_at=NOW,
        )
        WebhookLog.objects.create(
            order=self.order, transaction_id="tx-new", payment_status="paid",
            status=WebhookLog.STATUS_COMPLETED, created_at=NOW + timedelta(minutes=1),
        )

    def _auth(self, user, role):
        token, _ = issue_token(user, role)
        return {"HTTP_AUTHORIZATION": f"Bearer {token}"}

    def test_history_for_admin(self):
        response = self.client.get(
            reverse("webhooks:payment-history", args=[self.order.pk]),
            **self._auth(self.admin, UserProfile.ROLE_ADMIN),
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["transaction_id"] for row in response.json()], ["tx-new", "tx-old"])

    def test_history_requires_permission(self):
        url = reverse("webhooks:payment-history", args=[self.order.pk])
        self.assertEqual(self.client.get(url).status_code, 401)
        response = self.client.get(url, **self._auth(self.customer, UserProfile.ROLE_CUSTOMER))
        self.assertEqual(response.status_code, 403)

    def test_history_malformed_id(self):
        response = self.client.get(
            reverse("webhooks:payment-history", args=["not-a-uuid"]),
            **self._auth(self.admin, UserProfile.ROLE_ADMIN),
        )
        self.assertEqual(response.status_code, 400)

    def test_history_unknown_order_is_empty(self):
        response = self.client.get(
            reverse("webhooks:payment-history", args=[uuid.uuid4()]),
            **self._auth(self.admin, UserProfile.ROLE_ADMIN),
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), [])


@override_settings(WEBHOOK_SECRET="testsecret")
class WebhookCommandTests(TestCase):
    def test_test_webhook_command(self):
        order = Order.objects.create(customer_id=1)
        out = StringIO()
        call_command("test_webhook", "--order-id", str(order.pk), "--transaction-id", "tx-cli", stdout=out)

        self.assertIn("processed successfully", out.getvalue())
        order.refresh_from_db()
        self.assertEqual(order.status, Order.STATUS_COMPLETED)

    def test_retry_webhooks_command(self):
        order = Order.objects.create(customer_id=1)
        WebhookLog.objects.create(
            order=order,
            transaction_id="tx-retry",
            payment_status="paid",
            status=WebhookLog.STATUS_FAILED,
            retry_count=1,
            next_retry_at=timezone.now() - timedelta(minutes=1),
        )
        out = StringIO()
        call_command("retry_webhooks", stdout=out)

        self.assertIn("1 webhooks applied", out.getvalue())
        order.refresh_from_db()
        self.assertEqual(order.status, Order.STATUS_COMPLETED)
        self.assertEqual(WebhookLog.objects.get(transaction_id="tx-retry").status, WebhookLog.STATUS_COMPLETED)
