import hashlib
import hmac
import json
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from django.conf import settings
from django.utils import timezone

from store.exceptions import DuplicateTransaction, InvalidState, PersistenceError, ValidationError
from store.models import Order
from store.repositories import OrderRepository

from .models import WebhookLog
from .notifications import send_webhook_failure_alert
from .repositories import WebhookLogRepository

logger = logging.getLogger(__name__)

REPORTABLE_PAYMENT_STATUSES = (Order.PAYMENT_PAID, Order.PAYMENT_FAILED)


def sign_payload(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
    if not (payload and signature and secret):
        return False
    return hmac.compare_digest(sign_payload(payload, secret), signature)


def verify_timestamp(timestamp: int, now: datetime, tolerance_seconds: int) -> bool:
    """Accept timestamps within ``tolerance_seconds`` of ``now`` in either direction."""
    if not timestamp:
        return False
    return abs(now.timestamp() - timestamp) <= tolerance_seconds


@dataclass(frozen=True)
class PaymentWebhookRequest:
    order_id: str
    transaction_id: str
    payment_status: str
    timestamp: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentWebhookRequest":
        if not isinstance(data, dict):
            raise ValidationError("Invalid request body")
        fields = {}
        for name in ("order_id", "transaction_id", "payment_status"):
            value = data.get(name, "")
            if not isinstance(value, str):
                raise ValidationError("Invalid request body")
            fields[name] = value
        timestamp = data.get("timestamp", 0)
        if isinstance(timestamp, bool) or not isinstance(timestamp, int):
            raise ValidationError("Invalid request body")
        return cls(timestamp=timestamp, **fields)

    def to_payload(self) -> str:
        return json.dumps(asdict(self))


class PaymentWebhookProcessor:
    """Apply authenticated payment notifications to orders.

    Signature and timestamp checks belong to the HTTP layer; by the time
    ``process`` runs the request is trusted. Every accepted notification
    gets a ``WebhookLog`` row before the order is touched, so a failed order
    update still leaves a record with retry bookkeeping behind.
    """

    def __init__(
        self,
        orders: OrderRepository,
        webhook_logs: WebhookLogRepository,
        clock: Callable[[], datetime] = timezone.now,
        retry_delay: Optional[timedelta] = None,
    ):
        self.orders = orders
        self.webhook_logs = webhook_logs
        self.clock = clock
        if retry_delay is None:
            retry_delay = timedelta(seconds=settings.WEBHOOK_RETRY_DELAY_SECONDS)
        self.retry_delay = retry_delay

    def process(self, request: PaymentWebhookRequest) -> Optional[WebhookLog]:
        """Process one notification.

        Returns the completed log, or ``None`` when the transaction was
        already recorded (a replay). Raises ``ValidationError``,
        ``NotFound``, ``InvalidState`` or ``PersistenceError``.
        """
        if not request.transaction_id:
            raise ValidationError("transaction_id is required")

        if self._already_recorded(request):
            logger.info("Ignoring replayed webhook %s for order %s", request.transaction_id, request.order_id)
            return None

        try:
            order_id = uuid.UUID(request.order_id)
        except ValueError:
            raise ValidationError("invalid order_id format")

        order = self.orders.get_by_id(order_id)
        if order.status != Order.STATUS_PENDING:
            raise InvalidState(f"order is not pending (current status: {order.status})")
        if request.payment_status not in REPORTABLE_PAYMENT_STATUSES:
            raise ValidationError("invalid payment_status: must be 'paid' or 'failed'")

        now = self.clock()
        log = WebhookLog(
            order_id=order.pk,
            transaction_id=request.transaction_id,
            payment_status=request.payment_status,
            status=WebhookLog.STATUS_PROCESSING,
            retry_count=0,
            raw_payload=request.to_payload(),
            created_at=now,
        )
        try:
            self.webhook_logs.create(log)
        except DuplicateTransaction:
            # a concurrent delivery of the same transaction won the insert
            logger.info("Webhook %s recorded concurrently, treating as replay", request.transaction_id)
            return None

        order.apply_payment(request.payment_status, now)
        self._persist_order(order, log)

        log.mark_completed(self.clock())
        self._save_log(log)

        logger.info(
            "Webhook %s applied to order %s (payment_status=%s, status=%s)",
            log.transaction_id, order.pk, order.payment_status, order.status,
        )
        return log

    def get_webhook_history(self, order_id) -> List[WebhookLog]:
        return self.webhook_logs.get_by_order_id(str(order_id))

    def retry(self, log: WebhookLog) -> bool:
        """Re-apply a failed notification.

        Returns ``True`` when the order was updated, ``False`` when the
        order had already left ``pending`` and the log was just closed.
        """
        if log.status != WebhookLog.STATUS_FAILED:
            raise InvalidState(f"webhook log {log.pk} is not failed (current status: {log.status})")

        now = self.clock()
        order = self.orders.get_by_id(log.order_id)
        if order.status != Order.STATUS_PENDING:
            logger.warning("Order %s is %s, closing webhook log %s without changes", order.pk, order.status, log.pk)
            log.mark_completed(now)
            self.webhook_logs.update(log)
            return False

        order.apply_payment(log.payment_status, now)
        try:
            self._persist_order(order, log)
        except InvalidState:
            return False
        log.mark_completed(self.clock())
        self.webhook_logs.update(log)
        logger.info("Webhook %s applied to order %s on retry %s", log.transaction_id, order.pk, log.retry_count)
        return True

    def retry_due(self, max_retries: Optional[int] = None) -> Tuple[int, int]:
        """Retry every failed log whose next retry time has passed.

        Returns ``(succeeded, failed)``.
        """
        if max_retries is None:
            max_retries = settings.WEBHOOK_MAX_RETRIES
        succeeded = failed = 0
        for log in self.webhook_logs.list_due_for_retry(self.clock(), max_retries):
            try:
                self.retry(log)
            except PersistenceError:
                failed += 1
            else:
                succeeded += 1
        return succeeded, failed

    def _already_recorded(self, request: PaymentWebhookRequest) -> bool:
        existing = self.webhook_logs.get_by_order_id(request.order_id)
        return any(log.transaction_id == request.transaction_id for log in existing)

    def _persist_order(self, order: Order, log: WebhookLog) -> None:
        try:
            self.orders.update(order, expected_status=Order.STATUS_PENDING)
        except InvalidState:
            # another delivery or an admin settled the order first
            logger.warning("Order %s left pending before webhook %s was applied", order.pk, log.transaction_id)
            log.mark_completed(self.clock())
            self._save_log(log)
            raise
        except Exception as exc:
            logger.error("Failed to update order %s for webhook %s: %s", order.pk, log.transaction_id, exc)
            self._record_failure(log)
            send_webhook_failure_alert(log, exc)
            if isinstance(exc, PersistenceError):
                raise
            raise PersistenceError(f"Failed to update order {order.pk}") from exc

    def _record_failure(self, log: WebhookLog) -> None:
        log.mark_failed(self.clock(), self.retry_delay)
        self._save_log(log)

    def _save_log(self, log: WebhookLog) -> None:
        try:
            self.webhook_logs.update(log)
        except Exception:
            # never hide the order outcome behind this one
            logger.exception("Could not save webhook log %s (status=%s)", log.pk, log.status)
