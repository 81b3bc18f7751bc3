import json
import logging
import uuid

from django.conf import settings
from django.http import HttpRequest, HttpResponse, JsonResponse
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from store.auth import PERM_VIEW_WEBHOOK_HISTORY, permission_required
from store.exceptions import ValidationError
from store.repositories import DjangoOrderRepository

from .models import WebhookLog
from .notifications import send_verification_failure_alert
from .repositories import DjangoWebhookLogRepository
from .services import PaymentWebhookProcessor, PaymentWebhookRequest, verify_timestamp, verify_webhook_signature

logger = logging.getLogger(__name__)

PAYMENT_SIGNATURE_HEADER = "X-Payment-Signature"


def webhook_processor() -> PaymentWebhookProcessor:
    return PaymentWebhookProcessor(DjangoOrderRepository(), DjangoWebhookLogRepository())


def serialize_webhook_log(log: WebhookLog) -> dict:
    return {
        "id": str(log.id),
        "order_id": str(log.order_id),
        "transaction_id": log.transaction_id,
        "payment_status": log.payment_status,
        "status": log.status,
        "retry_count": log.retry_count,
        "next_retry_at": log.next_retry_at,
        "raw_payload": log.raw_payload,
        "processed_at": log.processed_at,
        "created_at": log.created_at,
    }


def _reject(request: HttpRequest, reason: str) -> HttpResponse:
    remote_addr = request.META.get("REMOTE_ADDR", "")
    logger.warning("Payment webhook rejected from %s: %s", remote_addr, reason)
    send_verification_failure_alert(remote_addr, reason)
    return JsonResponse({"error": reason}, status=401)


@csrf_exempt
@require_POST
def payment_webhook(request: HttpRequest) -> HttpResponse:
    """
    Receive a payment provider notification.

    The raw body must be signed with the shared webhook secret (hex
    HMAC-SHA256 in the X-Payment-Signature header) and carry a timestamp
    within the configured tolerance. Processing errors are rendered by
    ShopErrorMiddleware.
    """
    payload = request.body
    signature = request.headers.get(PAYMENT_SIGNATURE_HEADER, "")
    if not signature:
        return _reject(request, "Missing signature")

    secret = settings.WEBHOOK_SECRET
    if not secret:
        logger.error("No webhook secret configured")
        return JsonResponse({"error": "Webhook secret not configured"}, status=500)

    if not verify_webhook_signature(payload, signature, secret):
        return _reject(request, "Invalid signature")

    try:
        data = json.loads(payload.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.error("Invalid JSON in webhook payload: %s", e)
        return JsonResponse({"error": "Invalid JSON"}, status=400)

    webhook = PaymentWebhookRequest.from_dict(data)
    if not verify_timestamp(webhook.timestamp, timezone.now(), settings.WEBHOOK_TOLERANCE_SECONDS):
        return _reject(request, "Webhook timestamp expired or invalid")

    logger.info("Payment webhook received: %s for order %s (%s)",
                webhook.transaction_id, webhook.order_id, webhook.payment_status)
    webhook_processor().process(webhook)
    return JsonResponse({"status": "success", "message": "Payment webhook processed successfully"})


@require_GET
@permission_required(PERM_VIEW_WEBHOOK_HISTORY)
def payment_history(request: HttpRequest, order_id: str) -> HttpResponse:
    try:
        order_id = uuid.UUID(order_id)
    except ValueError:
        raise ValidationError("Invalid order ID")
    logs = webhook_processor().get_webhook_history(order_id)
    return JsonResponse([serialize_webhook_log(log) for log in logs], safe=False)
