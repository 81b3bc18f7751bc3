import logging

from django.conf import settings
from django.core.mail import send_mail

from .models import WebhookLog

logger = logging.getLogger(__name__)


def _send_alert(subject: str, message: str) -> None:
    send_mail(
        subject,
        message,
        settings.DEFAULT_FROM_EMAIL,
        [settings.SUPPORT_EMAIL],
        fail_silently=True,
    )


def send_webhook_failure_alert(log: WebhookLog, error: Exception) -> None:
    """Send email alert when a webhook could not be applied to its order."""
    if settings.DEBUG:
        return
    try:
        subject = f"[shopapi] Payment webhook failed - {log.transaction_id}"
        message = f"""
Payment webhook processing failed:

Order: {log.order_id}
Transaction: {log.transaction_id}
Reported payment status: {log.payment_status}
Received: {log.created_at}
Retry count: {log.retry_count}
Next retry: {log.next_retry_at}
Error: {error}

History: {settings.SITE_URL}/api/orders/{log.order_id}/payment-history

Payload:
{log.raw_payload}
"""
        _send_alert(subject, message)
        logger.info("Sent webhook failure alert for %s", log.transaction_id)
    except Exception as e:
        logger.error("Failed to send webhook failure alert: %s", e)


def send_verification_failure_alert(remote_addr: str, reason: str) -> None:
    """Send email alert when an inbound webhook fails authentication."""
    if settings.DEBUG:
        return
    try:
        subject = "[shopapi] Payment webhook verification failed"
        message = f"""
Payment webhook authentication failed:

Reason: {reason}
Remote address: {remote_addr}

This could indicate:
1. Incorrect webhook secret configured
2. Potential security threat (spoofed webhook)
"""
        _send_alert(subject, message)
        logger.warning("Sent verification failure alert (%s)", reason)
    except Exception as e:
        logger.error("Failed to send verification failure alert: %s", e)
