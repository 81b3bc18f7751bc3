"""Webhook log storage: an ABC with ORM and in-memory implementations."""

from __future__ import annotations

import copy
import uuid
from abc import ABC, abstractmethod
from typing import Dict, List

from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from store.exceptions import DuplicateTransaction, PersistenceError

from .models import WebhookLog


class WebhookLogRepository(ABC):
    @abstractmethod
    def create(self, log: WebhookLog) -> None:
        """Insert ``log``; raise ``DuplicateTransaction`` if its transaction id exists."""

    @abstractmethod
    def update(self, log: WebhookLog) -> None:
        ...

    @abstractmethod
    def get_by_order_id(self, order_id: str) -> List[WebhookLog]:
        """All logs for the order, newest first; empty when there are none."""

    @abstractmethod
    def list_due_for_retry(self, now, max_retries: int) -> List[WebhookLog]:
        ...


def _parse_order_id(order_id):
    if isinstance(order_id, uuid.UUID):
        return order_id
    try:
        return uuid.UUID(str(order_id))
    except ValueError:
        return None


class DjangoWebhookLogRepository(WebhookLogRepository):
    def create(self, log: WebhookLog) -> None:
        try:
            with transaction.atomic():
                log.save(force_insert=True)
        except IntegrityError as exc:
            if WebhookLog.objects.filter(transaction_id=log.transaction_id).exists():
                raise DuplicateTransaction(f"Transaction {log.transaction_id} already recorded") from exc
            raise PersistenceError("Failed to create webhook log") from exc
        except DatabaseError as exc:
            raise PersistenceError("Failed to create webhook log") from exc

    def update(self, log: WebhookLog) -> None:
        try:
            log.save(update_fields=["status", "retry_count", "next_retry_at", "processed_at"])
        except DatabaseError as exc:
            raise PersistenceError(f"Failed to update webhook log {log.pk}") from exc

    def get_by_order_id(self, order_id: str) -> List[WebhookLog]:
        parsed = _parse_order_id(order_id)
        if parsed is None:
            return []
        try:
            return list(WebhookLog.objects.filter(order_id=parsed).order_by("-created_at"))
        except DatabaseError as exc:
            raise PersistenceError("Failed to load webhook history") from exc

    def list_due_for_retry(self, now, max_retries: int) -> List[WebhookLog]:
        return list(
            WebhookLog.objects.filter(
                status=WebhookLog.STATUS_FAILED,
                retry_count__lt=max_retries,
                next_retry_at__lte=now,
            ).order_by("next_retry_at")
        )


class InMemoryWebhookLogRepository(WebhookLogRepository):
    """Dict-backed store keyed by transaction id, copying on read and write."""

    def __init__(self) -> None:
        self._logs: Dict[str, WebhookLog] = {}

    def create(self, log: WebhookLog) -> None:
        if log.transaction_id in self._logs:
            raise DuplicateTransaction(f"Transaction {log.transaction_id} already recorded")
        log.created_at = log.created_at or timezone.now()
        self._logs[log.transaction_id] = copy.deepcopy(log)

    def update(self, log: WebhookLog) -> None:
        if log.transaction_id not in self._logs:
            raise PersistenceError(f"Failed to update webhook log {log.pk}")
        self._logs[log.transaction_id] = copy.deepcopy(log)

    def get_by_order_id(self, order_id: str) -> List[WebhookLog]:
        parsed = _parse_order_id(order_id)
        logs = [log for log in self._logs.values() if parsed is not None and log.order_id == parsed]
        logs.sort(key=lambda log: log.created_at, reverse=True)
        return copy.deepcopy(logs)

    def list_due_for_retry(self, now, max_retries: int) -> List[WebhookLog]:
        logs = [log for log in self._logs.values() if log.is_due_for_retry(now, max_retries)]
        logs.sort(key=lambda log: log.next_retry_at)
        return copy.deepcopy(logs)

    def all(self) -> List[WebhookLog]:
        return copy.deepcopy(list(self._logs.values()))
