from __future__ import annotations

import json
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Tuple

from django.http import HttpRequest

from .exceptions import ValidationError

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


def parse_json_body(request: HttpRequest) -> Dict[str, Any]:
    try:
        data = json.loads(request.body.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("Invalid request body")
    if not isinstance(data, dict):
        raise ValidationError("Invalid request body")
    return data


def _int_param(value: Optional[str], default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def get_page_params(request: HttpRequest) -> Tuple[int, int]:
    page = _int_param(request.GET.get("page"), 1)
    page_size = _int_param(request.GET.get("page_size"), DEFAULT_PAGE_SIZE)
    return normalize_page(page, page_size)


def normalize_page(page: int, page_size: int) -> Tuple[int, int]:
    if page < 1:
        page = 1
    if page_size < 1 or page_size > MAX_PAGE_SIZE:
        page_size = DEFAULT_PAGE_SIZE
    return page, page_size


def parse_uuid(value: Any, label: str = "ID") -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        raise ValidationError(f"Invalid {label}")


def parse_decimal(value: Any, label: str) -> Decimal:
    # floats go through str() so 19.99 stays 19.99
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid {label}")


def parse_int(value: Any, label: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {label}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {label}")
