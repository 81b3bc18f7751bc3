import datetime as dt
import logging
from functools import wraps
from typing import Any, Dict, Tuple

import jwt
from django.conf import settings
from django.utils import timezone

from .exceptions import AuthenticationFailed, PermissionDenied
from .models import UserProfile

logger = logging.getLogger(__name__)

PERM_CREATE_PRODUCT = "product:create"
PERM_UPDATE_PRODUCT = "product:update"
PERM_DELETE_PRODUCT = "product:delete"
PERM_VIEW_PRODUCT = "product:view"
PERM_LIST_PRODUCTS = "product:list"
PERM_CREATE_ORDER = "order:create"
PERM_VIEW_ORDER = "order:view"
PERM_LIST_ORDERS = "order:list"
PERM_UPDATE_ORDER_STATUS = "order:update_status"
PERM_VIEW_WEBHOOK_HISTORY = "webhook:view_history"

ROLE_PERMISSIONS = {
    UserProfile.ROLE_ADMIN: frozenset({
        PERM_CREATE_PRODUCT,
        PERM_UPDATE_PRODUCT,
        PERM_DELETE_PRODUCT,
        PERM_VIEW_PRODUCT,
        PERM_LIST_PRODUCTS,
        PERM_CREATE_ORDER,
        PERM_VIEW_ORDER,
        PERM_LIST_ORDERS,
        PERM_UPDATE_ORDER_STATUS,
        PERM_VIEW_WEBHOOK_HISTORY,
    }),
    UserProfile.ROLE_CUSTOMER: frozenset({
        PERM_VIEW_PRODUCT,
        PERM_LIST_PRODUCTS,
        PERM_CREATE_ORDER,
        PERM_VIEW_ORDER,
        PERM_LIST_ORDERS,
    }),
}


def has_permission(role: str, permission: str) -> bool:
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


def issue_token(user, role: str) -> Tuple[str, dt.datetime]:
    now = timezone.now()
    expires_at = now + dt.timedelta(hours=settings.JWT_EXPIRATION_HOURS)
    payload = {
        "user_id": user.pk,
        "email": user.email,
        "role": role,
        "iat": now,
        "exp": expires_at,
        "iss": settings.JWT_ISSUER,
    }
    token = jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return token, expires_at


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            issuer=settings.JWT_ISSUER,
            options={"require": ["exp", "iat", "user_id"]},
        )
    except jwt.PyJWTError as exc:
        logger.info("Rejected token: %s", exc)
        raise AuthenticationFailed("Invalid or expired token") from exc


def authenticate_request(request) -> Dict[str, Any]:
    header = request.headers.get("Authorization", "")
    if not header:
        raise AuthenticationFailed("Missing authorization header")
    parts = header.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        raise AuthenticationFailed("Invalid authorization header format")
    claims = decode_token(parts[1])
    request.auth_claims = claims
    request.auth_user_id = claims["user_id"]
    request.auth_role = claims.get("role", "")
    return claims


def permission_required(permission: str):
    def decorator(view_func):
        @wraps(view_func)
        def wrapper(request, *args, **kwargs):
            claims = authenticate_request(request)
            if not has_permission(claims.get("role", ""), permission):
                raise PermissionDenied("Forbidden: insufficient permissions for this action")
            return view_func(request, *args, **kwargs)

        return wrapper

    return decorator
