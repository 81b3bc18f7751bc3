import logging

from django.http import JsonResponse

from .exceptions import ShopError

logger = logging.getLogger(__name__)


class ShopErrorMiddleware:
    """Render ``ShopError`` raised by API views as JSON error bodies."""

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        return self.get_response(request)

    def process_exception(self, request, exception):
        if not isinstance(exception, ShopError):
            return None
        if exception.http_status >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, exception.message, exc_info=exception)
        else:
            logger.info("%s %s rejected (%s): %s", request.method, request.path, exception.http_status, exception.message)
        return JsonResponse({"error": exception.message}, status=exception.http_status)
