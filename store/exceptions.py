"""Domain errors shared by the store and webhooks apps.

Views let these propagate; ``store.middleware.ShopErrorMiddleware`` turns
them into ``{"error": message}`` JSON responses using ``http_status``.
"""


class ShopError(Exception):
    http_status = 400

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(ShopError):
    """Malformed or rule-breaking input."""

    http_status = 400


class AuthenticationFailed(ShopError):
    http_status = 401


class PermissionDenied(ShopError):
    http_status = 403


class NotFound(ShopError):
    http_status = 404


class InvalidState(ShopError):
    """The target entity is not in a state that allows the operation."""

    http_status = 409


class InvalidTransition(InvalidState):
    pass


class DuplicateTransaction(ShopError):
    """A webhook log with the same transaction id already exists.

    Raised by the webhook log store when its unique constraint fires; the
    processor treats it as a replayed delivery.
    """

    http_status = 409


class PersistenceError(ShopError):
    http_status = 500
