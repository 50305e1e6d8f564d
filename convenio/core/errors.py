"""Domain errors raised by services and rendered as `{message, code}` bodies."""

from typing import Any


class DomainError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: str | None = None, **extra: Any):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"message": self.message, "code": self.code}
        body.update(self.extra)
        return body


class ValidationError(DomainError):
    status_code = 400
    default_code = "VALIDATION_ERROR"


class AuthError(DomainError):
    status_code = 401
    default_code = "AUTH_ERROR"


class ForbiddenError(DomainError):
    status_code = 403
    default_code = "FORBIDDEN"


class NotFoundError(DomainError):
    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(DomainError):
    status_code = 409
    default_code = "CONFLICT"


class PaymentGatewayError(DomainError):
    """Outbound payment gateway failure. No local state was changed."""

    status_code = 502
    default_code = "PAYMENT_GATEWAY_ERROR"
