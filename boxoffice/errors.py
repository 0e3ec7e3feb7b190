"""Error taxonomy for the checkout core.

Rejections are bad requests and change nothing. Transient errors are safe to
retry because nothing was committed. Fatal errors are routed into the
overbooking fail-safe instead of being surfaced to the buyer.
"""


class BoxOfficeError(Exception):
    code = "ERROR"
    http_status = 500

    def __init__(self, code: str | None = None, message: str = "", **context):
        self.code = code or self.code
        self.message = message or self.code
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        out = {"ok": False, "error": self.code, "detail": self.message}
        if self.context:
            out["context"] = self.context
        return out


class RejectionError(BoxOfficeError):
    code = "REJECTED"
    http_status = 422


class NotFoundError(RejectionError):
    code = "NOT_FOUND"
    http_status = 404


class ForbiddenError(RejectionError):
    code = "FORBIDDEN"
    http_status = 403


class AuthenticationError(RejectionError):
    code = "UNAUTHENTICATED"
    http_status = 401


class ConflictError(RejectionError):
    code = "CONFLICT"
    http_status = 409


class RateLimitedError(RejectionError):
    code = "RATE_LIMITED"
    http_status = 429


class TransientError(BoxOfficeError):
    code = "TRANSIENT"
    http_status = 503


class ProviderUnavailable(TransientError):
    code = "PROVIDER_UNAVAILABLE"
    http_status = 502


class FatalError(BoxOfficeError):
    code = "FATAL"
    http_status = 500


# Rejection codes raised by the order builder
EVENT_NOT_VISIBLE = "EVENT_NOT_VISIBLE"
SALES_WINDOW_CLOSED = "SALES_WINDOW_CLOSED"
CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
TICKET_TYPE_NOT_FOUND = "TICKET_TYPE_NOT_FOUND"
INVALID_QUANTITY = "INVALID_QUANTITY"
EMPTY_ORDER = "EMPTY_ORDER"
TOO_MANY_TICKETS = "TOO_MANY_TICKETS"
ORDER_NOT_PAYABLE = "ORDER_NOT_PAYABLE"
