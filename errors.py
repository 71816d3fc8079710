from typing import Any, Optional


class CheckoutError(Exception):
    status_code = 400
    code = "CheckoutError"

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        body = {"detail": self.message, "error": self.code}
        body.update(self.extra)
        return body


class ValidationError(CheckoutError):
    code = "ValidationError"


class InsufficientQuantity(CheckoutError):
    code = "InsufficientQuantity"

    def __init__(self, item_id: str, requested: int, available: int, item_name: Optional[str] = None):
        label = item_name or item_id
        super().__init__(
            f"Only {available} unit(s) of {label} available, {requested} requested",
            item_id=item_id,
            requested=requested,
            available=available,
        )
        self.item_id = item_id
        self.requested = requested
        self.available = available


class InvalidStateTransition(CheckoutError):
    code = "InvalidStateTransition"

    def __init__(self, current: str, event: str, subject: str = "transaction"):
        super().__init__(
            f"Cannot {event} a {subject} in status '{current}'",
            current=current,
            event=event,
        )
        self.current = current
        self.event = event


class NotAuthenticated(CheckoutError):
    status_code = 401
    code = "NotAuthenticated"


class Forbidden(CheckoutError):
    status_code = 403
    code = "Forbidden"


class NotFound(CheckoutError):
    status_code = 404
    code = "NotFound"


class Conflict(CheckoutError):
    status_code = 409
    code = "Conflict"


class InvariantViolation(CheckoutError):
    """Counters disagree with the transaction history: a bug or corrupted data."""

    status_code = 500
    code = "InvariantViolation"
