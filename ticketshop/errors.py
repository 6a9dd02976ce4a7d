"""Shop error codes and exceptions.

Every error carries a code and a message that is safe to show to the buyer.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCode(Enum):
    """Shop error codes."""

    SHOPPABLE_NOT_FOUND = "SHOPPABLE_NOT_FOUND"
    SALE_NOT_STARTED = "SALE_NOT_STARTED"
    SALE_CLOSED = "SALE_CLOSED"
    SOLD_OUT = "SOLD_OUT"
    ALREADY_IN_CART = "ALREADY_IN_CART"
    MAX_AMOUNT_REACHED = "MAX_AMOUNT_REACHED"
    ALREADY_RESERVED = "ALREADY_RESERVED"
    CART_EMPTY = "CART_EMPTY"
    PRICE_INCONSISTENT = "PRICE_INCONSISTENT"
    INVALID_WEBHOOK = "INVALID_WEBHOOK"
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    SCHEDULER_ERROR = "SCHEDULER_ERROR"


@dataclass(eq=False)
class ShopError(Exception):
    """Base shop error with code and user-safe message."""

    code: ErrorCode
    message: str

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class ValidationError(ShopError):
    """The request can never succeed as stated. Not retried."""


class WebhookError(ValidationError):
    """Raised when a provider webhook fails verification."""

    def __init__(self, message: str) -> None:
        super().__init__(code=ErrorCode.INVALID_WEBHOOK, message=message)


class ConcurrencyConflict(ShopError):
    """The transaction lost a race. Safe to retry the whole call."""

    def __init__(self, message: str = "Please try again") -> None:
        super().__init__(code=ErrorCode.CONCURRENCY_CONFLICT, message=message)


class ProviderError(ShopError):
    """The payment provider rejected or failed the call."""

    def __init__(self, message: str) -> None:
        super().__init__(code=ErrorCode.PROVIDER_ERROR, message=message)


class SchedulerError(ShopError):
    """A lottery resolution failed. Logged, never propagated to buyers."""

    def __init__(self, message: str) -> None:
        super().__init__(code=ErrorCode.SCHEDULER_ERROR, message=message)
