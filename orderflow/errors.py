"""
orderflow: error taxonomy

Every domain failure carries the HTTP status it surfaces as and whether a
queue consumer may retry it. Errors outside this hierarchy (database driver
errors, timeouts) are treated as transient by the worker.
"""


class OrderflowError(Exception):
    status_code = 500
    retryable = True

    def __init__(self, message: str = "An unexpected error occurred") -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(OrderflowError):
    status_code = 404
    retryable = False

    def __init__(self, message: str = "Resource not found") -> None:
        super().__init__(message)


class BadRequestError(OrderflowError):
    status_code = 400
    retryable = False

    def __init__(self, message: str = "Invalid request data") -> None:
        super().__init__(message)


class InsufficientStockError(BadRequestError):
    """Requested quantity exceeds the product's stock."""

    def __init__(self, product_id: str, requested: int, available: int) -> None:
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for product {product_id}: "
            f"requested={requested}, available={available}, shortfall={self.shortfall}"
        )

    @property
    def shortfall(self) -> int:
        return self.requested - self.available


class InvalidStatusTransitionError(BadRequestError):
    def __init__(self, old_status: str, new_status: str) -> None:
        self.old_status = old_status
        self.new_status = new_status
        super().__init__(f"Cannot change order status from {old_status} to {new_status}")


class ForbiddenError(OrderflowError):
    status_code = 403
    retryable = False

    def __init__(self, message: str = "You do not have permission to access this resource") -> None:
        super().__init__(message)


class TransientInfraError(OrderflowError):
    """Store or broker temporarily unavailable."""

    status_code = 503
    retryable = True

    def __init__(self, message: str = "Service temporarily unavailable") -> None:
        super().__init__(message)


class BrokerError(TransientInfraError):
    pass


class PoisonMessageError(OrderflowError):
    """A queued message that can never be processed (malformed or invalid)."""

    status_code = 400
    retryable = False


def is_poison(exc: BaseException) -> bool:
    """Decide whether a failed message must be dropped instead of requeued."""
    if isinstance(exc, OrderflowError):
        return not exc.retryable
    text = str(exc).lower()
    return "validation" in text or "parse" in text
