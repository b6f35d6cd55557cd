from typing import Optional


class DomainException(Exception):
    pass


class ValidationError(DomainException):
    """Bad input, rejected before any network call"""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class NetworkError(DomainException):
    """Transport or upstream failure. Retryable only for safe reads"""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False):
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)


class CatalogServiceError(NetworkError):
    pass


class PaymentServiceError(NetworkError):
    pass


class DeliveryServiceError(NetworkError):
    pass


class PaymentVerificationError(DomainException):
    def __init__(self, message: str, order_id: Optional[str] = None, reference: Optional[str] = None):
        self.order_id = order_id
        self.reference = reference
        super().__init__(message)


class InvalidTransitionError(DomainException):
    def __init__(self, current, requested):
        self.current = current
        self.requested = requested
        super().__init__(f"Transition {current.value} -> {requested.value} is not allowed")


class RefundWindowExpiredError(InvalidTransitionError):
    def __init__(self, current, requested, window_days: int):
        self.window_days = window_days
        super().__init__(current, requested)
        self.args = (f"Refund window of {window_days} days after delivery has passed",)


class CouponRejection(DomainException):
    def __init__(self, code: str, reason: str):
        self.code = code
        self.reason = reason
        super().__init__(reason)


class OrderNotFoundError(DomainException):
    pass


class CouponNotFoundError(DomainException):
    pass
