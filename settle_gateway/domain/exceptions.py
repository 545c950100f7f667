"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class ValidationError(DomainException):
    """Input is malformed: amount, dates, currency, category"""

    pass


class NotFoundError(DomainException):
    """Obligation or payment attempt does not exist"""

    pass


class InvalidStateTransition(DomainException):
    """Operation is not legal from the record's current status"""

    def __init__(self, message: str, current_status: str | None = None):
        super().__init__(message)
        self.current_status = current_status


class PaymentRetryLimitError(DomainException):
    """Payment attempt exhausted its retry budget"""

    def __init__(self, message: str, attempts_count: int):
        super().__init__(message)
        self.attempts_count = attempts_count


class GatewayError(DomainException):
    """
    Payment processor failed or refused the call.

    retryable is True for timeouts, network errors, 429 and 5xx responses,
    False when the processor rejected the request.
    """

    def __init__(self, message: str, retryable: bool = False, status_code: int | None = None):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class ConcurrentUpdateError(DomainException):
    """A record kept changing under us after the optimistic retry budget"""

    pass


class UnmappedProcessorStatus(DomainException):
    """Processor reported a status missing from the status table"""

    pass


class DuplicateNotification(DomainException):
    """Notification was already applied to the attempt. Never surfaced."""

    pass


class UnresolvedNotification(DomainException):
    """Notification does not belong to any local attempt. Never surfaced."""

    pass
