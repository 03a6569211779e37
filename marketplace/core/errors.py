class MarketplaceError(Exception):
    """Base for every error raised by the marketplace services."""

    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ValidationError(MarketplaceError, ValueError):
    """Bad input or an invalid state transition. Raised before any mutation."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class NotFoundError(MarketplaceError, LookupError):
    pass


class GatewayError(MarketplaceError, RuntimeError):
    """Payment gateway auth/network failure or non-success response."""

    retryable = True

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class PersistenceError(MarketplaceError, RuntimeError):
    """Datastore write failure. For checkout, carries the vendor whose order failed."""

    retryable = True

    def __init__(self, message: str, vendor_id: str | None = None):
        super().__init__(message)
        self.vendor_id = vendor_id


class InvariantViolation(MarketplaceError, RuntimeError):
    """A request that would break a settled record, e.g. re-settling a reservation."""
