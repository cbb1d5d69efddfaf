"""
Error taxonomy shared by the order, catalogue and retailer operations.

Every failure the core reports is one of these kinds. The HTTP layer maps
each kind to a distinct status code and a stable ``kind`` string so clients
never have to parse messages.
"""


class DomainError(Exception):
    """Base class for all reportable failures."""

    kind = "error"
    status_code = 500
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DomainError):
    """Missing or malformed input. The client must correct and resend."""

    kind = "validation_error"
    status_code = 400


class NotFound(DomainError):
    """A referenced record does not exist."""

    kind = "not_found"
    status_code = 404


class Conflict(DomainError):
    """A uniqueness rule would be violated."""

    kind = "conflict"
    status_code = 409


class AllocationExhausted(Conflict):
    """No unique order number could be allocated within the attempt bound."""

    kind = "allocation_exhausted"


class IntegrityViolation(DomainError):
    """The write would break a cross-record rule, e.g. deleting a brand that still has products."""

    kind = "integrity_violation"
    status_code = 422


class StoreUnavailable(DomainError):
    """The document store timed out or could not be reached."""

    kind = "store_unavailable"
    status_code = 503
    retryable = True
