"""
Billing error taxonomy.

Every provider or storage failure is caught at the service boundary and
re-raised as one of these classes; raw stripe/sqlite3 exceptions never reach
callers.

There is no Conflict class: unique-constraint hits on webhook
events and usage references are idempotent successes, not conflicts.
"""


class BillingError(Exception):
    """Base exception for classified billing failures."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BadRequestError(BillingError):
    """Invalid input, missing configuration, provider rejection or decode failure."""

    status_code = 400
    code = "bad_request"


class UnauthorizedError(BillingError):
    """Missing or insufficient membership role, or subscription guard failure."""

    status_code = 401
    code = "unauthorized"


class NotFoundError(BillingError):
    """Organization or record absent."""

    status_code = 404
    code = "not_found"


class InternalError(BillingError):
    """Unexpected, unclassified failure."""


class ProviderError(Exception):
    """
    Opaque failure raised by any billing provider adapter operation.

    Adapters never retry; the service maps this to BadRequestError.
    """

    pass


class StorageError(Exception):
    """Raised by stores when the underlying database operation fails."""

    pass
