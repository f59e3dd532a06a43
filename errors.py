"""Exception hierarchy for the banking backend.

Business outcomes (locked out, insufficient funds, unknown account) are
returned as typed results from the services, not raised. What lives here is
either an infrastructure failure, fatal to the current request, or a
request-level error the HTTP layer turns into an ``ErrorResponse``.
"""


class BankingError(Exception):
    """Base exception for the application."""

    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, detail: str = "Internal server error"):
        super().__init__(detail)
        self.detail = detail


class InfrastructureError(BankingError):
    """The store or a store-level mechanism failed."""

    status_code = 503
    error_code = "INFRASTRUCTURE_ERROR"


class StoreUnavailableError(InfrastructureError):
    error_code = "STORE_UNAVAILABLE"


class ConcurrencyConflictError(InfrastructureError):
    """Compare-and-swap kept losing against concurrent writers."""

    error_code = "CONCURRENCY_CONFLICT"


class AccountNumberExhaustedError(InfrastructureError):
    """No free account number found within the allowed draws."""

    error_code = "ACCOUNT_NUMBER_EXHAUSTED"


class DuplicateKeyError(BankingError):
    """A unique index rejected a write."""

    status_code = 409
    error_code = "DUPLICATE_KEY"

    def __init__(self, collection: str, field: str, value):
        super().__init__(f"Duplicate value for {collection}.{field}")
        self.collection = collection
        self.field = field
        self.value = value


class InvalidCredentialsError(BankingError):
    status_code = 401
    error_code = "INVALID_CREDENTIALS"


class EmailAlreadyTakenError(BankingError):
    status_code = 409
    error_code = "EMAIL_ALREADY_TAKEN"


class PhoneAlreadyTakenError(BankingError):
    status_code = 409
    error_code = "TELEPHONE_NUMBER_TAKEN"


class PasswordMismatchError(BankingError):
    status_code = 400
    error_code = "INVALID_PASSWORD"


class NotFoundError(BankingError):
    """An operator or account looked up by id does not exist."""

    status_code = 404
    error_code = "NOT_FOUND"
