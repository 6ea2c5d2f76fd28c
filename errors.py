"""Errors surfaced by recipe book operations.

Every failure an operation reports is one of these; the HTTP layer maps
``status_code`` onto the response and exposes ``kind`` and ``retryable``
so callers can tell a bad request from a store hiccup worth retrying.
"""


class RecipeBookError(Exception):
    kind = "error"
    status_code = 500
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(RecipeBookError):
    kind = "not_found"
    status_code = 404


class ConstraintError(RecipeBookError):
    """A unique, foreign key or check constraint rejected the write."""

    kind = "constraint"
    status_code = 409


class TransientError(RecipeBookError):
    kind = "transient"
    status_code = 503
    retryable = True


class TransactionTimeout(TransientError):
    kind = "timeout"


class TransactionConflict(TransientError):
    """The store refused a unit because of a concurrent one."""

    kind = "conflict"
