"""
Error taxonomy for the library API.

Every error carries a short machine readable ``reason`` and the HTTP status
the request boundary answers with. Handlers in main.py render them as
``{"message": ..., "reason": ...}``.
"""

from typing import Optional


class LibraryError(Exception):
    status_code = 500
    default_reason = "error"

    def __init__(self, message: str, reason: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.reason = reason or self.default_reason
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {"message": self.message, "reason": self.reason}


class ValidationError(LibraryError):
    """Malformed or missing input."""
    status_code = 400
    default_reason = "validation_error"


class NotFound(LibraryError):
    status_code = 404
    default_reason = "not_found"


class Conflict(LibraryError):
    """A business rule refused the operation."""
    status_code = 409
    default_reason = "conflict"


class InvalidState(LibraryError):
    status_code = 400
    default_reason = "invalid_state"


class TransactionFailure(LibraryError):
    """The atomic write batch could not be committed. Never retried here."""
    status_code = 500
    default_reason = "transaction_failure"
