"""Error taxonomy shared by the circulation and fine services.

Every error carries the HTTP status and a short machine-readable code so the API
layer can translate it without knowing each class.
"""


class LibraryError(Exception):
    status_code = 400
    code = "library_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = str(self.args[0])


class NotFound(LibraryError, LookupError):
    """Requested record does not exist."""
    status_code = 404
    code = "not_found"


class Unavailable(LibraryError):
    """Book or student cannot take part in a loan right now."""
    status_code = 409
    code = "unavailable"


class DuplicateLoan(LibraryError):
    """Student already has this book on loan."""
    status_code = 409
    code = "duplicate_loan"


class LimitExceeded(LibraryError):
    """Student reached the maximum number of books allowed."""
    status_code = 409
    code = "limit_exceeded"


class AlreadyReturned(LibraryError):
    """Loan was already returned."""
    status_code = 409
    code = "already_returned"


class InvalidLoanState(LibraryError):
    """Loan is not in a state that allows this action."""
    status_code = 409
    code = "invalid_loan_state"


class AlreadyPaid(LibraryError):
    """Fine already paid."""
    status_code = 409
    code = "already_paid"


class CannotWaivePaid(LibraryError):
    """Cannot waive paid fine."""
    status_code = 409
    code = "cannot_waive_paid"


class InvalidFineState(LibraryError):
    """Fine is not in a state that allows this action."""
    status_code = 409
    code = "invalid_fine_state"


class PermissionDenied(LibraryError):
    """Access denied."""
    status_code = 403
    code = "permission_denied"


class ValidationError(LibraryError, ValueError):
    """Invalid input."""
    status_code = 400
    code = "invalid"
