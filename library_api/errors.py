"""Typed failures raised by the services.

Each error carries the HTTP status the REST layer answers with and the code
reported in GraphQL error extensions.
"""

from fastapi import status


class LibraryError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "INTERNAL_SERVER_ERROR"
    default_message = "Internal server error"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def extensions(self):
        return {"code": self.code}


class Unauthorized(LibraryError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "UNAUTHENTICATED"
    default_message = "Authentication required"


class Forbidden(LibraryError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"
    default_message = "Access denied"


class NotFound(LibraryError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    default_message = "Resource not found"


class RecordNotFound(NotFound):
    default_message = "Borrow record not found"


class Conflict(LibraryError):
    status_code = status.HTTP_409_CONFLICT
    code = "CONFLICT"
    default_message = "Resource already exists"


class IneligibleBorrower(LibraryError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "INELIGIBLE_BORROWER"
    default_message = "User has reached maximum borrow limit or has overdue books"


class BookUnavailable(LibraryError):
    status_code = status.HTTP_409_CONFLICT
    code = "BOOK_UNAVAILABLE"
    default_message = "Book is not available for borrowing"


class AlreadyReturned(LibraryError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "ALREADY_RETURNED"
    default_message = "Book has already been returned"


class CannotRenewOverdue(LibraryError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "CANNOT_RENEW_OVERDUE"
    default_message = "Overdue borrows cannot be renewed"


class ValidationError(LibraryError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "BAD_USER_INPUT"
    default_message = "Invalid input"


class Unavailable(LibraryError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "UNAVAILABLE"
    default_message = "Service temporarily unavailable, please retry"
