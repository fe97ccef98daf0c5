"""
Error taxonomy shared by the borrow ledger, the access gate and the API.

Every error carries the HTTP status it is reported with; `main.py` turns
them into the standard response envelope.
"""

from typing import Optional


class LibraryError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidArgument(LibraryError):
    status_code = 400
    default_message = "Invalid argument"


class Unauthenticated(LibraryError):
    status_code = 401
    default_message = "Access denied. No token provided."


class Forbidden(LibraryError):
    status_code = 403
    default_message = "Forbidden access"


class NotFound(LibraryError):
    status_code = 404
    default_message = "Not found"


class Conflict(LibraryError):
    # duplicate borrows are reported as a plain bad request
    status_code = 400
    default_message = "Conflict"


class InvalidState(LibraryError):
    status_code = 400
    default_message = "Operation not allowed in the current state"
