"""Custom exception classes for the library lending service.

Domain errors carry the HTTP status code the API boundary maps them to.
Workflows raise them unchanged; ``endpoints`` turns them into JSON
responses of the form ``{"message": ...}``.
"""

from typing import Any, Dict, List, Optional


class LibraryError(Exception):
    """Base exception for all library lending errors."""

    status_code = 500

    def __init__(self, message: str):
        """Initialize the exception.

        Args:
            message: Short human-readable description shown to the client.
        """
        self.message = message
        super().__init__(message)


class ValidationError(LibraryError):
    """Raised when input is malformed or missing required fields."""

    status_code = 400

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        """Initialize the exception.

        Args:
            message: Summary of the validation failure.
            errors: Field-level details, each with ``field`` and ``message``.
        """
        super().__init__(message)
        self.errors = errors or []


class AuthenticationError(LibraryError):
    """Raised for bad credentials or a missing/expired session."""

    status_code = 401


class AuthorizationError(LibraryError):
    """Raised when the caller lacks the role or ownership required."""

    status_code = 403


class NotFoundError(LibraryError):
    """Raised when a referenced entity does not exist."""

    status_code = 404


class ConflictError(LibraryError):
    """Raised when the request conflicts with the current state."""

    status_code = 409


class UnavailableError(ConflictError):
    """Raised when a book has no copy left to lend.

    Reported as a bad request: the client asked for something the
    catalog cannot give right now.
    """

    status_code = 400


class UsernameTakenError(ConflictError):
    """Raised when a registration reuses an existing username."""

    status_code = 400


class StorageError(LibraryError):
    """Raised when the backing store fails."""

    status_code = 500


class ConfigurationError(LibraryError):
    """Raised when required configuration is missing or invalid."""

    pass


class FederatedAuthError(LibraryError):
    """Raised when the identity provider rejects or cannot serve a request."""

    status_code = 401
