from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from authsession.storage.models import Session


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# credential errors


class CredentialError(ServiceError):
    """Base for failures raised by the credential verifier."""


class InvalidEmailError(CredentialError, ValidationError):
    def __init__(self, message: str = "invalid email", **kwargs) -> None:
        super().__init__(message, **kwargs)


class EmptyPasswordError(CredentialError, ValidationError):
    def __init__(self, message: str = "empty password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UserAlreadyExistsError(CredentialError, ConflictError):
    def __init__(self, message: str = "user already exists", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UserNotFoundError(CredentialError, AuthenticationError):
    def __init__(self, message: str = "user not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCredentialsError(CredentialError, AuthenticationError):
    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class CredentialStorageError(CredentialError, ServerError):
    def __init__(self, message: str = "credential storage failure", **kwargs) -> None:
        super().__init__(message, **kwargs)


# session errors


class SessionError(ServiceError):
    """Base for failures raised by the session manager."""


class InvalidSessionError(SessionError, AuthenticationError):
    def __init__(self, message: str = "invalid session", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ExpiredSessionError(SessionError, AuthenticationError):
    def __init__(self, message: str = "expired session", **kwargs) -> None:
        super().__init__(message, **kwargs)


class PersistenceError(SessionError, ServerError):
    def __init__(self, message: str = "session persistence failure", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionRefreshError(PersistenceError):
    """The sliding-refresh write failed; ``session`` is still valid for this call."""

    def __init__(
        self, session: "Session", message: str = "could not refresh session", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)
        self.session = session


class EntropyUnavailableError(SessionError, ServerError):
    def __init__(self, message: str = "entropy source unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ConflictError",
    "ServerError",
    "CredentialError",
    "InvalidEmailError",
    "EmptyPasswordError",
    "UserAlreadyExistsError",
    "UserNotFoundError",
    "InvalidCredentialsError",
    "CredentialStorageError",
    "SessionError",
    "InvalidSessionError",
    "ExpiredSessionError",
    "PersistenceError",
    "SessionRefreshError",
    "EntropyUnavailableError",
]
