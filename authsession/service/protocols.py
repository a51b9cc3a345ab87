from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from authsession.storage.models import Session, User


class AuthStore(Protocol):
    """Storage operations the credential verifier and session manager rely on.

    Implementations raise ``ConstraintViolation`` for uniqueness failures and
    ``StorageError`` for any other failed round-trip.
    """

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_user(
        self, email: str, password_hash: str, salt: str, hash_version: str
    ) -> User: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def create_session(self, session: Session) -> Session: ...

    def update_session_expiry(self, session_id: str, expires_at: datetime) -> None: ...

    def delete_session(self, session_id: str) -> None: ...

    def delete_expired_sessions(self, before: datetime) -> int: ...

    def verify_connection(self) -> None: ...


class CredentialService(Protocol):
    def sign_up(self, email: str, password: str) -> None: ...

    def sign_in(self, email: str, password: str) -> None: ...


class SessionService(Protocol):
    def generate_token(self) -> str: ...

    def create_session(self, token: str, user_id: str) -> Session: ...

    def validate_session(self, token: str) -> Session: ...

    def invalidate_session(self, token: str) -> None: ...
