from __future__ import annotations

import hashlib
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from authsession.logging import get_logger, short_id
from authsession.service.errors import (
    ExpiredSessionError,
    InvalidSessionError,
    PersistenceError,
    SessionRefreshError,
)
from authsession.service.protocols import AuthStore
from authsession.service.tokens import SecretSource, generate_secret
from authsession.storage.errors import StorageError
from authsession.storage.models import Session, ensure_utc

DEFAULT_SESSION_TTL = timedelta(hours=24)

logger = get_logger(__name__)


def session_id_from_token(token: str) -> str:
    """One-way derivation of the storage key from a bearer token.

    Tokens carry their own entropy so a fast digest is enough here; only
    the digest is ever persisted.
    """
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SessionManager:
    """Create, validate, refresh and invalidate token-bound sessions.

    Sessions live for ``ttl``. A validation past the halfway point pushes the
    expiry out to ``now + ttl`` (sliding refresh), so a session in steady use
    never lapses. Expired rows are deleted when they are next looked up.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        ttl: timedelta = DEFAULT_SESSION_TTL,
        secret_source: Optional[SecretSource] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if ttl <= timedelta(0):
            raise ValueError("session ttl must be positive")
        self.store = store
        self.ttl = ttl
        self._secret_source: SecretSource = secret_source or generate_secret
        self._clock = clock
        self.logger = logger

    def _now(self) -> datetime:
        if self._clock is not None:
            return ensure_utc(self._clock())
        return datetime.now(timezone.utc)

    def generate_token(self) -> str:
        return self._secret_source()

    def create_session(self, token: str, user_id: str) -> Session:
        session = Session.new(
            session_id_from_token(token), user_id, self.ttl, now=self._now()
        )
        try:
            stored = self.store.create_session(session)
        except StorageError as exc:
            raise PersistenceError("could not create session") from exc
        self.logger.info(
            "session_created",
            session=short_id(stored.id),
            expires_at=stored.expires_at.isoformat(),
        )
        return stored

    def validate_session(self, token: str) -> Session:
        """Return the live session for ``token``, refreshing it if due.

        Raises:
            InvalidSessionError: no session exists for the token
            ExpiredSessionError: the session had expired (it is deleted)
            SessionRefreshError: the refresh write failed; ``exc.session``
                holds the still-valid, unrefreshed session
            PersistenceError: any other storage failure
        """
        session_id = session_id_from_token(token)
        try:
            session = self.store.get_session(session_id)
        except StorageError as exc:
            raise PersistenceError("could not query session") from exc
        if session is None:
            raise InvalidSessionError()

        now = self._now()
        expires_at = ensure_utc(session.expires_at)
        if now >= expires_at:
            try:
                self.store.delete_session(session_id)
            except StorageError as exc:
                raise PersistenceError("could not delete expired session") from exc
            self.logger.info("session_expired", session=short_id(session_id))
            raise ExpiredSessionError()

        if now >= expires_at - self.ttl / 2:
            refreshed_until = now + self.ttl
            try:
                self.store.update_session_expiry(session_id, refreshed_until)
            except StorageError as exc:
                raise SessionRefreshError(session) from exc
            session.expires_at = refreshed_until
            self.logger.debug(
                "session_refreshed",
                session=short_id(session_id),
                expires_at=refreshed_until.isoformat(),
            )
        return session

    def invalidate_session(self, token: str) -> None:
        session_id = session_id_from_token(token)
        try:
            self.store.delete_session(session_id)
        except StorageError as exc:
            raise PersistenceError("could not invalidate session") from exc
        self.logger.info("session_invalidated", session=short_id(session_id))

    def purge_expired(self, before: Optional[datetime] = None) -> int:
        """Delete every session whose expiry is at or before ``before``."""
        cutoff = ensure_utc(before) if before else self._now()
        try:
            removed = self.store.delete_expired_sessions(cutoff)
        except StorageError as exc:
            raise PersistenceError("could not purge expired sessions") from exc
        if removed:
            self.logger.info("expired_sessions_purged", removed=removed)
        return removed
