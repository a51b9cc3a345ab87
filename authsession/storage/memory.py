from __future__ import annotations

import json
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from authsession.logging import get_logger, short_id
from authsession.storage.errors import ConstraintViolation, StorageError
from authsession.storage.models import Session, User, ensure_utc


class MemoryStore:
    """In-process backing store for tests and single-process deployments.

    All operations run under one lock, which makes the email uniqueness check
    and the insert a single atomic step. When ``state_path`` is given the
    tables are written to JSON after every mutation and reloaded on start.
    """

    def __init__(self, state_path: str | Path | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.users_by_email: Dict[str, str] = {}
        self.sessions: Dict[str, Session] = {}
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        if self.state_path:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_state()

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        """Apply a change and persist it; a failed write restores the previous tables."""
        if not self.state_path:
            yield
            return
        users = dict(self.users)
        users_by_email = dict(self.users_by_email)
        sessions = dict(self.sessions)
        try:
            yield
            self._persist_state()
        except StorageError:
            self.users = users
            self.users_by_email = users_by_email
            self.sessions = sessions
            raise

    # users
    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self.users_by_email.get(email)
            if not user_id:
                return None
            return replace(self.users[user_id])

    def create_user(
        self, email: str, password_hash: str, salt: str, hash_version: str
    ) -> User:
        with self._data_lock, self._mutation():
            if email in self.users_by_email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=password_hash,
                salt=salt,
                hash_version=hash_version,
            )
            self.users[user.id] = user
            self.users_by_email[email] = user.id
        return replace(user)

    # sessions
    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def create_session(self, session: Session) -> Session:
        with self._data_lock, self._mutation():
            if session.id in self.sessions:
                raise ConstraintViolation(
                    "session id already exists", {"session": short_id(session.id)}
                )
            self.sessions[session.id] = replace(session)
        return replace(session)

    def update_session_expiry(self, session_id: str, expires_at: datetime) -> None:
        with self._data_lock, self._mutation():
            sess = self.sessions.get(session_id)
            if sess:
                # replaced, not edited in place: _mutation snapshots are shallow
                self.sessions[session_id] = replace(sess, expires_at=expires_at)

    def delete_session(self, session_id: str) -> None:
        with self._data_lock, self._mutation():
            self.sessions.pop(session_id, None)

    def delete_expired_sessions(self, before: datetime) -> int:
        with self._data_lock, self._mutation():
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if ensure_utc(sess.expires_at) <= before
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
        return len(stale)

    def verify_connection(self) -> None:
        if self.state_path and not self.state_path.parent.is_dir():
            raise StorageError("state directory missing", {"path": str(self.state_path)})

    # persistence
    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return ensure_utc(datetime.fromisoformat(raw))

    def _serialize_user(self, user: User) -> Dict[str, Any]:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "salt": user.salt,
            "hash_version": user.hash_version,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: Dict[str, Any]) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            password_hash=data["password_hash"],
            salt=data["salt"],
            hash_version=data["hash_version"],
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session(self, sess: Session) -> Dict[str, Any]:
        return {
            "id": sess.id,
            "user_id": sess.user_id,
            "created_at": self._serialize_datetime(sess.created_at),
            "expires_at": self._serialize_datetime(sess.expires_at),
        }

    def _deserialize_session(self, data: Dict[str, Any]) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
        )

    def _persist_state(self) -> None:
        if not self.state_path:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        try:
            self.state_path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StorageError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        assert self.state_path is not None
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            raise StorageError(f"failed to load in-memory state: {exc}") from exc
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.users_by_email = {u.email: u.id for u in self.users.values()}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.info(
            "memory_store_loaded", users=len(self.users), sessions=len(self.sessions)
        )
        return True
