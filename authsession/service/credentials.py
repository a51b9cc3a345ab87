from __future__ import annotations

import hmac
import re
import unicodedata
from dataclasses import dataclass
from typing import Optional

from argon2 import Type
from argon2.low_level import hash_secret_raw

from authsession.logging import get_logger
from authsession.service.errors import (
    CredentialStorageError,
    EmptyPasswordError,
    InvalidCredentialsError,
    InvalidEmailError,
    UserAlreadyExistsError,
    UserNotFoundError,
)
from authsession.service.protocols import AuthStore
from authsession.service.tokens import SecretSource, generate_secret
from authsession.storage.errors import ConstraintViolation, StorageError

logger = get_logger(__name__)


@dataclass(frozen=True)
class HashParameters:
    """Argon2id cost settings; ``version`` is stored beside every hash."""

    version: str
    time_cost: int
    memory_cost: int  # KiB
    parallelism: int
    hash_len: int


# Changing any of these invalidates stored hashes; add a new version instead.
ARGON2ID_V1 = HashParameters(
    version="argon2id-v1",
    time_cost=1,
    memory_cost=64 * 1024,
    parallelism=4,
    hash_len=32,
)

# Used to equalize sign-in cost when the email is unknown.
_DUMMY_SALT = "UNKNOWNUSERSALTUNKNOWNUSERSALT00"

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"


def normalize_email(value: str) -> str:
    """Validate an RFC 5322 addr-spec and return its canonical form.

    The address is stripped, NFKC-normalized and lower-cased. Only the
    dot-atom form is accepted (no quoted local parts, no display names).

    Raises:
        InvalidEmailError: if the address is malformed
    """
    if not isinstance(value, str):
        raise InvalidEmailError("email must be a string")
    cleaned = "".join(c for c in value if c not in _ZERO_WIDTH)
    normalized = unicodedata.normalize("NFKC", cleaned.strip()).lower()
    if len(normalized) < 3 or len(normalized) > 254:
        raise InvalidEmailError()
    local, sep, domain = normalized.rpartition("@")
    if not sep or not local or not domain:
        raise InvalidEmailError()
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise InvalidEmailError()
    if local.startswith(".") or local.endswith(".") or ".." in local:
        raise InvalidEmailError()
    labels = domain.split(".")
    if len(labels) < 2:
        raise InvalidEmailError()
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise InvalidEmailError()
    return normalized


def hash_password(
    password: str, salt: str, params: HashParameters = ARGON2ID_V1
) -> str:
    """Derive the hex-encoded Argon2id key for ``password`` under ``salt``."""
    digest = hash_secret_raw(
        secret=password.encode("utf-8"),
        salt=salt.encode("utf-8"),
        time_cost=params.time_cost,
        memory_cost=params.memory_cost,
        parallelism=params.parallelism,
        hash_len=params.hash_len,
        type=Type.ID,
    )
    return digest.hex()


class CredentialVerifier:
    """Sign-up and sign-in against salted Argon2id password hashes."""

    def __init__(
        self,
        store: AuthStore,
        *,
        params: HashParameters = ARGON2ID_V1,
        secret_source: Optional[SecretSource] = None,
    ) -> None:
        self.store = store
        self.params = params
        self._secret_source: SecretSource = secret_source or generate_secret
        self.logger = logger

    def sign_up(self, email: str, password: str) -> None:
        normalized = normalize_email(email)
        if password == "":
            raise EmptyPasswordError()
        try:
            existing = self.store.get_user_by_email(normalized)
        except StorageError as exc:
            raise CredentialStorageError("could not query user") from exc
        if existing:
            raise UserAlreadyExistsError()

        salt = self._secret_source()
        password_hash = hash_password(password, salt, self.params)
        try:
            user = self.store.create_user(
                normalized, password_hash, salt, self.params.version
            )
        except ConstraintViolation as exc:
            # lost a race with a concurrent sign-up for the same address
            raise UserAlreadyExistsError() from exc
        except StorageError as exc:
            raise CredentialStorageError("could not insert user") from exc
        self.logger.info("user_signed_up", user_id=user.id)

    def sign_in(self, email: str, password: str) -> None:
        try:
            normalized = normalize_email(email)
        except InvalidEmailError as exc:
            hash_password(password, _DUMMY_SALT, self.params)
            raise UserNotFoundError() from exc
        try:
            user = self.store.get_user_by_email(normalized)
        except StorageError as exc:
            raise CredentialStorageError("could not query user") from exc
        if not user:
            hash_password(password, _DUMMY_SALT, self.params)
            self.logger.info("sign_in_failed", reason="user_not_found")
            raise UserNotFoundError()
        if user.hash_version != self.params.version:
            self.logger.warning(
                "password_hash_version_mismatch",
                user_id=user.id,
                hash_version=user.hash_version,
            )
            hash_password(password, _DUMMY_SALT, self.params)
            raise InvalidCredentialsError()
        candidate = hash_password(password, user.salt, self.params)
        if not hmac.compare_digest(candidate, user.password_hash):
            self.logger.info("sign_in_failed", reason="invalid_credentials", user_id=user.id)
            raise InvalidCredentialsError()
