"""Unit tests for the credential verifier.

Covers email normalization, Argon2id hashing, sign-up uniqueness (including
concurrent sign-ups) and sign-in failure modes.
"""

import threading

import pytest

from authsession.service import credentials as credentials_module
from authsession.service.credentials import (
    CredentialVerifier,
    hash_password,
    normalize_email,
)
from authsession.service.errors import (
    CredentialStorageError,
    EmptyPasswordError,
    InvalidCredentialsError,
    InvalidEmailError,
    UserAlreadyExistsError,
    UserNotFoundError,
)
from authsession.storage.errors import ConstraintViolation, StorageError
from authsession.storage.memory import MemoryStore


class TestNormalizeEmail:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("a@b.com", "a@b.com"),
            ("  Alice.Smith@Example.COM ", "alice.smith@example.com"),
            ("user+tag@sub.example.org", "user+tag@sub.example.org"),
            ("a\u200b@b.com", "a@b.com"),
        ],
    )
    def test_valid_addresses(self, raw, expected):
        assert normalize_email(raw) == expected

    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "plainaddress",
            "@example.com",
            "user@",
            "user@localhost",
            ".user@example.com",
            "user.@example.com",
            "us..er@example.com",
            "user@-example.com",
            "user@exa_mple.com",
            "Alice <alice@example.com>",
            "a" * 65 + "@example.com",
        ],
    )
    def test_invalid_addresses(self, raw):
        with pytest.raises(InvalidEmailError):
            normalize_email(raw)

    def test_non_string_rejected(self):
        with pytest.raises(InvalidEmailError):
            normalize_email(None)  # type: ignore[arg-type]


class TestHashPassword:
    def test_hash_is_not_plaintext(self, hash_params):
        digest = hash_password("pw1", "SALTSALTSALTSALT", hash_params)
        assert digest != "pw1"
        assert len(digest) == hash_params.hash_len * 2
        int(digest, 16)

    def test_deterministic_for_same_inputs(self, hash_params):
        a = hash_password("pw1", "SALTSALTSALTSALT", hash_params)
        b = hash_password("pw1", "SALTSALTSALTSALT", hash_params)
        assert a == b

    def test_different_salts_differ(self, hash_params):
        a = hash_password("pw1", "SALTSALTSALTSALT", hash_params)
        b = hash_password("pw1", "OTHERSALTOTHERSA", hash_params)
        assert a != b


class TestSignUp:
    def test_creates_normalized_user(self, verifier, memory_store, secret_source, hash_params):
        verifier.sign_up(" A@B.com", "pw1")
        user = memory_store.get_user_by_email("a@b.com")
        assert user is not None
        assert user.salt == secret_source.issued[0]
        assert user.hash_version == hash_params.version
        assert user.password_hash == hash_password("pw1", user.salt, hash_params)

    def test_each_user_gets_own_salt(self, verifier, memory_store):
        verifier.sign_up("a@b.com", "same")
        verifier.sign_up("c@d.com", "same")
        first = memory_store.get_user_by_email("a@b.com")
        second = memory_store.get_user_by_email("c@d.com")
        assert first.salt != second.salt
        assert first.password_hash != second.password_hash

    def test_invalid_email_checked_first(self, verifier):
        with pytest.raises(InvalidEmailError):
            verifier.sign_up("not-an-email", "")

    def test_empty_password(self, verifier):
        with pytest.raises(EmptyPasswordError):
            verifier.sign_up("a@b.com", "")

    def test_duplicate_email(self, verifier):
        verifier.sign_up("a@b.com", "pw1")
        with pytest.raises(UserAlreadyExistsError):
            verifier.sign_up("A@b.com", "pw2")

    def test_lost_race_maps_to_already_exists(self, secret_source, hash_params):
        class RacingStore(MemoryStore):
            def get_user_by_email(self, email):
                return None

            def create_user(self, *args, **kwargs):
                raise ConstraintViolation("email already exists", {"field": "email"})

        verifier = CredentialVerifier(RacingStore(), params=hash_params, secret_source=secret_source)
        with pytest.raises(UserAlreadyExistsError):
            verifier.sign_up("a@b.com", "pw1")

    def test_storage_failure_on_insert(self, secret_source, hash_params):
        class BrokenStore(MemoryStore):
            def create_user(self, *args, **kwargs):
                raise StorageError("insert failed")

        verifier = CredentialVerifier(BrokenStore(), params=hash_params, secret_source=secret_source)
        with pytest.raises(CredentialStorageError) as excinfo:
            verifier.sign_up("a@b.com", "pw1")
        assert isinstance(excinfo.value.__cause__, StorageError)

    def test_storage_failure_on_lookup(self, secret_source, hash_params):
        class BrokenStore(MemoryStore):
            def get_user_by_email(self, email):
                raise StorageError("query failed")

        verifier = CredentialVerifier(BrokenStore(), params=hash_params, secret_source=secret_source)
        with pytest.raises(CredentialStorageError):
            verifier.sign_up("a@b.com", "pw1")

    def test_concurrent_signups_single_winner(self, memory_store, hash_params):
        verifier = CredentialVerifier(memory_store, params=hash_params)
        barrier = threading.Barrier(8)
        outcomes: list[str] = []
        lock = threading.Lock()

        def _attempt(i: int) -> None:
            barrier.wait()
            try:
                verifier.sign_up("race@example.com", f"pw{i}")
                result = "ok"
            except UserAlreadyExistsError:
                result = "exists"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=_attempt, args=(i,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("exists") == 7


class TestSignIn:
    def test_success(self, verifier):
        verifier.sign_up("a@b.com", "pw1")
        verifier.sign_in("A@B.COM", "pw1")

    def test_wrong_password(self, verifier):
        verifier.sign_up("a@b.com", "pw1")
        with pytest.raises(InvalidCredentialsError):
            verifier.sign_in("a@b.com", "wrong")

    def test_unknown_user_still_hashes(self, verifier, monkeypatch):
        calls = []
        real = credentials_module.hash_password

        def _spy(password, salt, params=credentials_module.ARGON2ID_V1):
            calls.append(salt)
            return real(password, salt, params)

        monkeypatch.setattr(credentials_module, "hash_password", _spy)
        with pytest.raises(UserNotFoundError):
            verifier.sign_in("nobody@b.com", "pw1")
        assert len(calls) == 1

    def test_malformed_email_reported_as_not_found(self, verifier):
        with pytest.raises(UserNotFoundError):
            verifier.sign_in("garbage", "pw1")

    def test_unknown_hash_version_rejected(self, memory_store, secret_source, hash_params):
        old = CredentialVerifier(memory_store, params=hash_params, secret_source=secret_source)
        old.sign_up("a@b.com", "pw1")
        newer = CredentialVerifier(
            memory_store,
            params=credentials_module.HashParameters(
                version="argon2id-test-2",
                time_cost=1,
                memory_cost=1024,
                parallelism=1,
                hash_len=32,
            ),
        )
        with pytest.raises(InvalidCredentialsError):
            newer.sign_in("a@b.com", "pw1")

    def test_unknown_hash_version_still_hashes(
        self, memory_store, secret_source, hash_params, monkeypatch
    ):
        CredentialVerifier(
            memory_store, params=hash_params, secret_source=secret_source
        ).sign_up("a@b.com", "pw1")
        newer = CredentialVerifier(
            memory_store,
            params=credentials_module.HashParameters(
                version="argon2id-test-2",
                time_cost=1,
                memory_cost=1024,
                parallelism=1,
                hash_len=32,
            ),
        )
        calls = []
        real = credentials_module.hash_password

        def _spy(password, salt, params=credentials_module.ARGON2ID_V1):
            calls.append(salt)
            return real(password, salt, params)

        monkeypatch.setattr(credentials_module, "hash_password", _spy)
        with pytest.raises(InvalidCredentialsError):
            newer.sign_in("a@b.com", "pw1")
        assert len(calls) == 1

    def test_storage_failure(self, secret_source, hash_params):
        class BrokenStore(MemoryStore):
            def get_user_by_email(self, email):
                raise StorageError("query failed")

        verifier = CredentialVerifier(BrokenStore(), params=hash_params, secret_source=secret_source)
        with pytest.raises(CredentialStorageError):
            verifier.sign_in("a@b.com", "pw1")
