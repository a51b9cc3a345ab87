import base64
import secrets

import pytest

from authsession.service.errors import EntropyUnavailableError
from authsession.service.tokens import (
    DEFAULT_SECRET_BYTES,
    MIN_SECRET_BYTES,
    generate_secret,
)


def _decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 8)
    return base64.b32decode(value + padding)


class TestGenerateSecret:
    def test_default_length_and_alphabet(self):
        value = generate_secret()
        assert "=" not in value
        assert len(_decode(value)) == DEFAULT_SECRET_BYTES
        assert set(value) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZ234567")

    def test_minimum_entropy_accepted(self):
        assert len(_decode(generate_secret(MIN_SECRET_BYTES))) == MIN_SECRET_BYTES

    def test_rejects_short_requests(self):
        with pytest.raises(ValueError):
            generate_secret(MIN_SECRET_BYTES - 1)

    def test_values_do_not_repeat(self):
        values = {generate_secret() for _ in range(200)}
        assert len(values) == 200

    @pytest.mark.parametrize("error", [OSError("no urandom"), NotImplementedError()])
    def test_entropy_failure_is_surfaced(self, monkeypatch, error):
        def _broken(nbytes):
            raise error

        monkeypatch.setattr(secrets, "token_bytes", _broken)
        with pytest.raises(EntropyUnavailableError):
            generate_secret()
