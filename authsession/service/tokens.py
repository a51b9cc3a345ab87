"""Random secret generation for bearer tokens and password salts."""

from __future__ import annotations

import base64
import secrets
from typing import Protocol

from authsession.service.errors import EntropyUnavailableError

MIN_SECRET_BYTES = 12
DEFAULT_SECRET_BYTES = 20


class SecretSource(Protocol):
    def __call__(self) -> str: ...


def generate_secret(nbytes: int = DEFAULT_SECRET_BYTES) -> str:
    """Return ``nbytes`` of CSPRNG output as unpadded base32 text."""
    if nbytes < MIN_SECRET_BYTES:
        raise ValueError(f"secrets need at least {MIN_SECRET_BYTES} bytes of entropy")
    try:
        raw = secrets.token_bytes(nbytes)
    except (OSError, NotImplementedError) as exc:
        raise EntropyUnavailableError() from exc
    return base64.b32encode(raw).decode("ascii").rstrip("=")
