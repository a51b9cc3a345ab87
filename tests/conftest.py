import itertools
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before authsession modules read it
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("LOG_JSON", "true")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authsession.config import reset_settings_cache  # noqa: E402
from authsession.service.credentials import CredentialVerifier, HashParameters  # noqa: E402
from authsession.service.sessions import SessionManager  # noqa: E402
from authsession.storage.memory import MemoryStore  # noqa: E402

# Argon2id with a small memory cost so the suite stays fast
FAST_HASH = HashParameters(
    version="argon2id-test",
    time_cost=1,
    memory_cost=1024,
    parallelism=1,
    hash_len=32,
)

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock for session expiry tests."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> datetime:
        self.now = self.now + delta
        return self.now


class CountingSecrets:
    """Deterministic secret source yielding distinct, predictable values."""

    def __init__(self, prefix: str = "SECRET") -> None:
        self.prefix = prefix
        self._counter = itertools.count(1)
        self.issued: list[str] = []

    def __call__(self) -> str:
        value = f"{self.prefix}{next(self._counter):08d}"
        self.issued.append(value)
        return value


@pytest.fixture(autouse=True)
def reset_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def secret_source():
    return CountingSecrets()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def hash_params():
    return FAST_HASH


@pytest.fixture
def verifier(memory_store, secret_source, hash_params):
    return CredentialVerifier(memory_store, params=hash_params, secret_source=secret_source)


@pytest.fixture
def ttl():
    return timedelta(hours=1)


@pytest.fixture
def manager(memory_store, clock, ttl, secret_source):
    return SessionManager(memory_store, ttl=ttl, secret_source=secret_source, clock=clock)


@pytest.fixture
def live_clock():
    """Fake clock starting at the real current time, so cookies are not born expired."""
    return FakeClock(datetime.now(timezone.utc))
