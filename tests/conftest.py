import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="gatekeep_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("MFA_SECRET_KEY", "test-mfa-key-for-testing-only")
# Falls back to local revocation if Redis is not available (via ALLOW_REDIS_FALLBACK_DEV)
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from gatekeep.config import Settings  # noqa: E402
from gatekeep.service.lockout import LockoutPolicy  # noqa: E402
from gatekeep.service.passwords import CredentialVerifier  # noqa: E402
from gatekeep.service.revocation import LocalRevocationStore  # noqa: E402
from gatekeep.service.runtime import reset_runtime_for_tests  # noqa: E402
from gatekeep.service.session import SessionOrchestrator  # noqa: E402
from gatekeep.service.tokens import TokenService  # noqa: E402
from gatekeep.service.two_factor import TwoFactorEngine  # noqa: E402
from gatekeep.storage.memory import MemoryStore  # noqa: E402

# Aligned to a 30 second TOTP step boundary
CLOCK_START = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Deterministic time source; only moves when advanced."""

    def __init__(self, start: datetime = CLOCK_START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Captures outgoing codes instead of emailing them."""

    def __init__(self):
        self.sent = []
        self.fail_with = None

    def send_two_factor_code(self, to_email, code, expires_at):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((to_email, code, expires_at))
        return True

    @property
    def last_code(self):
        return self.sent[-1][1]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        jwt_issuer="gatekeep-api",
        jwt_audience="gatekeep-clients",
    )


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key="test-mfa-key")


@pytest.fixture
def fast_hasher():
    # Minimal argon2id cost so the suite stays quick
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)


@pytest.fixture
def credentials(store, fast_hasher):
    return CredentialVerifier(store, hasher=fast_hasher)


@pytest.fixture
def lockout(store, clock):
    return LockoutPolicy(store, max_attempts=5, clock=clock)


@pytest.fixture
def tokens(settings, clock):
    return TokenService(settings, clock=clock)


@pytest.fixture
def revocation(clock):
    return LocalRevocationStore(clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def two_factor(store, notifier, clock):
    return TwoFactorEngine(store, notifier=notifier, clock=clock)


@pytest.fixture
def orchestrator(store, credentials, lockout, tokens, revocation, two_factor):
    return SessionOrchestrator(
        store,
        credentials=credentials,
        lockout=lockout,
        tokens=tokens,
        revocation=revocation,
        two_factor=two_factor,
    )


@pytest.fixture
def make_user(store, credentials):
    def _make(email="a@x.com", password="Secret123", **kwargs):
        user = store.create_user(email, kwargs.pop("name", "Test User"), **kwargs)
        credentials.set_password(user.id, password)
        return store.get_user(user.id)

    return _make


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
