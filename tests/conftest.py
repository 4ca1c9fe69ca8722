import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="docauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("TOTP_SECRET_KEY", "test-totp-key-for-testing-only-do-not-use-in-production")
# in-memory rate limits and replay claims keep tests independent of a local Redis
os.environ["REDIS_URL"] = ""
# TestClient talks plain http, so the cookie must not be marked Secure
os.environ.setdefault("AUTH_COOKIE_SECURE", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from docauth.config import Settings  # noqa: E402
from docauth.service.auth import AuthService  # noqa: E402
from docauth.service.credentials import CredentialVerifier  # noqa: E402
from docauth.service.events import EventBus  # noqa: E402
from docauth.service.recovery import PasswordRecoveryManager  # noqa: E402
from docauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from docauth.service.sessions import SessionTokenManager  # noqa: E402
from docauth.service.totp import TOTPVerifier  # noqa: E402
from docauth.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # a fresh state directory per test; the memory store reloads its snapshot
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"), totp_encryption_key="unit-test-key")


@pytest.fixture
def credentials(store):
    return CredentialVerifier(store)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def settings():
    return Settings(redis_url=None, guest_login_enabled=True, use_memory_store=True)


@pytest.fixture
def totp():
    return TOTPVerifier(issuer="Docauth")


@pytest.fixture
def sessions(store):
    return SessionTokenManager(store)


@pytest.fixture
def recovery(store, credentials, bus, sessions):
    return PasswordRecoveryManager(store, credentials, bus, sessions=sessions)


@pytest.fixture
def auth_service(store, settings, credentials, totp, sessions, recovery):
    return AuthService(
        store,
        None,
        settings,
        credentials=credentials,
        totp=totp,
        sessions=sessions,
        recovery=recovery,
    )


@pytest.fixture
def make_user(store, credentials):
    """Create a user with an argon2 password hash."""

    def _make(username: str = "alice", password: str = "correct-horse", email: str = ""):
        password_hash, algo = credentials.hash_password(password)
        return store.create_user(username, email, password_hash=password_hash, password_algo=algo)

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
