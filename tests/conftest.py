import asyncio
import inspect
import os
import tempfile

# Configure before any import that might build settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tenantauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-0123456789")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "test-refresh-secret-for-testing-only-9876543210")
# Per-process rate limiting keeps tests independent of a local Redis
os.environ["REDIS_URL"] = ""
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

from tenantauth.service.opaque_tokens import OpaqueTokenGenerator  # noqa: E402
from tenantauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from tenantauth.service.sessions import SessionManager  # noqa: E402
from tenantauth.service.signing import ACCESS, REFRESH, CredentialSigner  # noqa: E402
from tenantauth.storage.memory import MemoryStore  # noqa: E402
from tenantauth.storage.models import Organization, Principal  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh state directory per test so persisted principals never leak across tests
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class FakeClock:
    """Settable clock for signers; starts at a fixed epoch second."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SecurityEvents:
    """Captures security events emitted by the session manager."""

    def __init__(self):
        self.events = []

    def __call__(self, event, **fields):
        self.events.append((event, fields))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def security_events():
    return SecurityEvents()


@pytest.fixture
def signers(clock):
    """Access and refresh signers sharing the fake clock."""
    common = dict(issuer="tenantauth", audience="tenantauth-clients", clock=clock)
    access = CredentialSigner(
        "access-secret-for-tests-0123456789abcdef",
        token_type=ACCESS,
        default_ttl_seconds=900,
        **common,
    )
    refresh = CredentialSigner(
        "refresh-secret-for-tests-fedcba9876543210",
        token_type=REFRESH,
        default_ttl_seconds=86400,
        **common,
    )
    return access, refresh


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def principal(store):
    p = Principal.new("alice", "alice@example.com", role="admin")
    store.create_principal_with_organization(p, Organization(id="org-1", name="acme"))
    return p


@pytest.fixture
def manager(store, signers, security_events):
    access, refresh = signers
    return SessionManager(
        store, access, refresh, OpaqueTokenGenerator(), security_event=security_events
    )


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
