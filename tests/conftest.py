import asyncio
import inspect
import os
import tempfile
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

# Environment must be in place before anything builds Settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tenantgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("MEMORY_STORE_PERSIST", "false")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("EXPOSE_MFA_CODES", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only-do-not-use-in-production")
# argon2 minimums keep hashing fast under test
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_KIB", "1024")

import pytest  # noqa: E402

from tenantgate.config import Settings  # noqa: E402
from tenantgate.service.audit import AuditLog  # noqa: E402
from tenantgate.service.auth import AuthService  # noqa: E402
from tenantgate.service.background import BackgroundTasks  # noqa: E402
from tenantgate.service.company_context import CompanyContextResolver  # noqa: E402
from tenantgate.service.credentials import (  # noqa: E402
    CredentialVerifier,
    build_password_hasher,
)
from tenantgate.service.device_trust import DeviceTrustManager  # noqa: E402
from tenantgate.service.mfa import MfaChallengeEngine  # noqa: E402
from tenantgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from tenantgate.service.sessions import SessionLifecycleManager  # noqa: E402
from tenantgate.storage.memory import MemoryStore  # noqa: E402

TEST_PASSWORD = "Correct-Horse-42"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path),
        secret_key="unit-test-secret-key-0123456789abcdef",
        use_memory_store=True,
        memory_store_persist=False,
        expose_mfa_codes=True,
        password_hash_time_cost=1,
        password_hash_memory_kib=1024,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), persist=False)


@pytest.fixture
def notifications():
    """Captured (user_id, code, expires_in) tuples from the code notifier."""
    return []


@pytest.fixture
def components(memory_store, settings, clock, notifications):
    """Every auth component wired to one store and one frozen clock.

    Call ``background.drain()`` before asserting on notifications.
    """
    hasher = build_password_hasher(settings)
    audit = AuditLog(memory_store, clock=clock)
    background = BackgroundTasks(workers=1)
    credentials = CredentialVerifier(
        memory_store, settings, hasher=hasher, audit=audit, clock=clock
    )
    device_trust = DeviceTrustManager(memory_store, settings, clock=clock)
    mfa = MfaChallengeEngine(
        memory_store,
        settings,
        device_trust=device_trust,
        background=background,
        notify=lambda user_id, code, ttl: notifications.append((user_id, code, ttl)),
        hasher=hasher,
        audit=audit,
        clock=clock,
    )
    companies = CompanyContextResolver(memory_store, clock=clock)
    sessions = SessionLifecycleManager(memory_store, settings, mfa, clock=clock)
    service = AuthService(
        memory_store,
        credentials=credentials,
        mfa=mfa,
        device_trust=device_trust,
        companies=companies,
        sessions=sessions,
        audit=audit,
        background=background,
    )
    yield SimpleNamespace(
        store=memory_store,
        settings=settings,
        clock=clock,
        audit=audit,
        background=background,
        credentials=credentials,
        device_trust=device_trust,
        mfa=mfa,
        companies=companies,
        sessions=sessions,
        service=service,
    )
    background.shutdown(wait=True)


@pytest.fixture
def company(memory_store):
    return memory_store.create_company("Acme")


@pytest.fixture
def make_user(components, company):
    """Create a user with ``TEST_PASSWORD`` and a pinned grant to their home company."""

    def _make(email="user@example.com", *, home=None, mfa=False, role="user", grant=True):
        home = home or company
        user = components.store.create_user(email, home_company_id=home.id, platform_role=role)
        components.credentials.set_password(user.id, TEST_PASSWORD)
        if grant:
            components.store.grant_company_access(user.id, home.id, pinned=True)
        if mfa:
            components.mfa.enable(user.id)
        return components.store.get_user(user.id)

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
