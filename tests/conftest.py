import asyncio
import inspect
import os
import sys
import time
from pathlib import Path

# Environment must be in place before anything imports bookingdesk.config
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("MFA_SECRET_KEY", "test-mfa-key-for-testing-only")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from bookingdesk.config import Settings  # noqa: E402
from bookingdesk.service.auth import AuthService  # noqa: E402
from bookingdesk.service.login_flow import LoginFlow  # noqa: E402
from bookingdesk.service.mfa import MFAService, generate_totp  # noqa: E402
from bookingdesk.service.runtime import reset_runtime_for_tests  # noqa: E402
from bookingdesk.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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


@pytest.fixture
def settings():
    """Settings for service-level tests, independent of the process env."""
    return Settings(
        test_mode=True,
        mfa_secret_key="test-mfa-key-for-testing-only",
        session_ttl_minutes=60,
        mfa_challenge_ttl_seconds=300,
        min_password_length=6,
    )


@pytest.fixture
def memory_store():
    return MemoryStore(mfa_encryption_key="test-mfa-key-for-testing-only")


@pytest.fixture
def auth_service(memory_store, settings):
    return AuthService(store=memory_store, cache=None, settings=settings)


@pytest.fixture
def mfa_service(memory_store, settings):
    return MFAService(store=memory_store, cache=None, settings=settings)


@pytest.fixture
def make_account(memory_store, auth_service):
    """Factory creating an identity with a password and optional console role."""

    def _make(email: str, password: str = "Password123", role: str | None = "admin"):
        user = auth_service.create_identity(email, password)
        if role:
            memory_store.add_role(user.id, role)
            memory_store.upsert_admin_profile(user.id)
        return user

    return _make


@pytest.fixture
def totp_now():
    """Current TOTP code for a base32 secret."""

    def _code(secret: str) -> str:
        return generate_totp(secret, time.time())

    return _code


@pytest.fixture
def verified_factor(memory_store, mfa_service, totp_now):
    """Factory enrolling and verifying a TOTP factor; returns (factor_id, secret)."""

    async def _enroll(user_id: str):
        enrollment = await mfa_service.enroll(user_id)
        challenge_id = await mfa_service.challenge(enrollment.factor_id)
        assert await mfa_service.verify(
            enrollment.factor_id, challenge_id, totp_now(enrollment.secret)
        )
        return enrollment.factor_id, enrollment.secret

    return _enroll


@pytest.fixture
def flow(auth_service, mfa_service):
    return LoginFlow(auth_service, mfa_service)
