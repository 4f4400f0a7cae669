import asyncio
import inspect
import os
import sys
import tempfile
import time
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="venuehub_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")
os.environ.setdefault("MFA_SECRET_KEY", "test-mfa-key-material-for-testing-only")

import pyotp  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from venuehub.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from venuehub.storage.models import Role  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Each test gets its own persisted store
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
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
def runtime(reset_runtime_state):
    return get_runtime()


@pytest.fixture
def make_account(runtime):
    """Factory creating accounts through the account service."""

    def _make(username: str, password: str = "pass-1234", role: Role = Role.USER):
        return runtime.accounts.create_account(username, password, role)

    return _make


@pytest.fixture
def enroll(runtime):
    """Factory running setup + enable for an existing account.

    Returns the refreshed account and the provisioning material.
    """

    def _enroll(username: str):
        account = runtime.store.get_account_by_username(username)
        provisioning = runtime.credentials.begin_two_factor_setup(account)
        account = runtime.store.get_account(account.id)
        runtime.credentials.confirm_two_factor_enable(
            account, pyotp.TOTP(provisioning.secret).now()
        )
        return runtime.store.get_account(account.id), provisioning

    return _enroll


@pytest.fixture
def wrong_code():
    """Return a 6-digit code that is not valid for ``secret`` right now."""

    def _wrong(secret: str) -> str:
        totp = pyotp.TOTP(secret)
        now = time.time()
        valid = {totp.at(now, offset) for offset in range(-3, 4)}
        return next(f"{n:06d}" for n in range(100) if f"{n:06d}" not in valid)

    return _wrong
