"""Tests for admin recovery with the one-time emergency code."""

import pyotp
import pytest

from venuehub.service.errors import (
    AuthenticationError,
    AuthorizationError,
    InvalidTokenError,
    NotFoundError,
    PreconditionError,
)
from venuehub.storage.models import Role


@pytest.fixture
def recovery(runtime):
    return runtime.recovery


@pytest.fixture
def enrolled_admin(make_account, enroll):
    make_account("root", "root-pass", Role.ADMIN)
    return enroll("root")


async def test_reset_disables_two_factor(enrolled_admin, recovery, runtime):
    account, provisioning = enrolled_admin
    sessions_before = set(runtime.store.sessions)

    await recovery.reset_with_emergency_code("root", "root-pass", provisioning.emergency_code)

    stored = runtime.store.get_account(account.id)
    assert not stored.two_factor_enabled
    assert stored.two_factor_secret is None
    assert stored.emergency_reset_codes == []
    # No session is created for the caller
    assert set(runtime.store.sessions) == sessions_before

    result = await runtime.auth.login(runtime.store.create_session(60), "root", "root-pass")
    assert result.status == "ok"


async def test_unknown_user(recovery):
    with pytest.raises(NotFoundError):
        await recovery.reset_with_emergency_code("nobody", "x", "ABCDEF0123456789")


async def test_non_admin_refused(make_account, enroll, recovery):
    make_account("bob", "bob-pass")
    enroll("bob")
    with pytest.raises(AuthorizationError):
        await recovery.reset_with_emergency_code("bob", "bob-pass", "ABCDEF0123456789")


async def test_wrong_password(enrolled_admin, recovery):
    _, provisioning = enrolled_admin
    with pytest.raises(AuthenticationError) as excinfo:
        await recovery.reset_with_emergency_code("root", "wrong", provisioning.emergency_code)
    assert excinfo.value.error_code == "unauthorized"


async def test_two_factor_not_enabled(make_account, recovery):
    make_account("root", "root-pass", Role.ADMIN)
    with pytest.raises(PreconditionError):
        await recovery.reset_with_emergency_code("root", "root-pass", "ABCDEF0123456789")


async def test_promoted_admin_without_code(make_account, enroll, recovery, runtime):
    make_account("ops", "ops-pass")
    enroll("ops")
    runtime.accounts.update_account("ops", role=Role.ADMIN)

    with pytest.raises(PreconditionError):
        await recovery.reset_with_emergency_code("ops", "ops-pass", "ABCDEF0123456789")


async def test_wrong_code(enrolled_admin, recovery, runtime):
    account, _ = enrolled_admin
    with pytest.raises(InvalidTokenError):
        await recovery.reset_with_emergency_code("root", "root-pass", "0000000000000000")
    assert runtime.store.get_account(account.id).two_factor_enabled


async def test_second_reset_fails(enrolled_admin, recovery):
    _, provisioning = enrolled_admin
    await recovery.reset_with_emergency_code("root", "root-pass", provisioning.emergency_code)

    # 2FA is already off, so the repeat cannot succeed
    with pytest.raises(PreconditionError):
        await recovery.reset_with_emergency_code("root", "root-pass", provisioning.emergency_code)


async def test_old_code_invalid_after_new_setup(enrolled_admin, recovery, runtime):
    account, provisioning = enrolled_admin
    await recovery.reset_with_emergency_code("root", "root-pass", provisioning.emergency_code)

    fresh = runtime.credentials.begin_two_factor_setup(runtime.store.get_account(account.id))
    runtime.credentials.confirm_two_factor_enable(
        runtime.store.get_account(account.id), pyotp.TOTP(fresh.secret).now()
    )

    with pytest.raises(InvalidTokenError):
        await recovery.reset_with_emergency_code("root", "root-pass", provisioning.emergency_code)
    await recovery.reset_with_emergency_code("root", "root-pass", fresh.emergency_code)
