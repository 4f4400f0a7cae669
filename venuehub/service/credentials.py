from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from venuehub.config import Settings
from venuehub.logging import get_logger
from venuehub.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidTokenError,
    PreconditionError,
    ValidationError,
)
from venuehub.service.totp import AttemptThrottle, TotpEngine
from venuehub.storage.memory import MemoryStore
from venuehub.storage.models import Account


@dataclass
class TwoFactorProvisioning:
    """Plaintext material shown to the caller exactly once."""

    secret: str
    provisioning_uri: str
    emergency_code: Optional[str] = None


class CredentialStore:
    """Password hashes, TOTP secrets and emergency codes for accounts.

    Every "verify, then mutate" sequence ends in a single
    ``update_account_if`` keyed on the account version read before the
    check, so a concurrent writer makes the later one fail instead of
    both succeeding.
    """

    def __init__(
        self,
        store: MemoryStore,
        totp: TotpEngine,
        throttle: AttemptThrottle,
        settings: Settings,
    ) -> None:
        self.store = store
        self.totp = totp
        self.throttle = throttle
        self.settings = settings
        self.logger = get_logger(__name__)
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    # passwords
    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, account: Account, candidate: str) -> bool:
        if not candidate:
            return False
        try:
            return self._pwd_hasher.verify(account.password_hash, candidate)
        except (InvalidHash, VerifyMismatchError):
            return False

    def set_password(self, account: Account, new_password: str) -> Account:
        if not new_password:
            raise ValidationError("password must not be empty", detail={"field": "password"})
        updated = self.store.update_account(
            account.id, password_hash=self.hash_password(new_password)
        )
        self.logger.info("password_changed", account_id=account.id)
        return updated

    # codes
    def verify_code(self, account: Account, code: Optional[str], *, window: Optional[int] = None) -> bool:
        """Check a TOTP code for ``account``, counting failures against the throttle."""
        if not account.two_factor_secret:
            return False
        self.throttle.check(account.id)
        steps = self.settings.totp_valid_window if window is None else window
        if self.totp.verify(account.two_factor_secret, code, steps):
            self.throttle.record_success(account.id)
            return True
        attempts = self.throttle.record_failure(account.id)
        self.logger.info("totp_code_rejected", account_id=account.id, attempts=attempts)
        return False

    def _issue_emergency_code(self) -> tuple[str, str]:
        plaintext = secrets.token_hex(8).upper()
        return plaintext, self._pwd_hasher.hash(plaintext)

    # two-factor lifecycle
    def begin_two_factor_setup(self, account: Account) -> TwoFactorProvisioning:
        if account.two_factor_enabled:
            raise ConflictError("two-factor authentication is already enabled; disable it first")
        secret = self.totp.generate_secret()
        emergency_code: Optional[str] = None
        # Overwrites any unconfirmed secret and, for admins, the previous code
        changes: dict = {"two_factor_secret": secret, "two_factor_enabled": False}
        if account.is_admin:
            emergency_code, hashed = self._issue_emergency_code()
            changes["emergency_reset_codes"] = [hashed]
        updated = self.store.update_account_if(account.id, account.version, **changes)
        if updated is None:
            raise ConflictError("account changed during setup; retry")
        self.throttle.reset(account.id)
        self.logger.info(
            "two_factor_setup_started",
            account_id=account.id,
            restarted=account.two_factor_provisioning,
            recovery_code_issued=emergency_code is not None,
        )
        return TwoFactorProvisioning(
            secret=secret,
            provisioning_uri=self.totp.provisioning_uri(secret, account.username),
            emergency_code=emergency_code,
        )

    def confirm_two_factor_enable(self, account: Account, code: str) -> bool:
        if not account.two_factor_secret:
            raise PreconditionError("two-factor setup has not been started")
        if not self.verify_code(account, code):
            raise InvalidTokenError("invalid verification code")
        if account.two_factor_enabled:
            return True
        updated = self.store.update_account_if(
            account.id, account.version, two_factor_enabled=True
        )
        if updated is None:
            raise ConflictError("two-factor state changed concurrently; retry setup")
        self.logger.info("two_factor_enabled", account_id=account.id)
        return True

    def disable_two_factor(self, account: Account, password: str, code: str) -> Account:
        if not self.verify_password(account, password):
            raise AuthenticationError("incorrect password")
        if not account.two_factor_enabled:
            raise PreconditionError("two-factor authentication is not enabled")
        if not self.verify_code(account, code, window=self.settings.totp_disable_window):
            raise InvalidTokenError("invalid verification code")
        updated = self.store.update_account_if(
            account.id,
            account.version,
            two_factor_secret=None,
            two_factor_enabled=False,
            emergency_reset_codes=[],
        )
        if updated is None:
            raise ConflictError("two-factor state changed concurrently; retry")
        self.logger.info("two_factor_disabled", account_id=account.id)
        return updated

    def consume_emergency_code(
        self, account: Account, code: str, *, disable_two_factor: bool = False
    ) -> bool:
        """Match ``code`` against the stored hashes and clear the list on first match.

        With ``disable_two_factor`` the secret and enabled flag are cleared in
        the same write. Returns False when nothing matches or a concurrent
        write consumed the code first.
        """
        if not code or not account.emergency_reset_codes:
            return False
        self.throttle.check(account.id)
        candidate = code.strip().upper()
        matched = False
        for hashed in account.emergency_reset_codes:
            try:
                if self._pwd_hasher.verify(hashed, candidate):
                    matched = True
                    break
            except (InvalidHash, VerifyMismatchError):
                continue
        if not matched:
            attempts = self.throttle.record_failure(account.id)
            self.logger.info("emergency_code_rejected", account_id=account.id, attempts=attempts)
            return False
        changes: dict = {"emergency_reset_codes": []}
        if disable_two_factor:
            changes.update(two_factor_secret=None, two_factor_enabled=False)
        updated = self.store.update_account_if(account.id, account.version, **changes)
        if updated is None:
            self.logger.warning("emergency_code_race_lost", account_id=account.id)
            return False
        self.throttle.record_success(account.id)
        self.logger.info(
            "emergency_code_consumed", account_id=account.id, two_factor_disabled=disable_two_factor
        )
        return True
