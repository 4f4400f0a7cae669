from __future__ import annotations

from typing import List, Optional

from venuehub.config import Settings
from venuehub.logging import get_logger
from venuehub.service.credentials import CredentialStore
from venuehub.service.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from venuehub.storage.errors import ConstraintViolation
from venuehub.storage.memory import MemoryStore
from venuehub.storage.models import Account, Role

# Created on startup when SEED_DEFAULT_ACCOUNTS is set
DEFAULT_ACCOUNTS = (
    ("admin", "admin", Role.ADMIN),
    ("user", "user", Role.USER),
)


class AccountService:
    """Back-office account management for admins."""

    def __init__(
        self, store: MemoryStore, credentials: CredentialStore, settings: Settings
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.settings = settings
        self.logger = get_logger(__name__)

    def _require(self, username: str) -> Account:
        account = self.store.get_account_by_username(username)
        if not account:
            raise NotFoundError("user not found", detail={"username": username})
        return account

    def _check_password_policy(self, password: str) -> None:
        if not password or len(password) < self.settings.min_password_length:
            raise ValidationError(
                f"password must be at least {self.settings.min_password_length} characters",
                detail={"field": "password"},
            )

    def list_accounts(self, limit: int = 100) -> List[Account]:
        return self.store.list_accounts(limit=limit)

    def get_account(self, username: str) -> Account:
        return self._require(username)

    def create_account(
        self, username: str, password: str, role: Role | str = Role.USER
    ) -> Account:
        username = (username or "").strip()
        if not username:
            raise ValidationError("username is required", detail={"field": "username"})
        self._check_password_policy(password)
        try:
            account = self.store.create_account(
                username, self.credentials.hash_password(password), role=Role(role)
            )
        except ConstraintViolation as exc:
            raise ConflictError("username already exists", detail=exc.detail) from exc
        self.logger.info("account_created", account_id=account.id, role=account.role.value)
        return account

    def update_account(
        self,
        username: str,
        *,
        password: Optional[str] = None,
        role: Role | str | None = None,
    ) -> Account:
        account = self._require(username)
        if password is not None:
            self._check_password_policy(password)
            account = self.credentials.set_password(account, password)
        if role is not None and Role(role) != account.role:
            account = self.store.update_account(account.id, role=Role(role))
            # Sessions carry the role they were issued with
            revoked = self.store.revoke_account_sessions(account.id)
            self.logger.info(
                "account_role_changed",
                account_id=account.id,
                role=account.role.value,
                sessions_revoked=revoked,
            )
        return account

    def delete_account(self, username: str) -> None:
        account = self._require(username)
        self.store.delete_account(account.id)
        self.credentials.throttle.reset(account.id)
        self.logger.info("account_deleted", account_id=account.id)

    def reset_two_factor(self, username: str) -> Account:
        """Force 2FA off for a non-admin account; admins recover with their emergency code."""
        account = self._require(username)
        if account.is_admin:
            raise AuthorizationError("cannot reset 2FA for admin users")
        updated = self.store.update_account(
            account.id,
            two_factor_secret=None,
            two_factor_enabled=False,
            emergency_reset_codes=[],
        )
        self.credentials.throttle.reset(account.id)
        self.logger.info("two_factor_reset_by_admin", account_id=account.id)
        return updated

    def seed_default_accounts(self) -> int:
        created = 0
        for username, password, role in DEFAULT_ACCOUNTS:
            if self.store.get_account_by_username(username):
                continue
            self.store.create_account(
                username, self.credentials.hash_password(password), role=role
            )
            created += 1
        if created:
            self.logger.warning("default_accounts_seeded", created=created)
        return created
