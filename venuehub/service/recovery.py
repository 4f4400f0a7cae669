from __future__ import annotations

from venuehub.logging import get_logger
from venuehub.service.credentials import CredentialStore
from venuehub.service.errors import (
    AuthenticationError,
    AuthorizationError,
    InvalidTokenError,
    NotFoundError,
    PreconditionError,
)
from venuehub.storage.memory import MemoryStore


class RecoveryService:
    """Lets an admin who lost their authenticator turn 2FA off without a session."""

    def __init__(self, store: MemoryStore, credentials: CredentialStore) -> None:
        self.store = store
        self.credentials = credentials
        self.logger = get_logger(__name__)

    async def reset_with_emergency_code(
        self, username: str, password: str, emergency_code: str
    ) -> None:
        """Disable 2FA for ``username`` using its one-time emergency code.

        No session is created; the caller logs in normally afterwards and has
        to run setup again to get a fresh code.
        """
        account = self.store.get_account_by_username(username)
        if not account:
            raise NotFoundError("user not found")
        if not account.is_admin:
            raise AuthorizationError("only admins may use emergency codes")
        if not self.credentials.verify_password(account, password):
            raise AuthenticationError("incorrect password")
        if not account.two_factor_enabled:
            raise PreconditionError("two-factor authentication is not enabled")
        if not account.emergency_reset_codes:
            # Promoted to admin after enabling 2FA, so no code was ever issued
            raise PreconditionError("no emergency codes available")
        if not self.credentials.consume_emergency_code(
            account, emergency_code, disable_two_factor=True
        ):
            raise InvalidTokenError("invalid emergency code")
        self.logger.info("two_factor_reset_with_recovery_code", account_id=account.id)
